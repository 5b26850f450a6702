"""
repositories/budget_repo.py
-----------------------------
Data access layer for budgets and their category lines.

Spend figures are never written by read-modify-write from Python: every change
to `spent`/`total_spent` is a single `SET x = x + delta` statement so concurrent
writers cannot lose each other's updates.
"""

from datetime import datetime
from typing import Optional

from psycopg2 import extras

from db.connection import get_connection, release_connection
from models.budget import (
    Budget,
    BudgetCategory,
    BudgetNotifications,
    CategoryNotification,
    NotificationChannels,
    RecurringConfig,
)
from models.transaction import normalize_category
from utils.errors import ConsistencyConflict
from utils.logger import get_logger

logger = get_logger(__name__)

_BUDGET_COLUMNS = """
    id, user_id, name, period, start_date, end_date, total_budget, total_spent,
    status, notifications, is_recurring, recurring, notes, created_at, updated_at
"""


class BudgetRepository:
    """Repository for CRUD operations on the budgets and budget_categories tables."""

    # ── CREATE ────────────────────────────────────────────

    def add(self, budget: Budget) -> Budget:
        """Insert a budget together with its category lines."""
        sql = """
            INSERT INTO budgets
                (user_id, name, period, start_date, end_date, total_budget, total_spent,
                 status, notifications, is_recurring, recurring, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at, updated_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    budget.user_id, budget.name, budget.period, budget.start_date,
                    budget.end_date, budget.total_budget, budget.total_spent,
                    budget.status, self._notifications_json(budget),
                    budget.is_recurring, self._recurring_json(budget), budget.notes,
                ))
                budget.id, budget.created_at, budget.updated_at = cur.fetchone()
                self._write_categories(cur, budget)
            conn.commit()
            logger.info(f"Added budget #{budget.id} '{budget.name}' for user {budget.user_id}")
            return budget
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to add budget: {e}")
            raise
        finally:
            release_connection(conn)

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, budget_id: int, user_id: int) -> Optional[Budget]:
        """Fetch one budget, scoped to a user."""
        sql = f"SELECT {_BUDGET_COLUMNS} FROM budgets WHERE id = %s AND user_id = %s;"
        budgets = self._select(sql, (budget_id, user_id))
        return budgets[0] if budgets else None

    def find(
        self,
        user_id: int,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Budget]:
        """All budgets of a user, most recent window first."""
        sql = f"SELECT {_BUDGET_COLUMNS} FROM budgets WHERE user_id = %s"
        params: list = [user_id]
        if status is not None:
            sql += " AND status = %s"
            params.append(status)
        sql += " ORDER BY start_date DESC, id DESC"
        if limit is not None:
            sql += " LIMIT %s OFFSET %s"
            params.extend([limit, offset])
        return self._select(sql, params)

    def find_active(self, user_id: int, now: datetime) -> list[Budget]:
        """Budgets with status 'active' whose window contains `now`."""
        sql = f"""
            SELECT {_BUDGET_COLUMNS} FROM budgets
            WHERE user_id = %s AND status = 'active'
              AND start_date <= %s AND end_date >= %s
            ORDER BY start_date DESC, id DESC;
        """
        return self._select(sql, (user_id, now, now))

    def find_renewable(self, now: datetime) -> list[Budget]:
        """Active recurring budgets whose window has already elapsed."""
        sql = f"""
            SELECT {_BUDGET_COLUMNS} FROM budgets
            WHERE status = 'active' AND is_recurring = TRUE AND end_date < %s
            ORDER BY end_date;
        """
        return self._select(sql, (now,))

    # ── UPDATE ────────────────────────────────────────────

    def update(self, budget: Budget) -> bool:
        """
        Overwrite a budget's definition.

        Category lines are upserted by name so their running `spent` survives;
        lines no longer listed are removed and `total_spent` is re-derived from
        the remaining lines inside the same transaction.
        """
        sql = """
            UPDATE budgets
            SET name = %s, period = %s, start_date = %s, end_date = %s, total_budget = %s,
                status = %s, notifications = %s, is_recurring = %s, recurring = %s,
                notes = %s, updated_at = NOW()
            WHERE id = %s AND user_id = %s;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    budget.name, budget.period, budget.start_date, budget.end_date,
                    budget.total_budget, budget.status, self._notifications_json(budget),
                    budget.is_recurring, self._recurring_json(budget), budget.notes,
                    budget.id, budget.user_id,
                ))
                updated = cur.rowcount > 0
                if updated:
                    self._write_categories(cur, budget)
                    cur.execute(
                        "DELETE FROM budget_categories WHERE budget_id = %s AND NOT (name = ANY(%s::text[]));",
                        (budget.id, [c.name for c in budget.categories]),
                    )
                    cur.execute(
                        """
                        UPDATE budgets SET total_spent = (
                            SELECT COALESCE(SUM(spent), 0) FROM budget_categories WHERE budget_id = %s
                        ) WHERE id = %s;
                        """,
                        (budget.id, budget.id),
                    )
            conn.commit()
            return updated
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to update budget #{budget.id}: {e}")
            raise
        finally:
            release_connection(conn)

    def upsert_category_limit(self, budget_id: int, category: str, limit_amount: int) -> None:
        """Set a category's limit (adding the line if missing) and re-total the budget."""
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO budget_categories (budget_id, position, name, limit_amount)
                    VALUES (%s, (SELECT COUNT(*) FROM budget_categories WHERE budget_id = %s), %s, %s)
                    ON CONFLICT (budget_id, name)
                    DO UPDATE SET limit_amount = EXCLUDED.limit_amount;
                    """,
                    (budget_id, budget_id, normalize_category(category), limit_amount),
                )
                cur.execute(
                    """
                    UPDATE budgets SET total_budget = (
                        SELECT COALESCE(SUM(limit_amount), 0) FROM budget_categories WHERE budget_id = %s
                    ), updated_at = NOW() WHERE id = %s;
                    """,
                    (budget_id, budget_id),
                )
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to set category limit on budget #{budget_id}: {e}")
            raise
        finally:
            release_connection(conn)

    def atomic_increment(
        self, budget_id: int, category_name: str, delta_spent: int, delta_total: int
    ) -> tuple[int, int]:
        """
        Move a category's spend and the budget total in one database transaction.

        Returns:
            (category_spent, total_spent) after the increment.

        Raises:
            ConsistencyConflict: If the budget or category line no longer exists.
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE budget_categories SET spent = spent + %s
                    WHERE budget_id = %s AND name = %s
                    RETURNING spent;
                    """,
                    (delta_spent, budget_id, normalize_category(category_name)),
                )
                category_row = cur.fetchone()
                cur.execute(
                    """
                    UPDATE budgets SET total_spent = total_spent + %s, updated_at = NOW()
                    WHERE id = %s
                    RETURNING total_spent;
                    """,
                    (delta_total, budget_id),
                )
                budget_row = cur.fetchone()
                if category_row is None or budget_row is None:
                    raise ConsistencyConflict(
                        f"Budget #{budget_id} has no category '{category_name}' to update",
                        {"budget_id": budget_id, "category": category_name},
                    )
            conn.commit()
            return int(category_row[0]), int(budget_row[0])
        except Exception as e:
            conn.rollback()
            logger.error(f"Atomic increment failed on budget #{budget_id}: {e}")
            raise
        finally:
            release_connection(conn)

    def overwrite_spent(self, budget_id: int, spent_by_category: dict[str, int]) -> None:
        """Replace category spend with recomputed values (reconciliation repair)."""
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                for name, spent in spent_by_category.items():
                    cur.execute(
                        "UPDATE budget_categories SET spent = %s WHERE budget_id = %s AND name = %s;",
                        (spent, budget_id, name),
                    )
                cur.execute(
                    """
                    UPDATE budgets SET total_spent = (
                        SELECT COALESCE(SUM(spent), 0) FROM budget_categories WHERE budget_id = %s
                    ), updated_at = NOW() WHERE id = %s;
                    """,
                    (budget_id, budget_id),
                )
            conn.commit()
            logger.info(f"Overwrote spend on budget #{budget_id}: {spent_by_category}")
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to overwrite spend on budget #{budget_id}: {e}")
            raise
        finally:
            release_connection(conn)

    def set_status(self, budget_id: int, status: str) -> bool:
        sql = "UPDATE budgets SET status = %s, updated_at = NOW() WHERE id = %s;"
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (status, budget_id))
                updated = cur.rowcount > 0
            conn.commit()
            return updated
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to set status on budget #{budget_id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── DELETE ────────────────────────────────────────────

    def delete(self, budget_id: int, user_id: int) -> bool:
        """Delete a budget (its category lines cascade)."""
        sql = "DELETE FROM budgets WHERE id = %s AND user_id = %s;"
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (budget_id, user_id))
                deleted = cur.rowcount > 0
            conn.commit()
            return deleted
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to delete budget #{budget_id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── HELPERS ───────────────────────────────────────────

    def _select(self, sql: str, params) -> list[Budget]:
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                budgets = [self._row_to_budget(r) for r in cur.fetchall()]
                if budgets:
                    cur.execute(
                        """
                        SELECT budget_id, name, limit_amount, spent, color,
                               notify_enabled, notify_threshold
                        FROM budget_categories
                        WHERE budget_id = ANY(%s)
                        ORDER BY budget_id, position, id;
                        """,
                        ([b.id for b in budgets],),
                    )
                    by_id = {b.id: b for b in budgets}
                    for r in cur.fetchall():
                        by_id[r["budget_id"]].categories.append(BudgetCategory(
                            name=r["name"],
                            limit=int(r["limit_amount"]),
                            spent=int(r["spent"]),
                            color=r["color"],
                            notifications=CategoryNotification(
                                enabled=r["notify_enabled"],
                                threshold=float(r["notify_threshold"]),
                            ),
                        ))
                return budgets
        finally:
            release_connection(conn)

    @staticmethod
    def _write_categories(cur, budget: Budget) -> None:
        for position, c in enumerate(budget.categories):
            cur.execute(
                """
                INSERT INTO budget_categories
                    (budget_id, position, name, limit_amount, spent, color,
                     notify_enabled, notify_threshold)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (budget_id, name) DO UPDATE
                SET position = EXCLUDED.position, limit_amount = EXCLUDED.limit_amount,
                    color = EXCLUDED.color, notify_enabled = EXCLUDED.notify_enabled,
                    notify_threshold = EXCLUDED.notify_threshold;
                """,
                (budget.id, position, c.name, c.limit, c.spent, c.color,
                 c.notifications.enabled, c.notifications.threshold),
            )

    @staticmethod
    def _notifications_json(budget: Budget) -> extras.Json:
        n = budget.notifications
        return extras.Json({
            "enabled": n.enabled,
            "frequency": n.frequency,
            "channels": {"chat": n.channels.chat, "email": n.channels.email},
        })

    @staticmethod
    def _recurring_json(budget: Budget) -> Optional[extras.Json]:
        if budget.recurring is None:
            return None
        return extras.Json({
            "frequency": budget.recurring.frequency,
            "auto_renew": budget.recurring.auto_renew,
        })

    @staticmethod
    def _row_to_budget(row: dict) -> Budget:
        n = row["notifications"] or {}
        channels = n.get("channels") or {}
        return Budget(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            period=row["period"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            total_budget=int(row["total_budget"]),
            total_spent=int(row["total_spent"]),
            status=row["status"],
            notifications=BudgetNotifications(
                enabled=n.get("enabled", True),
                frequency=n.get("frequency", "weekly"),
                channels=NotificationChannels(
                    chat=channels.get("chat", True), email=channels.get("email", False)
                ),
            ),
            is_recurring=row["is_recurring"],
            recurring=RecurringConfig(**row["recurring"]) if row["recurring"] else None,
            notes=row["notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
