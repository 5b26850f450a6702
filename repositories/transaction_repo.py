"""
repositories/transaction_repo.py
--------------------------------
Data access layer for ledger transactions.
All SQL queries related to the `transactions` table live here.
"""

from datetime import date
from typing import Optional

from psycopg2 import extras

from db.connection import get_connection, release_connection
from models.transaction import Attachment, Transaction, TransactionRecurrence
from utils.logger import get_logger

logger = get_logger(__name__)

_COLUMNS = """
    id, user_id, type, amount, currency, category, description, date, source,
    chat_handle, status, tags, attachments, latitude, longitude, recurrence,
    created_at, updated_at
"""


class TransactionRepository:
    """Repository for CRUD operations on the transactions table."""

    # ── CREATE ────────────────────────────────────────────

    def add(self, tx: Transaction) -> Transaction:
        """
        Insert a new transaction.

        Returns:
            The same Transaction with `id`, `created_at` and `updated_at` populated.
        """
        sql = """
            INSERT INTO transactions
                (user_id, type, amount, currency, category, description, date, source,
                 chat_handle, status, tags, attachments, latitude, longitude, recurrence)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, created_at, updated_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, self._write_params(tx))
                tx.id, tx.created_at, tx.updated_at = cur.fetchone()
            conn.commit()
            logger.info(f"Added {tx.type} #{tx.id} for user {tx.user_id}")
            return tx
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to add transaction: {e}")
            raise
        finally:
            release_connection(conn)

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, tx_id: int, user_id: int) -> Optional[Transaction]:
        """Fetch a single transaction by ID, scoped to a user."""
        sql = f"SELECT {_COLUMNS} FROM transactions WHERE id = %s AND user_id = %s;"
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, (tx_id, user_id))
                row = cur.fetchone()
                return self._row_to_transaction(row) if row else None
        finally:
            release_connection(conn)

    def find(
        self,
        user_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        tx_type: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        source: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        """
        Fetch a user's transactions matching every given filter.

        Returns:
            Transactions ordered by date descending, newest id first.
        """
        clauses = ["user_id = %s"]
        params: list = [user_id]
        if start is not None:
            clauses.append("date >= %s")
            params.append(start)
        if end is not None:
            clauses.append("date <= %s")
            params.append(end)
        for column, value in (
            ("type", tx_type), ("category", category), ("status", status), ("source", source)
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)

        sql = f"SELECT {_COLUMNS} FROM transactions WHERE {' AND '.join(clauses)}"
        sql += " ORDER BY date DESC, id DESC"
        if limit is not None:
            sql += " LIMIT %s OFFSET %s"
            params.extend([limit, offset])

        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return [self._row_to_transaction(r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    def get_category_summary(
        self, user_id: int, tx_type: str, start: date, end: date
    ) -> list[dict]:
        """
        Total and count per category for one transaction type in a date range.

        Returns:
            [{'category': str, 'total': int, 'count': int}, ...] largest first.
        """
        sql = """
            SELECT category, SUM(amount) AS total, COUNT(*) AS count
            FROM transactions
            WHERE user_id = %s AND type = %s AND status = 'completed'
              AND date BETWEEN %s AND %s
            GROUP BY category
            ORDER BY total DESC;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, tx_type, start, end))
                return [
                    {"category": r[0], "total": int(r[1]), "count": int(r[2])}
                    for r in cur.fetchall()
                ]
        finally:
            release_connection(conn)

    def get_totals_by_type(self, user_id: int, start: date, end: date) -> dict:
        """
        Completed income and expense totals for a date range.

        Returns:
            Dict with keys 'income', 'expense'.
        """
        sql = """
            SELECT type, COALESCE(SUM(amount), 0)
            FROM transactions
            WHERE user_id = %s AND status = 'completed' AND date BETWEEN %s AND %s
            GROUP BY type;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, start, end))
                totals = {"income": 0, "expense": 0}
                for tx_type, total in cur.fetchall():
                    totals[tx_type] = int(total)
                return totals
        finally:
            release_connection(conn)

    # ── UPDATE ────────────────────────────────────────────

    def update(self, tx: Transaction) -> bool:
        """
        Overwrite the mutable fields of an existing transaction.

        Returns:
            True if a row was updated, False otherwise.
        """
        sql = """
            UPDATE transactions
            SET type = %s, amount = %s, currency = %s, category = %s, description = %s,
                date = %s, status = %s, tags = %s, attachments = %s,
                latitude = %s, longitude = %s, recurrence = %s, updated_at = NOW()
            WHERE id = %s AND user_id = %s
            RETURNING updated_at;
        """
        lat, lon = tx.location if tx.location else (None, None)
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    tx.type, tx.amount, tx.currency, tx.category, tx.description,
                    tx.date, tx.status, tx.tags, self._attachments_json(tx),
                    lat, lon, self._recurrence_json(tx), tx.id, tx.user_id,
                ))
                row = cur.fetchone()
                if row:
                    tx.updated_at = row[0]
            conn.commit()
            return row is not None
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to update transaction #{tx.id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── DELETE ────────────────────────────────────────────

    def delete(self, tx_id: int, user_id: int) -> bool:
        """Delete a transaction by ID, scoped to a user."""
        sql = "DELETE FROM transactions WHERE id = %s AND user_id = %s;"
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (tx_id, user_id))
                deleted = cur.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"Deleted transaction #{tx_id} for user {user_id}")
            return deleted
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to delete transaction #{tx_id}: {e}")
            raise
        finally:
            release_connection(conn)

    # ── HELPERS ───────────────────────────────────────────

    def _write_params(self, tx: Transaction) -> tuple:
        lat, lon = tx.location if tx.location else (None, None)
        return (
            tx.user_id, tx.type, tx.amount, tx.currency, tx.category, tx.description,
            tx.date, tx.source, tx.chat_handle, tx.status, tx.tags,
            self._attachments_json(tx), lat, lon, self._recurrence_json(tx),
        )

    @staticmethod
    def _attachments_json(tx: Transaction) -> extras.Json:
        return extras.Json([
            {"kind": a.kind, "url": a.url, "name": a.name} for a in tx.attachments
        ])

    @staticmethod
    def _recurrence_json(tx: Transaction) -> extras.Json:
        rec = tx.recurrence
        return extras.Json({
            "is_recurring": rec.is_recurring,
            "frequency": rec.frequency,
            "end_date": rec.end_date.isoformat() if rec.end_date else None,
        })

    @staticmethod
    def _row_to_transaction(row: dict) -> Transaction:
        """Convert a database row to a Transaction domain object."""
        rec = row["recurrence"] or {}
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = (row["latitude"], row["longitude"])
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            amount=int(row["amount"]),
            currency=row["currency"],
            category=row["category"],
            description=row["description"],
            date=row["date"],
            source=row["source"],
            chat_handle=row["chat_handle"],
            status=row["status"],
            tags=list(row["tags"] or []),
            attachments=[Attachment(**a) for a in (row["attachments"] or [])],
            location=location,
            recurrence=TransactionRecurrence(
                is_recurring=rec.get("is_recurring", False),
                frequency=rec.get("frequency"),
                end_date=date.fromisoformat(rec["end_date"]) if rec.get("end_date") else None,
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
