"""
repositories/user_repo.py
--------------------------
Data access layer for users and their registered chat handles.
"""

from typing import Optional

from psycopg2 import errors as pg_errors
from psycopg2 import extras

from config import MAX_CHAT_HANDLES
from db.connection import get_connection, release_connection
from models.session import ChatHandle, User
from utils.errors import DuplicateHandle, QuotaExceeded
from utils.logger import get_logger

logger = get_logger(__name__)


class UserRepository:
    """Repository for the users and user_chat_handles tables."""

    def ensure_user(self, username: str, role: str = "user", max_handles: Optional[int] = None) -> User:
        """
        Insert a user if they don't exist, or return the existing record.
        Uses PostgreSQL's ON CONFLICT (upsert) for atomicity.
        """
        sql = """
            INSERT INTO users (username, role, max_handles)
            VALUES (%s, %s, %s)
            ON CONFLICT (username) DO UPDATE SET username = EXCLUDED.username
            RETURNING id;
        """
        if max_handles is None:
            max_handles = MAX_CHAT_HANDLES
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (username, role, max_handles))
                user_id = cur.fetchone()[0]
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to upsert user '{username}': {e}")
            raise
        finally:
            release_connection(conn)
        return self.get_by_id(user_id)

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Fetch a user with their registered handles, or None."""
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(
                    "SELECT id, username, role, max_handles, created_at FROM users WHERE id = %s;",
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                cur.execute(
                    """
                    SELECT handle, is_active, last_active FROM user_chat_handles
                    WHERE user_id = %s ORDER BY id;
                    """,
                    (user_id,),
                )
                handles = [ChatHandle(**h) for h in cur.fetchall()]
                return User(
                    id=row["id"],
                    username=row["username"],
                    role=row["role"],
                    max_handles=row["max_handles"],
                    handles=handles,
                    created_at=row["created_at"],
                )
        finally:
            release_connection(conn)

    def find_handle_owner(self, handle: str) -> Optional[int]:
        """Return the id of the user a handle is registered to, if any."""
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT user_id FROM user_chat_handles WHERE handle = %s;", (handle,))
                row = cur.fetchone()
                return row[0] if row else None
        finally:
            release_connection(conn)

    def add_handle(self, user_id: int, handle: str) -> None:
        """
        Register a chat handle for a user.

        The quota check and the insert are one statement, so two concurrent
        registrations cannot both squeeze under the limit.

        Raises:
            QuotaExceeded: The user already holds `max_handles` handles.
            DuplicateHandle: The handle is registered already.
        """
        sql = """
            INSERT INTO user_chat_handles (user_id, handle)
            SELECT u.id, %s FROM users u
            WHERE u.id = %s
              AND (SELECT COUNT(*) FROM user_chat_handles h WHERE h.user_id = u.id) < u.max_handles
            RETURNING id;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (handle, user_id))
                inserted = cur.fetchone()
            conn.commit()
        except pg_errors.UniqueViolation as e:
            conn.rollback()
            raise DuplicateHandle(
                f"Handle {handle} is already registered", {"handle": handle}
            ) from e
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to register handle {handle} for user {user_id}: {e}")
            raise
        finally:
            release_connection(conn)
        if inserted is None:
            raise QuotaExceeded(
                f"User {user_id} cannot register more chat handles",
                {"user_id": user_id, "handle": handle},
            )
        logger.info(f"Registered handle {handle} for user {user_id}")

    def remove_handle(self, user_id: int, handle: str) -> bool:
        return self._write(
            "DELETE FROM user_chat_handles WHERE user_id = %s AND handle = %s;",
            (user_id, handle),
            f"remove handle {handle} of user {user_id}",
        ) > 0

    def touch_handle(self, user_id: int, handle: str, is_active: bool = True) -> None:
        self._write(
            """
            UPDATE user_chat_handles SET last_active = NOW(), is_active = %s
            WHERE user_id = %s AND handle = %s;
            """,
            (is_active, user_id, handle),
            f"touch handle {handle} of user {user_id}",
        )

    def _write(self, sql: str, params, action: str) -> int:
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                count = cur.rowcount
            conn.commit()
            return count
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise
        finally:
            release_connection(conn)
