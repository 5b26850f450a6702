"""
repositories/session_repo.py
-----------------------------
Data access layer for chat sessions, their outbound queue and error log.
"""

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from psycopg2 import errors as pg_errors
from psycopg2 import extras

from db.connection import get_connection, release_connection
from models.session import (
    AutoReply,
    ChatSession,
    CustomPhrase,
    ErrorLogEntry,
    NlpSettings,
    NotificationSettings,
    QueuedMessage,
    SessionSettings,
)
from utils.errors import DuplicateHandle
from utils.logger import get_logger

logger = get_logger(__name__)

_SESSION_COLUMNS = """
    id, user_id, handle, status, last_active, pairing_artifact, channel_id,
    settings, nlp_settings, created_at
"""


def settings_from_dict(data: dict) -> SessionSettings:
    data = data or {}
    defaults = SessionSettings()
    return SessionSettings(
        auto_reply=AutoReply(**{**asdict(defaults.auto_reply), **(data.get("auto_reply") or {})}),
        notifications=NotificationSettings(
            **{**asdict(defaults.notifications), **(data.get("notifications") or {})}
        ),
        language=data.get("language", defaults.language),
        timezone=data.get("timezone", defaults.timezone),
    )


def nlp_from_dict(data: dict) -> NlpSettings:
    data = data or {}
    defaults = NlpSettings()
    return NlpSettings(
        enabled=data.get("enabled", defaults.enabled),
        confidence=float(data.get("confidence", defaults.confidence)),
        custom_phrases=[CustomPhrase(**p) for p in data.get("custom_phrases", [])],
    )


class SessionRepository:
    """Repository for chat_sessions, session_message_queue and session_error_logs."""

    # ── SESSIONS ──────────────────────────────────────────

    def add(self, session: ChatSession) -> ChatSession:
        sql = """
            INSERT INTO chat_sessions (user_id, handle, status, settings, nlp_settings)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, last_active, created_at;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    session.user_id, session.handle, session.status,
                    extras.Json(asdict(session.settings)), extras.Json(asdict(session.nlp)),
                ))
                session.id, session.last_active, session.created_at = cur.fetchone()
            conn.commit()
        except pg_errors.UniqueViolation as e:
            conn.rollback()
            raise DuplicateHandle(
                f"A session for handle {session.handle} already exists",
                {"user_id": session.user_id, "handle": session.handle},
            ) from e
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to add session for {session.handle}: {e}")
            raise
        finally:
            release_connection(conn)
        logger.info(f"Created session #{session.id} for user {session.user_id} / {session.handle}")
        return session

    def get(self, user_id: int, handle: str) -> Optional[ChatSession]:
        sessions = self._select(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE user_id = %s AND handle = %s;",
            (user_id, handle),
        )
        return sessions[0] if sessions else None

    def get_by_id(self, session_id: int) -> Optional[ChatSession]:
        sessions = self._select(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE id = %s;", (session_id,)
        )
        return sessions[0] if sessions else None

    def list_for_user(self, user_id: int) -> list[ChatSession]:
        return self._select(
            f"""SELECT {_SESSION_COLUMNS} FROM chat_sessions
                WHERE user_id = %s ORDER BY last_active DESC;""",
            (user_id,),
        )

    def list_by_status(self, status: str) -> list[ChatSession]:
        return self._select(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE status = %s ORDER BY id;",
            (status,),
        )

    def save_state(self, session: ChatSession) -> None:
        """Persist status, last-active, pairing artifact and channel ownership."""
        sql = """
            UPDATE chat_sessions
            SET status = %s, last_active = %s, pairing_artifact = %s, channel_id = %s
            WHERE id = %s;
        """
        self._write(sql, (
            session.status, session.last_active, session.pairing_artifact,
            session.channel_id, session.id,
        ), f"save state of session #{session.id}")

    def save_settings(self, session: ChatSession) -> None:
        self._write(
            "UPDATE chat_sessions SET settings = %s, nlp_settings = %s WHERE id = %s;",
            (extras.Json(asdict(session.settings)), extras.Json(asdict(session.nlp)), session.id),
            f"save settings of session #{session.id}",
        )

    def delete(self, session_id: int) -> bool:
        return self._write(
            "DELETE FROM chat_sessions WHERE id = %s;", (session_id,),
            f"delete session #{session_id}",
        ) > 0

    # ── OUTBOUND QUEUE ────────────────────────────────────

    def enqueue(self, session_id: int, message: QueuedMessage) -> QueuedMessage:
        sql = """
            INSERT INTO session_message_queue (session_id, content, kind, priority, scheduled_for, status)
            VALUES (%s, %s, %s, %s, %s, %s) RETURNING id;
        """
        conn = get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    session_id, message.content, message.kind, message.priority,
                    message.scheduled_for, message.status,
                ))
                message.id = cur.fetchone()[0]
            conn.commit()
            return message
        except Exception as e:
            conn.rollback()
            logger.error(f"Failed to queue message for session #{session_id}: {e}")
            raise
        finally:
            release_connection(conn)

    def due_messages(self, session_id: int, now: datetime) -> list[QueuedMessage]:
        """Pending messages whose schedule has come, highest priority first."""
        sql = """
            SELECT id, content, kind, priority, scheduled_for, status
            FROM session_message_queue
            WHERE session_id = %s AND status = 'pending'
              AND (scheduled_for IS NULL OR scheduled_for <= %s)
            ORDER BY priority DESC, id;
        """
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, (session_id, now))
                return [QueuedMessage(**r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    def mark_message(self, message_id: int, status: str) -> None:
        self._write(
            "UPDATE session_message_queue SET status = %s WHERE id = %s;",
            (status, message_id),
            f"mark queued message #{message_id} {status}",
        )

    def fail_pending(self, session_id: int) -> int:
        """Mark every undelivered message of a session as failed; returns the count."""
        return self._write(
            """
            UPDATE session_message_queue SET status = 'failed'
            WHERE session_id = %s AND status = 'pending';
            """,
            (session_id,),
            f"fail queued messages of session #{session_id}",
        )

    # ── ERROR LOG ─────────────────────────────────────────

    def log_error(self, session_id: int, error: str, context: dict[str, Any]) -> None:
        self._write(
            "INSERT INTO session_error_logs (session_id, error, context) VALUES (%s, %s, %s);",
            (session_id, error, extras.Json(context, dumps=_dumps)),
            f"log error for session #{session_id}",
        )

    def error_logs(self, session_id: int, limit: int = 50, offset: int = 0) -> list[ErrorLogEntry]:
        """Error log entries, newest first."""
        sql = """
            SELECT id, logged_at AS timestamp, error, context FROM session_error_logs
            WHERE session_id = %s ORDER BY logged_at DESC, id DESC LIMIT %s OFFSET %s;
        """
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, (session_id, limit, offset))
                return [ErrorLogEntry(**r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    # ── HELPERS ───────────────────────────────────────────

    def _write(self, sql: str, params, action: str) -> int:
        """Run one write statement in its own transaction; returns the row count."""
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

    def _select(self, sql: str, params) -> list[ChatSession]:
        conn = get_connection()
        try:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return [self._row_to_session(r) for r in cur.fetchall()]
        finally:
            release_connection(conn)

    @staticmethod
    def _row_to_session(row: dict) -> ChatSession:
        return ChatSession(
            id=row["id"],
            user_id=row["user_id"],
            handle=row["handle"],
            status=row["status"],
            last_active=row["last_active"],
            pairing_artifact=row["pairing_artifact"],
            channel_id=row["channel_id"],
            settings=settings_from_dict(row["settings"]),
            nlp=nlp_from_dict(row["nlp_settings"]),
            created_at=row["created_at"],
        )


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)
