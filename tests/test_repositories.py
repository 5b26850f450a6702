"""Write paths of the Postgres repositories against a recording connection."""

import pytest
from psycopg2 import errors as pg_errors

import repositories.session_repo as session_repo
import repositories.user_repo as user_repo
from models.session import ChatSession
from utils.errors import DuplicateHandle


class RecordingCursor:

    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.statements.append((sql, params))
        if self.conn.fail_with is not None:
            raise self.conn.fail_with

    def fetchone(self):
        return self.conn.row


class RecordingConnection:

    def __init__(self, row=(1,), fail_with=None):
        self.row = row
        self.fail_with = fail_with
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self.released = False

    def cursor(self, cursor_factory=None):
        return RecordingCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def connection(monkeypatch):
    conn = RecordingConnection()

    def release(c):
        c.released = True

    for module in (user_repo, session_repo):
        monkeypatch.setattr(module, "get_connection", lambda: conn)
        monkeypatch.setattr(module, "release_connection", release)
    monkeypatch.setattr(user_repo.UserRepository, "get_by_id", lambda self, user_id: user_id)
    return conn


def test_new_users_get_the_configured_handle_quota(connection, monkeypatch) -> None:
    monkeypatch.setattr(user_repo, "MAX_CHAT_HANDLES", 3)

    user_repo.UserRepository().ensure_user("alice")
    user_repo.UserRepository().ensure_user("bob", max_handles=0)

    assert connection.statements[0][1] == ("alice", "user", 3)
    assert connection.statements[1][1] == ("bob", "user", 0)
    assert connection.commits == 2 and connection.released


def test_failed_write_rolls_back_and_reraises(connection) -> None:
    connection.fail_with = RuntimeError("server closed the connection")

    with pytest.raises(RuntimeError):
        user_repo.UserRepository().touch_handle(1, "6281234567890")
    with pytest.raises(RuntimeError):
        session_repo.SessionRepository().mark_message(7, "sent")

    assert connection.rollbacks == 2
    assert connection.commits == 0
    assert connection.released


def test_unique_violation_becomes_duplicate_handle(connection) -> None:
    connection.fail_with = pg_errors.UniqueViolation("duplicate key value violates unique constraint")

    with pytest.raises(DuplicateHandle):
        user_repo.UserRepository().add_handle(1, "6281234567890")
    with pytest.raises(DuplicateHandle):
        session_repo.SessionRepository().add(ChatSession(user_id=1, handle="6281234567890"))

    assert connection.rollbacks == 2


def test_fail_pending_returns_the_row_count(connection) -> None:
    assert session_repo.SessionRepository().fail_pending(4) == 1
    assert connection.commits == 1
