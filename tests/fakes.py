"""In-memory stand-ins for the Postgres repositories, the chat transport and the classifier."""

import copy
import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from ai.intents import Classification
from config import MAX_CHAT_HANDLES
from models.budget import Budget, BudgetCategory
from models.session import ChatHandle, ChatSession, ErrorLogEntry, QueuedMessage, User
from transport.base import ChatTransport, PairingArtifact
from utils.errors import ConsistencyConflict, DuplicateHandle, QuotaExceeded, TransportError


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def make_budget(user_id: int = 1, limits: Optional[dict] = None, **kwargs) -> Budget:
    """A budget whose window contains now, with one line per `limits` entry."""
    limits = {"food": 2_000_000} if limits is None else limits
    categories = [BudgetCategory(name=name, limit=limit) for name, limit in limits.items()]
    now = now_utc()
    defaults = dict(
        user_id=user_id,
        name="Monthly",
        period="monthly",
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=29),
        categories=categories,
        total_budget=sum(limits.values()),
    )
    defaults.update(kwargs)
    return Budget(**defaults)


class FakeTransactionRepository:

    def __init__(self):
        self._lock = threading.Lock()
        self._rows = {}
        self._ids = itertools.count(1)

    def add(self, tx):
        with self._lock:
            tx.id = next(self._ids)
            tx.created_at = tx.updated_at = now_utc()
            self._rows[tx.id] = copy.deepcopy(tx)
        return tx

    def get_by_id(self, tx_id, user_id):
        tx = self._rows.get(tx_id)
        return copy.deepcopy(tx) if tx and tx.user_id == user_id else None

    def find(self, user_id, start=None, end=None, tx_type=None, category=None,
             status=None, source=None, limit=None, offset=0):
        rows = [
            tx for tx in self._rows.values()
            if tx.user_id == user_id
            and (start is None or tx.date >= start)
            and (end is None or tx.date <= end)
            and (tx_type is None or tx.type == tx_type)
            and (category is None or tx.category == category)
            and (status is None or tx.status == status)
            and (source is None or tx.source == source)
        ]
        rows.sort(key=lambda tx: (tx.date, tx.id), reverse=True)
        rows = rows[offset:offset + limit] if limit is not None else rows[offset:]
        return [copy.deepcopy(tx) for tx in rows]

    def get_category_summary(self, user_id, tx_type, start, end):
        totals = {}
        for tx in self.find(user_id, start=start, end=end, tx_type=tx_type, status="completed"):
            total, count = totals.get(tx.category, (0, 0))
            totals[tx.category] = (total + tx.amount, count + 1)
        return [
            {"category": name, "total": total, "count": count}
            for name, (total, count) in sorted(totals.items(), key=lambda kv: -kv[1][0])
        ]

    def get_totals_by_type(self, user_id, start, end):
        totals = {"income": 0, "expense": 0}
        for tx in self.find(user_id, start=start, end=end, status="completed"):
            totals[tx.type] += tx.amount
        return totals

    def update(self, tx):
        with self._lock:
            if tx.id not in self._rows or self._rows[tx.id].user_id != tx.user_id:
                return False
            self._rows[tx.id] = copy.deepcopy(tx)
            return True

    def delete(self, tx_id, user_id):
        with self._lock:
            tx = self._rows.get(tx_id)
            if tx is None or tx.user_id != user_id:
                return False
            del self._rows[tx_id]
            return True


class FakeBudgetRepository:
    """Holds budgets in memory; atomic_increment is serialized by a lock like a row update."""

    def __init__(self):
        self._lock = threading.Lock()
        self._budgets = {}
        self._ids = itertools.count(1)
        self.fail_next_increments = 0
        self.increment_calls = 0

    def add(self, budget):
        with self._lock:
            budget.id = next(self._ids)
            budget.created_at = budget.updated_at = now_utc()
            self._budgets[budget.id] = copy.deepcopy(budget)
        return budget

    def get_by_id(self, budget_id, user_id):
        budget = self._budgets.get(budget_id)
        return copy.deepcopy(budget) if budget and budget.user_id == user_id else None

    def stored(self, budget_id) -> Budget:
        return self._budgets[budget_id]

    def find(self, user_id, status=None, limit=None, offset=0):
        rows = [
            b for b in self._budgets.values()
            if b.user_id == user_id and (status is None or b.status == status)
        ]
        rows.sort(key=lambda b: (b.start_date, b.id), reverse=True)
        rows = rows[offset:offset + limit] if limit is not None else rows[offset:]
        return [copy.deepcopy(b) for b in rows]

    def find_active(self, user_id, now):
        return [b for b in self.find(user_id) if b.is_active(now)]

    def find_renewable(self, now):
        return [
            copy.deepcopy(b) for b in self._budgets.values()
            if b.status == "active" and b.is_recurring and b.end_date < now
        ]

    def update(self, budget):
        with self._lock:
            old = self._budgets.get(budget.id)
            if old is None:
                return False
            new = copy.deepcopy(budget)
            spent = {c.name: c.spent for c in old.categories}
            for c in new.categories:
                c.spent = spent.get(c.name, 0)
            new.total_spent = new.spent_total()
            self._budgets[budget.id] = new
            return True

    def upsert_category_limit(self, budget_id, category, limit_amount):
        with self._lock:
            budget = self._budgets[budget_id]
            line = budget.find_category(category)
            if line is None:
                budget.categories.append(BudgetCategory(name=category, limit=limit_amount))
            else:
                line.limit = limit_amount
            budget.total_budget = budget.limits_total()

    def atomic_increment(self, budget_id, category_name, delta_spent, delta_total):
        with self._lock:
            self.increment_calls += 1
            if self.fail_next_increments:
                self.fail_next_increments -= 1
                raise ConsistencyConflict("injected conflict", {"budget_id": budget_id})
            budget = self._budgets.get(budget_id)
            line = budget.find_category(category_name) if budget else None
            if line is None:
                raise ConsistencyConflict("no such line", {"budget_id": budget_id})
            line.spent += delta_spent
            budget.total_spent += delta_total
            return line.spent, budget.total_spent

    def overwrite_spent(self, budget_id, spent_by_category):
        with self._lock:
            budget = self._budgets[budget_id]
            for c in budget.categories:
                if c.name in spent_by_category:
                    c.spent = spent_by_category[c.name]
            budget.total_spent = budget.spent_total()

    def set_status(self, budget_id, status):
        with self._lock:
            if budget_id not in self._budgets:
                return False
            self._budgets[budget_id].status = status
            return True

    def delete(self, budget_id, user_id):
        with self._lock:
            budget = self._budgets.get(budget_id)
            if budget is None or budget.user_id != user_id:
                return False
            del self._budgets[budget_id]
            return True


class FakeUserRepository:

    def __init__(self):
        self._users = {}
        self._ids = itertools.count(1)

    def ensure_user(self, username, role="user", max_handles=None):
        for user in self._users.values():
            if user.username == username:
                return copy.deepcopy(user)
        if max_handles is None:
            max_handles = MAX_CHAT_HANDLES
        user = User(username=username, role=role, max_handles=max_handles, id=next(self._ids))
        self._users[user.id] = user
        return copy.deepcopy(user)

    def get_by_id(self, user_id):
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    def find_handle_owner(self, handle):
        for user in self._users.values():
            if user.has_handle(handle):
                return user.id
        return None

    def add_handle(self, user_id, handle):
        if self.find_handle_owner(handle) is not None:
            raise DuplicateHandle(f"Handle {handle} is already registered")
        user = self._users[user_id]
        if not user.can_add_handle():
            raise QuotaExceeded(f"User {user_id} cannot register more chat handles")
        user.handles.append(ChatHandle(handle=handle, last_active=now_utc()))

    def remove_handle(self, user_id, handle):
        user = self._users[user_id]
        before = len(user.handles)
        user.handles = [h for h in user.handles if h.handle != handle]
        return len(user.handles) < before

    def touch_handle(self, user_id, handle, is_active=True):
        for h in self._users[user_id].handles:
            if h.handle == handle:
                h.is_active = is_active
                h.last_active = now_utc()


class FakeSessionRepository:

    def __init__(self):
        self._sessions = {}
        self._messages = {}  # id -> (session_id, QueuedMessage)
        self._errors = []  # (session_id, ErrorLogEntry)
        self._ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._error_ids = itertools.count(1)

    def add(self, session):
        if self.get(session.user_id, session.handle) is not None:
            raise DuplicateHandle(f"A session for handle {session.handle} already exists")
        session.id = next(self._ids)
        session.created_at = session.last_active = now_utc()
        self._sessions[session.id] = copy.deepcopy(session)
        return session

    def get(self, user_id, handle):
        for s in self._sessions.values():
            if s.user_id == user_id and s.handle == handle:
                return copy.deepcopy(s)
        return None

    def get_by_id(self, session_id):
        s = self._sessions.get(session_id)
        return copy.deepcopy(s) if s else None

    def list_for_user(self, user_id):
        return [copy.deepcopy(s) for s in self._sessions.values() if s.user_id == user_id]

    def list_by_status(self, status):
        return [copy.deepcopy(s) for s in self._sessions.values() if s.status == status]

    def save_state(self, session):
        stored = self._sessions[session.id]
        stored.status = session.status
        stored.last_active = session.last_active
        stored.pairing_artifact = session.pairing_artifact
        stored.channel_id = session.channel_id

    def save_settings(self, session):
        stored = self._sessions[session.id]
        stored.settings = copy.deepcopy(session.settings)
        stored.nlp = copy.deepcopy(session.nlp)

    def delete(self, session_id):
        return self._sessions.pop(session_id, None) is not None

    def enqueue(self, session_id, message):
        message.id = next(self._message_ids)
        self._messages[message.id] = (session_id, copy.deepcopy(message))
        return message

    def queued(self, session_id) -> list[QueuedMessage]:
        return [copy.deepcopy(m) for sid, m in self._messages.values() if sid == session_id]

    def due_messages(self, session_id, now):
        due = [
            copy.deepcopy(m) for sid, m in self._messages.values()
            if sid == session_id and m.status == "pending"
            and (m.scheduled_for is None or m.scheduled_for <= now)
        ]
        return sorted(due, key=lambda m: (-m.priority, m.id))

    def mark_message(self, message_id, status):
        self._messages[message_id][1].status = status

    def fail_pending(self, session_id):
        count = 0
        for sid, m in self._messages.values():
            if sid == session_id and m.status == "pending":
                m.status = "failed"
                count += 1
        return count

    def log_error(self, session_id, error, context):
        self._errors.append((session_id, ErrorLogEntry(
            error=error, context=dict(context), timestamp=now_utc(), id=next(self._error_ids)
        )))

    def error_logs(self, session_id, limit=50, offset=0):
        entries = [e for sid, e in self._errors if sid == session_id]
        entries.sort(key=lambda e: e.id, reverse=True)
        return entries[offset:offset + limit]


class FakeTransport(ChatTransport):
    """Records traffic; open() reports a pairing artifact before returning, like a real pairing flow."""

    def __init__(self):
        super().__init__()
        self.opened = {}
        self.sent = []
        self.closed = []
        self.fail_open = False
        self.fail_send = False
        self._ids = itertools.count(1)

    async def open(self, handle):
        if self.fail_open:
            raise TransportError("cannot reach chat network")
        channel_id = f"ch-{next(self._ids)}"
        self.opened[channel_id] = handle
        await self.emit(PairingArtifact(channel_id, f"pair:{handle}:{channel_id}"))
        return channel_id

    async def send(self, channel_id, text):
        if self.fail_send:
            raise TransportError("send failed", {"channel_id": channel_id})
        self.sent.append((channel_id, text))

    async def close(self, channel_id):
        self.closed.append(channel_id)

    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


class FakeClassifier:
    """Answers from a text -> Classification table; unknown texts get no intent."""

    def __init__(self, table: Optional[dict] = None):
        self.table = table or {}
        self.calls = []

    def classify(self, locale, text, custom_phrases=()):
        self.calls.append((locale, text))
        return self.table.get(text, Classification(intent=None))


def make_session(user_id: int = 1, handle: str = "6281234567890", **kwargs) -> ChatSession:
    session = ChatSession(user_id=user_id, handle=handle, status="active", id=1, **kwargs)
    return session
