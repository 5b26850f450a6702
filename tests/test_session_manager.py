import asyncio
from types import SimpleNamespace

from ai.intents import Classification
from models.session import ChatSession
from services.budget_service import BudgetService
from services.intent_dispatcher import IntentDispatcher
from services.ledger_engine import LedgerConsistencyEngine
from services.report_service import ReportService
from services.session_manager import SessionManager
from services.transaction_service import TransactionService
from tests.fakes import (
    FakeBudgetRepository,
    FakeClassifier,
    FakeSessionRepository,
    FakeTransactionRepository,
    FakeTransport,
    FakeUserRepository,
    make_budget,
)
from transport.base import ChannelLost, ChannelReady, MessageReceived
from utils.errors import DuplicateHandle, NotFoundError, QuotaExceeded, ValidationError
from utils.messages import t

HANDLE = "6281234567890"
OTHER_HANDLE = "6289876543210"


def build(table=None, dispatcher=None):
    users = FakeUserRepository()
    users.ensure_user("alice")
    users.ensure_user("bob")
    budgets = FakeBudgetRepository()
    transactions = FakeTransactionRepository()
    if dispatcher is None:
        dispatcher = IntentDispatcher(
            FakeClassifier(table),
            TransactionService(transactions, LedgerConsistencyEngine(budgets, transactions)),
            BudgetService(budgets, transactions),
            ReportService(transactions),
        )
    transport = FakeTransport()
    sessions = FakeSessionRepository()
    manager = SessionManager(transport, dispatcher, sessions, users)
    return SimpleNamespace(
        manager=manager, transport=transport, sessions=sessions, users=users,
        budgets=budgets, transactions=transactions,
    )


async def pair(env, user_id: int = 1, handle: str = HANDLE) -> ChatSession:
    result = await env.manager.initialize(user_id, handle)
    assert result.ok, result.error
    await env.manager.join()
    await env.transport.emit(ChannelReady(result.value.channel_id))
    await env.manager.join()
    return env.sessions.get(user_id, handle)


async def say(env, session: ChatSession, text: str) -> None:
    await env.transport.emit(MessageReceived(session.channel_id, text, session.handle))
    await env.manager.join()


def test_initialize_stores_pairing_artifact() -> None:
    async def scenario():
        env = build()
        result = await env.manager.initialize(1, HANDLE)
        assert result.ok and result.value.status == "pending"
        await env.manager.join()

        artifact = env.manager.get_pairing_artifact(1, HANDLE)
        assert artifact.value == f"pair:{HANDLE}:{result.value.channel_id}"
        assert env.users.find_handle_owner(HANDLE) == 1
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_channel_ready_activates_session() -> None:
    async def scenario():
        env = build()
        session = await pair(env)
        assert session.status == "active"
        assert env.manager.get_status(1, HANDLE).value["status"] == "active"
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_initialize_is_idempotent() -> None:
    async def scenario():
        env = build()
        first = await env.manager.initialize(1, HANDLE)
        again = await env.manager.initialize(1, HANDLE)
        assert again.ok and again.value.channel_id == first.value.channel_id
        assert len(env.transport.opened) == 1

        await env.manager.join()
        await env.transport.emit(ChannelReady(first.value.channel_id))
        await env.manager.join()
        active = await env.manager.initialize(1, HANDLE)
        assert active.value.status == "active"
        assert len(env.transport.opened) == 1
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_initialize_rejects_bad_handles_and_quota() -> None:
    async def scenario():
        env = build()
        assert isinstance((await env.manager.initialize(1, "+62 812")).error, ValidationError)
        assert isinstance((await env.manager.initialize(99, HANDLE)).error, NotFoundError)

        assert (await env.manager.initialize(1, HANDLE)).ok
        quota = await env.manager.initialize(1, OTHER_HANDLE)
        assert isinstance(quota.error, QuotaExceeded)
        assert len(env.manager.list_sessions(1).value) == 1

        taken = await env.manager.initialize(2, HANDLE)
        assert isinstance(taken.error, DuplicateHandle)
        assert env.manager.list_sessions(2).value == []
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_initialize_honors_a_quota_above_one() -> None:
    async def scenario():
        env = build()
        carol = env.users.ensure_user("carol", max_handles=2)

        assert (await env.manager.initialize(carol.id, HANDLE)).ok
        assert (await env.manager.initialize(carol.id, OTHER_HANDLE)).ok
        third = await env.manager.initialize(carol.id, "6281111111111")
        assert isinstance(third.error, QuotaExceeded)
        assert len(env.manager.list_sessions(carol.id).value) == 2
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_open_failure_leaves_session_inactive() -> None:
    async def scenario():
        env = build()
        env.transport.fail_open = True
        result = await env.manager.initialize(1, HANDLE)
        assert result.error.code == "transport_error"
        assert env.sessions.get(1, HANDLE).status == "inactive"
        assert env.manager.get_error_logs(1, HANDLE).value[0].context["operation"] == "initialize"

        env.transport.fail_open = False
        assert (await env.manager.initialize(1, HANDLE)).value.status == "pending"
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_message_records_transaction_and_replies() -> None:
    async def scenario():
        expense = Classification("transaction.expense", 0.95, {"amount": "50000", "category": "food"})
        env = build({"beli makan 50000": expense})
        budget = env.budgets.add(make_budget())
        session = await pair(env)

        await say(env, session, "beli makan 50000")

        [(channel, reply)] = env.transport.sent
        assert channel == session.channel_id
        assert "-Rp50.000" in reply
        assert env.budgets.stored(budget.id).total_spent == 50_000
        assert env.transactions.find(1)[0].chat_handle == HANDLE
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_messages_are_handled_in_arrival_order() -> None:
    async def scenario():
        table = {
            f"bayar {n}": Classification("transaction.expense", 0.9, {"amount": str(n), "category": "bills"})
            for n in (1_000, 2_000, 3_000, 4_000)
        }
        env = build(table)
        session = await pair(env)

        for n in (1_000, 2_000, 3_000, 4_000):
            await env.transport.emit(MessageReceived(session.channel_id, f"bayar {n}", HANDLE))
        await env.manager.join()

        replies = env.transport.texts()
        assert [r.split(" ")[3] for r in replies] == ["-Rp1.000", "-Rp2.000", "-Rp3.000", "-Rp4.000"]
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_messages_before_pairing_completes_are_ignored() -> None:
    async def scenario():
        env = build({"halo": Classification("budget.view", 0.9)})
        result = await env.manager.initialize(1, HANDLE)
        await env.transport.emit(MessageReceived(result.value.channel_id, "halo", HANDLE))
        await env.manager.join()
        assert env.transport.sent == []
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_dispatcher_crash_is_logged_and_answered() -> None:
    class CrashingDispatcher:
        def dispatch(self, session, text):
            raise RuntimeError("boom")

    async def scenario():
        env = build(dispatcher=CrashingDispatcher())
        session = await pair(env)

        await say(env, session, "beli makan 50000")
        await say(env, session, "beli makan 60000")

        assert env.transport.texts() == [t("id", "processing_error")] * 2
        logs = env.manager.get_error_logs(1, HANDLE).value
        assert [entry.error for entry in logs] == ["boom", "boom"]
        assert logs[0].context["text"] == "beli makan 60000"
        assert logs[0].timestamp >= logs[1].timestamp
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_failed_reply_is_queued_for_next_flush() -> None:
    async def scenario():
        env = build({"lihat budget": Classification("budget.view", 0.9)})
        session = await pair(env)

        env.transport.fail_send = True
        await say(env, session, "lihat budget")

        [entry] = env.manager.get_error_logs(1, HANDLE).value
        assert entry.context["code"] == "transport_error"
        [queued] = env.sessions.queued(session.id)
        assert (queued.status, queued.kind) == ("pending", "reply")

        env.transport.fail_send = False
        assert await env.manager.flush_all() == 1
        assert env.transport.texts() == [t("id", "no_active_budget")]
        assert env.sessions.queued(session.id)[0].status == "sent"
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_queue_flushes_on_activation_in_priority_order() -> None:
    async def scenario():
        env = build()
        result = await env.manager.initialize(1, HANDLE)
        await env.manager.enqueue(1, HANDLE, "low", priority=1)
        await env.manager.enqueue(1, HANDLE, "high", priority=3)
        assert env.transport.sent == []

        await env.manager.join()
        await env.transport.emit(ChannelReady(result.value.channel_id))
        await env.manager.join()

        assert env.transport.texts() == ["high", "low"]
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_disconnect_fails_queued_messages() -> None:
    async def scenario():
        env = build()
        result = await env.manager.initialize(1, HANDLE)
        await env.manager.enqueue(1, HANDLE, "later")

        disconnected = await env.manager.disconnect(1, HANDLE)

        assert disconnected.value.status == "inactive"
        assert env.transport.closed == [result.value.channel_id]
        assert [m.status for m in env.sessions.queued(result.value.id)] == ["failed"]
        assert env.sessions.get(1, HANDLE).channel_id is None

        again = await env.manager.disconnect(1, HANDLE)
        assert again.ok and env.transport.closed == [result.value.channel_id]
        assert isinstance((await env.manager.disconnect(1, OTHER_HANDLE)).error, NotFoundError)

    asyncio.run(scenario())


def test_events_for_old_channel_are_dropped_after_reconnect() -> None:
    async def scenario():
        env = build({"lihat budget": Classification("budget.view", 0.9)})
        session = await pair(env)
        old_channel = session.channel_id
        await env.manager.disconnect(1, HANDLE)

        fresh = await pair(env)
        assert fresh.channel_id != old_channel
        await env.transport.emit(MessageReceived(old_channel, "lihat budget", HANDLE))
        await env.manager.join()
        assert env.transport.sent == []
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_channel_lost_marks_session_inactive() -> None:
    async def scenario():
        env = build()
        session = await pair(env)

        await env.transport.emit(ChannelLost(session.channel_id, "blocked"))
        await env.manager.join()
        await asyncio.sleep(0)

        stored = env.sessions.get(1, HANDLE)
        assert (stored.status, stored.channel_id) == ("inactive", None)
        assert env.manager._workers == {}

        again = await env.manager.initialize(1, HANDLE)
        assert again.value.status == "pending"
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_delete_frees_handle() -> None:
    async def scenario():
        env = build()
        await pair(env)

        assert (await env.manager.delete(1, HANDLE)).value is True
        assert env.sessions.get(1, HANDLE) is None
        assert env.users.find_handle_owner(HANDLE) is None
        assert isinstance((await env.manager.delete(1, HANDLE)).error, NotFoundError)

        assert (await env.manager.initialize(2, HANDLE)).ok
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_expired_session_cannot_be_reinitialized() -> None:
    async def scenario():
        env = build()
        await pair(env)

        assert (await env.manager.expire(1, HANDLE)).value.status == "expired"
        result = await env.manager.initialize(1, HANDLE)
        assert isinstance(result.error, ValidationError)
        assert isinstance((await env.manager.enqueue(1, HANDLE, "hi")).error, ValidationError)

    asyncio.run(scenario())


def test_recover_resets_stale_sessions() -> None:
    async def scenario():
        env = build()
        env.users.add_handle(1, HANDLE)
        stale = env.sessions.add(ChatSession(user_id=1, handle=HANDLE, status="active", channel_id="gone"))
        env.sessions.save_state(stale)

        assert await env.manager.recover() == 1
        assert env.sessions.get(1, HANDLE).status == "inactive"
        assert await env.manager.recover() == 0

    asyncio.run(scenario())


def test_notify_user_respects_alert_setting() -> None:
    async def scenario():
        env = build()
        await pair(env)

        assert await env.manager.notify_user(1, "🔴 over budget") == 1
        assert env.transport.texts() == ["🔴 over budget"]

        await env.manager.update_settings(1, HANDLE, settings={"notifications": {"budget_alerts": False}})
        assert await env.manager.notify_user(1, "🔴 again") == 0
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_update_settings_merges_and_validates() -> None:
    async def scenario():
        env = build()
        await env.manager.initialize(1, HANDLE)

        result = await env.manager.update_settings(
            1, HANDLE, settings={"language": "en", "auto_reply": {"enabled": True}}, nlp={"confidence": 0.5}
        )
        assert result.ok
        stored = env.sessions.get(1, HANDLE)
        assert stored.settings.language == "en"
        assert stored.settings.auto_reply.enabled is True
        assert stored.settings.auto_reply.message.startswith("Terima kasih")
        assert stored.settings.notifications.budget_alerts is True
        assert stored.nlp.confidence == 0.5

        for bad in ({"settings": {"language": "fr"}}, {"nlp": {"confidence": 1.5}}):
            assert isinstance((await env.manager.update_settings(1, HANDLE, **bad)).error, ValidationError)
        assert env.sessions.get(1, HANDLE).settings.language == "en"
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_unknown_timezone_is_rejected_and_chat_keeps_working() -> None:
    table = {"beli makan 50000": Classification("transaction.expense", 0.95, {"amount": "50000", "category": "food"})}

    async def scenario():
        env = build(table)
        env.budgets.add(make_budget())
        session = await pair(env)

        for zone in ("Mars/Olympus", "../etc/passwd"):
            result = await env.manager.update_settings(1, HANDLE, settings={"timezone": zone})
            assert isinstance(result.error, ValidationError)
        assert env.sessions.get(1, HANDLE).settings.timezone == "Asia/Jakarta"

        assert (await env.manager.update_settings(1, HANDLE, settings={"timezone": "Asia/Makassar"})).ok
        await say(env, session, "beli makan 50000")
        assert len(env.transactions.find(1)) == 1
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_add_custom_phrases_checks_intents() -> None:
    async def scenario():
        env = build()
        await env.manager.initialize(1, HANDLE)

        added = await env.manager.add_custom_phrases(
            1, HANDLE, [{"phrase": "jajan", "intent": "transaction.expense", "examples": ["jajan 10rb"]}]
        )
        assert [p.phrase for p in added.value] == ["jajan"]

        bad = await env.manager.add_custom_phrases(1, HANDLE, [{"phrase": "x", "intent": "weather"}])
        assert isinstance(bad.error, ValidationError)
        assert len(env.sessions.get(1, HANDLE).nlp.custom_phrases) == 1
        await env.manager.shutdown()

    asyncio.run(scenario())


def test_error_log_paging() -> None:
    async def scenario():
        env = build()
        await env.manager.initialize(1, HANDLE)
        assert env.manager.get_error_logs(1, HANDLE).value == []
        assert isinstance(env.manager.get_error_logs(1, HANDLE, page=0).error, ValidationError)
        assert isinstance(env.manager.get_pairing_artifact(1, OTHER_HANDLE).error, NotFoundError)
        await env.manager.shutdown()

    asyncio.run(scenario())
