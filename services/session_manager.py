"""
services/session_manager.py
---------------------------
Owns the chat session state machine and bridges transport events to the
intent dispatcher.

States:
    inactive -> pending     initialize() asked the transport for a channel
    pending  -> active      the transport reported the channel ready
    active   -> inactive    disconnect() or the transport lost the channel
    any      -> expired     expire()

Each open session gets a SessionWorker: a bounded asyncio.Queue of typed
transport events consumed by one task, so a session's events are handled in
arrival order while different sessions proceed in parallel. Lifecycle calls
(initialize/disconnect/delete/expire) take the same per-session lock the
worker holds while handling an event, so no two transitions for one session
ever interleave.

The supervisor table (session id -> worker) and the channel index
(channel id -> session id) live on the manager instance; the persistent
record of which channel a session owns is ChatSession.channel_id.
"""

import asyncio
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ai.intents import KNOWN_INTENTS
from config import SESSION_QUEUE_SIZE, SUPPORTED_LANGUAGES
from models.session import (
    ChatSession,
    CustomPhrase,
    ErrorLogEntry,
    QueuedMessage,
    is_valid_handle,
)
from repositories.session_repo import SessionRepository, nlp_from_dict, settings_from_dict
from repositories.user_repo import UserRepository
from services.intent_dispatcher import DispatchResult, IntentDispatcher
from services.ledger_engine import utcnow
from transport.base import (
    ChannelLost,
    ChannelReady,
    ChatTransport,
    MessageReceived,
    PairingArtifact,
    TransportEvent,
)
from utils.errors import (
    BotBudgetError,
    DuplicateHandle,
    NotFoundError,
    QuotaExceeded,
    TransportError,
    ValidationError,
)
from utils.logger import get_logger
from utils.messages import t
from utils.result import Result

logger = get_logger(__name__)

_STOP = object()


class SessionWorker:
    """Sequential consumer of one session's transport events."""

    def __init__(self, manager: "SessionManager", session_id: int, user_id: int, handle: str,
                 queue_size: int = SESSION_QUEUE_SIZE):
        self.manager = manager
        self.session_id = session_id
        self.user_id = user_id
        self.handle = handle
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.task = asyncio.create_task(self._run(), name=f"session-{self.session_id}")

    async def put(self, event: TransportEvent) -> None:
        """Enqueue an event, waiting while the queue is full."""
        await self.queue.put(event)

    def stop(self) -> int:
        """
        Discard events not yet handled and ask the worker to exit.

        Returns:
            How many events were discarded.
        """
        discarded = 0
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
            discarded += 1
        self.queue.put_nowait(_STOP)
        return discarded

    async def wait(self) -> None:
        if self.task is not None and self.task is not asyncio.current_task():
            await self.task

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if event is _STOP:
                    return
                keep_running = await self.manager._handle_event(self, event)
                if not keep_running:
                    return
            except Exception:
                # A failing event must not take the session down with it.
                logger.exception(f"Session #{self.session_id} failed handling {event!r}")
            finally:
                self.queue.task_done()


class SessionManager:
    """
    Public lifecycle and settings operations for chat sessions.

    Every public coroutine returns a Result; domain failures never escape as
    exceptions.
    """

    def __init__(
        self,
        transport: ChatTransport,
        dispatcher: IntentDispatcher,
        session_repo: Optional[SessionRepository] = None,
        user_repo: Optional[UserRepository] = None,
        queue_size: int = SESSION_QUEUE_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.transport = transport
        self.dispatcher = dispatcher
        self.session_repo = session_repo or SessionRepository()
        self.user_repo = user_repo or UserRepository()
        self.queue_size = queue_size
        self.clock = clock

        self._workers: dict[int, SessionWorker] = {}
        self._channels: dict[str, int] = {}
        self._orphans: dict[str, list[TransportEvent]] = {}
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}

        transport.set_listener(self.on_transport_event)

    # ── LIFECYCLE ─────────────────────────────────────────

    async def initialize(self, user_id: int, handle: str) -> Result[ChatSession]:
        """
        Create the session if needed and ask the transport for a channel.

        Idempotent: an active session, or a pending one whose pairing is
        already under way, is returned unchanged.
        """
        if not is_valid_handle(handle):
            return Result.failure(ValidationError("Invalid chat handle", {"handle": handle}))

        async with self._lock(user_id, handle):
            try:
                session = self.session_repo.get(user_id, handle)
                if session is None:
                    session = self._register(user_id, handle)
            except BotBudgetError as e:
                return Result.failure(e)

            if session.status == "expired":
                return Result.failure(ValidationError(
                    f"Session for {handle} has expired", {"session_id": session.id}
                ))
            if session.status == "active" or (
                session.status == "pending" and session.id in self._workers
            ):
                return Result.success(session)

            worker = self._start_worker(session)
            try:
                channel_id = await self.transport.open(handle)
            except TransportError as e:
                self._record_error(session.id, e, {"operation": "initialize"})
                self._workers.pop(session.id, None)
                worker.stop()
                return Result.failure(e)

            session.status = "pending"
            session.channel_id = channel_id
            session.last_active = self.clock()
            self.session_repo.save_state(session)
            self._bind_channel(channel_id, worker)

        logger.info(f"Session #{session.id} pending on channel {channel_id}")
        return Result.success(session)

    async def disconnect(self, user_id: int, handle: str) -> Result[ChatSession]:
        """Close the channel and go inactive; a no-op for inactive or expired sessions."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            if session.status in ("inactive", "expired"):
                return Result.success(session)
            worker = await self._teardown(session, "inactive")
        if worker:
            await worker.wait()
        return Result.success(session)

    async def delete(self, user_id: int, handle: str) -> Result[bool]:
        """Disconnect if needed, then remove the session and free the handle."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            worker = None
            if session.status in ("active", "pending"):
                worker = await self._teardown(session, "inactive")
            self.session_repo.delete(session.id)
            self.user_repo.remove_handle(user_id, handle)
        if worker:
            await worker.wait()
        logger.info(f"Deleted session #{session.id} ({handle})")
        return Result.success(True)

    async def expire(self, user_id: int, handle: str) -> Result[ChatSession]:
        """Administratively retire a session from any state."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            if session.status == "expired":
                return Result.success(session)
            worker = await self._teardown(session, "expired")
        if worker:
            await worker.wait()
        return Result.success(session)

    async def recover(self) -> int:
        """
        Mark sessions left pending or active by a previous process inactive.

        Channels do not survive a restart, so those sessions must pair again.
        """
        count = 0
        for status in ("pending", "active"):
            for session in self.session_repo.list_by_status(status):
                if session.id in self._workers:
                    continue
                session.status = "inactive"
                session.channel_id = None
                self.session_repo.save_state(session)
                count += 1
        if count:
            logger.info(f"Recovered {count} stale session(s) as inactive")
        return count

    async def join(self) -> None:
        """Wait until every open session has handled the events queued so far."""
        await asyncio.gather(*(w.queue.join() for w in list(self._workers.values())))

    async def shutdown(self) -> None:
        """Stop every worker and close every channel (process exit)."""
        workers = list(self._workers.values())
        for worker in workers:
            async with self._lock(worker.user_id, worker.handle):
                session = self.session_repo.get_by_id(worker.session_id)
                if session and session.status in ("pending", "active"):
                    await self._teardown(session, "inactive")
                else:
                    self._workers.pop(worker.session_id, None)
                    worker.stop()
        await asyncio.gather(*(w.wait() for w in workers), return_exceptions=True)

    # ── TRANSPORT EVENTS ──────────────────────────────────

    async def on_transport_event(self, event: TransportEvent) -> None:
        """Route a transport event to the worker of the session owning its channel."""
        session_id = self._channels.get(event.channel_id)
        worker = self._workers.get(session_id) if session_id is not None else None
        if worker is None:
            # open() may report events before initialize() has bound the channel.
            self._orphans.setdefault(event.channel_id, []).append(event)
            return
        await worker.put(event)

    async def _handle_event(self, worker: SessionWorker, event: TransportEvent) -> bool:
        """Apply one event under the session lock; False stops the worker."""
        async with self._lock(worker.user_id, worker.handle):
            session = self.session_repo.get_by_id(worker.session_id)
            if session is None or session.channel_id != event.channel_id:
                logger.info(f"Dropping {type(event).__name__} for stale channel {event.channel_id}")
                return session is not None

            if isinstance(event, PairingArtifact):
                session.pairing_artifact = event.artifact
                self.session_repo.save_state(session)
                logger.info(f"Session #{session.id} received a pairing artifact")
                return True

            if isinstance(event, ChannelReady):
                if session.status != "pending":
                    return True
                session.status = "active"
                session.last_active = self.clock()
                self.session_repo.save_state(session)
                self.user_repo.touch_handle(session.user_id, session.handle, is_active=True)
                logger.info(f"Session #{session.id} active")
                await self._flush(session)
                return True

            if isinstance(event, MessageReceived):
                if session.status == "active":
                    await self._handle_message(session, event)
                return True

            if isinstance(event, ChannelLost):
                self._channels.pop(event.channel_id, None)
                self._workers.pop(session.id, None)
                session.status = "inactive"
                session.channel_id = None
                session.last_active = self.clock()
                self.session_repo.save_state(session)
                self.user_repo.touch_handle(session.user_id, session.handle, is_active=False)
                logger.warning(f"Session #{session.id} lost its channel: {event.reason}")
                return False

        logger.warning(f"Unknown transport event {event!r}")
        return True

    async def _handle_message(self, session: ChatSession, event: MessageReceived) -> None:
        session.last_active = self.clock()
        self.session_repo.save_state(session)
        try:
            outcome = await asyncio.to_thread(self.dispatcher.dispatch, session, event.text)
        except Exception as e:
            logger.exception(f"Dispatcher crashed for session #{session.id}")
            outcome = DispatchResult(
                reply=t(session.language, "processing_error"), error=BotBudgetError(str(e))
            )

        if outcome.error is not None:
            self._record_error(session.id, outcome.error, {
                "operation": "message", "text": event.text, "sender": event.sender_handle,
            })
        if outcome.reply:
            await self._deliver(session, outcome.reply, kind="reply", priority=2)

    # ── OUTBOUND QUEUE ────────────────────────────────────

    async def enqueue(
        self,
        user_id: int,
        handle: str,
        content: str,
        kind: str = "text",
        priority: int = 1,
        scheduled_for: Optional[datetime] = None,
    ) -> Result[QueuedMessage]:
        """Queue an outbound message; it is sent right away if the session is active and it is due."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            if session.status == "expired":
                return Result.failure(ValidationError("Session has expired", {"session_id": session.id}))
            message = self.session_repo.enqueue(session.id, QueuedMessage(
                content=content, kind=kind, priority=priority, scheduled_for=scheduled_for,
            ))
            if session.is_active():
                await self._flush(session)
        return Result.success(message)

    async def flush_all(self) -> int:
        """Send every due queued message of the sessions this process has open."""
        sent = 0
        for worker in list(self._workers.values()):
            async with self._lock(worker.user_id, worker.handle):
                session = self.session_repo.get_by_id(worker.session_id)
                if session and session.is_active():
                    sent += await self._flush(session)
        return sent

    async def notify_user(self, user_id: int, text: str, kind: str = "alert", priority: int = 3) -> int:
        """
        Queue a notification on each of the user's sessions that accept budget alerts.

        Returns:
            Number of sessions the message was queued on.
        """
        queued = 0
        for session in self.session_repo.list_for_user(user_id):
            if session.status == "expired" or not session.settings.notifications.budget_alerts:
                continue
            result = await self.enqueue(user_id, session.handle, text, kind=kind, priority=priority)
            queued += 1 if result.ok else 0
        return queued

    async def _flush(self, session: ChatSession) -> int:
        sent = 0
        for message in self.session_repo.due_messages(session.id, self.clock()):
            try:
                await self.transport.send(session.channel_id, message.content)
            except TransportError as e:
                self.session_repo.mark_message(message.id, "failed")
                self._record_error(session.id, e, {"operation": "flush", "message_id": message.id})
                continue
            self.session_repo.mark_message(message.id, "sent")
            sent += 1
        return sent

    async def _deliver(self, session: ChatSession, text: str, kind: str, priority: int) -> None:
        """Send now; keep the text queued for the next flush if sending fails."""
        try:
            await self.transport.send(session.channel_id, text)
        except TransportError as e:
            self._record_error(session.id, e, {"operation": "send", "kind": kind})
            self.session_repo.enqueue(session.id, QueuedMessage(content=text, kind=kind, priority=priority))

    # ── SETTINGS & QUERIES ────────────────────────────────

    async def update_settings(
        self,
        user_id: int,
        handle: str,
        settings: Optional[dict[str, Any]] = None,
        nlp: Optional[dict[str, Any]] = None,
    ) -> Result[ChatSession]:
        """Merge partial settings/NLP dicts into the session's current ones."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            try:
                if settings:
                    merged = _deep_merge(asdict(session.settings), settings)
                    if merged.get("language") not in SUPPORTED_LANGUAGES:
                        raise ValidationError(f"Unsupported language '{merged.get('language')}'")
                    _check_timezone(merged.get("timezone"))
                    session.settings = settings_from_dict(merged)
                if nlp:
                    merged = _deep_merge(asdict(session.nlp), nlp)
                    if not 0 <= float(merged.get("confidence", 0)) <= 1:
                        raise ValidationError("NLP confidence must be between 0 and 1")
                    session.nlp = nlp_from_dict(merged)
                    _check_phrases(session.nlp.custom_phrases)
            except BotBudgetError as e:
                return Result.failure(e)
            self.session_repo.save_settings(session)
        return Result.success(session)

    async def add_custom_phrases(
        self, user_id: int, handle: str, phrases: list[dict[str, Any]]
    ) -> Result[list[CustomPhrase]]:
        """Append phrase -> intent mappings to the session's NLP configuration."""
        async with self._lock(user_id, handle):
            session = self.session_repo.get(user_id, handle)
            if session is None:
                return Result.failure(self._not_found(user_id, handle))
            new = [
                CustomPhrase(
                    phrase=p.get("phrase", ""), intent=p.get("intent", ""),
                    examples=list(p.get("examples") or []),
                )
                for p in phrases
            ]
            try:
                _check_phrases(new)
            except ValidationError as e:
                return Result.failure(e)
            session.nlp.custom_phrases.extend(new)
            self.session_repo.save_settings(session)
        return Result.success(session.nlp.custom_phrases)

    def list_sessions(self, user_id: int) -> Result[list[ChatSession]]:
        return Result.success(self.session_repo.list_for_user(user_id))

    def get_status(self, user_id: int, handle: str) -> Result[dict]:
        session = self.session_repo.get(user_id, handle)
        if session is None:
            return Result.failure(self._not_found(user_id, handle))
        return Result.success({"status": session.status, "last_active": session.last_active})

    def get_pairing_artifact(self, user_id: int, handle: str) -> Result[str]:
        session = self.session_repo.get(user_id, handle)
        if session is None:
            return Result.failure(self._not_found(user_id, handle))
        if not session.pairing_artifact:
            return Result.failure(NotFoundError(
                "No pairing artifact available", {"session_id": session.id}
            ))
        return Result.success(session.pairing_artifact)

    def get_error_logs(
        self, user_id: int, handle: str, page: int = 1, limit: int = 50
    ) -> Result[list[ErrorLogEntry]]:
        """Newest first."""
        if page < 1 or limit < 1:
            return Result.failure(ValidationError("page and limit must be positive"))
        session = self.session_repo.get(user_id, handle)
        if session is None:
            return Result.failure(self._not_found(user_id, handle))
        return Result.success(
            self.session_repo.error_logs(session.id, limit=limit, offset=(page - 1) * limit)
        )

    # ── INTERNALS ─────────────────────────────────────────

    def _lock(self, user_id: int, handle: str) -> asyncio.Lock:
        return self._locks.setdefault((user_id, handle), asyncio.Lock())

    def _register(self, user_id: int, handle: str) -> ChatSession:
        """Claim the handle for the user and create the session record."""
        user = self.user_repo.get_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
        owner = self.user_repo.find_handle_owner(handle)
        if owner is not None and owner != user_id:
            raise DuplicateHandle(f"Handle {handle} is already registered", {"handle": handle})
        if owner is None:
            if not user.can_add_handle():
                raise QuotaExceeded(
                    f"User {user_id} cannot register more chat handles",
                    {"user_id": user_id, "max_handles": user.max_handles},
                )
            self.user_repo.add_handle(user_id, handle)
        try:
            return self.session_repo.add(ChatSession(user_id=user_id, handle=handle))
        except BotBudgetError:
            if owner is None:
                self.user_repo.remove_handle(user_id, handle)
            raise

    def _start_worker(self, session: ChatSession) -> SessionWorker:
        worker = SessionWorker(self, session.id, session.user_id, session.handle, self.queue_size)
        self._workers[session.id] = worker
        worker.start()
        return worker

    def _bind_channel(self, channel_id: str, worker: SessionWorker) -> None:
        self._channels[channel_id] = worker.session_id
        for event in self._orphans.pop(channel_id, []):
            worker.queue.put_nowait(event)

    async def _teardown(self, session: ChatSession, status: str) -> Optional[SessionWorker]:
        """
        Close the channel, fail undelivered queued messages and set `status`.

        Must be called with the session lock held. Returns the stopped worker,
        which the caller should wait for after releasing the lock.
        """
        if session.channel_id:
            try:
                await self.transport.close(session.channel_id)
            except TransportError as e:
                self._record_error(session.id, e, {"operation": "close"})
            self._channels.pop(session.channel_id, None)
            self._orphans.pop(session.channel_id, None)

        failed = self.session_repo.fail_pending(session.id)
        session.status = status
        session.channel_id = None
        session.last_active = self.clock()
        self.session_repo.save_state(session)
        self.user_repo.touch_handle(session.user_id, session.handle, is_active=False)

        worker = self._workers.pop(session.id, None)
        discarded = worker.stop() if worker else 0
        logger.info(
            f"Session #{session.id} → {status} "
            f"({failed} queued message(s) failed, {discarded} event(s) discarded)"
        )
        return worker

    def _record_error(self, session_id: int, error: Exception, context: dict[str, Any]) -> None:
        if isinstance(error, BotBudgetError):
            context = {**error.context, **context, "code": error.code}
        self.session_repo.log_error(session_id, str(error), context)
        logger.error(f"Session #{session_id}: {error} {context}")

    @staticmethod
    def _not_found(user_id: int, handle: str) -> NotFoundError:
        return NotFoundError(
            f"No session for user {user_id} and handle {handle}",
            {"user_id": user_id, "handle": handle},
        )


def _deep_merge(base: dict, changes: dict) -> dict:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_phrases(phrases: list[CustomPhrase]) -> None:
    for phrase in phrases:
        if not phrase.phrase.strip():
            raise ValidationError("Custom phrase must not be empty")
        if phrase.intent not in KNOWN_INTENTS:
            raise ValidationError(f"Unknown intent '{phrase.intent}'", {"intent": phrase.intent})


def _check_timezone(name: Any) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise ValidationError(f"Unknown timezone '{name}'", {"timezone": name}) from e
