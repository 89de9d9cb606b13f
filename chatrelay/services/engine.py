"""Conversation reconciliation engine.

Keeps three views of each conversation consistent on one event loop:

* the durable document (``ConversationRepository``),
* the in-memory record table every reader goes through (``ConversationTable``),
* the live buffer of the assistant reply currently streaming (``Lane.buffer``).

Each conversation has its own lane, so a turn streaming in one conversation
keeps running while the user works in another. Records are frozen pydantic
models; every mutation is a reducer that returns a new record and the table
swaps it in whole.

Commit and title scheduling are check-then-set with no ``await`` in between.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from chatrelay.logging_config import conversation_id_var, turn_id_var
from chatrelay.schemas.chat import ChatMessageIn, ChatRequest
from chatrelay.schemas.conversation import Attachment, Conversation, Message, utcnow
from chatrelay.schemas.settings import AppSettings
from chatrelay.services.attachments import validate_attachments
from chatrelay.services.chat import resolve_system_prompt
from chatrelay.services.client import ChatClient
from chatrelay.services.errors import (
    BadRequest,
    ChatError,
    ConversationNotFound,
    FirstTokenTimeout,
    MessageNotFound,
    StorageFailure,
    StreamInterrupted,
    TurnInProgress,
    classify_upstream_error,
)
from chatrelay.services.storage import ConversationRepository
from chatrelay.services.titles import PLACEHOLDER_TITLE, fallback_title

logger = logging.getLogger(__name__)

Reducer = Callable[[Conversation], Conversation]
Listener = Callable[[str, str], None]

EDITABLE_FIELDS = frozenset({"title", "model", "system_prompt", "is_pinned", "is_archived"})
EMPTY_REPLY = "The model returned an empty reply, please retry"


def new_id(prefix: str) -> str:
    """``{prefix}_{epoch ms}_{7 hex chars}``, e.g. ``msg_1718000000123_ab12cd3``."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def _next_timestamp(previous: datetime) -> datetime:
    now = utcnow()
    return now if now > previous else previous + timedelta(microseconds=1)


# ── Reducers ───────────────────────────────────────────────────────────────

def touched(conversation: Conversation, **changes) -> Conversation:
    changes["updated_at"] = _next_timestamp(conversation.updated_at)
    return conversation.model_copy(update=changes)


def append_message(conversation: Conversation, message: Message) -> Conversation:
    return touched(conversation, messages=conversation.messages + (message,))


def truncate_messages(conversation: Conversation, keep: int, tail: Sequence[Message] = ()) -> Conversation:
    return touched(conversation, messages=conversation.messages[:keep] + tuple(tail))


# ── Record table ───────────────────────────────────────────────────────────

class ConversationTable:
    """Conversation records keyed by id; updates replace the whole record."""

    def __init__(self) -> None:
        self._records: dict[str, Conversation] = {}
        self._subscribers: list[Callable[[str, Conversation | None], None]] = []

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, conversation_id: str) -> Conversation | None:
        return self._records.get(conversation_id)

    def require(self, conversation_id: str) -> Conversation:
        record = self._records.get(conversation_id)
        if record is None:
            raise ConversationNotFound()
        return record

    def put(self, conversation: Conversation) -> None:
        self._records[conversation.id] = conversation
        self._notify(conversation.id, conversation)

    def apply(self, conversation_id: str, reducer: Reducer) -> Conversation:
        current = self.require(conversation_id)
        updated = reducer(current)
        if updated is not current:
            self._records[conversation_id] = updated
            self._notify(conversation_id, updated)
        return updated

    def remove(self, conversation_id: str) -> Conversation | None:
        record = self._records.pop(conversation_id, None)
        if record is not None:
            self._notify(conversation_id, None)
        return record

    def all(self) -> list[Conversation]:
        return list(self._records.values())

    def sorted(self) -> list[Conversation]:
        """Pinned first, then most recently updated."""
        by_recent = sorted(self._records.values(), key=lambda c: c.updated_at, reverse=True)
        return sorted(by_recent, key=lambda c: not c.is_pinned)

    def active(self) -> list[Conversation]:
        return [c for c in self.sorted() if not c.is_archived]

    def archived(self) -> list[Conversation]:
        return [c for c in self.sorted() if c.is_archived]

    def subscribe(self, callback: Callable[[str, Conversation | None], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, conversation_id: str, record: Conversation | None) -> None:
        for callback in list(self._subscribers):
            try:
                callback(conversation_id, record)
            except Exception:
                logger.exception("Conversation subscriber failed")


# ── Per-conversation lane ──────────────────────────────────────────────────

class CommitLedger:
    """Assistant message ids already committed to one conversation."""

    def __init__(self, ids: Iterable[str] = ()) -> None:
        self._ids: set[str] = set(ids)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def try_commit(self, message_id: str) -> bool:
        """Mark *message_id* committed; False if it already was."""
        if message_id in self._ids:
            return False
        self._ids.add(message_id)
        return True

    def discard(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self._ids.discard(message_id)


class TurnState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    STREAMING = "streaming"
    COMMITTING = "committing"


@dataclass
class Lane:
    conversation_id: str
    ledger: CommitLedger = field(default_factory=CommitLedger)
    state: TurnState = TurnState.IDLE
    buffer: str = ""
    turn_id: str | None = None
    error: ChatError | None = None
    task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self.task is not None and not self.task.done()

    def reset(self) -> None:
        self.state = TurnState.IDLE
        self.buffer = ""
        self.turn_id = None


@dataclass(frozen=True)
class ConversationView:
    """What a UI renders for one conversation: committed history plus live state."""

    conversation: Conversation
    state: TurnState
    streaming_content: str
    error: ChatError | None
    storage_warning: str | None


# ── Engine ─────────────────────────────────────────────────────────────────

class ChatEngine:
    def __init__(
        self,
        client: ChatClient,
        repository: ConversationRepository | None = None,
        *,
        app_settings: AppSettings | None = None,
        default_model: str | None = None,
        first_token_timeout: float | None = None,
        persist_retries: int | None = None,
        persist_retry_delay: float | None = None,
    ):
        from chatrelay.config import settings

        self.client = client
        self.repository = repository
        self.app_settings = app_settings or AppSettings()
        self.default_model = default_model or settings.DEFAULT_MODEL
        self.first_token_timeout = (
            settings.FIRST_TOKEN_TIMEOUT_SECONDS if first_token_timeout is None else first_token_timeout
        )
        self.persist_retries = max(1, settings.STORAGE_MAX_RETRIES if persist_retries is None else persist_retries)
        self.persist_retry_delay = (
            settings.STORAGE_RETRY_DELAY_SECONDS if persist_retry_delay is None else persist_retry_delay
        )

        self.table = ConversationTable()
        self.active_id: str | None = None
        self._lanes: dict[str, Lane] = {}
        self._titles_scheduled: set[str] = set()
        self._persist_locks: dict[str, asyncio.Lock] = {}
        self._storage_warnings: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []
        self.table.subscribe(self._on_record)

    # ── observation ─────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """*listener(conversation_id, event)*; event is updated, removed or stream."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, conversation_id: str, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id, event)
            except Exception:
                logger.exception("Engine listener failed")

    def _on_record(self, conversation_id: str, record: Conversation | None) -> None:
        self._emit(conversation_id, "updated" if record is not None else "removed")

    def conversations(self) -> list[Conversation]:
        return self.table.sorted()

    @property
    def active_conversation(self) -> Conversation | None:
        return self.table.get(self.active_id) if self.active_id else None

    def lane(self, conversation_id: str) -> Lane:
        """The conversation's lane; a new lane's ledger holds the assistant ids already present."""
        lane = self._lanes.get(conversation_id)
        if lane is None:
            conversation = self.table.require(conversation_id)
            lane = Lane(
                conversation_id,
                ledger=CommitLedger(m.id for m in conversation.messages if m.role == "assistant"),
            )
            self._lanes[conversation_id] = lane
        return lane

    def snapshot(self, conversation_id: str) -> ConversationView:
        conversation = self.table.require(conversation_id)
        lane = self._lanes.get(conversation_id)
        return ConversationView(
            conversation=conversation,
            state=lane.state if lane else TurnState.IDLE,
            streaming_content=lane.buffer if lane else "",
            error=lane.error if lane else None,
            storage_warning=self._storage_warnings.get(conversation_id),
        )

    # ── conversation management ─────────────────────────────────────────

    async def load(self) -> list[Conversation]:
        """Fill the table from storage; records already in memory are kept."""
        if self.repository is None:
            return self.conversations()
        stored = await asyncio.to_thread(self.repository.list)
        for conversation in stored:
            if conversation.id not in self.table:
                self.table.put(conversation)
        logger.info("Loaded %d conversations", len(stored))
        return self.conversations()

    def create_conversation(self, model: str | None = None, system_prompt: str | None = None) -> Conversation:
        conversation = Conversation(
            id=new_id("conv"),
            title=PLACEHOLDER_TITLE,
            model=model or self.default_model,
            system_prompt=system_prompt or None,
        )
        self.table.put(conversation)
        self.lane(conversation.id)
        self.active_id = conversation.id
        self._schedule_persist(conversation.id)
        return conversation

    async def switch_to(self, conversation_id: str) -> ConversationView:
        """Make *conversation_id* active, loading it from storage if needed.

        Turns running in other conversations are left alone.
        """
        if conversation_id not in self.table:
            stored = None
            if self.repository is not None:
                stored = await asyncio.to_thread(self.repository.get, conversation_id)
            if stored is None:
                raise ConversationNotFound()
            # another switch may have loaded it while we were reading
            if conversation_id not in self.table:
                self.table.put(stored)
        self.lane(conversation_id)
        self.active_id = conversation_id
        return self.snapshot(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        self.table.require(conversation_id)
        await self.cancel(conversation_id)
        self.table.remove(conversation_id)
        self._lanes.pop(conversation_id, None)
        self._storage_warnings.pop(conversation_id, None)
        self._titles_scheduled.discard(conversation_id)
        if self.active_id == conversation_id:
            remaining = self.table.active()
            self.active_id = remaining[0].id if remaining else None

        if self.repository is not None:
            try:
                async with self._persist_lock(conversation_id):
                    await asyncio.to_thread(self.repository.delete, conversation_id)
            except ConversationNotFound:
                pass
            except ChatError as exc:
                logger.warning("Deleting %s from storage failed: %s", conversation_id, exc.message)
                raise
            finally:
                self._persist_locks.pop(conversation_id, None)

    def update_conversation(self, conversation_id: str, **fields) -> Conversation:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise BadRequest(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "model" in fields and not fields["model"]:
            raise BadRequest("Model is required")
        if "system_prompt" in fields:
            fields["system_prompt"] = fields["system_prompt"] or None
        updated = self.table.apply(conversation_id, lambda c: touched(c, **fields))
        self._schedule_persist(conversation_id)
        return updated

    def rename(self, conversation_id: str, title: str) -> Conversation:
        return self.update_conversation(conversation_id, title=title.strip() or PLACEHOLDER_TITLE)

    def set_model(self, conversation_id: str, model: str) -> Conversation:
        return self.update_conversation(conversation_id, model=model)

    def set_system_prompt(self, conversation_id: str, system_prompt: str | None) -> Conversation:
        return self.update_conversation(conversation_id, system_prompt=system_prompt)

    def toggle_pin(self, conversation_id: str) -> Conversation:
        current = self.table.require(conversation_id)
        return self.update_conversation(conversation_id, is_pinned=not current.is_pinned)

    def toggle_archive(self, conversation_id: str) -> Conversation:
        current = self.table.require(conversation_id)
        return self.update_conversation(conversation_id, is_archived=not current.is_archived)

    # ── turns ───────────────────────────────────────────────────────────

    def _idle_lane(self, conversation_id: str) -> Lane:
        lane = self.lane(conversation_id)
        if lane.busy:
            raise TurnInProgress()
        return lane

    async def send(
        self,
        conversation_id: str,
        content: str,
        attachments: Sequence[Attachment] = (),
    ) -> Message:
        """Append the user message and start streaming the reply.

        Returns once the turn is dispatched; ``wait()`` awaits the reply.
        """
        if not content.strip() and not attachments:
            raise BadRequest("Message is empty")
        lane = self._idle_lane(conversation_id)
        checked = validate_attachments(attachments)
        message = Message(
            id=new_id("msg"),
            role="user",
            content=content,
            attachments=checked or None,
        )
        self.table.apply(conversation_id, lambda c: append_message(c, message))
        self._schedule_persist(conversation_id)
        self._start_turn(lane)
        return message

    async def regenerate(self, conversation_id: str, message_id: str) -> None:
        """Drop the assistant message *message_id* and everything after it, then re-ask."""
        lane = self._idle_lane(conversation_id)
        conversation = self.table.require(conversation_id)
        idx = conversation.message_index(message_id)
        if idx < 0:
            raise MessageNotFound()
        if conversation.messages[idx].role != "assistant":
            raise BadRequest("Only assistant messages can be regenerated")
        if not any(m.role == "user" for m in conversation.messages[:idx]):
            raise BadRequest("Nothing to regenerate from")

        dropped = [m.id for m in conversation.messages[idx:]]
        self.table.apply(conversation_id, lambda c: truncate_messages(c, idx))
        lane.ledger.discard(dropped)
        self._schedule_persist(conversation_id)
        self._start_turn(lane)

    async def edit_and_resubmit(self, conversation_id: str, message_id: str, content: str) -> Message:
        """Replace a user message's text, drop everything after it, then re-ask."""
        lane = self._idle_lane(conversation_id)
        conversation = self.table.require(conversation_id)
        idx = conversation.message_index(message_id)
        if idx < 0:
            raise MessageNotFound()
        original = conversation.messages[idx]
        if original.role != "user":
            raise BadRequest("Only user messages can be edited")
        if not content.strip() and not original.attachments:
            raise BadRequest("Message is empty")

        edited = original.model_copy(update={"content": content})
        dropped = [m.id for m in conversation.messages[idx:]]
        self.table.apply(conversation_id, lambda c: truncate_messages(c, idx, (edited,)))
        lane.ledger.discard(dropped)
        self._schedule_persist(conversation_id)
        self._start_turn(lane)
        return edited

    async def retry(self, conversation_id: str) -> None:
        """Re-issue the failed turn from the committed history."""
        lane = self._idle_lane(conversation_id)
        conversation = self.table.require(conversation_id)
        if not conversation.messages or conversation.messages[-1].role != "user":
            raise BadRequest("Nothing to retry")
        self._start_turn(lane)

    async def cancel(self, conversation_id: str) -> bool:
        """Abort the in-flight turn; nothing from it is committed."""
        lane = self._lanes.get(conversation_id)
        if lane is None or not lane.busy:
            return False
        task = lane.task
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        lane.reset()
        lane.error = None
        self._emit(conversation_id, "stream")
        logger.info("Cancelled turn in %s", conversation_id)
        return True

    async def wait(self, conversation_id: str) -> ChatError | None:
        """Wait for the current turn to finish; returns its error, if any."""
        lane = self._lanes.get(conversation_id)
        if lane is None:
            return None
        if lane.task is not None:
            await asyncio.gather(lane.task, return_exceptions=True)
        return lane.error

    async def drain(self) -> None:
        """Wait for every turn and background write/title task to settle."""
        while True:
            pending = [lane.task for lane in self._lanes.values() if lane.busy]
            pending += [t for t in self._background if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        for conversation_id in list(self._lanes):
            await self.cancel(conversation_id)
        await self.drain()
        aclose = getattr(self.client, "aclose", None)
        if aclose is not None:
            await aclose()

    def _build_request(self, conversation: Conversation) -> ChatRequest:
        messages = [
            ChatMessageIn(
                id=m.id,
                role=m.role,
                content=m.content,
                attachments=list(m.attachments) if m.role == "user" and m.attachments else None,
            )
            for m in conversation.messages
            if m.role != "system"
        ]
        return ChatRequest(
            messages=messages,
            model=conversation.model,
            system_prompt=resolve_system_prompt(
                conversation.system_prompt, self.app_settings.global_system_prompt
            ),
        )

    def _start_turn(self, lane: Lane) -> None:
        conversation = self.table.require(lane.conversation_id)
        request = self._build_request(conversation)
        turn_id = new_id("msg")
        lane.reset()
        lane.error = None
        lane.state = TurnState.PENDING
        lane.turn_id = turn_id
        lane.task = asyncio.create_task(
            self._run_turn(lane, request, turn_id), name=f"turn-{lane.conversation_id}"
        )
        self._emit(lane.conversation_id, "stream")

    async def _consume(self, lane: Lane, request: ChatRequest) -> None:
        stream = self.client.stream_chat(
            request,
            self.app_settings.request_credentials(),
            conversation_id=lane.conversation_id,
        )
        iterator = stream.__aiter__()
        try:
            timeout = self.first_token_timeout if self.first_token_timeout and self.first_token_timeout > 0 else None
            try:
                first = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
            except StopAsyncIteration:
                raise StreamInterrupted(EMPTY_REPLY) from None
            except asyncio.TimeoutError:
                raise FirstTokenTimeout() from None

            lane.state = TurnState.STREAMING
            lane.buffer += first
            self._emit(lane.conversation_id, "stream")
            async for text in iterator:
                lane.buffer += text
                self._emit(lane.conversation_id, "stream")
            # committed assistant turns are never blank
            if not lane.buffer.strip():
                raise StreamInterrupted(EMPTY_REPLY)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Error closing chat stream", exc_info=True)

    async def _run_turn(self, lane: Lane, request: ChatRequest, turn_id: str) -> None:
        conversation_id_var.set(lane.conversation_id)
        turn_id_var.set(turn_id)
        logger.info("Turn started with %s (%d messages)", request.model, len(request.messages))
        try:
            await self._consume(lane, request)
        except asyncio.CancelledError:
            lane.reset()
            raise
        except Exception as exc:
            error = classify_upstream_error(exc)
            logger.warning("Turn failed: %s", error.code)
            lane.reset()
            lane.error = error
            self._emit(lane.conversation_id, "stream")
            return

        lane.state = TurnState.COMMITTING
        content = lane.buffer
        self.commit(lane.conversation_id, turn_id, content)
        lane.reset()
        self._emit(lane.conversation_id, "stream")

    def commit(self, conversation_id: str, message_id: str, content: str) -> bool:
        """Append the assistant reply *message_id* once; repeats are no-ops."""
        if conversation_id not in self.table:
            return False
        lane = self.lane(conversation_id)
        if not lane.ledger.try_commit(message_id):
            logger.debug("Ignoring duplicate commit of %s", message_id)
            return False
        message = Message(id=message_id, role="assistant", content=content)
        self.table.apply(conversation_id, lambda c: append_message(c, message))
        logger.info("Committed assistant message (%d chars)", len(content))
        self._schedule_persist(conversation_id)
        self._maybe_schedule_title(conversation_id)
        return True

    # ── titles ──────────────────────────────────────────────────────────

    def _maybe_schedule_title(self, conversation_id: str) -> None:
        conversation = self.table.get(conversation_id)
        if conversation is None or conversation.title != PLACEHOLDER_TITLE:
            return
        if conversation_id in self._titles_scheduled:
            return
        first = conversation.first_user_message()
        if first is None or not first.content.strip():
            return
        self._titles_scheduled.add(conversation_id)
        self._spawn(self._generate_title(conversation_id, first.content), name=f"title-{conversation_id}")

    async def _generate_title(self, conversation_id: str, message: str) -> None:
        try:
            title = await self.client.generate_title(message, self.app_settings.request_credentials())
        except Exception:
            logger.warning("Title generation failed, using fallback", exc_info=True)
            title = fallback_title(message)

        conversation = self.table.get(conversation_id)
        # renamed or deleted while the title was being generated
        if conversation is None or conversation.title != PLACEHOLDER_TITLE:
            return
        self.table.apply(conversation_id, lambda c: touched(c, title=title or PLACEHOLDER_TITLE))
        self._schedule_persist(conversation_id)

    # ── persistence ─────────────────────────────────────────────────────

    def _spawn(self, coro, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _persist_lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._persist_locks.get(conversation_id)
        if lock is None:
            lock = self._persist_locks[conversation_id] = asyncio.Lock()
        return lock

    def _schedule_persist(self, conversation_id: str) -> None:
        if self.repository is None:
            return
        self._spawn(self._persist(conversation_id), name=f"persist-{conversation_id}")

    async def _persist(self, conversation_id: str) -> None:
        async with self._persist_lock(conversation_id):
            for attempt in range(1, self.persist_retries + 1):
                # always the latest record, so a queued write never goes backwards
                conversation = self.table.get(conversation_id)
                if conversation is None:
                    return
                try:
                    await asyncio.to_thread(self.repository.put, conversation)
                except StorageFailure as exc:
                    if attempt < self.persist_retries:
                        await asyncio.sleep(self.persist_retry_delay * attempt)
                        continue
                    self._storage_failed(conversation_id, exc, attempt)
                except ChatError as exc:
                    # not retryable (e.g. an id the repository refuses)
                    self._storage_failed(conversation_id, exc, attempt)
                else:
                    if self._storage_warnings.pop(conversation_id, None) is not None:
                        self._emit(conversation_id, "stream")
                return

    def _storage_failed(self, conversation_id: str, exc: ChatError, attempts: int) -> None:
        logger.warning("Saving %s failed after %d attempt(s): %s", conversation_id, attempts, exc.message)
        self._storage_warnings[conversation_id] = exc.message
        self._emit(conversation_id, "stream")
