"""
Communication Manager - central coordinator for agent-to-agent messaging.

Keeps a priority queue of outbound messages, tracks request/response pairs
with timeouts, maintains append-only conversation threads and publishes a
CommunicationEvent for every lifecycle step. Events are the only
observability hook; this module does not log.

Message lifecycle: queued -> routing -> (resolved | retrying -> queued | failed)
"""

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from switchboard.exceptions import (
    AgentUnregisteredError,
    ErrorCode,
    ManagerClearedError,
    RequestTimeoutError,
    ValidationError,
    error_code_of,
)
from switchboard.messaging.events import CommunicationEvent, EventCallback, EventDispatcher
from switchboard.messaging.protocol import (
    AgentMessage,
    ConversationThread,
    MessagePriority,
    MessageType,
    create_response,
    now_ms,
    validate_protocol,
)
from switchboard.messaging.router import MessageHandler, MessageRouter

BASE_PRIORITY = 50
TYPE_BONUS = {MessageType.CLARIFY: 20, MessageType.QUERY: 10}
EXPLICIT_BONUS = {MessagePriority.HIGH: 30, MessagePriority.LOW: -20}
URGENCY_BONUS = 40
URGENCY_WINDOW_MS = 5000


@dataclass
class CommunicationConfig:
    enabled: bool = True
    max_conversation_depth: int = 5
    timeout_ms: int = 30000
    retry_enabled: bool = True
    max_retries: int = 2


@dataclass
class QueuedMessage:
    message: AgentMessage
    priority: int
    queued_at: float
    retry_count: int = 0


@dataclass
class PendingRequest:
    message: AgentMessage
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle
    created_at: int = field(default_factory=now_ms)


def calculate_priority(message: AgentMessage) -> int:
    """Higher runs first: base + type bonus + explicit priority + urgency."""
    priority = BASE_PRIORITY
    priority += TYPE_BONUS.get(message.type, 0)
    if message.priority is not None:
        priority += EXPLICIT_BONUS.get(MessagePriority(message.priority), 0)
    if message.expires_at is not None and message.expires_at - now_ms() < URGENCY_WINDOW_MS:
        priority += URGENCY_BONUS
    return priority


class CommunicationManager:
    """Bidirectional messaging between registered agents."""

    def __init__(
        self,
        config: Optional[CommunicationConfig] = None,
        router: Optional[MessageRouter] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.config = config or CommunicationConfig()
        self._router = router or MessageRouter()
        self._events = dispatcher or EventDispatcher()
        self._queue: List[Tuple[int, float, int, QueuedMessage]] = []
        self._seq = itertools.count()
        self._pending: Dict[str, PendingRequest] = {}
        self._threads: Dict[str, ConversationThread] = {}
        self._drain_task: Optional[asyncio.Task] = None
        # Bumped by clear(); work resumed after an await re-checks it.
        self._generation = 0
        self._router.add_unregister_listener(self._on_agent_unregistered)

    @property
    def router(self) -> MessageRouter:
        return self._router

    # ── Registration ────────────────────────────────────────────────

    def register_agent(self, agent_id: str, handler: MessageHandler) -> None:
        self._router.register(agent_id, handler)
        self._emit(CommunicationEvent(
            from_agent="system", to=agent_id, type="agent_registered", success=True,
        ))

    def unregister_agent(self, agent_id: str) -> None:
        """Drop the handler and fail fast any queued or pending work naming it."""
        self._router.unregister(agent_id)

    def _on_agent_unregistered(self, agent_id: str) -> None:
        for message_id, pending in list(self._pending.items()):
            if agent_id in (pending.message.to, pending.message.from_agent):
                self._reject(message_id, AgentUnregisteredError(
                    f"Agent {agent_id} was unregistered", details={"agent_id": agent_id},
                ))

        kept = [entry for entry in self._queue if agent_id not in (entry[3].message.to, entry[3].message.from_agent)]
        if len(kept) != len(self._queue):
            heapq.heapify(kept)
            self._queue = kept

        self._emit(CommunicationEvent(
            from_agent="system", to=agent_id, type="agent_unregistered", success=True,
        ))

    # ── Sending ─────────────────────────────────────────────────────

    async def send_message(self, message: AgentMessage) -> None:
        """Validate, record in the thread, enqueue and make sure the queue drains.

        Does not suspend, so a burst of sends is fully queued before routing starts.
        """
        if not self.config.enabled:
            raise ValidationError("Bidirectional communication is disabled")

        validation = validate_protocol(message)
        if not validation.valid:
            raise ValidationError(f"Invalid message: {validation.error}")

        thread = self._threads.get(message.context.thread_id)
        if thread is not None and thread.status == "closed":
            raise ValidationError(f"Thread {thread.id} is closed")
        if thread is not None:
            depth = self._correlation_depth(thread, message)
            if depth > self.config.max_conversation_depth:
                raise ValidationError(
                    f"Conversation depth {depth} exceeds maximum of {self.config.max_conversation_depth}"
                )

        thread = self._get_or_create_thread(message.context.thread_id, [message.from_agent, message.to])
        thread.append(message)

        self._emit(CommunicationEvent(
            from_agent=message.from_agent,
            to=message.to,
            type=_type_name(message),
            timestamp=message.timestamp,
            success=True,
            message_id=message.id,
            thread_id=thread.id,
            metadata={"content": message.content},
        ))

        self._push(QueuedMessage(message, calculate_priority(message), time.monotonic()))
        self._schedule_drain()

    async def send_and_wait(self, message: AgentMessage, timeout_ms: Optional[int] = None) -> Any:
        """Send a request and wait for its correlated response content."""
        if not message.requires_response:
            raise ValidationError("Message does not require a response. Use send_message() instead.")

        loop = asyncio.get_running_loop()
        timeout = timeout_ms if timeout_ms is not None else self.config.timeout_ms
        future: asyncio.Future = loop.create_future()
        handle = loop.call_later(timeout / 1000.0, self._expire, message.id, timeout)
        self._pending[message.id] = PendingRequest(message, future, handle)

        try:
            await self.send_message(message)
            return await future
        finally:
            pending = self._pending.get(message.id)
            if pending is not None and pending.future is future:
                pending.timeout_handle.cancel()
                del self._pending[message.id]

    def handle_response(self, response: AgentMessage) -> None:
        """Resolve the pending request named by ``correlation_id``; unknown ids are ignored."""
        if not response.correlation_id:
            return
        pending = self._pending.pop(response.correlation_id, None)
        if pending is None:
            return

        pending.timeout_handle.cancel()
        thread = self._threads.get(response.context.thread_id) if response.context else None
        if thread is not None:
            thread.append(response)

        self._emit(CommunicationEvent(
            from_agent=response.from_agent,
            to=response.to,
            type="response",
            duration=now_ms() - pending.created_at,
            success=True,
            message_id=response.id,
            thread_id=thread.id if thread else None,
            metadata={"original_message_id": response.correlation_id, "content": response.content},
        ))

        if not pending.future.done():
            pending.future.set_result(response.content)

    # ── Queue draining ──────────────────────────────────────────────

    def _push(self, queued: QueuedMessage) -> None:
        heapq.heappush(self._queue, (-queued.priority, queued.queued_at, next(self._seq), queued))

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = self._drain_task
        if task is not None and not task.done() and task.get_loop() is loop:
            return
        self._drain_task = loop.create_task(self._drain(self._generation))

    async def _drain(self, generation: int) -> None:
        try:
            while self._queue and generation == self._generation:
                _, _, _, queued = heapq.heappop(self._queue)
                await self._process(queued, generation)
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None

    async def _process(self, queued: QueuedMessage, generation: int) -> None:
        message = queued.message
        awaited = message.requires_response and message.id in self._pending
        started = time.monotonic()

        try:
            response = await self._router.route(message)
        except Exception as e:
            if generation != self._generation:
                return
            self._on_route_failure(queued, e, _elapsed_ms(started))
            return

        if generation != self._generation:
            return
        duration = _elapsed_ms(started)

        if message.requires_response and response is not None:
            response_message = create_response(message, message.to, response)
            if message.id in self._pending:
                self.handle_response(response_message)
            elif not awaited:
                try:
                    await self.send_message(response_message)
                except ValidationError as e:
                    self._emit(CommunicationEvent(
                        from_agent=response_message.from_agent,
                        to=response_message.to,
                        type="error",
                        success=False,
                        error=str(e),
                        error_code=e.code.value,
                        message_id=response_message.id,
                        thread_id=message.context.thread_id,
                    ))
            # An awaited request that is no longer pending was already failed
            # by unregistration or expiry; its late response is dropped.

        self._emit(CommunicationEvent(
            from_agent=message.from_agent,
            to=message.to,
            type=_type_name(message),
            duration=duration,
            success=True,
            message_id=message.id,
            thread_id=message.context.thread_id,
            metadata={"response": response},
        ))

    def _on_route_failure(self, queued: QueuedMessage, error: Exception, duration: int) -> None:
        message = queued.message
        code = error_code_of(error, ErrorCode.ROUTING_ERROR)
        self._emit(CommunicationEvent(
            from_agent=message.from_agent,
            to=message.to,
            type=_type_name(message),
            duration=duration,
            success=False,
            error=str(error),
            error_code=code.value,
            message_id=message.id,
            thread_id=message.context.thread_id,
            metadata={"retry_count": queued.retry_count},
        ))

        if self.config.retry_enabled and queued.retry_count < self.config.max_retries:
            # Same priority, behind anything of equal priority already waiting.
            self._push(replace(queued, retry_count=queued.retry_count + 1, queued_at=time.monotonic()))
            return

        for key in (message.id, message.correlation_id):
            if key and key in self._pending:
                self._reject(key, error)
                break

        self._emit(CommunicationEvent(
            from_agent=message.from_agent,
            to=message.to,
            type="error",
            duration=duration,
            success=False,
            error=str(error),
            error_code=code.value,
            message_id=message.id,
            thread_id=message.context.thread_id,
            metadata={"attempts": queued.retry_count + 1},
        ))

    # ── Timeouts and rejection ──────────────────────────────────────

    def _expire(self, message_id: str, timeout_ms: int) -> None:
        pending = self._pending.get(message_id)
        if pending is None:
            return
        self._emit(CommunicationEvent(
            from_agent=pending.message.from_agent,
            to=pending.message.to,
            type="timeout",
            duration=now_ms() - pending.created_at,
            success=False,
            error=f"Request timeout after {timeout_ms}ms",
            error_code=ErrorCode.REQUEST_TIMEOUT.value,
            message_id=message_id,
            thread_id=pending.message.context.thread_id,
        ))
        self._reject(message_id, RequestTimeoutError(
            f"Request timeout after {timeout_ms}ms", details={"message_id": message_id},
        ))

    def _reject(self, message_id: str, error: BaseException) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return
        pending.timeout_handle.cancel()
        if not pending.future.done():
            pending.future.set_exception(error)

    # ── Threads ─────────────────────────────────────────────────────

    def _get_or_create_thread(self, thread_id: str, participants: List[str]) -> ConversationThread:
        thread = self._threads.get(thread_id)
        if thread is None:
            thread = ConversationThread(id=thread_id, participants=list(dict.fromkeys(participants)))
            self._threads[thread_id] = thread
        return thread

    def _correlation_depth(self, thread: ConversationThread, message: AgentMessage) -> int:
        by_id = {m.id: m for m in thread.messages}
        depth = 1
        current = message.correlation_id
        seen = set()
        while current and current in by_id and current not in seen:
            seen.add(current)
            depth += 1
            current = by_id[current].correlation_id
        return depth

    def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        return self._threads.get(thread_id)

    def get_active_threads(self) -> List[ConversationThread]:
        return [t for t in self._threads.values() if t.status == "active"]

    def close_thread(self, thread_id: str) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.status = "closed"
        thread.updated_at = now_ms()
        return True

    # ── Events ──────────────────────────────────────────────────────

    def on_event(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to one event type or ``"*"``; returns an unsubscribe callable."""
        return self._events.subscribe(event_type, callback)

    def _emit(self, event: CommunicationEvent) -> None:
        self._events.emit(event)

    # ── Lifecycle ───────────────────────────────────────────────────

    def get_statistics(self) -> Dict[str, int]:
        return {
            "queued_messages": len(self._queue),
            "pending_requests": len(self._pending),
            "active_threads": len(self.get_active_threads()),
            "registered_agents": len(self._router.get_registered_agents()),
        }

    def update_config(self, **changes: Any) -> None:
        self.config = replace(self.config, **changes)

    async def flush(self) -> None:
        """Wait until the queue is drained and every event has been delivered."""
        while True:
            task = self._drain_task
            if task is not None and not task.done():
                await asyncio.shield(task)
                continue
            if self._queue:
                self._schedule_drain()
                if self._drain_task is None:
                    break
                continue
            break
        await self._events.flush()

    def clear(self) -> None:
        """Reject all pending requests and forget queued messages and threads."""
        self._generation += 1
        for message_id in list(self._pending):
            self._reject(message_id, ManagerClearedError())
        self._queue.clear()
        self._threads.clear()
        # A drain still awaiting a handler sees the new generation and exits.
        self._drain_task = None

    async def shutdown(self) -> None:
        task = self._drain_task
        self.clear()
        if task is not None and not task.done():
            task.cancel()
        await self._events.flush()
        self._events.close()


def _type_name(message: AgentMessage) -> str:
    return message.type.value if isinstance(message.type, MessageType) else str(message.type)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
