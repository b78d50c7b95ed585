"""Communication events and their out-of-band dispatcher.

Events are queued and delivered by a consumer task, so subscribers never run
inside the manager's state mutation and cannot re-enter it mid-update.
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from switchboard.messaging.protocol import new_id, now_ms

logger = logging.getLogger(__name__)

WILDCARD = "*"

EventCallback = Callable[["CommunicationEvent"], Any]


@dataclass
class CommunicationEvent:
    from_agent: str
    to: str
    type: str
    success: bool
    id: str = field(default_factory=lambda: new_id("evt"))
    timestamp: int = field(default_factory=now_ms)
    duration: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_agent,
            "to": self.to,
            "type": self.type,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "success": self.success,
            "error": self.error,
            "error_code": self.error_code,
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "metadata": self.metadata,
        }


class EventDispatcher:
    """Typed pub/sub channel with a lazily started consumer task.

    ``emit`` never calls subscribers directly; it only enqueues. When no event
    loop is running the events stay buffered until the next emit or ``flush``.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[str, EventCallback]] = {}
        self._pending: Deque[CommunicationEvent] = deque()
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        """Register for one event type or ``"*"``; returns an unsubscribe callable."""
        sub_id = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(event_type, {})[sub_id] = callback

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_type)
            if handlers is not None:
                handlers.pop(sub_id, None)

        return unsubscribe

    def emit(self, event: CommunicationEvent) -> None:
        self._pending.append(event)
        self._ensure_consumer()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        while self._pending or (self._task is not None and not self._task.done()):
            self._ensure_consumer()
            task = self._task
            if task is None:
                break
            await asyncio.shield(task)

    def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._pending.clear()

    # ── Internal ────────────────────────────────────────────────────

    def _ensure_consumer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = self._task
        if task is not None and not task.done() and task.get_loop() is loop:
            return
        self._task = loop.create_task(self._consume())

    async def _consume(self) -> None:
        while self._pending:
            event = self._pending.popleft()
            await self._dispatch(event)

    async def _dispatch(self, event: CommunicationEvent) -> None:
        handlers = list(self._subscribers.get(event.type, {}).values())
        handlers += list(self._subscribers.get(WILDCARD, {}).values())
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type)
