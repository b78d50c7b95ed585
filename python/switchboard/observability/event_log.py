"""Communication event log: ring buffer, JSONL file and the events logger."""

import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional

from switchboard.messaging.events import CommunicationEvent

logger = logging.getLogger(__name__)
events_logger = logging.getLogger("switchboard.events")


class CommunicationEventLog:
    """Subscriber that records every communication event it is given."""

    def __init__(self, path: Optional[str] = None, buffer_size: int = 500):
        self._path = Path(path) if path else None
        self._buffer: deque = deque(maxlen=buffer_size)
        self._detach: Optional[Callable[[], None]] = None
        self._file: Optional[IO[str]] = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: CommunicationEvent) -> Dict[str, Any]:
        entry = event.to_dict()
        self._buffer.append(entry)

        if event.success:
            events_logger.info("%s %s -> %s", event.type, event.from_agent, event.to)
        else:
            events_logger.warning(
                "%s %s -> %s failed [%s]: %s", event.type, event.from_agent, event.to, event.error_code, event.error,
            )

        if self._path is not None:
            try:
                if self._file is None:
                    # Line buffered: each event reaches the file without reopening it.
                    self._file = open(self._path, "a", encoding="utf-8", buffering=1)
                self._file.write(json.dumps(entry, default=str) + "\n")
            except OSError:
                logger.exception("Failed to write communication event to %s", self._path)
                self.close()
        return entry

    def attach(self, manager: Any) -> None:
        """Subscribe to every event of a CommunicationManager."""
        self.detach()
        self._detach = manager.on_event("*", self.record)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def close(self) -> None:
        """Close the JSONL file; the next recorded event reopens it."""
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                logger.exception("Failed to close communication event log %s", self._path)
            self._file = None

    @property
    def attached(self) -> bool:
        return self._detach is not None

    def get_recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._buffer)[-limit:]

    def get_summary(self, hours: float = 1.0) -> Dict[str, int]:
        """Count events by type within a time window."""
        cutoff = (time.time() - hours * 3600) * 1000
        counts: Dict[str, int] = {}
        for entry in self._buffer:
            if entry.get("timestamp", 0) >= cutoff:
                event_type = entry.get("type", "unknown")
                counts[event_type] = counts.get(event_type, 0) + 1
        return counts

    def failures(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [e for e in self._buffer if not e.get("success")][-limit:]

    def __len__(self) -> int:
        return len(self._buffer)
