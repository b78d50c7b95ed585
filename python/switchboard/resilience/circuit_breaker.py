"""
Per-dependency circuit breaker with optional persisted stats.

CLOSED -> OPEN      consecutive failures reach failure_threshold
OPEN -> HALF_OPEN   reset_timeout_ms elapsed since the last failure
HALF_OPEN -> CLOSED next success
HALF_OPEN -> OPEN   next failure
"""

import inspect
import json
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar, Union

from switchboard.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fallback = Callable[[], Union[T, Awaitable[T]]]
StateChangeCallback = Callable[["CircuitState"], None]


class CircuitState(str, Enum):
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing fast
    HALF_OPEN = "half_open"    # Trial call allowed


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_ms: int = 60000


@dataclass
class CircuitBreakerStats:
    state: CircuitState = CircuitState.CLOSED
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    rejected_requests: int = 0
    last_failure_time: Optional[float] = None
    last_state_change: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerStats":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["state"] = CircuitState(known.get("state", CircuitState.CLOSED.value))
        return cls(**known)


# ── Persistence ────────────────────────────────────────────────────

class BreakerStateStore(Protocol):
    """Where breaker stats live between reconnects. The medium is the caller's choice."""

    def load(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save(self, key: str, data: Dict[str, Any]) -> None: ...


class InMemoryBreakerStore:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        data = self._data.get(key)
        return dict(data) if data is not None else None

    def save(self, key: str, data: Dict[str, Any]) -> None:
        self._data[key] = dict(data)


class JsonFileBreakerStore:
    """All breakers in one JSON object keyed by persist key."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt breaker state file %s", self.path)
            return {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read_all().get(key)

    def save(self, key: str, data: Dict[str, Any]) -> None:
        everything = self._read_all()
        everything[key] = data
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(everything, indent=2), encoding="utf-8")


# ── Breaker ────────────────────────────────────────────────────────

class CircuitBreaker:
    """Circuit breaker pattern implementation."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[StateChangeCallback] = None,
        store: Optional[BreakerStateStore] = None,
        persist_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._on_state_change = on_state_change
        self._store = store
        self._persist_key = persist_key or f"circuit_breaker:{name}"
        self._clock = clock
        self._stats = CircuitBreakerStats(last_state_change=self._now_ms())

        if self._store is not None:
            saved = self._store.load(self._persist_key)
            if saved:
                self._stats = CircuitBreakerStats.from_dict(saved)
                logger.info(f"Circuit breaker '{name}' restored in state {self._stats.state.value}")

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def execute(self, primary: Callable[[], Awaitable[T]], fallback: Optional[Fallback] = None) -> T:
        """Run primary under breaker protection.

        While open (and before the reset timeout) the fallback runs instead and
        primary is never attempted; without a fallback CircuitOpenError is raised.
        A failing primary with a fallback returns the fallback's value.
        """
        self._stats.total_requests += 1

        if self._stats.state == CircuitState.OPEN:
            if self._reset_timeout_elapsed():
                self._transition(CircuitState.HALF_OPEN)
            else:
                self._stats.rejected_requests += 1
                self._persist()
                if fallback is not None:
                    return await _resolve(fallback())
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is OPEN - service unavailable",
                    details={"breaker": self.name},
                )

        try:
            result = await primary()
        except Exception:
            self._on_failure()
            if fallback is not None:
                return await _resolve(fallback())
            raise

        self._on_success()
        return result

    def _reset_timeout_elapsed(self) -> bool:
        last_failure = self._stats.last_failure_time or 0
        return self._now_ms() - last_failure >= self.config.reset_timeout_ms

    def _on_success(self) -> None:
        self._stats.total_successes += 1
        self._stats.consecutive_failures = 0
        if self._stats.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        self._persist()

    def _on_failure(self) -> None:
        self._stats.total_failures += 1
        self._stats.consecutive_failures += 1
        self._stats.last_failure_time = self._now_ms()

        if self._stats.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._stats.state == CircuitState.CLOSED
            and self._stats.consecutive_failures >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN)
        self._persist()

    def _transition(self, state: CircuitState) -> None:
        if state == self._stats.state:
            return
        previous = self._stats.state
        self._stats.state = state
        self._stats.last_state_change = self._now_ms()
        if state == CircuitState.OPEN:
            logger.warning(f"Circuit breaker '{self.name}' opened after {self._stats.consecutive_failures} failures")
        else:
            logger.info(f"Circuit breaker '{self.name}' {previous.value} -> {state.value}")
        self._persist()
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("State change callback failed for breaker %s", self.name)

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self._persist_key, self._stats.to_dict())
        except OSError as e:
            logger.warning(f"Could not persist breaker '{self.name}': {e}")

    # ── Inspection / manual control ────────────────────────────────

    def get_state(self) -> CircuitState:
        return self._stats.state

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(**asdict(self._stats))

    def get_status(self) -> Dict[str, Any]:
        return {"name": self.name, **self._stats.to_dict()}

    def force_open(self) -> None:
        self._stats.last_failure_time = self._now_ms()
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._stats.consecutive_failures = 0
        self._stats.last_failure_time = None
        self._transition(CircuitState.CLOSED)
        self._persist()


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CircuitBreakerManager:
    """One breaker per dependency name, created on first use."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        store: Optional[BreakerStateStore] = None,
        on_state_change: Optional[Callable[[str, CircuitState], None]] = None,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._store = store
        self._on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            callback = None
            if self._on_state_change is not None:
                notify = self._on_state_change

                def callback(state: CircuitState, _name: str = name) -> None:
                    notify(_name, state)

            breaker = CircuitBreaker(name, config or self.default_config, callback, self._store)
            self._breakers[name] = breaker
        return breaker

    def get_all_stats(self) -> Dict[str, CircuitBreakerStats]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
