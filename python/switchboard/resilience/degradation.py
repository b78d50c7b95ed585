"""
Graceful degradation.

Aggregates component failures into one service level that callers consult
before doing non-essential work. The level only moves through
``report_failure`` / ``report_success`` and the periodic recovery check.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

COMPONENTS = ("llm", "voice", "integration", "database", "cache")
HISTORY_LIMIT = 100


class DegradationLevel(IntEnum):
    FULL = 0        # All systems operational
    REDUCED = 1     # Reduced features (text-only, no voice)
    MINIMAL = 2     # Rule-based responses only
    CRITICAL = 3    # Static responses only


@dataclass
class DegradationReason:
    component: str
    reason: str
    level: DegradationLevel
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "component": self.component,
            "reason": self.reason,
            "level": self.level.name,
            "timestamp": self.timestamp,
        }


@dataclass
class ComponentHealth:
    component: str
    healthy: bool = True
    last_check: float = field(default_factory=time.time)
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    last_failure_reason: Optional[str] = None


LevelChangeCallback = Callable[[DegradationLevel, DegradationReason], None]
HealthProbe = Callable[[], Awaitable[bool]]


def assess_level(down: List[str]) -> DegradationLevel:
    """Map the set of unhealthy components to a service level."""
    failed = set(down)
    if ("llm" in failed and len(failed) >= 3) or len(failed) >= 4:
        return DegradationLevel.CRITICAL
    if {"llm", "voice"} <= failed or {"database", "integration"} <= failed:
        return DegradationLevel.MINIMAL
    if failed & {"llm", "voice", "integration", "database"}:
        return DegradationLevel.REDUCED
    return DegradationLevel.FULL


class DegradationManager:
    """Process-wide service level with periodic auto-recovery."""

    def __init__(
        self,
        recovery_check_interval_ms: int = 30000,
        enable_auto_recovery: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.recovery_check_interval_ms = recovery_check_interval_ms
        self.enable_auto_recovery = enable_auto_recovery
        self._clock = clock
        self._level = DegradationLevel.FULL
        self._health: Dict[str, ComponentHealth] = {
            name: ComponentHealth(name, last_check=clock()) for name in COMPONENTS
        }
        self._history: List[DegradationReason] = []
        self._listeners: List[LevelChangeCallback] = []
        self._probes: Dict[str, HealthProbe] = {}
        self._recovery_task: Optional[asyncio.Task] = None

    # ── Reporting ───────────────────────────────────────────────────

    def report_failure(self, component: str, reason: str) -> None:
        health = self._health.get(component)
        if health is None:
            logger.warning(f"Unknown component: {component}")
            return

        now = self._clock()
        health.healthy = False
        health.last_check = now
        health.failure_count += 1
        health.last_failure_time = now
        health.last_failure_reason = reason
        logger.warning(f"Component failure: {component} ({reason}), failure count {health.failure_count}")
        self._recalculate(component, reason)

    def report_success(self, component: str) -> None:
        health = self._health.get(component)
        if health is None:
            return
        was_unhealthy = not health.healthy
        health.healthy = True
        health.last_check = self._clock()
        health.failure_count = 0
        health.last_failure_reason = None
        if was_unhealthy:
            logger.info(f"Component recovered: {component}")
            self._recalculate(component, "Component recovered")

    report_recovery = report_success

    def _recalculate(self, component: str, reason: str) -> None:
        down = [name for name, h in self._health.items() if not h.healthy]
        new_level = assess_level(down)
        if new_level == self._level:
            return

        previous = self._level
        self._level = new_level
        entry = DegradationReason(component=component, reason=reason, level=new_level, timestamp=self._clock())
        self._history.append(entry)
        if len(self._history) > HISTORY_LIMIT:
            self._history = self._history[-HISTORY_LIMIT:]

        logger.warning(f"Degradation level changed: {previous.name} -> {new_level.name} ({component}: {reason})")
        for listener in list(self._listeners):
            try:
                listener(new_level, entry)
            except Exception:
                logger.exception("Degradation listener failed")

    # ── Queries ─────────────────────────────────────────────────────

    def get_level(self) -> DegradationLevel:
        return self._level

    def on_level_change(self, callback: LevelChangeCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def is_feature_available(self, feature: str) -> bool:
        if self._level == DegradationLevel.FULL:
            return True
        if self._level == DegradationLevel.REDUCED:
            return feature != "voice"
        return False

    def get_fallback_strategy(self, component: str) -> str:
        if component == "llm":
            if self._level >= DegradationLevel.MINIMAL:
                return "Use rule-based responses"
            return "Fall back to cached responses or static messages"
        strategies = {
            "voice": "Fall back to text mode",
            "integration": "Use cached data and notify user of limited functionality",
            "database": "Use in-memory cache and limit data access",
            "cache": "Direct access without caching (may be slower)",
        }
        return strategies.get(component, "Unknown fallback strategy")

    def get_component_health(self, component: str) -> Optional[ComponentHealth]:
        return self._health.get(component)

    def get_all_component_health(self) -> Dict[str, ComponentHealth]:
        return dict(self._health)

    def get_history(self, limit: int = 10) -> List[DegradationReason]:
        return self._history[-limit:] if limit > 0 else []

    def get_status(self) -> Dict[str, object]:
        return {
            "level": self._level.name,
            "components": {name: h.healthy for name, h in self._health.items()},
            "auto_recovery_running": self.is_recovery_running,
        }

    # ── Auto-recovery ───────────────────────────────────────────────

    def register_probe(self, component: str, probe: HealthProbe) -> None:
        if component not in self._health:
            raise ValueError(f"Unknown component: {component}")
        self._probes[component] = probe

    async def check_component_recovery(self) -> List[str]:
        """One recovery pass; returns the components that recovered."""
        recovered = []
        now = self._clock()
        quiet_seconds = self.recovery_check_interval_ms / 1000.0

        for name, health in list(self._health.items()):
            if health.healthy:
                continue
            probe = self._probes.get(name)
            if probe is not None:
                try:
                    healthy = bool(await probe())
                except Exception as e:
                    logger.warning(f"Health probe for {name} failed: {e}")
                    healthy = False
                health.last_check = self._clock()
            else:
                healthy = (
                    health.last_failure_time is not None
                    and now - health.last_failure_time >= quiet_seconds
                )
            if healthy:
                self.report_success(name)
                recovered.append(name)
        return recovered

    async def _recovery_loop(self) -> None:
        interval = self.recovery_check_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            await self.check_component_recovery()

    @property
    def is_recovery_running(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    def start(self) -> None:
        """Start the recovery timer once; later calls are no-ops."""
        if not self.enable_auto_recovery or self.is_recovery_running:
            return
        self._recovery_task = asyncio.get_running_loop().create_task(self._recovery_loop())
        logger.info(f"Degradation recovery checks every {self.recovery_check_interval_ms}ms")

    async def shutdown(self) -> None:
        task = self._recovery_task
        self._recovery_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def reset(self) -> None:
        self._level = DegradationLevel.FULL
        self._history = []
        for health in self._health.values():
            health.healthy = True
            health.failure_count = 0
            health.last_failure_time = None
            health.last_failure_reason = None
        logger.info("Degradation manager reset - all components healthy")


# Thin process-wide default; containers and tests build their own instances.
_degradation_manager: Optional[DegradationManager] = None


def get_degradation_manager() -> DegradationManager:
    global _degradation_manager
    if _degradation_manager is None:
        _degradation_manager = DegradationManager()
    return _degradation_manager


async def reset_degradation_manager() -> None:
    global _degradation_manager
    if _degradation_manager is not None:
        await _degradation_manager.shutdown()
    _degradation_manager = None
