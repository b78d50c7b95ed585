"""Dependency injection container for Switchboard.

Wires the delegation core from one Settings object. Services are created
lazily on first access; tests build their own container instead of using the
process-wide default.
"""

import logging
from typing import Any, Dict, Optional

from switchboard.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SwitchboardContainer:
    """Central service container for the delegation core."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._breakers = None
        self._rate_limiter = None
        self._degradation = None
        self._communication = None
        self._event_log = None
        self._registry = None
        self._card_store = None
        self._llm_client = None
        self._connection_router = None
        self._scorer = None
        self._routing_engine = None
        self._confirmation = None
        self._coordinator = None
        self._started = False

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def breakers(self):
        if self._breakers is None:
            from switchboard.resilience import (
                CircuitBreakerConfig,
                CircuitBreakerManager,
                InMemoryBreakerStore,
                JsonFileBreakerStore,
            )
            s = self.settings
            if s.circuit_breaker_state_file:
                store = JsonFileBreakerStore(s.circuit_breaker_state_file)
            else:
                store = InMemoryBreakerStore()
            self._breakers = CircuitBreakerManager(
                CircuitBreakerConfig(
                    failure_threshold=s.circuit_breaker_failure_threshold,
                    reset_timeout_ms=s.circuit_breaker_reset_timeout_ms,
                ),
                store=store,
                on_state_change=self._on_breaker_state_change,
            )
        return self._breakers

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            from switchboard.resilience import RateLimitConfig, RateLimiter
            s = self.settings
            self._rate_limiter = RateLimiter(RateLimitConfig(
                max_requests=s.rate_limit_max_requests,
                window_ms=s.rate_limit_window_ms,
                burst_size=s.rate_limit_burst_size,
            ))
        return self._rate_limiter

    @property
    def degradation(self):
        if self._degradation is None:
            from switchboard.resilience import DegradationManager
            self._degradation = DegradationManager(
                recovery_check_interval_ms=self.settings.degradation_recovery_check_interval_ms,
                enable_auto_recovery=self.settings.degradation_enable_auto_recovery,
            )
        return self._degradation

    @property
    def communication(self):
        if self._communication is None:
            from switchboard.messaging import CommunicationConfig, CommunicationManager
            s = self.settings
            self._communication = CommunicationManager(CommunicationConfig(
                enabled=s.communication_enabled,
                max_conversation_depth=s.communication_max_conversation_depth,
                timeout_ms=s.communication_timeout_ms,
                retry_enabled=s.communication_retry_enabled,
                max_retries=s.communication_max_retries,
            ))
        return self._communication

    @property
    def event_log(self):
        if self._event_log is None:
            from switchboard.observability import CommunicationEventLog
            self._event_log = CommunicationEventLog(
                path=self.settings.event_log_path,
                buffer_size=self.settings.event_log_buffer_size,
            )
        return self._event_log

    @property
    def registry(self):
        if self._registry is None:
            from switchboard.delegation import AgentRegistry
            self._registry = AgentRegistry()
        return self._registry

    @property
    def card_store(self):
        if self._card_store is None:
            from switchboard.routing import ContextCardStore
            self._card_store = ContextCardStore()
        return self._card_store

    @property
    def llm_client(self):
        if self._llm_client is None:
            from switchboard.llm import HttpLLMClient
            s = self.settings
            self._llm_client = HttpLLMClient(
                base_url=s.llm_base_url,
                model=s.llm_model,
                api_key=s.llm_api_key,
                timeout_seconds=s.llm_timeout_seconds,
            )
            logger.info("LLM client initialized (model=%s)", s.llm_model)
        return self._llm_client

    @property
    def connection_router(self):
        if self._connection_router is None:
            from switchboard.routing import ConnectionRouter
            self._connection_router = ConnectionRouter(self.card_store)
        return self._connection_router

    @property
    def scorer(self):
        if self._scorer is None:
            from switchboard.routing import ConnectionScorer
            # Without credentials routing runs on keyword scoring alone.
            llm = self.llm_client if self.settings.llm_api_key else None
            self._scorer = ConnectionScorer(llm)
        return self._scorer

    @property
    def routing_engine(self):
        if self._routing_engine is None:
            from switchboard.routing import RoutingDecisionEngine
            s = self.settings
            self._routing_engine = RoutingDecisionEngine(
                self.connection_router,
                self.scorer,
                score_threshold=s.routing_score_threshold,
                clarification_threshold=s.routing_clarification_threshold,
                max_clarifications=s.routing_max_clarifications,
                fallback_node_id=s.routing_fallback_node_id,
                default_safe_node_id=s.routing_default_safe_node_id,
            )
        return self._routing_engine

    @property
    def confirmation(self):
        if self._confirmation is None:
            from switchboard.routing import ConfirmationHandler
            self._confirmation = ConfirmationHandler()
        return self._confirmation

    @property
    def coordinator(self):
        if self._coordinator is None:
            from switchboard.delegation import DelegationConfig, DelegationCoordinator
            s = self.settings
            self._coordinator = DelegationCoordinator(
                registry=self.registry,
                breakers=self.breakers,
                rate_limiter=self.rate_limiter,
                degradation=self.degradation,
                communication=self.communication,
                routing_engine=self.routing_engine,
                confirmation=self.confirmation,
                config=DelegationConfig(
                    tool_timeout_ms=s.timeout_tool_execution_ms,
                    department_timeout_ms=s.timeout_sub_agent_loop_ms,
                    retry_enabled=s.retry_enabled,
                    max_retries=s.retry_max_retries,
                    initial_delay_ms=s.retry_initial_delay_ms,
                    max_delay_ms=s.retry_max_delay_ms,
                    department_max_turns=s.department_max_turns,
                ),
            )
            logger.info("DelegationCoordinator initialized")
        return self._coordinator

    def _on_breaker_state_change(self, name: str, state: Any) -> None:
        logger.warning("Circuit breaker %s is now %s", name, getattr(state, "value", state))

    # ── Lifecycle ───────────────────────────────────────────────────

    async def startup(self) -> None:
        """Start background work: recovery checks, event logging, agent handlers."""
        if self._started:
            return
        self.degradation.start()
        self.event_log.attach(self.communication)
        attached = self.coordinator.attach()
        self._started = True
        logger.info("Switchboard started (%d agents attached)", attached)

    async def shutdown(self) -> None:
        if self._coordinator is not None:
            self._coordinator.detach()
        if self._event_log is not None:
            self._event_log.detach()
            self._event_log.close()
        if self._communication is not None:
            await self._communication.shutdown()
        if self._degradation is not None:
            await self._degradation.shutdown()
        self._started = False
        logger.info("Switchboard shut down")

    @property
    def started(self) -> bool:
        return self._started

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "started": self._started,
            "breakers": self._breakers is not None,
            "rate_limiter": self._rate_limiter is not None,
            "degradation": self._degradation is not None,
            "communication": self._communication is not None,
            "event_log": self._event_log is not None,
            "registry": self._registry is not None,
            "card_store": self._card_store is not None,
            "llm_client": self._llm_client is not None,
            "connection_router": self._connection_router is not None,
            "scorer": self._scorer is not None,
            "routing_engine": self._routing_engine is not None,
            "confirmation": self._confirmation is not None,
            "coordinator": self._coordinator is not None,
        }


# Global container
_container: Optional[SwitchboardContainer] = None


def get_container() -> SwitchboardContainer:
    global _container
    if _container is None:
        _container = SwitchboardContainer()
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.shutdown()
    _container = None
