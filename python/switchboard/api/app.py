"""
Switchboard FastAPI application entry point.

Provides a small REST surface over the delegation core:
- /health: degradation level and circuit breaker states
- /api/process: deliver a query to a tool, department or routing node
- /api/status: container, communication, breaker and rate-limit state
- /api/events: recent inter-agent communication events
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from switchboard.api.middleware import RateLimitMiddleware
from switchboard.container import SwitchboardContainer, get_container, shutdown_container
from switchboard.logging_config import configure_logging
from switchboard.resilience.degradation import DegradationLevel
from switchboard.routing.cards import CallerIntent, ConversationState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------


class IntentModel(BaseModel):
    intent_label: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    entities: Dict[str, Any] = Field(default_factory=dict)
    urgency: str = "normal"


class StateModel(BaseModel):
    current_intent: Optional[IntentModel] = None
    clarification_count: int = Field(default=0, ge=0)
    flags: Dict[str, Any] = Field(default_factory=dict)
    known_entities: Dict[str, Any] = Field(default_factory=dict)
    extras: Dict[str, Any] = Field(default_factory=dict)

    def to_state(self) -> ConversationState:
        intent = CallerIntent(**self.current_intent.model_dump()) if self.current_intent else None
        return ConversationState(
            current_intent=intent,
            clarification_count=self.clarification_count,
            flags=dict(self.flags),
            known_entities=dict(self.known_entities),
            extras=dict(self.extras),
        )


class ProcessRequest(BaseModel):
    query: str = Field(min_length=1)
    target_agent_id: str = Field(min_length=1)
    state: Optional[StateModel] = None
    args: Optional[Dict[str, Any]] = None


class ProcessResponse(BaseModel):
    response: Any
    state: Dict[str, Any]


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(container: Optional[SwitchboardContainer] = None) -> FastAPI:
    """Build the API around a container; the process-wide one when omitted."""
    owned = container is None
    container = container or get_container()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        settings = container.settings
        configure_logging(settings.log_level, settings.log_format)
        logger.info("Switchboard API starting up")
        await container.startup()
        logger.info("Container ready: %s", container.status())
        yield
        if owned:
            await shutdown_container()
        else:
            await container.shutdown()
        logger.info("Switchboard API shutting down")

    application = FastAPI(
        title="Switchboard",
        version="0.1.0",
        description="Agent delegation and routing core",
        lifespan=lifespan,
    )
    application.state.container = container

    application.add_middleware(
        CORSMiddleware,
        allow_origins=container.settings.get_cors_origins(),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(
        RateLimitMiddleware,
        rate_limiter=container.rate_limiter,
        excluded_paths=container.settings.get_rate_limit_excluded_paths(),
        cleanup_interval=container.settings.rate_limit_cleanup_interval,
    )

    _register_routes(application)
    return application


def _container(request: Request) -> SwitchboardContainer:
    return request.app.state.container


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _register_routes(application: FastAPI) -> None:

    @application.get("/health")
    async def health(request: Request):
        """Health check: degradation level and breaker states."""
        container = _container(request)
        level = container.degradation.get_level()
        body = {
            "status": "healthy" if level == DegradationLevel.FULL else "degraded",
            "degradation_level": level.name,
            "breakers": container.breakers.get_status(),
        }
        if level >= DegradationLevel.MINIMAL:
            return JSONResponse(content=body, status_code=503)
        return body

    @application.post("/api/process", response_model=ProcessResponse)
    async def process(req: ProcessRequest, request: Request):
        """Deliver a query to a registered target or routing node."""
        container = _container(request)
        state = req.state.to_state() if req.state else ConversationState()
        result = await container.coordinator.process_request(
            req.query, req.target_agent_id, state=state, args=req.args,
        )
        return ProcessResponse(response=result, state=asdict(state))

    @application.get("/api/status")
    async def status(request: Request):
        """Service wiring plus live resilience state."""
        container = _container(request)
        return {
            "services": container.status(),
            "communication": container.communication.get_statistics(),
            "breakers": container.breakers.get_status(),
            "degradation": container.degradation.get_status(),
            "rate_limit": asdict(container.rate_limiter.default_config),
            "registry": container.registry.summary(),
        }

    @application.get("/api/events")
    async def events(request: Request, limit: int = Query(default=100, ge=1, le=1000)):
        """Most recent communication events, oldest first."""
        container = _container(request)
        recent = container.event_log.get_recent(limit)
        return {"events": recent, "count": len(recent)}


app = create_app()
