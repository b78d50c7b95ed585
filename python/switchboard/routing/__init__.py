"""Routing: context cards, candidate selection, LLM scoring and decision policy."""

from .cards import (
    CallerIntent,
    CandidateConnection,
    ConnectionScore,
    ContextCard,
    ContextCardStore,
    ConversationState,
    Edge,
    Precondition,
    PreconditionOperator,
    RiskLevel,
    RoutingDecision,
)
from .confirmation import ConfirmationHandler, ConfirmationRequest, ConfirmationResult
from .connection_router import ConnectionRouter, check_preconditions
from .engine import RoutingDecisionEngine
from .scorer import ConnectionScorer, ScoringOptions

__all__ = [
    "CallerIntent",
    "CandidateConnection",
    "ConfirmationHandler",
    "ConfirmationRequest",
    "ConfirmationResult",
    "ConnectionRouter",
    "ConnectionScore",
    "ConnectionScorer",
    "ContextCard",
    "ContextCardStore",
    "ConversationState",
    "Edge",
    "Precondition",
    "PreconditionOperator",
    "RiskLevel",
    "RoutingDecision",
    "RoutingDecisionEngine",
    "ScoringOptions",
    "check_preconditions",
]
