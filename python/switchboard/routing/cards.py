"""
Routing data model: graph edges, context cards, conversation state and the
scores/decisions produced while choosing a next hop.
"""

import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PreconditionOperator(str, Enum):
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


@dataclass(frozen=True)
class Edge:
    """Directed link between two nodes of the agent graph."""
    id: str
    source: str
    target: str


@dataclass
class Precondition:
    key: str                            # dotted path into the conversation state
    operator: PreconditionOperator
    value: Any = None


@dataclass
class ContextCard:
    """Describes when a connection should (and should not) be taken."""
    id: str
    connection_id: str
    name: str
    purpose: str
    when_to_use: str
    when_not_to_use: Optional[str] = None
    example_phrases: List[str] = field(default_factory=list)
    usage_examples: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    risk_notes: Optional[str] = None
    priority: int = 0
    requires_confirmation: bool = False
    enabled: bool = True
    preconditions: List[Precondition] = field(default_factory=list)
    system_prompt_additions: Optional[str] = None
    from_node: Optional[str] = None
    to_node: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        data["preconditions"] = [
            {"key": p.key, "operator": p.operator.value, "value": p.value} for p in self.preconditions
        ]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextCard":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["risk_level"] = RiskLevel(known.get("risk_level", RiskLevel.LOW.value))
        known["preconditions"] = [
            Precondition(p["key"], PreconditionOperator(p["operator"]), p.get("value"))
            for p in known.get("preconditions", [])
        ]
        return cls(**known)


@dataclass
class CallerIntent:
    intent_label: str
    confidence: float = 0.0
    entities: Dict[str, Any] = field(default_factory=dict)
    urgency: str = "normal"


@dataclass
class ConversationState:
    """Mutable per-conversation routing state."""
    current_intent: Optional[CallerIntent] = None
    clarification_count: int = 0
    flags: Dict[str, Any] = field(default_factory=dict)
    known_entities: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, dotted_key: str) -> Any:
        """Resolve "a.b.c" through attributes first, then mapping keys."""
        current: Any = self
        for part in dotted_key.split("."):
            if current is None:
                return None
            if isinstance(current, dict):
                current = current.get(part)
            elif hasattr(current, part):
                current = getattr(current, part)
            elif current is self:
                current = self.extras.get(part)
            else:
                return None
        return current


@dataclass
class CandidateConnection:
    connection_id: str
    card: ContextCard
    edge: Edge


@dataclass
class ConnectionScore:
    connection_id: str
    context_card_id: str
    score: float
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RoutingDecision:
    chosen_connection_id: str
    chosen_context_card_id: str
    score: float
    reason: str
    candidates: List[ConnectionScore] = field(default_factory=list)
    used_fallback: bool = False
    required_confirmation: bool = False
    low_confidence: bool = False
    clarification_question: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ContextCardStore:
    """In-memory context cards keyed by card id."""

    def __init__(self) -> None:
        self._cards: Dict[str, ContextCard] = {}

    def save(self, card: ContextCard) -> ContextCard:
        card.updated_at = _now_ms()
        self._cards[card.id] = card
        return card

    def get(self, card_id: str) -> Optional[ContextCard]:
        return self._cards.get(card_id)

    def get_by_connection_id(self, connection_id: str) -> Optional[ContextCard]:
        for card in self._cards.values():
            if card.connection_id == connection_id:
                return card
        return None

    def delete(self, card_id: str) -> bool:
        return self._cards.pop(card_id, None) is not None

    def all(self) -> List[ContextCard]:
        return list(self._cards.values())

    def create_default_card(self, connection_id: str, from_node: str, to_node: str) -> ContextCard:
        return ContextCard(
            id=f"context_{_now_ms()}_{secrets.token_hex(4)}",
            connection_id=connection_id,
            name=f"Connection {from_node} → {to_node}",
            purpose="Handle caller request",
            when_to_use="Use this connection when appropriate based on caller intent",
            risk_level=RiskLevel.LOW,
            priority=0,
            from_node=from_node,
            to_node=to_node,
        )

    def ensure_cards(self, edges: List[Edge]) -> int:
        """Give every edge a card; returns how many defaults were created."""
        created = 0
        for edge in edges:
            if self.get_by_connection_id(edge.id) is None:
                self.save(self.create_default_card(edge.id, edge.source, edge.target))
                created += 1
        return created

    def export(self) -> List[Dict[str, Any]]:
        return [card.to_dict() for card in self._cards.values()]

    def import_cards(self, items: List[Dict[str, Any]]) -> int:
        imported = 0
        for item in items:
            try:
                card = ContextCard.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid context card: {e}")
                continue
            self._cards[card.id] = card
            imported += 1
        return imported

    def clear(self) -> None:
        self._cards.clear()
