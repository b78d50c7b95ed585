"""
Candidate selection for routing.

Turns a node's outgoing edges into CandidateConnections, filtering on card
state and preconditions before anything is scored.
"""

import logging
from typing import Dict, List, Optional

from switchboard.routing.cards import (
    CandidateConnection,
    ContextCard,
    ContextCardStore,
    ConversationState,
    Edge,
    Precondition,
    PreconditionOperator,
)

logger = logging.getLogger(__name__)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def check_preconditions(preconditions: List[Precondition], state: ConversationState) -> bool:
    """True when every precondition holds against state."""
    for precondition in preconditions:
        value = state.lookup(precondition.key)
        op = precondition.operator

        if op == PreconditionOperator.EXISTS:
            if value is None:
                return False
        elif op == PreconditionOperator.NOT_EXISTS:
            if value is not None:
                return False
        elif op == PreconditionOperator.EQUALS:
            if value != precondition.value:
                return False
        elif op == PreconditionOperator.NOT_EQUALS:
            if value == precondition.value:
                return False
        elif op in (PreconditionOperator.GREATER_THAN, PreconditionOperator.LESS_THAN):
            # Ordering only applies to numbers; anything else fails the check.
            if not (_is_number(value) and _is_number(precondition.value)):
                return False
            if op == PreconditionOperator.GREATER_THAN and value <= precondition.value:
                return False
            if op == PreconditionOperator.LESS_THAN and value >= precondition.value:
                return False
        else:
            logger.warning(f"Unknown precondition operator: {op}")
            return False
    return True


class ConnectionRouter:
    """Selects which outgoing connections of a node are eligible."""

    def __init__(self, store: Optional[ContextCardStore] = None):
        self.store = store or ContextCardStore()

    def get_candidate_connections(
        self,
        node_id: str,
        edges: List[Edge],
        state: ConversationState,
        include_disabled: bool = False,
        require_preconditions: bool = True,
    ) -> List[CandidateConnection]:
        """
        Eligible outgoing connections of node_id, highest card priority first.

        An edge without a card gets a default card, which is saved and always
        included.
        """
        candidates = []
        for edge in edges:
            if edge.source != node_id:
                continue
            card = self.store.get_by_connection_id(edge.id)
            if card is None:
                card = self.store.save(self.store.create_default_card(edge.id, edge.source, edge.target))
                candidates.append(CandidateConnection(edge.id, card, edge))
                continue
            if not card.enabled and not include_disabled:
                continue
            if require_preconditions and card.preconditions and not check_preconditions(card.preconditions, state):
                logger.debug(f"Connection {edge.id} skipped: preconditions not met")
                continue
            candidates.append(CandidateConnection(edge.id, card, edge))

        candidates.sort(key=lambda c: c.card.priority, reverse=True)
        return candidates

    def get_fallback_connection(
        self,
        node_id: str,
        edges: List[Edge],
        fallback_node_id: Optional[str],
    ) -> Optional[CandidateConnection]:
        """The edge from node_id to fallback_node_id, if the graph has one."""
        if not fallback_node_id:
            return None
        edge = next((e for e in edges if e.source == node_id and e.target == fallback_node_id), None)
        if edge is None:
            return None

        card = self.store.get_by_connection_id(edge.id)
        if card is None:
            card = self.store.create_default_card(edge.id, edge.source, edge.target)
            card.name = "Clarification"
            card.purpose = "Ask caller for clarification when intent is unclear"
            card.when_to_use = "Use when no other connection is a good match"
            self.store.save(card)
        return CandidateConnection(edge.id, card, edge)

    def get_all_connections_for_node(self, node_id: str, edges: List[Edge]) -> Dict[str, List[CandidateConnection]]:
        """Incoming and outgoing connections that already have cards."""
        result: Dict[str, List[CandidateConnection]] = {"incoming": [], "outgoing": []}
        for edge in edges:
            card: Optional[ContextCard] = self.store.get_by_connection_id(edge.id)
            if card is None:
                continue
            if edge.target == node_id:
                result["incoming"].append(CandidateConnection(edge.id, card, edge))
            if edge.source == node_id:
                result["outgoing"].append(CandidateConnection(edge.id, card, edge))
        return result

    def is_connection_available(self, connection_id: str, state: ConversationState) -> bool:
        card = self.store.get_by_connection_id(connection_id)
        if card is None or not card.enabled:
            return False
        if card.preconditions:
            return check_preconditions(card.preconditions, state)
        return True
