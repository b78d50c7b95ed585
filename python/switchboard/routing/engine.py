"""
Routing decision policy.

    top >= score_threshold                  accept (confirmation if card/risk demands)
    clarification_threshold <= top < score  accept, marked low-confidence
    top < clarification_threshold           clarify, or safe default once
                                            max_clarifications is reached
"""

import logging
from typing import List, Optional

from switchboard.routing.cards import (
    CandidateConnection,
    ConnectionScore,
    ConversationState,
    Edge,
    RiskLevel,
    RoutingDecision,
)
from switchboard.routing.connection_router import ConnectionRouter
from switchboard.routing.scorer import ConnectionScorer

logger = logging.getLogger(__name__)

OPEN_QUESTION = "I want to make sure I help you correctly. Could you tell me more about what you're looking for?"


class RoutingDecisionEngine:
    """Chooses the next hop out of a node."""

    def __init__(
        self,
        router: ConnectionRouter,
        scorer: ConnectionScorer,
        score_threshold: float = 0.6,
        clarification_threshold: float = 0.5,
        max_clarifications: int = 3,
        fallback_node_id: Optional[str] = None,
        default_safe_node_id: Optional[str] = None,
    ):
        self.router = router
        self.scorer = scorer
        self.score_threshold = score_threshold
        self.clarification_threshold = clarification_threshold
        self.max_clarifications = max_clarifications
        self.fallback_node_id = fallback_node_id
        self.default_safe_node_id = default_safe_node_id

    async def make_routing_decision(
        self,
        node_id: str,
        edges: List[Edge],
        utterance: str,
        state: ConversationState,
        history: Optional[List[str]] = None,
    ) -> RoutingDecision:
        candidates = self.router.get_candidate_connections(node_id, edges, state)
        if not candidates:
            return self._safe_default(node_id, edges, "No candidate connections available")

        scores = await self.scorer.score_connections(candidates, utterance, state, history or [])
        if not scores:
            return self._safe_default(node_id, edges, "No scores produced")
        top = scores[0]

        if top.score < self.clarification_threshold:
            if state.clarification_count >= self.max_clarifications:
                return self._safe_default(
                    node_id, edges, f"Exceeded max clarifications ({self.max_clarifications})"
                )
            return self._clarification(node_id, edges, top, candidates, scores)

        chosen = _find(candidates, top.connection_id)
        if chosen is None:
            return self._safe_default(node_id, edges, "Chosen candidate not found")

        if top.score < self.score_threshold:
            logger.info(f"Low confidence route {top.connection_id} ({top.score:.2f})")
            return RoutingDecision(
                chosen_connection_id=top.connection_id,
                chosen_context_card_id=top.context_card_id,
                score=top.score,
                reason=f"Low confidence selection: {top.reason}",
                candidates=scores,
                required_confirmation=chosen.card.requires_confirmation,
                low_confidence=True,
            )

        return RoutingDecision(
            chosen_connection_id=top.connection_id,
            chosen_context_card_id=top.context_card_id,
            score=top.score,
            reason=top.reason,
            candidates=scores,
            required_confirmation=chosen.card.requires_confirmation or chosen.card.risk_level == RiskLevel.HIGH,
        )

    def _clarification(
        self,
        node_id: str,
        edges: List[Edge],
        top: ConnectionScore,
        candidates: List[CandidateConnection],
        scores: List[ConnectionScore],
    ) -> RoutingDecision:
        target = self.fallback_node_id or self.default_safe_node_id
        fallback = self.router.get_fallback_connection(node_id, edges, target)
        if fallback is None:
            return self._safe_default(
                node_id, edges, f"Low confidence ({top.score:.2f}) and no clarification connection available"
            )
        return RoutingDecision(
            chosen_connection_id=fallback.connection_id,
            chosen_context_card_id=fallback.card.id,
            score=0.5,
            reason=f"Low confidence ({top.score:.2f}) - asking for clarification. Top candidate: {top.reason}",
            candidates=scores,
            used_fallback=True,
            clarification_question=self.generate_clarification_question(scores, candidates),
        )

    def _safe_default(self, node_id: str, edges: List[Edge], reason: str) -> RoutingDecision:
        target = self.default_safe_node_id or self.fallback_node_id
        safe = self.router.get_fallback_connection(node_id, edges, target)
        if safe is None:
            logger.warning(f"No safe default out of {node_id}: {reason}")
            return RoutingDecision(
                chosen_connection_id="",
                chosen_context_card_id="",
                score=0.0,
                reason=f"No safe default available: {reason}",
                used_fallback=True,
            )
        return RoutingDecision(
            chosen_connection_id=safe.connection_id,
            chosen_context_card_id=safe.card.id,
            score=0.3,
            reason=f"Safe default: {reason}",
            used_fallback=True,
        )

    def generate_clarification_question(
        self,
        scores: List[ConnectionScore],
        candidates: List[CandidateConnection],
    ) -> str:
        if not scores:
            return OPEN_QUESTION
        names = []
        for score in scores[:3]:
            candidate = _find(candidates, score.connection_id)
            names.append(candidate.card.name if candidate else "this option")

        if len(names) == 1:
            return f"Just to confirm, are you trying to {names[0].lower()}?"
        if len(names) == 2:
            return f"It sounds like you might be calling about {names[0]} or {names[1]}. Which is closer to what you want?"
        last = names.pop()
        return f"It sounds like you might be calling about {', '.join(names)}, or {last}. Which is closest to what you need?"

    def requires_confirmation(self, decision: RoutingDecision, candidates: List[CandidateConnection]) -> bool:
        if decision.required_confirmation:
            return True
        chosen = _find(candidates, decision.chosen_connection_id)
        if chosen is None:
            return False
        return chosen.card.requires_confirmation or chosen.card.risk_level == RiskLevel.HIGH


def _find(candidates: List[CandidateConnection], connection_id: str) -> Optional[CandidateConnection]:
    return next((c for c in candidates if c.connection_id == connection_id), None)
