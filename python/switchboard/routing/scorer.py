"""
LLM-backed connection scoring with rule-based adjustments.

Scoring never raises to the caller: if the LLM call or its reply is
unusable, keyword matching against each card takes over.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from switchboard.llm.client import LLMClient
from switchboard.routing.cards import (
    CandidateConnection,
    ConnectionScore,
    ConversationState,
    RiskLevel,
)

logger = logging.getLogger(__name__)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")

SCORE_GUIDELINES = """Score guidelines:
- 80-100: Excellent match, connection directly addresses the caller's intent
- 60-79: Good match, connection is relevant but may need some adaptation
- 40-59: Moderate match, connection is somewhat relevant but not ideal
- 20-39: Poor match, connection is only tangentially related
- 0-19: Very poor match, connection does not address the caller's intent

Be strict with scoring - only give high scores (70+) when the connection is clearly the right choice."""


@dataclass
class ScoringOptions:
    use_rule_based_boosts: bool = True
    risk_penalty_multiplier: float = 0.8
    low_risk_boost: float = 1.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ConnectionScorer:
    """Scores candidate connections against the caller's utterance."""

    def __init__(self, llm: Optional[LLMClient] = None, options: Optional[ScoringOptions] = None):
        self.llm = llm
        self.options = options or ScoringOptions()

    async def score_connections(
        self,
        candidates: List[CandidateConnection],
        utterance: str,
        state: ConversationState,
        history: Optional[List[str]] = None,
    ) -> List[ConnectionScore]:
        """Scores for every candidate, best first."""
        if not candidates:
            return []

        if self.llm is None:
            return self.fallback_scoring(candidates, state, utterance)

        prompt = self.build_scoring_prompt(candidates, utterance, state, history or [])
        try:
            scores = await self._llm_scores(prompt, candidates)
        except Exception as e:
            logger.error(f"Error scoring connections, using keyword fallback: {e}")
            return self.fallback_scoring(candidates, state, utterance)

        if self.options.use_rule_based_boosts:
            scores = self.apply_rule_based_boosts(scores, candidates)
        scores.sort(key=lambda s: s.score, reverse=True)
        return scores

    def build_scoring_prompt(
        self,
        candidates: List[CandidateConnection],
        utterance: str,
        state: ConversationState,
        history: List[str],
    ) -> str:
        intent = state.current_intent
        if intent:
            intent_info = (
                f"Current Intent: {intent.intent_label} (confidence: {intent.confidence:.2f})\n"
                f"Entities: {json.dumps(intent.entities)}\n"
                f"Urgency: {intent.urgency}"
            )
        else:
            intent_info = "No clear intent detected"

        history_text = ""
        if history:
            history_text = "\nRecent Conversation:\n" + "\n".join(history[-3:])

        blocks = []
        for index, candidate in enumerate(candidates, start=1):
            card = candidate.card
            lines = [
                f"Connection {index} (ID: {candidate.connection_id}):",
                f"- Name: {card.name}",
                f"- Purpose: {card.purpose}",
                f"- When to use: {card.when_to_use}",
            ]
            if card.when_not_to_use:
                lines.append(f"- When NOT to use: {card.when_not_to_use}")
            if card.example_phrases:
                lines.append(f"- Example phrases: {', '.join(card.example_phrases)}")
            if card.usage_examples:
                lines.append("- Usage examples:\n" + "\n".join(f"  * {ex}" for ex in card.usage_examples))
            lines.append(f"- Risk level: {card.risk_level.value}")
            lines.append(f"- Priority: {card.priority}")
            blocks.append("\n".join(lines))

        return f"""You are a routing assistant helping to choose the best connection for a caller's request.

{intent_info}
{history_text}

Caller's current utterance: "{utterance}"

Available Connections:
{chr(10).join(blocks)}

For each connection, provide:
1. A score from 0-100 indicating how well this connection matches the caller's intent
2. A brief reason (1-2 sentences) explaining why this score was given

Return a JSON array with this format:
[
  {{"connectionId": "connection_id", "score": 85, "reason": "This connection matches well because..."}}
]

{SCORE_GUIDELINES}"""

    async def _llm_scores(self, prompt: str, candidates: List[CandidateConnection]) -> List[ConnectionScore]:
        text = await self.llm.complete([{"role": "user", "content": prompt}], temperature=0)
        return self.parse_scores(text, candidates)

    def parse_scores(self, text: str, candidates: List[CandidateConnection]) -> List[ConnectionScore]:
        """Read the first JSON array in text; unscored candidates get 0."""
        match = _JSON_ARRAY.search(text or "")
        if not match:
            raise ValueError("No JSON array found in LLM response")
        parsed = json.loads(match.group(0))

        by_id = {c.connection_id: c for c in candidates}
        scores = {}
        for item in parsed:
            if not isinstance(item, dict):
                continue
            candidate = by_id.get(item.get("connectionId"))
            if candidate is None or candidate.connection_id in scores:
                continue
            try:
                raw = float(item.get("score", 0))
            except (TypeError, ValueError):
                raw = 0.0
            scores[candidate.connection_id] = ConnectionScore(
                connection_id=candidate.connection_id,
                context_card_id=candidate.card.id,
                score=_clamp(raw / 100),
                reason=item.get("reason") or "No reason provided",
            )

        for candidate in candidates:
            if candidate.connection_id not in scores:
                scores[candidate.connection_id] = ConnectionScore(
                    connection_id=candidate.connection_id,
                    context_card_id=candidate.card.id,
                    score=0.0,
                    reason="No score provided by LLM",
                )
        return list(scores.values())

    def apply_rule_based_boosts(
        self,
        scores: List[ConnectionScore],
        candidates: List[CandidateConnection],
    ) -> List[ConnectionScore]:
        by_id = {c.connection_id: c for c in candidates}
        adjusted = []
        for score in scores:
            candidate = by_id.get(score.connection_id)
            if candidate is None:
                adjusted.append(score)
                continue
            card = candidate.card
            boost = 0.0
            risk_penalty = 0.0
            if card.risk_level == RiskLevel.LOW:
                boost = score.score * (self.options.low_risk_boost - 1)
            if card.risk_level == RiskLevel.HIGH:
                risk_penalty = score.score * (1 - self.options.risk_penalty_multiplier)
            priority_boost = card.priority * 0.01

            adjusted.append(ConnectionScore(
                connection_id=score.connection_id,
                context_card_id=score.context_card_id,
                score=_clamp(score.score + boost - risk_penalty + priority_boost),
                reason=score.reason,
                metadata={
                    **score.metadata,
                    "rule_based_boost": boost,
                    "risk_penalty": risk_penalty,
                    "priority_boost": priority_boost,
                },
            ))
        return adjusted

    def fallback_scoring(
        self,
        candidates: List[CandidateConnection],
        state: ConversationState,
        utterance: str = "",
    ) -> List[ConnectionScore]:
        """Keyword matching of the intent label and utterance against each card."""
        intent_label = state.current_intent.intent_label if state.current_intent else ""
        probes = [p.lower() for p in (intent_label, utterance) if p and p.strip()]

        scores = []
        for candidate in candidates:
            card = candidate.card
            name = card.name.lower()
            purpose = card.purpose.lower()
            score = 0.5

            if any(p in name or p in purpose for p in probes):
                score = 0.7
            for phrase in card.example_phrases:
                if phrase and any(phrase.lower() in p for p in probes):
                    score = 0.8
                    break
            if card.risk_level == RiskLevel.HIGH:
                score *= self.options.risk_penalty_multiplier

            scores.append(ConnectionScore(
                connection_id=candidate.connection_id,
                context_card_id=card.id,
                score=score,
                reason="Fallback scoring: basic keyword matching",
                metadata={"fallback": True},
            ))
        scores.sort(key=lambda s: s.score, reverse=True)
        return scores
