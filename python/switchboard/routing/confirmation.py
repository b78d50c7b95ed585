"""Confirmation prompts for risky or flagged connections."""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from switchboard.routing.cards import ContextCard, RiskLevel, RoutingDecision

logger = logging.getLogger(__name__)

POSITIVE_INDICATORS = (
    "yes", "yeah", "yep", "correct", "right", "that's right",
    "sure", "ok", "okay", "go ahead", "proceed", "do it",
    "confirm", "confirmed", "affirmative",
)
NEGATIVE_INDICATORS = (
    "no", "nope", "wrong", "incorrect", "stop", "cancel",
    "don't", "do not", "wait", "hold on",
)
CONFIRMATION_KEYWORDS = (
    "yes", "no", "confirm", "correct", "right", "wrong",
    "yeah", "nope", "sure", "ok", "okay",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ConfirmationRequest:
    connection_id: str
    context_card_id: str
    message: str
    risk_level: RiskLevel
    query: str = ""
    timestamp: int = field(default_factory=_now_ms)


@dataclass
class ConfirmationResult:
    confirmed: bool
    user_response: str
    timestamp: int = field(default_factory=_now_ms)


class ConfirmationHandler:
    def __init__(self) -> None:
        self._pending: Dict[str, ConfirmationRequest] = {}

    def requires_confirmation(self, decision: RoutingDecision, card: ContextCard) -> bool:
        return decision.required_confirmation or card.requires_confirmation or card.risk_level == RiskLevel.HIGH

    def generate_confirmation_message(self, card: ContextCard) -> str:
        purpose = card.purpose.lower()
        if card.system_prompt_additions and "confirmation" in card.system_prompt_additions:
            base = card.system_prompt_additions
        else:
            base = "I want to make sure I understand correctly. "

        if card.risk_level == RiskLevel.HIGH:
            notes = card.risk_notes or "may have significant consequences"
            return f"{base}You're asking me to {purpose}. This is an important action that {notes}. Is that correct?"
        if card.requires_confirmation:
            return f"{base}You want me to {purpose}. Is that right?"
        return f"Just to confirm, you want me to {purpose}?"

    def create_confirmation_request(
        self,
        decision: RoutingDecision,
        card: ContextCard,
        query: str = "",
    ) -> Tuple[str, ConfirmationRequest]:
        request_id = f"confirm_{_now_ms()}_{secrets.token_hex(4)}"
        request = ConfirmationRequest(
            connection_id=decision.chosen_connection_id,
            context_card_id=decision.chosen_context_card_id,
            message=self.generate_confirmation_message(card),
            risk_level=card.risk_level,
            query=query,
        )
        self._pending[request_id] = request
        return request_id, request

    def process_confirmation_response(self, user_response: str, request_id: Optional[str] = None) -> ConfirmationResult:
        """Positive words and no negative words means confirmed; any request_id is consumed."""
        lowered = user_response.lower().strip()
        confirmed = (
            any(word in lowered for word in POSITIVE_INDICATORS)
            and not any(word in lowered for word in NEGATIVE_INDICATORS)
        )
        if request_id:
            self._pending.pop(request_id, None)
        return ConfirmationResult(confirmed=confirmed, user_response=user_response)

    def is_confirmation_response(self, response: str) -> bool:
        lowered = response.lower().strip()
        return any(keyword in lowered for keyword in CONFIRMATION_KEYWORDS)

    def get_request(self, request_id: str) -> Optional[ConfirmationRequest]:
        return self._pending.get(request_id)

    def discard(self, request_id: str) -> Optional[ConfirmationRequest]:
        return self._pending.pop(request_id, None)

    def get_pending_confirmation(self, connection_id: str) -> Optional[ConfirmationRequest]:
        for request in self._pending.values():
            if request.connection_id == connection_id:
                return request
        return None

    def clear_pending_confirmations(self) -> None:
        self._pending.clear()

    def clear_old_confirmations(self, timeout_ms: int = 60000) -> int:
        now = _now_ms()
        expired = [rid for rid, req in self._pending.items() if now - req.timestamp > timeout_ms]
        for rid in expired:
            del self._pending[rid]
        if expired:
            logger.debug("Dropped %d stale confirmation requests", len(expired))
        return len(expired)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
