"""
Agent-to-agent message protocol.

Defines the message shape, per-type response policy, structural validation,
and helpers that build requests, correlated responses and clarifications.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from switchboard.exceptions import ValidationError


class MessageType(str, Enum):
    REQUEST = "REQUEST"
    QUERY = "QUERY"
    INFORM = "INFORM"
    CONFIRM = "CONFIRM"
    CLARIFY = "CLARIFY"
    ERROR = "ERROR"


class MessagePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class MessageTypePolicy:
    description: str
    requires_response: bool
    bidirectional: bool


MESSAGE_TYPES: Dict[MessageType, MessageTypePolicy] = {
    MessageType.INFORM: MessageTypePolicy("Agent provides information to another agent", False, False),
    MessageType.QUERY: MessageTypePolicy("Agent asks a question and expects an answer", True, True),
    MessageType.REQUEST: MessageTypePolicy("Agent requests an action to be performed", True, True),
    MessageType.CONFIRM: MessageTypePolicy("Agent confirms understanding or agreement", False, False),
    MessageType.CLARIFY: MessageTypePolicy("Agent asks for clarification on a previous message", True, True),
    MessageType.ERROR: MessageTypePolicy("Agent reports a failure to the sender", False, False),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{now_ms()}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class ConversationContext:
    thread_id: str
    session_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentMessage:
    """A single message between two agents. Never mutated once created."""
    id: str
    from_agent: str
    to: str
    type: Union[MessageType, str]
    content: Any
    timestamp: int
    context: Optional[ConversationContext]
    requires_response: bool = False
    correlation_id: Optional[str] = None
    priority: Optional[MessagePriority] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_agent,
            "to": self.to,
            "type": self.type.value if isinstance(self.type, MessageType) else self.type,
            "content": self.content,
            "timestamp": self.timestamp,
            "context": {
                "thread_id": self.context.thread_id,
                "session_id": self.context.session_id,
                "metadata": dict(self.context.metadata),
            } if self.context else None,
            "requires_response": self.requires_response,
            "correlation_id": self.correlation_id,
            "priority": self.priority.value if self.priority else None,
            "expires_at": self.expires_at,
        }


@dataclass
class ConversationThread:
    """Append-only log of messages under one conversational context."""
    id: str
    participants: List[str] = field(default_factory=list)
    messages: List[AgentMessage] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    status: str = "active"

    def append(self, message: AgentMessage) -> None:
        self.messages.append(message)
        for agent_id in (message.from_agent, message.to):
            if agent_id not in self.participants:
                self.participants.append(agent_id)
        self.updated_at = now_ms()


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


def _as_message_type(value: Any) -> Optional[MessageType]:
    if isinstance(value, MessageType):
        return value
    try:
        return MessageType(value)
    except ValueError:
        return None


def validate_protocol(message: AgentMessage) -> ValidationResult:
    """Structural check run before a message may enter any queue."""
    if not message.id or not message.from_agent or not message.to:
        return ValidationResult(False, "Message missing required fields (id, from, to)")

    if not message.type:
        return ValidationResult(False, "Message missing type")
    message_type = _as_message_type(message.type)
    if message_type is None:
        return ValidationResult(False, f"Invalid message type: {message.type}")

    if message.content is None:
        return ValidationResult(False, "Message missing content")

    if not message.timestamp or message.timestamp <= 0:
        return ValidationResult(False, "Invalid timestamp")

    if message.context is None or not message.context.thread_id:
        return ValidationResult(False, "Message missing conversation context")

    policy = MESSAGE_TYPES[message_type]
    if policy.requires_response != message.requires_response:
        return ValidationResult(
            False,
            f"Message type {message_type.value} requires requires_response={policy.requires_response}",
        )

    return ValidationResult(True)


def create_message(
    from_agent: str,
    to: str,
    message_type: Union[MessageType, str],
    content: Any,
    context: ConversationContext,
    correlation_id: Optional[str] = None,
    priority: Optional[Union[MessagePriority, str]] = None,
    expires_at: Optional[int] = None,
) -> AgentMessage:
    """Stamp id and timestamp, apply the type's response policy and validate."""
    resolved_type = _as_message_type(message_type)
    if resolved_type is None:
        raise ValidationError(f"Failed to create valid message: Invalid message type: {message_type}")

    message = AgentMessage(
        id=new_id("msg"),
        from_agent=from_agent,
        to=to,
        type=resolved_type,
        content=content,
        timestamp=now_ms(),
        context=context,
        requires_response=MESSAGE_TYPES[resolved_type].requires_response,
        correlation_id=correlation_id,
        priority=MessagePriority(priority) if priority else None,
        expires_at=expires_at,
    )

    validation = validate_protocol(message)
    if not validation.valid:
        raise ValidationError(f"Failed to create valid message: {validation.error}")
    return message


def create_response(
    original: AgentMessage,
    from_agent: str,
    content: Any,
    message_type: Union[MessageType, str] = MessageType.INFORM,
) -> AgentMessage:
    """Reply to the original sender, correlated to the original id."""
    return create_message(
        from_agent,
        original.from_agent,
        message_type,
        content,
        original.context,
        correlation_id=original.id,
        priority=original.priority,
    )


def create_clarification(original: AgentMessage, from_agent: str, question: str) -> AgentMessage:
    # Content stays a plain string so callers can search it for the question.
    return create_message(
        from_agent,
        original.from_agent,
        MessageType.CLARIFY,
        question,
        original.context,
        correlation_id=original.id,
        priority=original.priority or MessagePriority.HIGH,
    )
