from .events import CommunicationEvent, EventDispatcher
from .manager import CommunicationConfig, CommunicationManager, calculate_priority
from .protocol import (
    MESSAGE_TYPES,
    AgentMessage,
    ConversationContext,
    ConversationThread,
    MessagePriority,
    MessageType,
    ValidationResult,
    create_clarification,
    create_message,
    create_response,
    validate_protocol,
)
from .router import MessageRouter

__all__ = [
    "MESSAGE_TYPES",
    "AgentMessage",
    "CommunicationConfig",
    "CommunicationEvent",
    "CommunicationManager",
    "ConversationContext",
    "ConversationThread",
    "EventDispatcher",
    "MessagePriority",
    "MessageRouter",
    "MessageType",
    "ValidationResult",
    "calculate_priority",
    "create_clarification",
    "create_message",
    "create_response",
    "validate_protocol",
]
