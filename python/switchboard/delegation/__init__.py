"""Delegation to tool agents and department sub-agents."""

from .coordinator import DelegationConfig, DelegationCoordinator
from .registry import AgentRegistry
from .session import (
    ChatDepartmentSession,
    DepartmentSession,
    FunctionResponse,
    SessionFactory,
    SessionTurn,
    ToolCall,
    chat_session_factory,
)
from .specs import (
    AgentParameter,
    AgentSpec,
    DepartmentSpec,
    ParameterType,
    ToolSpec,
    validate_tool_args,
)

__all__ = [
    "AgentParameter",
    "AgentRegistry",
    "AgentSpec",
    "ChatDepartmentSession",
    "DelegationConfig",
    "DelegationCoordinator",
    "DepartmentSession",
    "DepartmentSpec",
    "FunctionResponse",
    "ParameterType",
    "SessionFactory",
    "SessionTurn",
    "ToolCall",
    "ToolSpec",
    "chat_session_factory",
    "validate_tool_args",
]
