"""
Delegation targets.

A target is resolved once, at registration, into either a ToolSpec (one
stateless handler call) or a DepartmentSpec (a multi-turn LLM exchange that
may call connected tools).
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from switchboard.exceptions import ValidationError

if TYPE_CHECKING:
    from switchboard.delegation.session import SessionFactory

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


@dataclass
class AgentParameter:
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str = ""


@dataclass
class ToolSpec:
    """A stateless tool agent wrapping one integration action."""
    agent_id: str
    name: str
    handler: ToolHandler
    parameters: List[AgentParameter] = field(default_factory=list)
    description: str = ""
    is_goal: bool = False
    timeout_ms: Optional[int] = None
    task: Optional[str] = None          # budget hint, e.g. "simple_query"
    agent_type: Optional[str] = None    # budget hint, e.g. "external_integration"

    def declaration(self) -> Dict[str, Any]:
        """JSON-schema function declaration handed to department sessions."""
        properties = {}
        for param in self.parameters:
            schema_type = "object" if param.type == ParameterType.JSON else param.type.value
            properties[param.name] = {"type": schema_type, "description": param.description}
        return {
            "name": self.name,
            "description": self.description or f"Execute {self.name}",
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": [p.name for p in self.parameters if p.required],
            },
        }


@dataclass
class DepartmentSpec:
    """A stateful sub-agent answering through a bounded tool-using exchange."""
    agent_id: str
    name: str
    session_factory: "SessionFactory"
    instructions: str = ""
    max_turns: Optional[int] = None     # None uses the coordinator default
    timeout_ms: Optional[int] = None
    task: Optional[str] = None
    agent_type: Optional[str] = None


AgentSpec = Union[ToolSpec, DepartmentSpec]


def _type_matches(expected: ParameterType, value: Any) -> bool:
    if expected == ParameterType.STRING:
        return isinstance(value, str)
    if expected == ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    return True


def validate_tool_args(spec: ToolSpec, args: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Check args against the tool's declared parameters.

    JSON parameters given as strings are decoded. Undeclared arguments pass
    through untouched.

    Raises:
        ValidationError: missing required parameter or wrong type
    """
    cleaned = dict(args or {})
    for param in spec.parameters:
        value = cleaned.get(param.name)
        if value is None or value == "":
            if param.required:
                raise ValidationError(
                    f"Missing required parameter '{param.name}' for {spec.name}",
                    details={"tool": spec.name, "parameter": param.name},
                )
            continue
        if param.type == ParameterType.JSON and isinstance(value, str):
            try:
                cleaned[param.name] = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValidationError(
                    f"Parameter '{param.name}' for {spec.name} is not valid JSON",
                    details={"tool": spec.name, "parameter": param.name},
                ) from e
            continue
        if not _type_matches(param.type, value):
            raise ValidationError(
                f"Parameter '{param.name}' for {spec.name} must be a {param.type.value}",
                details={"tool": spec.name, "parameter": param.name, "got": type(value).__name__},
            )
    return cleaned
