"""
Department sessions.

A department talks to an opaque LLM session: each ``send`` takes either the
opening text or the function responses for the previous turn's tool calls,
and returns the next turn. ``ChatDepartmentSession`` implements this over an
OpenAI-compatible chat endpoint with tool calling.
"""

import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from switchboard.delegation.specs import DepartmentSpec

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionTurn:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    raw: Any = None


@dataclass
class FunctionResponse:
    id: str
    name: str
    response: Dict[str, Any]


SessionInput = Union[str, List[FunctionResponse]]


class DepartmentSession(Protocol):
    async def send(self, message: SessionInput) -> SessionTurn: ...


# (department, tool declarations) -> fresh session for one exchange
SessionFactory = Callable[[DepartmentSpec, List[Dict[str, Any]]], DepartmentSession]


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Unparseable tool arguments: {raw!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatDepartmentSession:
    """Multi-turn department session over a chat-completions client."""

    def __init__(self, client: Any, system_prompt: str, declarations: List[Dict[str, Any]]):
        self.client = client
        self.declarations = declarations
        self.messages: List[Dict[str, Any]] = []
        if system_prompt:
            self.messages.append({"role": "system", "content": system_prompt})

    async def send(self, message: SessionInput) -> SessionTurn:
        if isinstance(message, str):
            self.messages.append({"role": "user", "content": message})
        else:
            for fr in message:
                self.messages.append({
                    "role": "tool",
                    "tool_call_id": fr.id,
                    "content": json.dumps(fr.response, default=str),
                })

        kwargs: Dict[str, Any] = {}
        if self.declarations:
            kwargs["tools"] = [{"type": "function", "function": d} for d in self.declarations]
        reply = await self.client.chat(self.messages, **kwargs)
        self.messages.append(reply)

        calls = []
        for call in reply.get("tool_calls") or []:
            function = call.get("function") or {}
            calls.append(ToolCall(
                id=call.get("id") or f"call_{secrets.token_hex(4)}",
                name=function.get("name", ""),
                args=_parse_arguments(function.get("arguments")),
            ))
        return SessionTurn(text=reply.get("content") or "", tool_calls=calls, raw=reply)


def chat_session_factory(client: Any, preamble: Optional[str] = None) -> SessionFactory:
    """Build a SessionFactory that opens ChatDepartmentSessions on client."""

    def factory(department: DepartmentSpec, declarations: List[Dict[str, Any]]) -> DepartmentSession:
        prompt = "\n\n".join(p for p in (preamble, department.instructions) if p)
        return ChatDepartmentSession(client, prompt, declarations)

    return factory
