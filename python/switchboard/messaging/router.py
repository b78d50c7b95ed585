"""Registry mapping agent ids to async message handlers."""

import logging
from typing import Any, Awaitable, Callable, Dict, List

from switchboard.exceptions import NoHandlerError, ValidationError
from switchboard.messaging.protocol import AgentMessage, validate_protocol

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AgentMessage], Awaitable[Any]]
UnregisterListener = Callable[[str], None]


class MessageRouter:
    """Routes one message to the one handler registered for ``message.to``."""

    def __init__(self):
        self._routing_table: Dict[str, MessageHandler] = {}
        self._unregister_listeners: List[UnregisterListener] = []

    def register(self, agent_id: str, handler: MessageHandler) -> None:
        if agent_id in self._routing_table:
            logger.info("Replacing handler for agent %s", agent_id)
        self._routing_table[agent_id] = handler

    def unregister(self, agent_id: str) -> None:
        """Remove the handler and let listeners fail any work naming the agent."""
        if self._routing_table.pop(agent_id, None) is None:
            return
        for listener in list(self._unregister_listeners):
            listener(agent_id)

    def add_unregister_listener(self, listener: UnregisterListener) -> Callable[[], None]:
        self._unregister_listeners.append(listener)

        def remove() -> None:
            if listener in self._unregister_listeners:
                self._unregister_listeners.remove(listener)

        return remove

    async def route(self, message: AgentMessage) -> Any:
        handler = self._routing_table.get(message.to)
        if handler is None:
            raise NoHandlerError(f"No handler registered for agent: {message.to}", details={"agent_id": message.to})

        validation = validate_protocol(message)
        if not validation.valid:
            raise ValidationError(f"Invalid message protocol: {validation.error}")

        return await handler(message)

    def has_handler(self, agent_id: str) -> bool:
        return agent_id in self._routing_table

    def get_registered_agents(self) -> List[str]:
        return list(self._routing_table)
