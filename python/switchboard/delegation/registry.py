"""Registry of delegation targets and the edges between them."""

import logging
from typing import Dict, List, Optional

from switchboard.delegation.specs import AgentSpec, DepartmentSpec, ToolSpec
from switchboard.exceptions import ValidationError
from switchboard.routing.cards import Edge

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Tool and department specs keyed by agent id, plus the agent graph.

    Edges out of a department name the tools it may call; edges out of a
    node without a spec make that node a routing point.
    """

    def __init__(self) -> None:
        self._specs: Dict[str, AgentSpec] = {}
        self._edges: Dict[str, Edge] = {}

    def _register(self, spec: AgentSpec) -> None:
        if spec.agent_id in self._specs:
            logger.warning(f"Replacing registered agent {spec.agent_id}")
        self._specs[spec.agent_id] = spec

    def register_tool(self, spec: ToolSpec) -> ToolSpec:
        self._register(spec)
        logger.info(f"Registered tool {spec.name} ({spec.agent_id})")
        return spec

    def register_department(self, spec: DepartmentSpec) -> DepartmentSpec:
        self._register(spec)
        logger.info(f"Registered department {spec.name} ({spec.agent_id})")
        return spec

    def unregister(self, agent_id: str) -> Optional[AgentSpec]:
        spec = self._specs.pop(agent_id, None)
        for edge_id in [e.id for e in self._edges.values() if agent_id in (e.source, e.target)]:
            del self._edges[edge_id]
        return spec

    def connect(self, source: str, target: str, edge_id: Optional[str] = None) -> Edge:
        if source == target:
            raise ValidationError(f"Cannot connect {source} to itself")
        edge = Edge(id=edge_id or f"{source}->{target}", source=source, target=target)
        self._edges[edge.id] = edge
        return edge

    def disconnect(self, edge_id: str) -> bool:
        return self._edges.pop(edge_id, None) is not None

    # ── Lookup ──────────────────────────────────────────────────────

    def get(self, agent_id: str) -> Optional[AgentSpec]:
        return self._specs.get(agent_id)

    def get_tool_by_name(self, name: str) -> Optional[ToolSpec]:
        for spec in self._specs.values():
            if isinstance(spec, ToolSpec) and spec.name == name:
                return spec
        return None

    def find_by_name(self, name: str) -> Optional[AgentSpec]:
        for spec in self._specs.values():
            if spec.name == name:
                return spec
        return None

    def edges_from(self, node_id: str) -> List[Edge]:
        return [e for e in self._edges.values() if e.source == node_id]

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges.values())

    def connected_tools(self, department_id: str) -> List[ToolSpec]:
        tools = []
        for edge in self.edges_from(department_id):
            spec = self._specs.get(edge.target)
            if isinstance(spec, ToolSpec):
                tools.append(spec)
        return tools

    def is_connected(self, source: str, target: str) -> bool:
        return any(e.source == source and e.target == target for e in self._edges.values())

    def is_routing_node(self, node_id: str) -> bool:
        return node_id not in self._specs and bool(self.edges_from(node_id))

    def tools(self) -> List[ToolSpec]:
        return [s for s in self._specs.values() if isinstance(s, ToolSpec)]

    def departments(self) -> List[DepartmentSpec]:
        return [s for s in self._specs.values() if isinstance(s, DepartmentSpec)]

    def summary(self) -> Dict[str, int]:
        return {"tools": len(self.tools()), "departments": len(self.departments()), "edges": len(self._edges)}
