"""In-memory workflow graph: condition nodes, terminal nodes and labeled edges.

The graph only offers primitive mutations. It keeps edges free of dangling
references but knows nothing about the branching invariants; those live in
``ConnectionEnforcer``. Every mutation that names an unknown id is a no-op.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from shared.types import Handle, Operator, Position
from shared.utils import edge_id


class NodeKind(str, Enum):
    CONDITION = "condition"
    SUCCESS = "success"
    FAIL = "fail"


class ActionKind(str, Enum):
    PROCEED_TO_STEP = "ProceedToStep"
    COMPLETE_SUCCESS = "CompleteSuccess"
    COMPLETE_FAILURE = "CompleteFailure"


class EdgeTag(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    NEUTRAL = "neutral"


class ActionData(BaseModel):
    next_step_id: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    note: Optional[str] = None


class ActionDescriptor(BaseModel):
    kind: ActionKind
    data: ActionData = Field(default_factory=ActionData)


class ConditionNode(BaseModel):
    """One validation check with a true and a false branch"""
    kind: Literal["condition"] = "condition"
    id: str
    step_id: Optional[int] = None
    name: str = ""
    description: str = ""
    left_expression: str = ""
    operator: Operator = Operator.EQ
    right_expression: str = ""
    on_true: Optional[ActionDescriptor] = None
    on_false: Optional[ActionDescriptor] = None
    failure_message: Optional[str] = None
    is_active: bool = True
    position: Position = Field(default_factory=Position)

    @property
    def persisted_id(self) -> Optional[int]:
        return self.step_id

    def action_for(self, handle: Handle) -> Optional[ActionDescriptor]:
        return self.on_true if handle == Handle.TRUE else self.on_false

    def set_action(self, handle: Handle, action: ActionDescriptor) -> None:
        if handle == Handle.TRUE:
            self.on_true = action
        else:
            self.on_false = action


class TerminalNode(BaseModel):
    """Inline success/fail outcome. Never persisted as a step of its own."""
    kind: Literal["success", "fail"]
    id: str
    owner_condition_id: Optional[str] = None
    owner_handle: Optional[Handle] = None
    message: Optional[str] = None
    error: Optional[str] = None
    position: Position = Field(default_factory=Position)

    @property
    def persisted_id(self) -> Optional[int]:
        return None

    @property
    def text(self) -> Optional[str]:
        return self.message if self.kind == NodeKind.SUCCESS else self.error

    def is_owned_by(self, condition_id: str, handle: Optional[Handle] = None) -> bool:
        if self.owner_condition_id != condition_id:
            return False
        return handle is None or self.owner_handle == handle


GraphNode = Annotated[Union[ConditionNode, TerminalNode], Field(discriminator="kind")]


class Edge(BaseModel):
    id: str
    source: str
    source_handle: Optional[Handle] = None
    target: str
    tag: EdgeTag = EdgeTag.NEUTRAL

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id


def tag_for_handle(handle: Optional[Handle]) -> EdgeTag:
    if handle == Handle.TRUE:
        return EdgeTag.ACCEPT
    if handle == Handle.FALSE:
        return EdgeTag.REJECT
    return EdgeTag.NEUTRAL


PROTECTED_FIELDS = {"id", "kind"}


class WorkflowGraph(BaseModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    # Reads

    def get_node(self, node_id: str) -> Optional[Union[ConditionNode, TerminalNode]]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def get_condition(self, node_id: str) -> Optional[ConditionNode]:
        node = self.get_node(node_id)
        return node if isinstance(node, ConditionNode) else None

    def condition_nodes(self) -> List[ConditionNode]:
        return [n for n in self.nodes if isinstance(n, ConditionNode)]

    def terminal_nodes(self) -> List[TerminalNode]:
        return [n for n in self.nodes if isinstance(n, TerminalNode)]

    def get_edge(self, edge_id_: str) -> Optional[Edge]:
        for edge in self.edges:
            if edge.id == edge_id_:
                return edge
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def edge_from(self, node_id: str, handle: Optional[Handle]) -> Optional[Edge]:
        for edge in self.edges:
            if edge.source == node_id and edge.source_handle == handle:
                return edge
        return None

    def edge_into(self, node_id: str) -> Optional[Edge]:
        for edge in self.edges:
            if edge.target == node_id:
                return edge
        return None

    # Primitive mutations

    def add_node(self, node: Union[ConditionNode, TerminalNode]) -> bool:
        if self.has_node(node.id):
            return False
        self.nodes.append(node)
        return True

    def remove_node(self, node_id: str) -> bool:
        if not self.has_node(node_id):
            return False
        self.nodes = [n for n in self.nodes if n.id != node_id]
        self.edges = [e for e in self.edges if not e.touches(node_id)]
        return True

    def add_edge(self, source: str, handle: Optional[Handle], target: str) -> Optional[Edge]:
        if not self.has_node(source) or not self.has_node(target):
            return None
        new_id = edge_id(source, handle.value if handle else None, target)
        existing = self.get_edge(new_id)
        if existing:
            return existing
        edge = Edge(id=new_id, source=source, source_handle=handle, target=target,
                    tag=tag_for_handle(handle))
        self.edges.append(edge)
        return edge

    def remove_edge(self, edge_id_: str) -> bool:
        before = len(self.edges)
        self.edges = [e for e in self.edges if e.id != edge_id_]
        return len(self.edges) != before

    def update_node_data(self, node_id: str, patch: Dict[str, Any]) -> bool:
        """Merges patch into the node; unknown fields, id and kind are ignored"""
        for index, node in enumerate(self.nodes):
            if node.id != node_id:
                continue
            allowed = {
                k: v for k, v in patch.items()
                if k in type(node).model_fields and k not in PROTECTED_FIELDS
            }
            if not allowed:
                return False
            merged = node.model_dump()
            merged.update(allowed)
            self.nodes[index] = type(node).model_validate(merged)
            return True
        return False

    def snapshot_copy(self) -> "WorkflowGraph":
        return self.model_copy(deep=True)
