"""Connection invariant enforcement for the workflow graph.

Invariants kept after every mutation:
  * each (condition, handle) has at most one outgoing edge
  * each node has at most one incoming edge
  * a terminal has at most one outgoing edge, and it targets a condition
  * deleting a condition takes its owned terminals and ephemeral direct
    targets with it

Structural violations are repaired, never reported to the caller.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union
from services.builder.engine.graph import (
    ConditionNode,
    Edge,
    NodeKind,
    TerminalNode,
    WorkflowGraph,
)
from shared.constants import CONDITION_PREFIX
from shared.exceptions import PersistenceError, StepDeleteError
from shared.types import Handle, Operator
from shared.utils import draft_node_id

StepDeleter = Callable[[int], None]


def coerce_handle(handle: Union[Handle, str, None]) -> Optional[Handle]:
    if handle is None or isinstance(handle, Handle):
        return handle
    try:
        return Handle(str(handle).lower())
    except ValueError:
        return None


class ConnectionEnforcer:

    def __init__(self, graph: WorkflowGraph, step_deleter: Optional[StepDeleter] = None):
        self.graph = graph
        self.step_deleter = step_deleter

    def add_condition(self, name: str = "", left_expression: str = "",
                      operator: Operator = Operator.EQ, right_expression: str = "",
                      **fields: Any) -> ConditionNode:
        node = ConditionNode(
            id=draft_node_id(CONDITION_PREFIX),
            name=name,
            left_expression=left_expression,
            operator=operator,
            right_expression=right_expression,
            **fields
        )
        self.graph.add_node(node)
        return node

    def add_terminal(self, kind: NodeKind, text: Optional[str] = None) -> TerminalNode:
        kind = NodeKind(kind)
        if kind == NodeKind.CONDITION:
            raise ValueError("add_terminal only creates success or fail nodes")
        node = TerminalNode(
            id=draft_node_id(kind.value),
            kind=kind.value,
            message=text if kind == NodeKind.SUCCESS else None,
            error=text if kind == NodeKind.FAIL else None,
        )
        self.graph.add_node(node)
        return node

    def update_node(self, node_id: str, patch: Dict[str, Any]) -> bool:
        return self.graph.update_node_data(node_id, patch)

    def connect(self, source: str, handle: Union[Handle, str, None], target: str) -> Optional[Edge]:
        """Connects source's handle to target, detaching whatever the new edge displaces"""
        graph = self.graph
        src, tgt = graph.get_node(source), graph.get_node(target)
        if src is None or tgt is None or source == target:
            return None

        if isinstance(src, TerminalNode):
            # A terminal has a single exit and may only chain into a further step
            if not isinstance(tgt, ConditionNode):
                return None
            handle = None
        else:
            handle = coerce_handle(handle)
            if handle is None:
                return None

        previous = graph.edge_from(source, handle)
        if previous is not None:
            if previous.target == target:
                return previous
            graph.remove_edge(previous.id)
            replaced = graph.get_node(previous.target)
            if (isinstance(replaced, TerminalNode) and handle is not None
                    and replaced.is_owned_by(source, handle)):
                graph.remove_node(replaced.id)
                logging.info("Dropped replaced inline action", extra={
                    "node_id": replaced.id,
                    "source": source,
                    "handle": handle.value
                })

        for edge in graph.incoming(target):
            graph.remove_edge(edge.id)

        if isinstance(tgt, TerminalNode) and handle is not None:
            tgt.owner_condition_id = source
            tgt.owner_handle = handle

        return graph.add_edge(source, handle, target)

    def disconnect(self, edge_id: str) -> bool:
        return self.graph.remove_edge(edge_id)

    def cascade_set(self, node_id: str) -> List[str]:
        """Ids removed together with node_id, in removal order"""
        graph = self.graph
        node = graph.get_node(node_id)
        if node is None:
            return []
        doomed = [node_id]
        if isinstance(node, TerminalNode):
            return doomed

        for terminal in graph.terminal_nodes():
            if terminal.is_owned_by(node_id) and terminal.id not in doomed:
                doomed.append(terminal.id)

        for edge in graph.outgoing(node_id):
            target = graph.get_node(edge.target)
            if target is None or target.id in doomed:
                continue
            if target.persisted_id is None and len(graph.incoming(target.id)) == 1:
                doomed.append(target.id)
        return doomed

    def delete_node(self, node_id: str) -> List[str]:
        """Deletes a node and its dependents; returns the removed ids.

        A persisted condition is deleted remotely first. If that fails the
        graph is left untouched and StepDeleteError is raised.
        """
        node = self.graph.get_node(node_id)
        if node is None:
            return []

        doomed = self.cascade_set(node_id)

        if isinstance(node, ConditionNode) and node.step_id is not None and self.step_deleter:
            try:
                self.step_deleter(node.step_id)
            except PersistenceError as e:
                logging.error("Step delete failed, keeping node", extra={
                    "node_id": node_id,
                    "step_id": node.step_id,
                    "error": e.error.error_message
                })
                raise StepDeleteError(node.step_id, e.error) from e

        for doomed_id in doomed:
            self.graph.remove_node(doomed_id)

        if len(doomed) > 1:
            logging.info("Cascade delete", extra={"node_id": node_id, "removed": doomed})
        return doomed


def find_violations(graph: WorkflowGraph) -> List[str]:
    """Lists every broken connection invariant; empty when the graph is consistent"""
    problems = []
    seen_exits = set()
    seen_targets = set()
    ids = set()

    for node in graph.nodes:
        if node.id in ids:
            problems.append(f"duplicate node id {node.id}")
        ids.add(node.id)

    for edge in graph.edges:
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None or target is None:
            problems.append(f"dangling edge {edge.id}")
            continue
        exit_key = (edge.source, edge.source_handle)
        if exit_key in seen_exits:
            problems.append(f"multiple edges leave {edge.source}:{edge.source_handle}")
        seen_exits.add(exit_key)
        if edge.target in seen_targets:
            problems.append(f"multiple edges enter {edge.target}")
        seen_targets.add(edge.target)
        if isinstance(source, TerminalNode) and not isinstance(target, ConditionNode):
            problems.append(f"terminal {edge.source} chains into non-condition {edge.target}")
        if isinstance(source, ConditionNode) and edge.source_handle is None:
            problems.append(f"condition edge {edge.id} has no handle")

    return problems
