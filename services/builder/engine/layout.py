"""Layout engine: deterministic canvas positions for a loaded workflow graph.

Conditions are placed in rows by BFS depth from the initial step. Every
condition owns a horizontal span wide enough for both of its branches, true
on the left and false on the right, so sibling subtrees never overlap.
Positions are node centers.
"""

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Set
from services.builder.engine.graph import ConditionNode, TerminalNode, WorkflowGraph
from shared.constants import (
    COLUMN_WIDTH,
    LEVEL_GAP,
    ORIGIN_X,
    ORIGIN_Y,
    TERMINAL_GAP,
    TERMINAL_OFFSET_X,
    TERMINAL_OFFSET_Y,
)
from shared.types import Handle, Position

HANDLES = (Handle.TRUE, Handle.FALSE)


@dataclass
class Slot:
    terminal: Optional[str] = None
    child: Optional[str] = None


@dataclass
class Tree:
    order: List[str]
    levels: Dict[str, int]
    slots: Dict[str, Dict[Handle, Slot]]


def _claim_slot(graph: WorkflowGraph, node_id: str, handle: Handle, claimed: Set[str]) -> Slot:
    slot = Slot()
    edge = graph.edge_from(node_id, handle)
    if edge is None or edge.target in claimed:
        return slot

    target = graph.get_node(edge.target)
    if isinstance(target, TerminalNode):
        slot.terminal = target.id
        claimed.add(target.id)
        exit_edge = graph.edge_from(target.id, None)
        if exit_edge is not None and exit_edge.target not in claimed:
            if isinstance(graph.get_node(exit_edge.target), ConditionNode):
                slot.child = exit_edge.target
                claimed.add(exit_edge.target)
    elif isinstance(target, ConditionNode):
        slot.child = target.id
        claimed.add(target.id)
    return slot


def _build_tree(graph: WorkflowGraph, root: str, claimed: Set[str]) -> Tree:
    claimed.add(root)
    tree = Tree(order=[root], levels={root: 0}, slots={})
    queue = deque([root])
    while queue:
        node_id = queue.popleft()
        tree.slots[node_id] = {}
        for handle in HANDLES:
            slot = _claim_slot(graph, node_id, handle, claimed)
            tree.slots[node_id][handle] = slot
            if slot.child is not None:
                tree.levels[slot.child] = tree.levels[node_id] + 1
                tree.order.append(slot.child)
                queue.append(slot.child)
    return tree


def _slot_width(slot: Slot, widths: Dict[str, int]) -> int:
    width = widths.get(slot.child, 0) if slot.child else 0
    if slot.terminal is not None:
        width = max(width, 1)
    return width


def _place_tree(tree: Tree, top: float, positions: Dict[str, Position]) -> float:
    """Places one tree with its top row at ``top``; returns the lowest y used"""
    widths: Dict[str, int] = {}
    for node_id in reversed(tree.order):
        total = sum(_slot_width(slot, widths) for slot in tree.slots[node_id].values())
        widths[node_id] = max(1, total)

    depth = max(tree.levels.values())
    has_terminals = [False] * (depth + 1)
    for node_id in tree.order:
        if any(slot.terminal for slot in tree.slots[node_id].values()):
            has_terminals[tree.levels[node_id]] = True

    rows = [top]
    for level in range(depth):
        gap = LEVEL_GAP + (TERMINAL_GAP if has_terminals[level] else 0)
        rows.append(rows[-1] + gap)

    lowest = top
    span_left = {tree.order[0]: 0}
    for node_id in tree.order:
        left = span_left[node_id]
        center_x = ORIGIN_X + (left + widths[node_id] / 2) * COLUMN_WIDTH
        y = rows[tree.levels[node_id]]
        positions[node_id] = Position(x=center_x, y=y)
        lowest = max(lowest, y)

        cursor = left
        for handle in HANDLES:
            slot = tree.slots[node_id][handle]
            if slot.child is not None:
                span_left[slot.child] = cursor
            if slot.terminal is not None:
                side = -1 if handle == Handle.TRUE else 1
                positions[slot.terminal] = Position(
                    x=center_x + side * TERMINAL_OFFSET_X,
                    y=y + TERMINAL_OFFSET_Y,
                )
                lowest = max(lowest, y + TERMINAL_OFFSET_Y)
            cursor += _slot_width(slot, widths)
    return lowest


def _root_candidates(graph: WorkflowGraph, initial_node_id: Optional[str]) -> List[str]:
    conditions = graph.condition_nodes()
    candidates = []
    if initial_node_id and graph.get_condition(initial_node_id) is not None:
        candidates.append(initial_node_id)
    # Unreachable trees start from their own entry points first
    candidates.extend(n.id for n in conditions if not graph.incoming(n.id))
    candidates.extend(n.id for n in conditions)
    return candidates


def compute_layout(graph: WorkflowGraph, initial_node_id: Optional[str] = None) -> Dict[str, Position]:
    positions: Dict[str, Position] = {}
    claimed: Set[str] = set()
    top = ORIGIN_Y
    placed_any = False

    for root in _root_candidates(graph, initial_node_id):
        if root in claimed:
            continue
        if placed_any:
            top += LEVEL_GAP
        tree = _build_tree(graph, root, claimed)
        top = _place_tree(tree, top, positions)
        placed_any = True

    leftovers = [n for n in graph.nodes if n.id not in positions]
    if leftovers:
        row_y = top + LEVEL_GAP if placed_any else top
        for column, node in enumerate(leftovers):
            positions[node.id] = Position(x=ORIGIN_X + (column + 0.5) * COLUMN_WIDTH, y=row_y)

    return positions


def apply_layout(graph: WorkflowGraph, initial_node_id: Optional[str] = None) -> Dict[str, Position]:
    positions = compute_layout(graph, initial_node_id)
    for node in graph.nodes:
        if node.id in positions:
            node.position = positions[node.id]
    return positions
