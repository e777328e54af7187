"""Translation between the workflow graph and the persisted ordered step list.

Load turns every step into a condition node and every inline
complete_success/complete_failure action into an owned terminal node.
Save walks each condition's branches back into actions and diffs the result
against the snapshot taken at load time (or after the last successful save).

Action data is normalized by kind: complete_success carries ``message``,
complete_failure carries ``error``, proceed actions carry ``next_step_id``
and an optional ``note``. The snapshot holds normalized values too, so an
unedited graph always diffs to nothing.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from services.builder.engine.graph import (
    ActionData,
    ActionDescriptor,
    ActionKind,
    ConditionNode,
    NodeKind,
    TerminalNode,
    WorkflowGraph,
)
from shared.constants import (
    DEFAULT_FAILURE_ERROR,
    DEFAULT_SUCCESS_MESSAGE,
    FAIL_PREFIX,
    SUCCESS_PREFIX,
)
from shared.types import (
    ExecutionPoint,
    Handle,
    Step,
    StepAction,
    StepCreate,
    StepFields,
    StepUpdate,
    WorkflowDetail,
    WorkflowMetadata,
    WorkflowStatus,
)
from shared.utils import condition_node_id, terminal_node_id

HANDLES = (Handle.TRUE, Handle.FALSE)


def _slot_fields(handle: Handle) -> Tuple[str, str]:
    return f"if_{handle.value}_action", f"if_{handle.value}_action_data"


def _first_text(data: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


# Action conversion

def action_from_wire(action: StepAction, data: Dict[str, Any],
                     next_in_order: Optional[int] = None) -> ActionDescriptor:
    """Reads a stored action into a descriptor, tolerating mixed-up payload keys"""
    data = data or {}
    if action == StepAction.COMPLETE_SUCCESS:
        return ActionDescriptor(
            kind=ActionKind.COMPLETE_SUCCESS,
            data=ActionData(message=_first_text(data, ("message", "note", "error")))
        )
    if action == StepAction.COMPLETE_FAILURE:
        return ActionDescriptor(
            kind=ActionKind.COMPLETE_FAILURE,
            data=ActionData(error=_first_text(data, ("error", "message", "note")))
        )

    next_step_id = data.get("next_step_id")
    if next_step_id is None and action == StepAction.PROCEED_TO_STEP:
        # "Proceed to next step" without an explicit target means the next one in order
        next_step_id = next_in_order
    return ActionDescriptor(
        kind=ActionKind.PROCEED_TO_STEP,
        data=ActionData(next_step_id=next_step_id, note=_first_text(data, ("note", "message")))
    )


def action_to_wire(descriptor: ActionDescriptor) -> Tuple[StepAction, Dict[str, Any]]:
    data = descriptor.data
    if descriptor.kind == ActionKind.COMPLETE_SUCCESS:
        return StepAction.COMPLETE_SUCCESS, ({"message": data.message} if data.message else {})
    if descriptor.kind == ActionKind.COMPLETE_FAILURE:
        return StepAction.COMPLETE_FAILURE, ({"error": data.error} if data.error else {})

    payload: Dict[str, Any] = {}
    if data.next_step_id is not None:
        payload["next_step_id"] = data.next_step_id
    if data.note:
        payload["note"] = data.note
    if data.next_step_id is None:
        return StepAction.PROCEED_TO_STEP, payload
    return StepAction.PROCEED_TO_STEP_BY_ID, payload


def default_action(handle: Handle) -> ActionDescriptor:
    if handle == Handle.TRUE:
        return ActionDescriptor(kind=ActionKind.COMPLETE_SUCCESS,
                                data=ActionData(message=DEFAULT_SUCCESS_MESSAGE))
    return ActionDescriptor(kind=ActionKind.COMPLETE_FAILURE,
                            data=ActionData(error=DEFAULT_FAILURE_ERROR))


def proceed_action(next_step_id: Optional[int], note: Optional[str]) -> ActionDescriptor:
    return ActionDescriptor(kind=ActionKind.PROCEED_TO_STEP,
                            data=ActionData(next_step_id=next_step_id, note=note))


def terminal_action(terminal: TerminalNode) -> ActionDescriptor:
    if terminal.kind == NodeKind.SUCCESS:
        return ActionDescriptor(kind=ActionKind.COMPLETE_SUCCESS,
                                data=ActionData(message=terminal.message))
    return ActionDescriptor(kind=ActionKind.COMPLETE_FAILURE,
                            data=ActionData(error=terminal.error))


def same_value(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


# Snapshot

class WorkflowSnapshot(BaseModel):
    """Last-known persisted field values per step id. Replaced, never mutated."""
    model_config = ConfigDict(frozen=True)

    steps: Dict[int, StepFields] = Field(default_factory=dict)

    def get(self, step_id: int) -> Optional[StepFields]:
        return self.steps.get(step_id)

    def with_steps(self, entries: Dict[int, StepFields]) -> "WorkflowSnapshot":
        merged = dict(self.steps)
        merged.update(entries)
        return WorkflowSnapshot(steps=merged)

    def without_step(self, step_id: int) -> "WorkflowSnapshot":
        return WorkflowSnapshot(steps={k: v for k, v in self.steps.items() if k != step_id})


def fields_from_node(node: ConditionNode) -> StepFields:
    """Fields as stored on the node itself, ignoring edges"""
    true_action, true_data = action_to_wire(node.on_true or default_action(Handle.TRUE))
    false_action, false_data = action_to_wire(node.on_false or default_action(Handle.FALSE))
    return StepFields(
        name=node.name,
        description=node.description,
        left_expression=node.left_expression,
        operation=node.operator,
        right_expression=node.right_expression,
        if_true_action=true_action,
        if_true_action_data=true_data,
        if_false_action=false_action,
        if_false_action_data=false_data,
        failure_message=node.failure_message,
        is_active=node.is_active,
    )


def apply_update(previous: Optional[StepFields], update: StepUpdate) -> Optional[StepFields]:
    if previous is None:
        return None
    changes = update.model_dump(exclude_unset=True, exclude={"step_id"})
    return StepFields.model_validate({**previous.model_dump(), **changes})


# Load

@dataclass
class LoadedWorkflow:
    graph: WorkflowGraph
    snapshot: WorkflowSnapshot
    metadata: WorkflowMetadata
    initial_node_id: Optional[str] = None


def _metadata_from_detail(detail: WorkflowDetail) -> WorkflowMetadata:
    execution_point = None
    if detail.execution_point:
        try:
            execution_point = ExecutionPoint(detail.execution_point)
        except ValueError:
            logging.warning("Unknown execution point on workflow", extra={
                "workflow_id": detail.id,
                "execution_point": detail.execution_point
            })
    return WorkflowMetadata(
        name=detail.name,
        description=detail.description,
        execution_point=execution_point,
        is_default=detail.is_default,
        status=detail.status or WorkflowStatus.DRAFT,
        persisted_workflow_id=detail.id,
    )


def _ordered_steps(steps: List[Step]) -> List[Step]:
    indexed = sorted(enumerate(steps), key=lambda pair: (pair[1].order, pair[0]))
    return [step for _, step in indexed]


def _synthesize_terminal(step_id: int, node_id: str, handle: Handle,
                         action: ActionDescriptor) -> TerminalNode:
    if action.kind == ActionKind.COMPLETE_SUCCESS:
        return TerminalNode(
            id=terminal_node_id(SUCCESS_PREFIX, step_id, handle.value),
            kind=NodeKind.SUCCESS.value,
            owner_condition_id=node_id,
            owner_handle=handle,
            message=action.data.message,
        )
    return TerminalNode(
        id=terminal_node_id(FAIL_PREFIX, step_id, handle.value),
        kind=NodeKind.FAIL.value,
        owner_condition_id=node_id,
        owner_handle=handle,
        error=action.data.error,
    )


def load_workflow(detail: WorkflowDetail) -> LoadedWorkflow:
    steps = _ordered_steps(detail.steps)
    graph = WorkflowGraph()
    entries: Dict[int, StepFields] = {}

    for index, step in enumerate(steps):
        next_in_order = steps[index + 1].id if index + 1 < len(steps) else None
        node = ConditionNode(
            id=condition_node_id(step.id),
            step_id=step.id,
            name=step.name,
            description=step.description,
            left_expression=step.left_expression,
            operator=step.operation,
            right_expression=step.right_expression,
            on_true=action_from_wire(step.if_true_action, step.if_true_action_data, next_in_order),
            on_false=action_from_wire(step.if_false_action, step.if_false_action_data, next_in_order),
            failure_message=step.failure_message,
            is_active=step.is_active,
        )
        graph.add_node(node)
        entries[step.id] = fields_from_node(node)

        for handle in HANDLES:
            action = node.action_for(handle)
            if action.kind == ActionKind.PROCEED_TO_STEP:
                continue
            terminal = _synthesize_terminal(step.id, node.id, handle, action)
            graph.add_node(terminal)
            graph.add_edge(node.id, handle, terminal.id)

    for node in graph.condition_nodes():
        for handle in HANDLES:
            action = node.action_for(handle)
            if action.kind != ActionKind.PROCEED_TO_STEP or action.data.next_step_id is None:
                continue
            target_id = condition_node_id(action.data.next_step_id)
            if target_id == node.id or not graph.has_node(target_id):
                # Dangling or self reference: the stored action still round-trips
                continue
            if graph.incoming(target_id):
                logging.warning("Step is targeted by more than one branch, keeping first edge", extra={
                    "workflow_id": detail.id,
                    "step_id": node.step_id,
                    "target_step_id": action.data.next_step_id
                })
                continue
            graph.add_edge(node.id, handle, target_id)

    initial_node_id = None
    if steps:
        initial_step_id = detail.initial_step_id
        known = {step.id for step in steps}
        if initial_step_id not in known:
            initial_step_id = steps[0].id
        initial_node_id = condition_node_id(initial_step_id)

    logging.info("Workflow loaded", extra={
        "workflow_id": detail.id,
        "steps": len(steps),
        "nodes": len(graph.nodes),
        "edges": len(graph.edges)
    })

    return LoadedWorkflow(
        graph=graph,
        snapshot=WorkflowSnapshot(steps=entries),
        metadata=_metadata_from_detail(detail),
        initial_node_id=initial_node_id,
    )


# Save

@dataclass
class DeferredLink:
    """A proceed branch whose target step has not been created yet"""
    source_node_id: str
    handle: Handle
    target_node_id: str
    note: Optional[str] = None


@dataclass
class StepDraft:
    node_id: str
    step_id: Optional[int]
    order: int
    fields: StepFields
    deferred: List[DeferredLink] = field(default_factory=list)


@dataclass
class PlannedCreate:
    node_id: str
    step: StepCreate


@dataclass
class PlannedUpdate:
    node_id: str
    update: StepUpdate


@dataclass
class StepDiff:
    creates: List[PlannedCreate] = field(default_factory=list)
    updates: List[PlannedUpdate] = field(default_factory=list)
    links: List[DeferredLink] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.creates and not self.updates


def _stored_note(node: ConditionNode, handle: Handle) -> Optional[str]:
    stored = node.action_for(handle)
    if stored is None or stored.kind != ActionKind.PROCEED_TO_STEP:
        return None
    return stored.data.note


def resolve_branch(graph: WorkflowGraph, node: ConditionNode,
                   handle: Handle) -> Tuple[ActionDescriptor, Optional[DeferredLink]]:
    """Effective action of one branch, walking its outgoing edge"""
    stored = node.action_for(handle) or default_action(handle)
    edge = graph.edge_from(node.id, handle)
    if edge is None:
        return stored, None

    target = graph.get_node(edge.target)
    note = _stored_note(node, handle)
    if isinstance(target, TerminalNode):
        exit_edge = graph.edge_from(target.id, None)
        downstream = graph.get_condition(exit_edge.target) if exit_edge else None
        if downstream is None:
            return terminal_action(target), None
        # Terminal chained into a further step is an annotation on the way there
        note = target.text or note
        target = downstream

    if not isinstance(target, ConditionNode):
        return stored, None
    if target.step_id is not None:
        return proceed_action(target.step_id, note), None

    fallback = stored if stored.kind != ActionKind.PROCEED_TO_STEP else default_action(handle)
    return fallback, DeferredLink(node.id, handle, target.id, note)


def materialize(graph: WorkflowGraph) -> List[StepDraft]:
    """Effective step of every condition node, in declaration order"""
    drafts = []
    for order, node in enumerate(graph.condition_nodes(), start=1):
        true_action, true_link = resolve_branch(graph, node, Handle.TRUE)
        false_action, false_link = resolve_branch(graph, node, Handle.FALSE)
        if_true_action, if_true_data = action_to_wire(true_action)
        if_false_action, if_false_data = action_to_wire(false_action)
        fields = StepFields(
            name=node.name,
            description=node.description,
            left_expression=node.left_expression,
            operation=node.operator,
            right_expression=node.right_expression,
            if_true_action=if_true_action,
            if_true_action_data=if_true_data,
            if_false_action=if_false_action,
            if_false_action_data=if_false_data,
            failure_message=node.failure_message,
            is_active=node.is_active,
        )
        drafts.append(StepDraft(
            node_id=node.id,
            step_id=node.step_id,
            order=order,
            fields=fields,
            deferred=[link for link in (true_link, false_link) if link is not None],
        ))
    return drafts


def create_payload(draft: StepDraft) -> StepCreate:
    name = draft.fields.name or f"Step {draft.order}"
    values = draft.fields.model_dump()
    values.update(
        name=name,
        description=draft.fields.description or f"Validation step: {name}",
        failure_message=draft.fields.failure_message or f"{name} validation failed",
        order=draft.order,
    )
    return StepCreate.model_validate(values)


def diff_steps(snapshot: WorkflowSnapshot, drafts: List[StepDraft]) -> StepDiff:
    """Creates for unsaved nodes, field-level updates for changed persisted ones"""
    diff = StepDiff()
    for draft in drafts:
        diff.links.extend(draft.deferred)
        if draft.step_id is None:
            diff.creates.append(PlannedCreate(draft.node_id, create_payload(draft)))
            continue

        skipped = set()
        for link in draft.deferred:
            skipped.update(_slot_fields(link.handle))

        current = draft.fields.model_dump(mode="json")
        previous = snapshot.get(draft.step_id)
        previous_values = previous.model_dump(mode="json") if previous else {}
        changed = {
            key: value for key, value in current.items()
            if key not in skipped and (key not in previous_values or not same_value(value, previous_values[key]))
        }
        if changed:
            diff.updates.append(PlannedUpdate(draft.node_id, StepUpdate(step_id=draft.step_id, **changed)))
    return diff


def build_link_updates(links: List[DeferredLink], step_ids: Dict[str, int]) -> List[PlannedUpdate]:
    """Turns deferred links into updates once every endpoint has a step id.

    Links whose source or target still has no id are left out.
    """
    grouped: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []
    for link in links:
        source_id = step_ids.get(link.source_node_id)
        target_id = step_ids.get(link.target_node_id)
        if source_id is None or target_id is None:
            logging.warning("Deferred link left unresolved", extra={
                "source": link.source_node_id,
                "target": link.target_node_id,
                "handle": link.handle.value
            })
            continue
        action_field, data_field = _slot_fields(link.handle)
        action, data = action_to_wire(proceed_action(target_id, link.note))
        if link.source_node_id not in grouped:
            grouped[link.source_node_id] = {"step_id": source_id}
            order.append(link.source_node_id)
        grouped[link.source_node_id][action_field] = action
        grouped[link.source_node_id][data_field] = data
    return [PlannedUpdate(node_id, StepUpdate(**grouped[node_id])) for node_id in order]


def plan_save(graph: WorkflowGraph, snapshot: WorkflowSnapshot) -> StepDiff:
    return diff_steps(snapshot, materialize(graph))
