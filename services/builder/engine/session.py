"""Builder session: one workflow being edited, from load to save."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from pydantic import BaseModel, Field
from services.builder.engine.connections import ConnectionEnforcer, find_violations
from services.builder.engine.expressions import expression_issues
from services.builder.engine.graph import ConditionNode, Edge, NodeKind, TerminalNode, WorkflowGraph
from services.builder.engine.layout import apply_layout
from services.builder.engine.sync import (
    LocalSaveGuard,
    SaveGuard,
    SaveOutcome,
    SavePlan,
    execute_save,
    make_plan,
    save_lock,
)
from services.builder.engine.translator import (
    WorkflowSnapshot,
    action_from_wire,
    apply_update,
    load_workflow,
)
from shared.exceptions import WorkflowNotPersistedError
from shared.types import Handle, Position, StepFields, WorkflowMetadata, WorkflowSummary
from shared.utils import generate_session_id

_local_guard = LocalSaveGuard()

# Defaults written back onto a node only where it has nothing of its own
BACKFILL_FIELDS = ("name", "description", "failure_message")


class BuilderSession(BaseModel):
    session_id: str = Field(default_factory=generate_session_id)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    snapshot: WorkflowSnapshot = Field(default_factory=WorkflowSnapshot)
    initial_node_id: Optional[str] = None

    @classmethod
    def new(cls, metadata: Optional[WorkflowMetadata] = None,
            session_id: Optional[str] = None) -> "BuilderSession":
        session = cls(metadata=metadata or WorkflowMetadata())
        if session_id:
            session.session_id = session_id
        return session

    @classmethod
    def load(cls, client, workflow_id: int, session_id: Optional[str] = None) -> "BuilderSession":
        loaded = load_workflow(client.get_workflow(workflow_id))
        session = cls(
            metadata=loaded.metadata,
            graph=loaded.graph,
            snapshot=loaded.snapshot,
            initial_node_id=loaded.initial_node_id,
        )
        if session_id:
            session.session_id = session_id
        session.layout()
        return session

    def _enforcer(self, client=None) -> ConnectionEnforcer:
        return ConnectionEnforcer(self.graph, step_deleter=client.delete_step if client else None)

    # Editing

    def add_condition(self, **fields: Any) -> ConditionNode:
        node = self._enforcer().add_condition(**fields)
        if self.initial_node_id is None:
            self.initial_node_id = node.id
        return node

    def add_terminal(self, kind: NodeKind, text: Optional[str] = None) -> TerminalNode:
        return self._enforcer().add_terminal(kind, text)

    def update_node(self, node_id: str, patch: Dict[str, Any]) -> bool:
        return self._enforcer().update_node(node_id, patch)

    def connect(self, source: str, handle: Union[Handle, str, None], target: str) -> Optional[Edge]:
        return self._enforcer().connect(source, handle, target)

    def disconnect(self, edge_id: str) -> bool:
        return self._enforcer().disconnect(edge_id)

    def delete_node(self, node_id: str, client=None) -> List[str]:
        """Removes a node and its cascade; persisted steps are deleted remotely when a client is given"""
        node = self.graph.get_node(node_id)
        step_id = node.step_id if isinstance(node, ConditionNode) else None

        removed = self._enforcer(client).delete_node(node_id)

        if step_id is not None and removed:
            self.snapshot = self.snapshot.without_step(step_id)
        if self.initial_node_id in removed:
            conditions = self.graph.condition_nodes()
            self.initial_node_id = conditions[0].id if conditions else None
        return removed

    def update_settings(self, **changes: Any) -> WorkflowMetadata:
        changes.pop("persisted_workflow_id", None)
        self.metadata = WorkflowMetadata.model_validate({**self.metadata.model_dump(), **changes})
        return self.metadata

    def save_settings(self, client) -> WorkflowSummary:
        """Creates the workflow record on first call, updates it afterwards"""
        workflow_id = self.metadata.persisted_workflow_id
        if workflow_id is None:
            summary = client.create_workflow(self.metadata)
            self.metadata = self.metadata.model_copy(update={"persisted_workflow_id": summary.id})
            logging.info("Workflow created", extra={"workflow_id": summary.id})
        else:
            summary = client.update_workflow(workflow_id, self.metadata)
        return summary

    def layout(self) -> Dict[str, Position]:
        return apply_layout(self.graph, self.initial_node_id)

    def expression_issues(self, datasources: Iterable[str]) -> Dict[str, List[str]]:
        return expression_issues(self.graph, datasources)

    # Saving

    def prepare_save(self) -> SavePlan:
        workflow_id = self.metadata.persisted_workflow_id
        if workflow_id is None:
            raise WorkflowNotPersistedError("Save the workflow settings before saving steps")

        violations = find_violations(self.graph)
        if violations:
            logging.warning("Graph has connection violations", extra={
                "workflow_id": workflow_id,
                "violations": violations
            })
        return make_plan(workflow_id, self.graph, self.snapshot)

    def _write_back(self, node: ConditionNode, entry: StepFields) -> None:
        node.set_action(Handle.TRUE, action_from_wire(entry.if_true_action, entry.if_true_action_data))
        node.set_action(Handle.FALSE, action_from_wire(entry.if_false_action, entry.if_false_action_data))

    def apply_save_outcome(self, outcome: SaveOutcome) -> None:
        """Applies new step ids and persisted values to the current graph"""
        entries: Dict[int, StepFields] = {}
        touched: Dict[int, ConditionNode] = {}

        for created in outcome.created:
            sent = StepFields.model_validate(created.sent.model_dump(exclude={"order"}))
            entries[created.step_id] = sent
            node = self.graph.get_condition(created.node_id)
            if node is None:
                logging.info("Created step's node was deleted during save", extra={
                    "node_id": created.node_id,
                    "step_id": created.step_id
                })
                continue
            node.step_id = created.step_id
            for name in BACKFILL_FIELDS:
                if not getattr(node, name):
                    setattr(node, name, getattr(sent, name))
            touched[created.step_id] = node

        for planned in outcome.updated:
            step_id = planned.update.step_id
            previous = entries.get(step_id) or self.snapshot.get(step_id)
            merged = apply_update(previous, planned.update)
            if merged is None:
                continue
            entries[step_id] = merged
            node = self.graph.get_condition(planned.node_id)
            if node is not None:
                touched[step_id] = node

        for step_id, node in touched.items():
            self._write_back(node, entries[step_id])

        self.snapshot = self.snapshot.with_steps(entries)
        if outcome.created or outcome.updated:
            logging.info("Save outcome applied", extra={
                "workflow_id": self.metadata.persisted_workflow_id,
                "steps": sorted(entries)
            })

    def save(self, client, guard: Optional[SaveGuard] = None) -> SaveOutcome:
        plan = self.prepare_save()
        with save_lock(guard or _local_guard, plan.workflow_id, self.session_id):
            outcome = execute_save(plan, client)
            self.apply_save_outcome(outcome)
        return outcome
