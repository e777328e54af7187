"""Save execution against the persistence API.

A save is planned from a copy of the graph, executed without touching the
session, and its outcome applied afterwards to whatever the graph looks like
by then. Persistence failures end up in ``SaveOutcome.errors``; only lock
contention raises.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set
from services.builder.engine.graph import WorkflowGraph
from services.builder.engine.translator import (
    PlannedCreate,
    PlannedUpdate,
    StepDiff,
    WorkflowSnapshot,
    build_link_updates,
    plan_save,
)
from shared.exceptions import ApiError, PersistenceError, SaveInProgressError
from shared.types import Step, StepCreate


class SaveStatus(str, Enum):
    NO_CHANGES = "no_changes"
    SAVED = "saved"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class SavePlan:
    workflow_id: int
    diff: StepDiff
    # node id -> step id for conditions that were already persisted
    known_step_ids: Dict[str, int] = field(default_factory=dict)


@dataclass
class CreatedStep:
    node_id: str
    step_id: int
    sent: StepCreate


@dataclass
class SaveOutcome:
    status: SaveStatus
    created: List[CreatedStep] = field(default_factory=list)
    updated: List[PlannedUpdate] = field(default_factory=list)
    errors: List[ApiError] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def updated_count(self) -> int:
        return len({u.node_id for u in self.updated})

    def summary(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "created": self.created_count,
            "updated": self.updated_count,
            "errors": [e.to_dict() for e in self.errors],
        }


def make_plan(workflow_id: int, graph: WorkflowGraph, snapshot: WorkflowSnapshot) -> SavePlan:
    """Plans a save from a private copy of graph"""
    frozen = graph.snapshot_copy()
    known = {n.id: n.step_id for n in frozen.condition_nodes() if n.step_id is not None}
    return SavePlan(workflow_id=workflow_id, diff=plan_save(frozen, snapshot), known_step_ids=known)


def _match_created(planned: List[PlannedCreate], returned: List[Step]) -> Dict[str, int]:
    """Pairs created steps with their nodes.

    A full response keeps request order, so it is matched by position. A short
    one is matched by order, and no step id is handed out twice.
    """
    if len(returned) == len(planned):
        return {create.node_id: step.id for create, step in zip(planned, returned)}

    by_order = {step.order: step.id for step in returned if step.order}
    matched: Dict[str, int] = {}
    taken: Set[int] = set()
    for create in planned:
        step_id = by_order.get(create.step.order)
        if step_id is not None and step_id not in taken:
            matched[create.node_id] = step_id
            taken.add(step_id)
    return matched


def execute_save(plan: SavePlan, client) -> SaveOutcome:
    diff = plan.diff
    if diff.is_empty:
        return SaveOutcome(status=SaveStatus.NO_CHANGES)

    outcome = SaveOutcome(status=SaveStatus.SAVED)
    attempted = 0

    if diff.creates:
        attempted += 1
        try:
            returned = client.bulk_create_steps(plan.workflow_id, [c.step for c in diff.creates])
            matched = _match_created(diff.creates, returned)
            for create in diff.creates:
                if create.node_id in matched:
                    outcome.created.append(CreatedStep(create.node_id, matched[create.node_id], create.step))
            if len(matched) != len(diff.creates):
                outcome.errors.append(ApiError(
                    error_type="RESPONSE_MISMATCH",
                    error_message=f"Created {len(matched)} of {len(diff.creates)} steps",
                    operation="bulk_create_steps",
                ))
        except PersistenceError as e:
            outcome.errors.append(e.error)

    if diff.updates:
        attempted += 1
        try:
            client.bulk_update_steps([u.update for u in diff.updates])
            outcome.updated.extend(diff.updates)
        except PersistenceError as e:
            outcome.errors.append(e.error)

    if diff.links and outcome.created:
        step_ids = dict(plan.known_step_ids)
        step_ids.update({c.node_id: c.step_id for c in outcome.created})
        link_updates = build_link_updates(diff.links, step_ids)
        if link_updates:
            attempted += 1
            try:
                client.bulk_update_steps([u.update for u in link_updates])
                outcome.updated.extend(link_updates)
            except PersistenceError as e:
                outcome.errors.append(e.error)

    if outcome.errors:
        succeeded = bool(outcome.created or outcome.updated)
        outcome.status = SaveStatus.PARTIAL if succeeded else SaveStatus.FAILED

    log = logging.warning if outcome.errors else logging.info
    log("Save executed", extra={
        "workflow_id": plan.workflow_id,
        "status": outcome.status.value,
        "created_count": outcome.created_count,
        "updated_count": outcome.updated_count,
        "batches": attempted,
        "errors": len(outcome.errors)
    })
    return outcome


class SaveGuard(Protocol):

    def acquire(self, workflow_id: int) -> bool:
        ...

    def release(self, workflow_id: int) -> None:
        ...


class LocalSaveGuard:
    """In-process variant of the save lock"""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[int] = set()

    def acquire(self, workflow_id: int) -> bool:
        with self._lock:
            if workflow_id in self._active:
                return False
            self._active.add(workflow_id)
            return True

    def release(self, workflow_id: int) -> None:
        with self._lock:
            self._active.discard(workflow_id)


@contextmanager
def save_lock(guard: SaveGuard, workflow_id: int, session_id: Optional[str] = None):
    if not guard.acquire(workflow_id):
        raise SaveInProgressError(
            f"A save is already in progress for workflow {workflow_id}",
            workflow_id=workflow_id,
            session_id=session_id,
        )
    try:
        yield
    finally:
        guard.release(workflow_id)
