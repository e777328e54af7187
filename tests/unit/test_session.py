"""
Tests for the builder session: save execution, outcome write-back and
concurrency guards.
"""

import logging
import pytest
from unittest.mock import Mock
from services.builder.engine.graph import NodeKind
from services.builder.engine.session import BuilderSession
from services.builder.engine.sync import LocalSaveGuard, SaveStatus, execute_save
from shared.exceptions import (
    ApiError,
    PersistenceError,
    SaveInProgressError,
    StepDeleteError,
    WorkflowNotPersistedError,
)
from shared.types import (
    ExecutionPoint,
    Step,
    StepAction,
    WorkflowDetail,
    WorkflowMetadata,
    WorkflowSummary,
)


def persisted_workflow():
    return WorkflowDetail.model_validate({
        "id": 7,
        "name": "Orders",
        "execution_point": "before_create",
        "steps": [{
            "id": 1,
            "order": 1,
            "name": "Amount check",
            "left_expression": "{{Amount}}",
            "operation": ">",
            "right_expression": "100",
            "if_true_action": "complete_success",
            "if_true_action_data": {"message": "ok"},
            "if_false_action": "complete_failure",
            "if_false_action_data": {"error": "bad"},
        }],
    })


def load_session(client=None):
    client = client or Mock()
    client.get_workflow.return_value = persisted_workflow()
    return BuilderSession.load(client, 7), client


def api_failure(operation):
    return PersistenceError(ApiError(
        error_type="HTTP_ERROR",
        error_message="HTTP 500: Server Error",
        http_status_code=500,
        operation=operation
    ))


def test_load_sets_metadata_and_positions():
    session, client = load_session()

    client.get_workflow.assert_called_once_with(7)
    assert session.metadata.persisted_workflow_id == 7
    assert session.metadata.execution_point == ExecutionPoint.BEFORE_CREATE
    assert session.initial_node_id == "condition-1"
    assert session.graph.get_node("success-1-true").position.y > 0


def test_unedited_save_is_benign_noop():
    session, client = load_session()

    outcome = session.save(client, LocalSaveGuard())

    assert outcome.status == SaveStatus.NO_CHANGES
    client.bulk_create_steps.assert_not_called()
    client.bulk_update_steps.assert_not_called()


def test_new_step_saved_then_clean():
    """Create a step, save it, and the next save has nothing left to send"""
    session = BuilderSession.new(WorkflowMetadata(name="Orders", persisted_workflow_id=7))
    node = session.add_condition(left_expression="{{Amount}}", right_expression="100")
    terminal = session.add_terminal(NodeKind.SUCCESS, "Approved")
    session.connect(node.id, "true", terminal.id)
    client = Mock()
    client.bulk_create_steps.return_value = [Step(id=41, order=1)]

    outcome = session.save(client, LocalSaveGuard())

    workflow_id, sent = client.bulk_create_steps.call_args[0]
    assert workflow_id == 7
    assert len(sent) == 1
    assert sent[0].if_true_action == StepAction.COMPLETE_SUCCESS
    assert sent[0].if_true_action_data == {"message": "Approved"}
    assert outcome.status == SaveStatus.SAVED
    assert outcome.created_count == 1

    saved = session.graph.get_condition(node.id)
    assert saved.step_id == 41
    assert saved.name == "Step 1"
    assert session.prepare_save().diff.is_empty


def test_rename_sends_single_field():
    session, client = load_session()
    session.update_node("condition-1", {"name": "Renamed"})

    outcome = session.save(client, LocalSaveGuard())

    (updates,), _ = client.bulk_update_steps.call_args
    assert [u.to_wire() for u in updates] == [{"step_id": 1, "name": "Renamed"}]
    assert outcome.updated_count == 1
    assert session.snapshot.get(1).name == "Renamed"
    assert session.prepare_save().diff.is_empty


def test_link_to_new_step_sent_after_create():
    session, client = load_session()
    node = session.add_condition(name="Follow-up")
    session.connect("condition-1", "false", node.id)
    client.bulk_create_steps.return_value = [Step(id=2, order=2, name="Follow-up")]

    outcome = session.save(client, LocalSaveGuard())

    (updates,), _ = client.bulk_update_steps.call_args
    assert [u.to_wire() for u in updates] == [{
        "step_id": 1,
        "if_false_action": "proceed_to_step_by_id",
        "if_false_action_data": {"next_step_id": 2},
    }]
    assert outcome.status == SaveStatus.SAVED
    assert session.graph.get_condition("condition-1").on_false.data.next_step_id == 2
    assert session.prepare_save().diff.is_empty


def test_failed_create_still_sends_updates():
    session, client = load_session()
    session.update_node("condition-1", {"name": "Renamed"})
    node = session.add_condition(name="New")
    client.bulk_create_steps.side_effect = api_failure("bulk_create_steps")

    outcome = session.save(client, LocalSaveGuard())

    assert outcome.status == SaveStatus.PARTIAL
    assert [e.operation for e in outcome.errors] == ["bulk_create_steps"]
    client.bulk_update_steps.assert_called_once()
    assert session.graph.get_condition(node.id).step_id is None

    retry = session.prepare_save().diff
    assert [c.node_id for c in retry.creates] == [node.id]
    assert retry.updates == []


def test_everything_failing_is_reported():
    session, client = load_session()
    session.update_node("condition-1", {"name": "Renamed"})
    client.bulk_update_steps.side_effect = api_failure("bulk_update_steps")

    outcome = session.save(client, LocalSaveGuard())

    assert outcome.status == SaveStatus.FAILED
    assert session.snapshot.get(1).name == "Amount check"


def test_second_concurrent_save_rejected():
    session, client = load_session()
    session.update_node("condition-1", {"name": "Renamed"})
    guard = LocalSaveGuard()
    guard.acquire(7)

    with pytest.raises(SaveInProgressError):
        session.save(client, guard)

    client.bulk_update_steps.assert_not_called()
    guard.release(7)
    assert session.save(client, guard).status == SaveStatus.SAVED


def test_save_requires_persisted_workflow():
    session = BuilderSession.new()
    session.add_condition(name="Orphan")

    with pytest.raises(WorkflowNotPersistedError):
        session.save(Mock())


def test_outcome_applies_to_current_graph():
    """Edits made while a save is in flight survive the write-back"""
    session, client = load_session()
    draft = session.add_condition(name="Short lived")
    plan = session.prepare_save()
    session.update_node("condition-1", {"description": "Edited meanwhile"})
    session.delete_node(draft.id)
    client.bulk_create_steps.return_value = [Step(id=2, order=2)]

    session.apply_save_outcome(execute_save(plan, client))

    assert session.graph.get_condition(draft.id) is None
    pending = session.prepare_save().diff
    assert [u.update.changed_fields() for u in pending.updates] == [["description"]]


def test_delete_persisted_node():
    session, client = load_session()

    removed = session.delete_node("condition-1", client)

    client.delete_step.assert_called_once_with(1)
    assert set(removed) == {"condition-1", "success-1-true", "fail-1-false"}
    assert session.snapshot.get(1) is None
    assert session.initial_node_id is None


def test_failed_delete_keeps_node_and_snapshot():
    session, client = load_session()
    client.delete_step.side_effect = api_failure("delete_step")

    with pytest.raises(StepDeleteError):
        session.delete_node("condition-1", client)

    assert session.graph.has_node("condition-1")
    assert session.snapshot.get(1) is not None


def test_settings_created_then_updated():
    session = BuilderSession.new()
    session.update_settings(name="Orders", execution_point="after_update")
    client = Mock()
    client.create_workflow.return_value = WorkflowSummary(id=9, name="Orders")

    session.save_settings(client)
    session.save_settings(client)

    assert session.metadata.persisted_workflow_id == 9
    assert session.metadata.execution_point == ExecutionPoint.AFTER_UPDATE
    client.create_workflow.assert_called_once()
    client.update_workflow.assert_called_once_with(9, session.metadata)


def test_session_survives_json_round_trip():
    session, _ = load_session()

    restored = BuilderSession.model_validate(session.model_dump(mode="json"))

    assert restored.snapshot.get(1).name == "Amount check"
    assert restored.prepare_save().diff.is_empty


def test_expression_issues():
    session, _ = load_session()

    assert session.expression_issues(["Amount"]) == {}
    assert session.expression_issues([]) == {"condition-1": ["left: unknown datasource 'Amount'"]}


def test_created_ids_follow_request_order():
    """The server may renumber orders; ids still go to the nodes in request order"""
    session, client = load_session()
    first = session.add_condition(name="First")
    second = session.add_condition(name="Second")
    client.bulk_create_steps.return_value = [Step(id=50, order=3), Step(id=51, order=4)]

    outcome = session.save(client, LocalSaveGuard())

    assert outcome.status == SaveStatus.SAVED
    assert session.graph.get_condition(first.id).step_id == 50
    assert session.graph.get_condition(second.id).step_id == 51


def test_short_create_response_never_reuses_an_id():
    session, client = load_session()
    first = session.add_condition(name="First")
    second = session.add_condition(name="Second")
    client.bulk_create_steps.return_value = [Step(id=50, order=3)]

    outcome = session.save(client, LocalSaveGuard())

    assert outcome.status == SaveStatus.PARTIAL
    assert [e.error_type for e in outcome.errors] == ["RESPONSE_MISMATCH"]
    assert session.graph.get_condition(first.id).step_id is None
    assert session.graph.get_condition(second.id).step_id == 50


def test_save_is_logged_with_counts(caplog):
    session, client = load_session()
    session.update_node("condition-1", {"name": "Renamed"})

    with caplog.at_level(logging.INFO):
        session.save(client, LocalSaveGuard())

    record = next(r for r in caplog.records if r.getMessage() == "Save executed")
    assert record.created_count == 0
    assert record.updated_count == 1
    assert record.status == "saved"
