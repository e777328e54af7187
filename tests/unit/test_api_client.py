"""
Tests for the persistence API client with a mocked HTTP session.
"""

import pytest
from unittest.mock import Mock
from requests.exceptions import Timeout
from services.builder.infra.api_client import ValidationApiClient
from shared.exceptions import PersistenceError
from shared.types import ExecutionPoint, StepUpdate, WorkflowMetadata


def make_response(payload=None, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.reason = "Server Error" if status_code >= 500 else "OK"
    response.text = "oops"
    response.content = b"" if payload is None else b"{}"
    response.json.return_value = payload
    return response


def make_client(response):
    http = Mock()
    http.headers = {}
    http.request.return_value = response
    client = ValidationApiClient(base_url="http://api.local/api/", token="secret", timeout=10, session=http)
    return client, http


def test_bearer_token_and_workflow_parsing():
    client, http = make_client(make_response({
        "id": 5,
        "name": "Orders",
        "initial_step": {"id": 11},
        "steps": [{"id": 11, "order": 1, "operation": ">=", "if_true_action_data": None}],
    }))

    workflow = client.get_workflow(5)

    assert http.headers["Authorization"] == "Bearer secret"
    http.request.assert_called_once_with("GET", "http://api.local/api/validations/workflows/5/", timeout=10)
    assert workflow.initial_step_id == 11
    assert workflow.steps[0].if_true_action_data == {}


def test_http_error_becomes_persistence_error():
    client, _ = make_client(make_response({"detail": "boom"}, status_code=500))

    with pytest.raises(PersistenceError) as exc_info:
        client.get_workflow(5)

    error = exc_info.value.error
    assert error.error_type == "HTTP_ERROR"
    assert error.http_status_code == 500
    assert error.operation == "get_workflow"


def test_timeout_becomes_network_error():
    client, http = make_client(make_response())
    http.request.side_effect = Timeout("slow")

    with pytest.raises(PersistenceError) as exc_info:
        client.delete_step(3)

    assert exc_info.value.error.error_type == "NETWORK_ERROR"


def test_unexpected_shape_is_schema_error():
    client, _ = make_client(make_response({"name": "no id"}))

    with pytest.raises(PersistenceError) as exc_info:
        client.get_workflow(5)

    assert exc_info.value.error.error_type == "SCHEMA_ERROR"


def test_bulk_update_sends_only_set_fields():
    client, http = make_client(make_response({"updated_steps": [{"id": 3, "name": "X"}]}))

    updated = client.bulk_update_steps([StepUpdate(step_id=3, name="X")])

    args, kwargs = http.request.call_args
    assert args == ("PATCH", "http://api.local/api/validations/steps/bulk-update/")
    assert kwargs["json"] == {"updates": [{"step_id": 3, "name": "X"}]}
    assert [s.id for s in updated] == [3]


def test_bulk_create_accepts_either_envelope():
    client, _ = make_client(make_response({"steps": [{"id": 8, "order": 1}]}))

    created = client.bulk_create_steps(7, [])

    assert [s.id for s in created] == [8]


def test_delete_without_body():
    client, http = make_client(make_response(status_code=204))

    assert client.delete_step(3) is None
    http.request.assert_called_once_with("DELETE", "http://api.local/api/validations/steps/3/", timeout=10)


def test_datasource_names():
    client, http = make_client(make_response({"datasources": [{"name": "Amount"}, "Fee", {"label": "x"}]}))

    names = client.get_datasources("before_create")

    assert names == ["Amount", "Fee"]
    assert http.request.call_args.kwargs["params"] == {"execution_point": "before_create"}


def test_workflow_crud():
    client, http = make_client(make_response({"id": 9, "name": "Orders", "status": "draft"}))
    metadata = WorkflowMetadata(name="Orders", execution_point=ExecutionPoint.AFTER_UPDATE)

    created = client.create_workflow(metadata)

    args, kwargs = http.request.call_args
    assert args == ("POST", "http://api.local/api/validations/workflows/")
    assert kwargs["json"] == {
        "name": "Orders",
        "description": "",
        "execution_point": "after_update",
        "status": "draft",
        "is_default": True,
    }
    assert created.id == 9

    http.request.return_value = make_response({"results": [{"id": 9, "name": "Orders"}]})
    assert [w.id for w in client.list_workflows()] == [9]

    http.request.return_value = make_response(status_code=204)
    client.delete_workflow(9)
    assert http.request.call_args[0] == ("DELETE", "http://api.local/api/validations/workflows/9/")
