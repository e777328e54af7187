"""
HTTP client for the validation workflow persistence API.
"""

import logging
from typing import Any, Dict, List, Optional
import requests
from requests.exceptions import RequestException, Timeout, ConnectionError
from pydantic import ValidationError
from shared.constants import (
    VALIDATION_API_TIMEOUT_SECONDS,
    VALIDATION_API_TOKEN,
    VALIDATION_API_URL,
)
from shared.exceptions import ApiError, PersistenceError
from shared.types import (
    ExecutionPointInfo,
    Step,
    StepCreate,
    StepUpdate,
    WorkflowDetail,
    WorkflowMetadata,
    WorkflowSummary,
)


class ValidationApiClient:
    """Thin wrapper over the steps/workflows endpoints. No retries."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or VALIDATION_API_URL).rstrip("/")
        self.timeout = timeout or VALIDATION_API_TIMEOUT_SECONDS
        self.http = session or requests.Session()
        token = token if token is not None else VALIDATION_API_TOKEN
        if token:
            self.http.headers.update({"Authorization": f"Bearer {token}"})

    def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except (Timeout, ConnectionError) as e:
            raise PersistenceError(ApiError(
                error_type="NETWORK_ERROR",
                error_message=f"Network error: {str(e)}",
                operation=operation,
                context={"url": url, "error_class": type(e).__name__}
            ))
        except RequestException as e:
            raise PersistenceError(ApiError(
                error_type="REQUEST_ERROR",
                error_message=f"Request failed: {str(e)}",
                operation=operation,
                context={"url": url}
            ))

        if response.status_code >= 400:
            logging.warning("Persistence API returned an error", extra={
                "operation": operation,
                "status_code": response.status_code,
                "url": url
            })
            raise PersistenceError(ApiError(
                error_type="HTTP_ERROR",
                error_message=f"HTTP {response.status_code}: {response.reason}",
                http_status_code=response.status_code,
                operation=operation,
                context={"url": url, "method": method, "body": response.text[:500]}
            ))

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise PersistenceError(ApiError(
                error_type="DECODE_ERROR",
                error_message="Response body is not JSON",
                http_status_code=response.status_code,
                operation=operation,
                context={"url": url}
            ))

    def _parse(self, operation: str, model, payload: Any):
        try:
            if isinstance(payload, list):
                return [model.model_validate(item) for item in payload]
            return model.model_validate(payload)
        except ValidationError as e:
            raise PersistenceError(ApiError(
                error_type="SCHEMA_ERROR",
                error_message=f"Unexpected response shape: {e.error_count()} error(s)",
                operation=operation,
                context={"errors": [err["msg"] for err in e.errors()][:5]}
            ))

    @staticmethod
    def _step_list(payload: Any, *keys: str) -> List[Any]:
        if isinstance(payload, list):
            return payload
        payload = payload or {}
        for key in keys:
            if key in payload and payload[key] is not None:
                return payload[key]
        return []

    # Steps

    def get_workflow(self, workflow_id: int) -> WorkflowDetail:
        payload = self._request("get_workflow", "GET", f"/validations/workflows/{workflow_id}/")
        return self._parse("get_workflow", WorkflowDetail, payload)

    def bulk_create_steps(self, workflow_id: int, steps: List[StepCreate]) -> List[Step]:
        body = {
            "workflow_id": workflow_id,
            "steps": [step.model_dump(mode="json") for step in steps],
        }
        payload = self._request("bulk_create_steps", "POST", "/validations/steps/bulk-create/", json=body)
        created = self._parse("bulk_create_steps", Step, self._step_list(payload, "created_steps", "steps"))
        logging.info("Steps created", extra={"workflow_id": workflow_id, "count": len(created)})
        return created

    def bulk_update_steps(self, updates: List[StepUpdate]) -> List[Step]:
        body = {"updates": [update.to_wire() for update in updates]}
        payload = self._request("bulk_update_steps", "PATCH", "/validations/steps/bulk-update/", json=body)
        updated = self._parse("bulk_update_steps", Step, self._step_list(payload, "updated_steps", "steps"))
        logging.info("Steps updated", extra={"count": len(updates)})
        return updated

    def delete_step(self, step_id: int) -> None:
        self._request("delete_step", "DELETE", f"/validations/steps/{step_id}/")
        logging.info("Step deleted", extra={"step_id": step_id})

    def get_datasources(self, execution_point: str) -> List[str]:
        payload = self._request("get_datasources", "GET", "/validations/datasources/",
                                params={"execution_point": execution_point})
        names = []
        for item in self._step_list(payload, "datasources", "results"):
            name = item.get("name") if isinstance(item, dict) else item
            if name:
                names.append(str(name))
        return names

    # Workflows

    def get_execution_points(self) -> List[ExecutionPointInfo]:
        payload = self._request("get_execution_points", "GET", "/validations/execution-points/")
        return self._parse("get_execution_points", ExecutionPointInfo,
                           self._step_list(payload, "execution_points"))

    def list_workflows(self) -> List[WorkflowSummary]:
        payload = self._request("list_workflows", "GET", "/validations/workflows/")
        return self._parse("list_workflows", WorkflowSummary, self._step_list(payload, "results"))

    def create_workflow(self, metadata: WorkflowMetadata) -> WorkflowSummary:
        payload = self._request("create_workflow", "POST", "/validations/workflows/",
                                json=self._workflow_body(metadata))
        return self._parse("create_workflow", WorkflowSummary, payload)

    def update_workflow(self, workflow_id: int, metadata: WorkflowMetadata) -> WorkflowSummary:
        payload = self._request("update_workflow", "PUT", f"/validations/workflows/{workflow_id}/",
                                json=self._workflow_body(metadata))
        return self._parse("update_workflow", WorkflowSummary, payload)

    def delete_workflow(self, workflow_id: int) -> None:
        self._request("delete_workflow", "DELETE", f"/validations/workflows/{workflow_id}/")

    @staticmethod
    def _workflow_body(metadata: WorkflowMetadata) -> Dict[str, Any]:
        return {
            "name": metadata.name,
            "description": metadata.description,
            "execution_point": metadata.execution_point.value if metadata.execution_point else None,
            "status": metadata.status.value,
            "is_default": metadata.is_default,
        }
