"""Workflow builder API routes."""

import logging
from typing import List
from fastapi import APIRouter, HTTPException, Query, status
from starlette.concurrency import run_in_threadpool
from services.api.domain.models import (
    ConnectRequest,
    CreateConditionRequest,
    CreateSessionRequest,
    CreateTerminalRequest,
    DeleteNodeResponse,
    ExpressionIssuesResponse,
    SaveResponse,
    SessionResponse,
    SettingsRequest,
    UpdateNodeRequest,
)
from services.builder.engine.graph import Edge, NodeKind
from services.builder.engine.session import BuilderSession
from services.builder.engine.sync import execute_save, save_lock
from services.builder.infra.api_client import ValidationApiClient
from services.builder.infra.redis_store import RedisSaveGuard, RedisStore
from shared.constants import MAX_NODES_PER_WORKFLOW
from shared.exceptions import (
    PersistenceError,
    SaveInProgressError,
    SessionNotFoundError,
    StepDeleteError,
    WorkflowNotPersistedError,
)
from shared.types import ExecutionPoint, ExecutionPointInfo


router = APIRouter()
session_store = RedisStore()
save_guard = RedisSaveGuard(session_store.client)
api_client = ValidationApiClient()


def _get_session(session_id: str) -> BuilderSession:
    data = session_store.get_session(session_id)
    if not data:
        raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
    return BuilderSession.model_validate(data)


def _load_or_404(session_id: str) -> BuilderSession:
    try:
        return _get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


def _store(session: BuilderSession) -> None:
    session_store.store_session(session.session_id, session.model_dump(mode="json"))


def _response(session: BuilderSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        metadata=session.metadata,
        graph=session.graph,
        initial_node_id=session.initial_node_id,
    )


def _upstream_error(e: PersistenceError) -> HTTPException:
    if e.error.http_status_code == status.HTTP_404_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.error.error_message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.error.to_dict())


def _check_capacity(session: BuilderSession) -> None:
    if len(session.graph.nodes) >= MAX_NODES_PER_WORKFLOW:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Workflow exceeds maximum node limit: {MAX_NODES_PER_WORKFLOW}"
        )


# Sessions

@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(request: CreateSessionRequest):
    if request.workflow_id is not None:
        try:
            session = await run_in_threadpool(BuilderSession.load, api_client, request.workflow_id)
        except PersistenceError as e:
            raise _upstream_error(e)
    else:
        session = BuilderSession.new(request.metadata)
    _store(session)
    logging.info("Session opened", extra={
        "session_id": session.session_id,
        "workflow_id": session.metadata.persisted_workflow_id
    })
    return _response(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    return _response(_load_or_404(session_id))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(session_id: str):
    if not session_store.delete_session(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Session {session_id} not found")


# Editing

@router.post("/sessions/{session_id}/nodes/condition", response_model=SessionResponse,
             status_code=status.HTTP_201_CREATED)
async def add_condition(session_id: str, request: CreateConditionRequest):
    session = _load_or_404(session_id)
    _check_capacity(session)
    session.add_condition(**request.model_dump())
    _store(session)
    return _response(session)


@router.post("/sessions/{session_id}/nodes/terminal", response_model=SessionResponse,
             status_code=status.HTTP_201_CREATED)
async def add_terminal(session_id: str, request: CreateTerminalRequest):
    session = _load_or_404(session_id)
    _check_capacity(session)
    session.add_terminal(NodeKind(request.kind), request.text)
    _store(session)
    return _response(session)


@router.patch("/sessions/{session_id}/nodes/{node_id}", response_model=SessionResponse)
async def update_node(session_id: str, node_id: str, request: UpdateNodeRequest):
    session = _load_or_404(session_id)
    if not session.graph.has_node(node_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Node {node_id} not found")
    session.update_node(node_id, request.patch())
    _store(session)
    return _response(session)


@router.delete("/sessions/{session_id}/nodes/{node_id}", response_model=DeleteNodeResponse)
async def delete_node(session_id: str, node_id: str):
    session = _load_or_404(session_id)
    node = session.graph.get_condition(node_id)
    if node is not None and node.step_id is not None:
        try:
            await run_in_threadpool(api_client.delete_step, node.step_id)
        except PersistenceError as e:
            error = StepDeleteError(node.step_id, e.error)
            logging.error("Step delete failed, keeping node", extra={
                "node_id": node_id,
                "step_id": node.step_id,
                "error": e.error.error_message
            })
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)
        # The step is gone remotely; drop it from the latest copy of the session
        session = _load_or_404(session_id)

    removed = session.delete_node(node_id)
    _store(session)
    return DeleteNodeResponse(removed=removed)


@router.post("/sessions/{session_id}/edges", response_model=Edge)
async def connect(session_id: str, request: ConnectRequest):
    session = _load_or_404(session_id)
    edge = session.connect(request.source, request.handle, request.target)
    if edge is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail="Connection not allowed")
    _store(session)
    return edge


@router.delete("/sessions/{session_id}/edges/{edge_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(session_id: str, edge_id: str):
    session = _load_or_404(session_id)
    if session.disconnect(edge_id):
        _store(session)


@router.post("/sessions/{session_id}/layout", response_model=SessionResponse)
async def layout(session_id: str):
    session = _load_or_404(session_id)
    session.layout()
    _store(session)
    return _response(session)


@router.put("/sessions/{session_id}/settings", response_model=SessionResponse)
async def update_settings(session_id: str, request: SettingsRequest):
    session = _load_or_404(session_id)
    session.update_settings(**request.model_dump(exclude_unset=True, exclude={"persist"}))
    _store(session)
    if request.persist:
        try:
            await run_in_threadpool(session.save_settings, api_client)
        except PersistenceError as e:
            raise _upstream_error(e)
        current = _load_or_404(session_id)
        current.metadata = session.metadata
        _store(current)
        session = current
    return _response(session)


# Saving

@router.post("/sessions/{session_id}/save", response_model=SaveResponse)
async def save(session_id: str):
    session = _load_or_404(session_id)
    try:
        plan = session.prepare_save()
    except WorkflowNotPersistedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    try:
        with save_lock(save_guard, plan.workflow_id, session_id):
            outcome = await run_in_threadpool(execute_save, plan, api_client)
            # Edits made while the save was in flight must survive; no await
            # between this read and the store below
            current = _load_or_404(session_id)
            current.apply_save_outcome(outcome)
            _store(current)
    except SaveInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return SaveResponse(**outcome.summary(), session=_response(current))


@router.get("/sessions/{session_id}/expression-issues", response_model=ExpressionIssuesResponse)
async def get_expression_issues(session_id: str):
    session = _load_or_404(session_id)
    execution_point = session.metadata.execution_point
    if execution_point is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail="Workflow has no execution point")
    try:
        datasources = await run_in_threadpool(api_client.get_datasources, execution_point.value)
    except PersistenceError as e:
        raise _upstream_error(e)
    return ExpressionIssuesResponse(
        execution_point=execution_point,
        issues=session.expression_issues(datasources)
    )


# Lookups

@router.get("/datasources", response_model=List[str])
async def get_datasources(execution_point: ExecutionPoint = Query(...)):
    try:
        return await run_in_threadpool(api_client.get_datasources, execution_point.value)
    except PersistenceError as e:
        raise _upstream_error(e)


@router.get("/execution-points", response_model=List[ExecutionPointInfo])
async def get_execution_points():
    try:
        return await run_in_threadpool(api_client.get_execution_points)
    except PersistenceError as e:
        raise _upstream_error(e)
