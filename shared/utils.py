"""Shared utilities: node and edge id conventions."""

import uuid
from typing import Optional
from shared.constants import CONDITION_PREFIX, DRAFT_MARKER, EDGE_PREFIX, TERMINAL_EXIT


def condition_node_id(step_id: int) -> str:
    return f"{CONDITION_PREFIX}-{step_id}"


def terminal_node_id(prefix: str, step_id: int, handle: str) -> str:
    return f"{prefix}-{step_id}-{handle}"


def draft_node_id(prefix: str) -> str:
    return f"{prefix}-{DRAFT_MARKER}-{uuid.uuid4().hex[:12]}"


def edge_id(source: str, handle: Optional[str], target: str) -> str:
    return f"{EDGE_PREFIX}-{source}-{handle or TERMINAL_EXIT}-{target}"


def generate_session_id() -> str:
    return uuid.uuid4().hex
