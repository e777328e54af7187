"""Centralized constants"""

import os

# Environment
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
VALIDATION_API_URL = os.getenv("VALIDATION_API_URL", "http://localhost:8000/api")
VALIDATION_API_TOKEN = os.getenv("VALIDATION_API_TOKEN", "")
VALIDATION_API_TIMEOUT_SECONDS = int(os.getenv("VALIDATION_API_TIMEOUT_SECONDS", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Redis TTLs
REDIS_KEY_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days
SAVE_LOCK_TTL_SECONDS = 120               # outlives the slowest save round trip

# Node id prefixes
CONDITION_PREFIX = "condition"
SUCCESS_PREFIX = "success"
FAIL_PREFIX = "fail"
DRAFT_MARKER = "draft"
EDGE_PREFIX = "edge"
TERMINAL_EXIT = "out"

# Default branch payloads when a condition has nothing stored for a slot
DEFAULT_SUCCESS_MESSAGE = "Step completed successfully"
DEFAULT_FAILURE_ERROR = "Validation failed"

# Layout (canvas units)
COLUMN_WIDTH = 360            # one slot: a 320 wide node plus gutter
LEVEL_GAP = 260               # row-to-row distance between condition levels
TERMINAL_GAP = 140            # extra row height when a row owns terminal nodes
TERMINAL_OFFSET_Y = 180       # terminal sits this far below its condition
TERMINAL_OFFSET_X = 90        # and this far toward its branch side
ORIGIN_X = 0
ORIGIN_Y = 0

# Limits
MAX_NODES_PER_WORKFLOW = 1000
MAX_EXPRESSION_LENGTH = 500
