"""Shared wire types for the builder core, the persistence client and the API."""

from enum import Enum
from typing import Dict, List, Any, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Operator(str, Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"


class StepAction(str, Enum):
    PROCEED_TO_STEP = "proceed_to_step"
    PROCEED_TO_STEP_BY_ID = "proceed_to_step_by_id"
    COMPLETE_SUCCESS = "complete_success"
    COMPLETE_FAILURE = "complete_failure"


class Handle(str, Enum):
    TRUE = "true"
    FALSE = "false"


class ExecutionPoint(str, Enum):
    BEFORE_CREATE = "before_create"
    AFTER_CREATE = "after_create"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Step(BaseModel):
    """A persisted validation step as the API returns it"""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    description: str = ""
    order: int = 0
    left_expression: str = ""
    operation: Operator = Operator.EQ
    right_expression: str = ""
    if_true_action: StepAction = StepAction.COMPLETE_SUCCESS
    if_true_action_data: Dict[str, Any] = Field(default_factory=dict)
    if_false_action: StepAction = StepAction.COMPLETE_FAILURE
    if_false_action_data: Dict[str, Any] = Field(default_factory=dict)
    failure_message: Optional[str] = None
    is_active: bool = True

    @field_validator("if_true_action_data", "if_false_action_data", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Dict[str, Any]:
        return v or {}


class StepFields(BaseModel):
    """The diffable part of a step. Frozen: snapshots are replaced, never edited."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    left_expression: str = ""
    operation: Operator = Operator.EQ
    right_expression: str = ""
    if_true_action: StepAction
    if_true_action_data: Dict[str, Any] = Field(default_factory=dict)
    if_false_action: StepAction
    if_false_action_data: Dict[str, Any] = Field(default_factory=dict)
    failure_message: Optional[str] = None
    is_active: bool = True


class StepCreate(StepFields):
    order: int


class StepUpdate(BaseModel):
    """Partial step update; only explicitly set fields go on the wire"""
    step_id: int
    name: Optional[str] = None
    description: Optional[str] = None
    left_expression: Optional[str] = None
    operation: Optional[Operator] = None
    right_expression: Optional[str] = None
    if_true_action: Optional[StepAction] = None
    if_true_action_data: Optional[Dict[str, Any]] = None
    if_false_action: Optional[StepAction] = None
    if_false_action_data: Optional[Dict[str, Any]] = None
    failure_message: Optional[str] = None
    is_active: Optional[bool] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)

    def changed_fields(self) -> List[str]:
        return sorted(f for f in self.model_fields_set if f != "step_id")


class WorkflowDetail(BaseModel):
    """Fetch-workflow response"""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    description: str = ""
    execution_point: Optional[str] = None
    status: Optional[WorkflowStatus] = None
    is_default: bool = False
    initial_step: Optional[Union[int, Dict[str, Any]]] = None
    steps: List[Step] = Field(default_factory=list)

    @property
    def initial_step_id(self) -> Optional[int]:
        # Some payloads nest the initial step as an object
        if isinstance(self.initial_step, dict):
            return self.initial_step.get("id")
        return self.initial_step


class WorkflowSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    description: str = ""
    execution_point: Optional[str] = None
    status: Optional[WorkflowStatus] = None
    is_default: bool = False


class ExecutionPointInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str
    name: str = ""
    description: str = ""
    category: str = ""
    allowed_datasources: List[str] = Field(default_factory=list)


class WorkflowMetadata(BaseModel):
    name: str = ""
    description: str = ""
    execution_point: Optional[ExecutionPoint] = None
    is_default: bool = True
    status: WorkflowStatus = WorkflowStatus.DRAFT
    persisted_workflow_id: Optional[int] = None


class Position(BaseModel):
    x: float = 0
    y: float = 0
