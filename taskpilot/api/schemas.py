from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskpilot import __version__

# =============================================================================
# Enums
# =============================================================================

class TaskStatusValue(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    IN_REVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

class TaskTypeValue(str, Enum):
    ARCHITECTURE = "architecture"
    MOCK = "mock"
    IMPLEMENTATION = "implementation"
    INTEGRATION = "integration"

class TaskLayerValue(str, Enum):
    DATA = "data"
    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"
    DEVOPS = "devops"
    TESTING = "testing"

# =============================================================================
# Base Models
# =============================================================================

class APIModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

class Health(BaseModel):
    status: str = "ok"
    version: str = __version__
    service: str = "taskpilot"

class ErrorOut(BaseModel):
    detail: str
    category: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

# =============================================================================
# Projects
# =============================================================================

class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)

class ProjectOut(APIModel):
    id: int
    name: str
    created_at: str
    updated_at: str

# =============================================================================
# Tasks
# =============================================================================

class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    task_type: TaskTypeValue = TaskTypeValue.IMPLEMENTATION
    layer: Optional[TaskLayerValue] = None
    sequence: Optional[int] = None
    complexity_score: Optional[int] = Field(default=None, ge=1, le=10)
    testing_criteria: Optional[str] = None
    post_task_actions: Optional[str] = None

class TaskOut(APIModel):
    id: int
    project_id: int
    title: str
    description: Optional[str] = None
    status: str
    source: str
    task_type: str
    layer: Optional[str] = None
    sequence: Optional[int] = None
    stage_started_at: Optional[str] = None
    complexity_score: Optional[int] = None
    parent_task_id: Optional[int] = None
    testing_criteria: Optional[str] = None
    post_task_actions: Optional[str] = None
    created_at: str
    updated_at: str

class TaskStatusUpdate(BaseModel):
    status: TaskStatusValue
    expected_status: Optional[TaskStatusValue] = None

class ComplexityUpdate(BaseModel):
    complexity_score: Optional[int] = Field(default=None, ge=1, le=10)

class ParentUpdate(BaseModel):
    parent_task_id: Optional[int] = None

class BreakdownRequest(BaseModel):
    max_depth: Optional[int] = Field(default=None, ge=0)

class TaskDepthOut(BaseModel):
    task_id: int
    depth: int

# =============================================================================
# Workspaces
# =============================================================================

class WorkspaceCreate(BaseModel):
    path: str = Field(min_length=1)
    branch: Optional[str] = None
    target_branch: Optional[str] = None

class WorkspaceOut(APIModel):
    id: int
    task_id: int
    path: str
    branch: Optional[str] = None
    target_branch: Optional[str] = None
    archived: bool
    created_at: str
    updated_at: str

# =============================================================================
# Requirements
# =============================================================================

class RequirementsCreate(BaseModel):
    raw_requirements: str
    prd_content: Optional[str] = None

class RequirementsOut(APIModel):
    id: int
    project_id: int
    raw_requirements: str
    prd_content: Optional[str] = None
    analysis_result: Optional[Dict[str, Any]] = None
    generation_status: str
    error_message: Optional[str] = None
    created_at: str
    updated_at: str

class RequirementsDeleted(BaseModel):
    project_id: int
    deleted: int

# =============================================================================
# Agent Activity
# =============================================================================

class AgentSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_seconds: Optional[int] = Field(default=None, ge=1)
    max_breakdown_depth: Optional[int] = Field(default=None, ge=0)

class AgentSettingsOut(APIModel):
    project_id: int
    enabled: bool
    interval_seconds: int
    max_breakdown_depth: int
    updated_at: str

class AgentActivityStatusOut(APIModel):
    project_id: int
    enabled: bool
    interval_seconds: int
    max_breakdown_depth: int
    last_run: Optional[str] = None
    last_action: Optional[str] = None
    last_selected_task_id: Optional[int] = None
    last_reasoning: Optional[str] = None

class AgentActivityLogOut(APIModel):
    id: int
    project_id: int
    task_id: Optional[int] = None
    action: str
    reasoning: Optional[str] = None
    created_at: str

class TickResultOut(APIModel):
    action: str
    task_id: Optional[int] = None
    reasoning: Optional[str] = None
    logged: bool

# =============================================================================
# Review Automation
# =============================================================================

class ReviewSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    auto_merge_enabled: Optional[bool] = None
    run_tests_enabled: Optional[bool] = None

class ReviewSettingsOut(APIModel):
    project_id: int
    enabled: bool
    auto_merge_enabled: bool
    run_tests_enabled: bool
    updated_at: str

class ReviewStatusOut(APIModel):
    project_id: int
    enabled: bool
    auto_merge_enabled: bool
    run_tests_enabled: bool
    last_action: Optional[str] = None
    last_task_id: Optional[int] = None
    last_run_at: Optional[str] = None

class ReviewLogOut(APIModel):
    id: int
    task_id: int
    workspace_id: Optional[int] = None
    action: str
    output: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str

class ReviewOutcomeOut(APIModel):
    task_id: int
    action: Optional[str] = None
    message: Optional[str] = None
    workspace_id: Optional[int] = None
    logs: List[ReviewLogOut] = Field(default_factory=list)

class MergeConflictCount(BaseModel):
    task_id: int
    merge_conflicts: int
