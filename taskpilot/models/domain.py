"""
TaskPilot Domain Models

Data classes representing the core entities in the TaskPilot system.
These are used for data transfer between storage and services.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Status Constants

class TaskStatus:
    """Board task status values."""
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    IN_REVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

    ALL = (TODO, IN_PROGRESS, IN_REVIEW, DONE, CANCELLED, FAILED)
    # Entering one of these starts the stage clock used for timeout detection
    TIMED = (IN_PROGRESS, IN_REVIEW)


class TaskSource:
    """Where a task came from."""
    MANUAL = "manual"
    AI_GENERATED = "ai_generated"

    ALL = (MANUAL, AI_GENERATED)


class TaskType:
    """Architecture-first task categories."""
    ARCHITECTURE = "architecture"
    MOCK = "mock"
    IMPLEMENTATION = "implementation"
    INTEGRATION = "integration"

    ALL = (ARCHITECTURE, MOCK, IMPLEMENTATION, INTEGRATION)


class TaskLayer:
    """Layer/domain a task belongs to."""
    DATA = "data"
    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"
    DEVOPS = "devops"
    TESTING = "testing"

    ALL = (DATA, BACKEND, FRONTEND, FULLSTACK, DEVOPS, TESTING)


class GenerationStatus:
    """Requirements analysis status values."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, ANALYZING, GENERATING, COMPLETED, FAILED)
    IN_FLIGHT = (PENDING, ANALYZING, GENERATING)
    TERMINAL = (COMPLETED, FAILED)


class AgentAction:
    """Autonomous scheduler log actions."""
    SELECTED = "selected"
    SKIPPED = "skipped"
    ERROR = "error"

    ALL = (SELECTED, SKIPPED, ERROR)


class ReviewAction:
    """Review automation log actions."""
    TEST_PASSED = "test_passed"
    TEST_FAILED = "test_failed"
    MERGE_COMPLETED = "merge_completed"
    MERGE_CONFLICT = "merge_conflict"
    SKIPPED = "skipped"
    ERROR = "error"

    ALL = (TEST_PASSED, TEST_FAILED, MERGE_COMPLETED, MERGE_CONFLICT, SKIPPED, ERROR)


# Core Domain Models

@dataclass
class Project:
    """A project owns one task board."""
    id: int
    name: str
    created_at: str
    updated_at: str


@dataclass
class Task:
    """
    A board task.

    Title/description belong to the board; the orchestration core reasons
    about status, stage clock, hierarchy and ordering fields.
    """
    id: int
    project_id: int
    title: str
    status: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    source: str = TaskSource.MANUAL
    task_type: str = TaskType.IMPLEMENTATION
    layer: Optional[str] = None
    sequence: Optional[int] = None
    stage_started_at: Optional[str] = None
    complexity_score: Optional[int] = None
    parent_task_id: Optional[int] = None
    testing_criteria: Optional[str] = None
    post_task_actions: Optional[str] = None


@dataclass
class TaskDraft:
    """A task proposed by a generator or decomposer, not yet persisted."""
    title: str
    description: Optional[str] = None
    layer: Optional[str] = None
    task_type: Optional[str] = None
    testing_criteria: Optional[str] = None
    post_task_actions: Optional[str] = None
    files_to_modify: List[str] = field(default_factory=list)


@dataclass
class Feature:
    """A discrete capability extracted from requirements text."""
    name: str
    description: str
    layer: Optional[str] = None
    priority: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "layer": self.layer,
            "priority": self.priority,
        }


@dataclass
class RequirementsRequest:
    """A submitted requirements document and its generation state."""
    id: int
    project_id: int
    raw_requirements: str
    generation_status: str
    created_at: str
    updated_at: str
    prd_content: Optional[str] = None
    analysis_result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def features(self) -> List[Dict[str, Any]]:
        if not self.analysis_result:
            return []
        return list(self.analysis_result.get("features") or [])


@dataclass
class Workspace:
    """An isolated working copy holding one task's changes."""
    id: int
    task_id: int
    path: str
    created_at: str
    updated_at: str
    branch: Optional[str] = None
    target_branch: Optional[str] = None
    archived: bool = False


@dataclass
class ProjectAgentSettings:
    """Per-project settings for the autonomous scheduler."""
    id: int
    project_id: int
    enabled: bool
    interval_seconds: int
    max_breakdown_depth: int
    created_at: str
    updated_at: str


@dataclass
class AgentActivityLog:
    """Append-only audit row for scheduler decisions."""
    id: int
    project_id: int
    action: str
    created_at: str
    task_id: Optional[int] = None
    reasoning: Optional[str] = None


@dataclass
class ProjectReviewSettings:
    """Per-project settings for review automation."""
    id: int
    project_id: int
    enabled: bool
    auto_merge_enabled: bool
    run_tests_enabled: bool
    created_at: str
    updated_at: str


@dataclass
class ReviewAutomationLog:
    """Append-only audit row for review automation steps."""
    id: int
    task_id: int
    action: str
    created_at: str
    workspace_id: Optional[int] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
