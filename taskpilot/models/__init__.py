"""
TaskPilot Models

Typed domain objects and status constants.
"""

from taskpilot.models.domain import (
    # Status Constants
    TaskStatus,
    TaskSource,
    TaskType,
    TaskLayer,
    GenerationStatus,
    AgentAction,
    ReviewAction,
    # Core Models
    Project,
    Task,
    TaskDraft,
    Feature,
    RequirementsRequest,
    Workspace,
    ProjectAgentSettings,
    AgentActivityLog,
    ProjectReviewSettings,
    ReviewAutomationLog,
)

__all__ = [
    # Status Constants
    "TaskStatus",
    "TaskSource",
    "TaskType",
    "TaskLayer",
    "GenerationStatus",
    "AgentAction",
    "ReviewAction",
    # Core Models
    "Project",
    "Task",
    "TaskDraft",
    "Feature",
    "RequirementsRequest",
    "Workspace",
    "ProjectAgentSettings",
    "AgentActivityLog",
    "ProjectReviewSettings",
    "ReviewAutomationLog",
]
