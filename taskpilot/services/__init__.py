"""
TaskPilot Services

Orchestration services: requirements analysis, task hierarchy, review
automation and the agent scheduler.
"""

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskpilot.services.base import Service, ServiceContext
    from taskpilot.services.events import EventBus, get_event_bus
    from taskpilot.services.requirements import RequirementsAnalyzerService
    from taskpilot.services.hierarchy import TaskHierarchyService
    from taskpilot.services.review_automation import (
        ReviewAutomationService,
        ReviewAutomationStatus,
        ReviewOutcome,
    )
    from taskpilot.services.scheduler import AgentActivityStatus, AgentSchedulerService, TickResult
    from taskpilot.services.container import ServiceContainer, build_services

__all__ = [
    # Base
    "Service",
    "ServiceContext",
    # Events
    "EventBus",
    "get_event_bus",
    # Requirements
    "RequirementsAnalyzerService",
    # Hierarchy
    "TaskHierarchyService",
    # Review automation
    "ReviewAutomationService",
    "ReviewAutomationStatus",
    "ReviewOutcome",
    # Scheduler
    "AgentSchedulerService",
    "AgentActivityStatus",
    "TickResult",
    # Wiring
    "ServiceContainer",
    "build_services",
]

_EXPORTS = {
    "Service": "taskpilot.services.base",
    "ServiceContext": "taskpilot.services.base",
    "EventBus": "taskpilot.services.events",
    "get_event_bus": "taskpilot.services.events",
    "RequirementsAnalyzerService": "taskpilot.services.requirements",
    "TaskHierarchyService": "taskpilot.services.hierarchy",
    "ReviewAutomationService": "taskpilot.services.review_automation",
    "ReviewAutomationStatus": "taskpilot.services.review_automation",
    "ReviewOutcome": "taskpilot.services.review_automation",
    "AgentSchedulerService": "taskpilot.services.scheduler",
    "AgentActivityStatus": "taskpilot.services.scheduler",
    "TickResult": "taskpilot.services.scheduler",
    "ServiceContainer": "taskpilot.services.container",
    "build_services": "taskpilot.services.container",
}


def __getattr__(name: str):
    module_path = _EXPORTS.get(name)
    if not module_path:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    module = import_module(module_path)
    return getattr(module, name)


def __dir__() -> list[str]:
    return sorted(__all__)
