"""
TaskPilot Service Container

Builds the orchestration services around one database and event bus so the
API, the CLI and the runner share the same wiring.
"""

from dataclasses import dataclass
from typing import Optional

from taskpilot.services.base import ServiceContext
from taskpilot.services.collaborators import (
    ChangeProbe,
    FeatureExtractor,
    TaskDecider,
    TaskDecomposer,
    TaskGenerator,
    TestRunner,
    WorkspaceMerger,
)
from taskpilot.services.events import EventBus, get_event_bus
from taskpilot.services.hierarchy import TaskHierarchyService
from taskpilot.services.requirements import RequirementsAnalyzerService
from taskpilot.services.review_automation import ReviewAutomationService
from taskpilot.services.scheduler import AgentSchedulerService


@dataclass
class ServiceContainer:
    context: ServiceContext
    db: object
    event_bus: EventBus
    hierarchy: TaskHierarchyService
    requirements: RequirementsAnalyzerService
    review: ReviewAutomationService
    scheduler: AgentSchedulerService

    def build_runner(self, **kwargs):
        from taskpilot.runner import AutomationRunner

        return AutomationRunner(
            self.context,
            self.db,
            scheduler=self.scheduler,
            review=self.review,
            hierarchy=self.hierarchy,
            event_bus=self.event_bus,
            **kwargs,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.requirements.shutdown(wait=wait)
        self.review.shutdown(wait=wait)


def build_services(
    context: ServiceContext,
    db,
    *,
    event_bus: Optional[EventBus] = None,
    decider: Optional[TaskDecider] = None,
    extractor: Optional[FeatureExtractor] = None,
    generator: Optional[TaskGenerator] = None,
    decomposer: Optional[TaskDecomposer] = None,
    test_runner: Optional[TestRunner] = None,
    merger: Optional[WorkspaceMerger] = None,
    change_probe: Optional[ChangeProbe] = None,
) -> ServiceContainer:
    bus = event_bus or get_event_bus()
    hierarchy = TaskHierarchyService(context, db, decomposer=decomposer, event_bus=bus)
    return ServiceContainer(
        context=context,
        db=db,
        event_bus=bus,
        hierarchy=hierarchy,
        requirements=RequirementsAnalyzerService(
            context, db, extractor=extractor, generator=generator, event_bus=bus
        ),
        review=ReviewAutomationService(
            context,
            db,
            hierarchy=hierarchy,
            test_runner=test_runner,
            merger=merger,
            change_probe=change_probe,
            event_bus=bus,
        ),
        scheduler=AgentSchedulerService(context, db, hierarchy=hierarchy, decider=decider),
    )
