"""
TaskPilot Agent Scheduler Service

Per-project control loop that hands the next eligible task to an agent, or
stands idle, and records why in agent_activity_logs.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from taskpilot.errors import ConflictError, EntityNotFoundError, TaskPilotError
from taskpilot.models.domain import (
    AgentAction,
    AgentActivityLog,
    ProjectAgentSettings,
    Task,
    TaskLayer,
    TaskSource,
    TaskStatus,
    TaskType,
)
from taskpilot.services.base import Service, ServiceContext
from taskpilot.services.collaborators import Decision, SequenceDecider, TaskDecider

DISABLED_REASON = "automation disabled"
BUSY_REASON = "tick already in progress"
NO_TASKS_REASON = "No eligible tasks"
IDLE_REASON = "Decider chose to stay idle"
MAX_ACTIVE_LAYERS = 3


def gate_candidates(todo: List[Task], active: List[Task]) -> Tuple[List[Task], Optional[str]]:
    """
    Narrow the todo list to what may start next, given the work in flight.

    - With nothing in flight, any todo task may start; the project's first
      generated task (sequence 0) sets the project up and goes first.
    - An integration task in progress or in review blocks everything.
    - Otherwise layered non-integration tasks may run side by side, one per
      layer and at most MAX_ACTIVE_LAYERS layers at once.

    Returns (candidates, None), or ([], reason) when nothing may start.
    """
    if not active:
        setup = [task for task in todo if task.source == TaskSource.AI_GENERATED and task.sequence == 0]
        return (setup or todo), None

    for task in active:
        if task.task_type == TaskType.INTEGRATION:
            return [], f"Integration task {task.id} is active; no new work starts until it finishes"

    active_layers = {task.layer for task in active if task.layer}
    if len(active_layers) < MAX_ACTIVE_LAYERS:
        free = [
            task
            for task in todo
            if task.task_type != TaskType.INTEGRATION and task.layer and task.layer not in active_layers
        ]
        if free:
            return free, None
    return [], f"{len(active)} task(s) already active and no free layer"


@dataclass
class TickResult:
    """What one tick did. log_id is None for ticks that wrote nothing."""
    action: str
    task_id: Optional[int] = None
    reasoning: Optional[str] = None
    log_id: Optional[int] = None

    @property
    def logged(self) -> bool:
        return self.log_id is not None


@dataclass
class AgentActivityStatus:
    project_id: int
    enabled: bool
    interval_seconds: int
    max_breakdown_depth: int
    last_run: Optional[str] = None
    last_action: Optional[str] = None
    last_selected_task_id: Optional[int] = None
    last_reasoning: Optional[str] = None


class AgentSchedulerService(Service):
    """
    Selects the next task for the agent.

    At most one tick per project runs at a time; an overlapping tick is
    dropped without touching the log. Settings are read at the start of
    every tick so enable/disable takes effect on the next one.

    Example:
        scheduler = AgentSchedulerService(context, db, hierarchy=hierarchy)
        scheduler.enable(project.id)
        result = scheduler.trigger(project.id)
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        hierarchy=None,
        decider: Optional[TaskDecider] = None,
    ) -> None:
        super().__init__(context, db)
        if hierarchy is None:
            from taskpilot.services.hierarchy import TaskHierarchyService

            hierarchy = TaskHierarchyService(context, db)
        self.hierarchy = hierarchy
        self.decider = decider or SequenceDecider()
        self._project_locks: Dict[int, threading.Lock] = {}
        self._project_locks_guard = threading.Lock()

    def _lock_for(self, project_id: int) -> threading.Lock:
        with self._project_locks_guard:
            lock = self._project_locks.get(project_id)
            if lock is None:
                lock = self._project_locks[project_id] = threading.Lock()
            return lock

    # Settings

    def enable(self, project_id: int) -> ProjectAgentSettings:
        return self.update_settings(project_id, enabled=True)

    def disable(self, project_id: int) -> ProjectAgentSettings:
        return self.update_settings(project_id, enabled=False)

    def update_settings(
        self,
        project_id: int,
        *,
        enabled: Optional[bool] = None,
        interval_seconds: Optional[int] = None,
        max_breakdown_depth: Optional[int] = None,
    ) -> ProjectAgentSettings:
        settings = self.db.upsert_agent_settings(
            project_id,
            enabled=enabled,
            interval_seconds=interval_seconds,
            max_breakdown_depth=max_breakdown_depth,
        )
        self.logger.info(
            "agent_settings_updated",
            extra=self.log_extra(
                project_id=project_id,
                enabled=settings.enabled,
                interval_seconds=settings.interval_seconds,
                max_breakdown_depth=settings.max_breakdown_depth,
            ),
        )
        return settings

    # Queries

    def get_status(self, project_id: int) -> AgentActivityStatus:
        settings = self.db.get_agent_settings(project_id)
        if settings is None:
            self.db.get_project(project_id)
        latest = self.db.list_agent_activity(project_id, limit=1)
        selected = self.db.list_agent_activity(project_id, action=AgentAction.SELECTED, limit=1)
        return AgentActivityStatus(
            project_id=project_id,
            enabled=settings.enabled if settings else False,
            interval_seconds=settings.interval_seconds if settings else 60,
            max_breakdown_depth=settings.max_breakdown_depth if settings else 1,
            last_run=latest[0].created_at if latest else None,
            last_action=latest[0].action if latest else None,
            last_selected_task_id=selected[0].task_id if selected else None,
            last_reasoning=latest[0].reasoning if latest else None,
        )

    def list_logs(self, project_id: int, *, limit: int = 50) -> List[AgentActivityLog]:
        self.db.get_project(project_id)
        return self.db.list_agent_activity(project_id, limit=limit)

    # Ticks

    def trigger(self, project_id: int) -> TickResult:
        """Run a tick now, outside the periodic schedule."""
        self.logger.info("agent_tick_triggered", extra=self.log_extra(project_id=project_id))
        return self.tick(project_id)

    def tick(self, project_id: int) -> TickResult:
        lock = self._lock_for(project_id)
        if not lock.acquire(blocking=False):
            self.logger.debug("agent_tick_dropped", extra=self.log_extra(project_id=project_id))
            return TickResult(action=AgentAction.SKIPPED, reasoning=BUSY_REASON)
        try:
            with self.bound(project_id=project_id):
                return self._tick(project_id)
        finally:
            lock.release()

    def _record(
        self,
        project_id: int,
        action: str,
        reasoning: str,
        *,
        task_id: Optional[int] = None,
    ) -> TickResult:
        entry = self.db.append_agent_activity(project_id, action, task_id=task_id, reasoning=reasoning)
        log = self.logger.warning if action == AgentAction.ERROR else self.logger.info
        log(
            f"agent_task_{action}",
            extra=self.log_extra(project_id=project_id, task_id=task_id, reasoning=reasoning),
        )
        return TickResult(action=action, task_id=task_id, reasoning=reasoning, log_id=entry.id)

    def _split_fullstack(self, project_id: int, todo: List[Task]) -> Optional[TickResult]:
        """Break the first fullstack todo task into layer subtasks; that is the tick's work."""
        for task in todo:
            if task.layer != TaskLayer.FULLSTACK:
                continue
            try:
                subtasks = self.hierarchy.split_layers(task.id)
            except TaskPilotError as exc:
                self.logger.info(
                    "agent_fullstack_split_refused",
                    extra=self.log_extra(project_id=project_id, task_id=task.id, error=str(exc)),
                )
                continue
            return self._record(
                project_id,
                AgentAction.SKIPPED,
                f"Fullstack task '{task.title}' split into {len(subtasks)} layer subtask(s)",
                task_id=task.id,
            )
        return None

    def _tick(self, project_id: int) -> TickResult:
        settings = self.db.get_agent_settings(project_id)
        if settings is None or not settings.enabled:
            return TickResult(action=AgentAction.SKIPPED, reasoning=DISABLED_REASON)

        board = self.db.list_tasks(project_id, limit=5000)
        todo = [task for task in board if task.status == TaskStatus.TODO]
        if not todo:
            return self._record(project_id, AgentAction.SKIPPED, NO_TASKS_REASON)

        split = self._split_fullstack(project_id, todo)
        if split is not None:
            return split

        active = [task for task in board if task.status in TaskStatus.TIMED]
        candidates, blocked = gate_candidates(todo, active)
        if blocked is not None:
            return self._record(project_id, AgentAction.SKIPPED, blocked)

        try:
            decision: Optional[Decision] = self.decider.decide(candidates)
        except Exception as exc:
            return self._record(project_id, AgentAction.ERROR, f"Task decider failed: {exc}")

        if decision is None or decision.task_id is None:
            reason = (decision.reasoning if decision else "") or IDLE_REASON
            return self._record(project_id, AgentAction.SKIPPED, reason)

        if decision.task_id not in {task.id for task in candidates}:
            return self._record(
                project_id,
                AgentAction.ERROR,
                f"Decider selected task {decision.task_id}, which is not an eligible todo task",
            )

        try:
            self.hierarchy.transition_status(
                decision.task_id,
                TaskStatus.IN_PROGRESS,
                expected_status=TaskStatus.TODO,
            )
        except (ConflictError, EntityNotFoundError) as exc:
            return self._record(project_id, AgentAction.ERROR, f"Could not start task {decision.task_id}: {exc}")

        return self._record(
            project_id,
            AgentAction.SELECTED,
            decision.reasoning or f"Selected task {decision.task_id}",
            task_id=decision.task_id,
        )
