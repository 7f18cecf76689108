"""
TaskPilot Task Hierarchy Service

Stage tracking, timeout detection and bounded-depth breakdown of complex
tasks into subtasks.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional, Union

from taskpilot.db.database import parse_ts, validate_complexity_score
from taskpilot.errors import (
    CollaboratorError,
    ConflictError,
    DepthExceededError,
    EntityNotFoundError,
    IntegrityError,
    ValidationError,
)
from taskpilot.models.domain import Task, TaskDraft, TaskStatus
from taskpilot.services.base import Service, ServiceContext
from taskpilot.services.collaborators import (
    LayerSplitDecomposer,
    TaskDecomposer,
    normalize_layer,
    normalize_task_type,
)
from taskpilot.services.events import EventBus, TaskBrokenDown, TaskStatusChanged, get_event_bus

# Hard cap on parent-link walks
MAX_PARENT_HOPS = 64

DEFAULT_MAX_BREAKDOWN_DEPTH = 1

Threshold = Union[timedelta, int, float]


def _as_timedelta(threshold: Threshold) -> timedelta:
    if isinstance(threshold, timedelta):
        return threshold
    return timedelta(seconds=float(threshold))


class TaskHierarchyService(Service):
    """
    Owns task status transitions and the parent/child task tree.

    Example:
        hierarchy = TaskHierarchyService(context, db)
        hierarchy.transition_status(task.id, TaskStatus.IN_PROGRESS)
        stalled = hierarchy.find_timed_out(project.id, timedelta(minutes=20))
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        decomposer: Optional[TaskDecomposer] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        super().__init__(context, db)
        self.decomposer = decomposer or LayerSplitDecomposer()
        self._layer_splitter = LayerSplitDecomposer()
        self.event_bus = event_bus or get_event_bus()

    # Status and stage clock

    def transition_status(self, task_id: int, status: str, *, expected_status: Optional[str] = None) -> Task:
        """
        Write a new status together with the stage clock.

        With expected_status the write only happens if the task is still in
        that status; otherwise ConflictError.
        """
        if status not in TaskStatus.ALL:
            raise ValidationError(f"Invalid status {status!r}", metadata={"task_id": task_id})
        before = self.db.get_task(task_id)
        updated = self.db.update_task_status(task_id, status, expected_status=expected_status)
        if updated is None:
            raise ConflictError(
                f"Task {task_id} is no longer {expected_status}",
                metadata={"task_id": task_id, "expected_status": expected_status},
            )
        self.logger.info(
            "task_status_changed",
            extra=self.log_extra(
                project_id=updated.project_id,
                task_id=task_id,
                old_status=before.status,
                new_status=status,
            ),
        )
        if before.status != status:
            self.event_bus.publish(
                TaskStatusChanged(
                    task_id=task_id,
                    project_id=updated.project_id,
                    old_status=before.status,
                    new_status=status,
                )
            )
        return updated

    def find_timed_out(
        self,
        project_id: int,
        threshold: Threshold,
        *,
        now: Optional[datetime] = None,
    ) -> List[Task]:
        """
        Tasks in inprogress/inreview whose stage started more than threshold ago.

        The comparison is strict, so a task that entered its stage at `now`
        is never reported. Oldest stage first.
        """
        limit = _as_timedelta(threshold)
        current = now or self.db.now()
        return [
            task
            for task in self.db.list_timed_tasks(project_id)
            if current - parse_ts(task.stage_started_at) > limit
        ]

    def find_all_timed_out(
        self,
        in_progress_threshold: Optional[Threshold] = None,
        in_review_threshold: Optional[Threshold] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[Task]:
        """Sweep every project, with a separate threshold per stage."""
        limits = {
            TaskStatus.IN_PROGRESS: _as_timedelta(
                in_progress_threshold
                if in_progress_threshold is not None
                else self.config.in_progress_timeout_seconds
            ),
            TaskStatus.IN_REVIEW: _as_timedelta(
                in_review_threshold
                if in_review_threshold is not None
                else self.config.in_review_timeout_seconds
            ),
        }
        current = now or self.db.now()
        return [
            task
            for task in self.db.list_timed_tasks()
            if current - parse_ts(task.stage_started_at) > limits[task.status]
        ]

    # Tree

    def _ancestors(self, task_id: int) -> List[int]:
        """Parent ids from nearest to root. Raises IntegrityError on a cycle or runaway chain."""
        visited = {task_id}
        chain: List[int] = []
        current = self.db.get_parent_task_id(task_id)
        while current is not None:
            if current in visited:
                raise IntegrityError(
                    f"Parent cycle detected at task {current}",
                    metadata={"task_id": task_id, "cycle_at": current},
                )
            if len(chain) >= MAX_PARENT_HOPS:
                raise IntegrityError(
                    f"Parent chain of task {task_id} exceeds {MAX_PARENT_HOPS} hops",
                    metadata={"task_id": task_id},
                )
            visited.add(current)
            chain.append(current)
            try:
                current = self.db.get_parent_task_id(current)
            except EntityNotFoundError:
                break
        return chain

    def compute_depth(self, task_id: int) -> int:
        """Number of parent hops to the root (a root task has depth 0)."""
        return len(self._ancestors(task_id))

    def set_complexity_score(self, task_id: int, score: Optional[int]) -> Task:
        validate_complexity_score(score)
        task = self.db.update_task(task_id, complexity_score=score)
        self.logger.info(
            "task_complexity_set",
            extra=self.log_extra(project_id=task.project_id, task_id=task_id, complexity_score=score),
        )
        return task

    def set_parent(self, task_id: int, parent_task_id: Optional[int]) -> Task:
        """
        Link a task under a parent.

        Refuses cross-project links, cycles and links that would put any task
        of the moved subtree deeper than the project's max breakdown depth.
        """
        task = self.db.get_task(task_id)
        if parent_task_id is None:
            return self.db.update_task(task_id, parent_task_id=None)
        if parent_task_id == task_id:
            raise IntegrityError(f"Task {task_id} cannot be its own parent", metadata={"task_id": task_id})
        parent = self.db.get_task(parent_task_id)
        if parent.project_id != task.project_id:
            raise ValidationError(
                f"Task {task_id} and task {parent_task_id} belong to different projects",
                metadata={"task_id": task_id, "parent_task_id": parent_task_id},
            )
        ancestors = self._ancestors(parent_task_id)
        if task_id in ancestors:
            raise IntegrityError(
                f"Linking task {task_id} under {parent_task_id} would create a cycle",
                metadata={"task_id": task_id, "parent_task_id": parent_task_id},
            )
        limit = self._max_depth_for(task.project_id)
        deepest = len(ancestors) + 1 + self._subtree_height(task_id)
        if deepest > limit:
            raise DepthExceededError(
                f"Linking task {task_id} under {parent_task_id} would reach depth {deepest}; "
                f"max breakdown depth is {limit}",
                depth=deepest,
                max_depth=limit,
                metadata={"task_id": task_id, "parent_task_id": parent_task_id},
            )
        return self.db.update_task(task_id, parent_task_id=parent_task_id)

    def _subtree_height(self, task_id: int) -> int:
        """Levels of descendants below a task (0 for a leaf), capped like parent walks."""
        seen = {task_id}
        level = [task_id]
        height = 0
        while True:
            children = [c.id for pid in level for c in self.db.list_subtasks(pid) if c.id not in seen]
            if not children:
                return height
            height += 1
            if height > MAX_PARENT_HOPS:
                raise IntegrityError(
                    f"Subtree of task {task_id} exceeds {MAX_PARENT_HOPS} levels",
                    metadata={"task_id": task_id},
                )
            seen.update(children)
            level = children

    def list_subtasks(self, task_id: int) -> List[Task]:
        self.db.get_task(task_id)
        return self.db.list_subtasks(task_id)

    def _max_depth_for(self, project_id: int) -> int:
        settings = self.db.get_agent_settings(project_id)
        return settings.max_breakdown_depth if settings else DEFAULT_MAX_BREAKDOWN_DEPTH

    def breakdown(self, task_id: int, max_depth: Optional[int] = None) -> List[Task]:
        """
        Split a complex task into subtasks and cancel it.

        Requires complexity_score above the configured threshold and a
        current depth below max_depth (default: the project's
        max_breakdown_depth). Subtasks and the parent's cancellation are
        written in one transaction.
        """
        task = self.db.get_task(task_id)
        threshold = self.config.breakdown_complexity_threshold
        if task.complexity_score is None or task.complexity_score <= threshold:
            raise ValidationError(
                f"Task {task_id} complexity {task.complexity_score} does not exceed {threshold}",
                metadata={"task_id": task_id, "complexity_score": task.complexity_score},
            )
        return self._replace_with_subtasks(task, self.decomposer, max_depth)

    def split_layers(self, task_id: int, max_depth: Optional[int] = None) -> List[Task]:
        """
        Replace a task with one subtask per layer (data, backend, frontend).

        Used for fullstack work regardless of complexity; depth limits and
        the single-transaction write are the same as for breakdown.
        """
        return self._replace_with_subtasks(self.db.get_task(task_id), self._layer_splitter, max_depth)

    def _replace_with_subtasks(
        self, task: Task, decomposer: TaskDecomposer, max_depth: Optional[int]
    ) -> List[Task]:
        task_id = task.id
        if task.status in (TaskStatus.DONE, TaskStatus.CANCELLED):
            raise ValidationError(
                f"Task {task_id} is {task.status} and cannot be broken down",
                metadata={"task_id": task_id, "status": task.status},
            )

        limit = self._max_depth_for(task.project_id) if max_depth is None else max_depth
        depth = self.compute_depth(task_id)
        if depth >= limit:
            raise DepthExceededError(
                f"Task {task_id} is at depth {depth}; max breakdown depth is {limit}",
                depth=depth,
                max_depth=limit,
                metadata={"task_id": task_id},
            )

        try:
            drafts = list(decomposer.decompose(task))
        except Exception as exc:
            raise CollaboratorError(f"Task decomposition failed: {exc}", metadata={"task_id": task_id}) from exc
        if len(drafts) < 2:
            raise CollaboratorError(
                f"Task decomposition produced {len(drafts)} subtask(s); at least 2 are required",
                metadata={"task_id": task_id},
            )

        subtasks = self.db.create_subtasks(task_id, [self._normalize_draft(d, task) for d in drafts])
        self.logger.info(
            "task_broken_down",
            extra=self.log_extra(
                project_id=task.project_id,
                task_id=task_id,
                depth=depth,
                subtask_count=len(subtasks),
            ),
        )
        self.event_bus.publish(
            TaskBrokenDown(task_id=task_id, project_id=task.project_id, subtask_ids=[s.id for s in subtasks])
        )
        if task.status != TaskStatus.CANCELLED:
            self.event_bus.publish(
                TaskStatusChanged(
                    task_id=task_id,
                    project_id=task.project_id,
                    old_status=task.status,
                    new_status=TaskStatus.CANCELLED,
                )
            )
        return subtasks

    @staticmethod
    def _normalize_draft(draft: TaskDraft, parent: Task) -> TaskDraft:
        return replace(
            draft,
            title=(draft.title or "").strip() or f"{parent.title} (part)",
            layer=normalize_layer(draft.layer),
            task_type=normalize_task_type(draft.task_type or parent.task_type),
        )
