"""
TaskPilot Review Automation Service

Per-project pipeline that tests and merges tasks sitting in review. Every
step of a pass appends exactly one row to review_automation_logs; a
disabled project is dormant and logs nothing.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from taskpilot.errors import CollaboratorTimeout, ConflictError, TaskPilotError
from taskpilot.models.domain import (
    ProjectReviewSettings,
    ReviewAction,
    ReviewAutomationLog,
    Task,
    TaskStatus,
    Workspace,
)
from taskpilot.services.base import Service, ServiceContext
from taskpilot.services.collaborators import (
    ChangeProbe,
    GitWorkspaceMerger,
    SubprocessTestRunner,
    TestRunner,
    WorkspaceMerger,
)
from taskpilot.services.events import EventBus, TaskStatusChanged, get_event_bus

TESTS_FAILED_MESSAGE = "Tests failed"
NOTHING_ENABLED_MESSAGE = "Neither tests nor auto-merge enabled"


@dataclass
class ReviewOutcome:
    """Result of one automation pass. action is None when automation is disabled."""
    task_id: int
    action: Optional[str]
    message: Optional[str] = None
    workspace_id: Optional[int] = None
    logs: List[ReviewAutomationLog] = field(default_factory=list)


@dataclass
class ReviewAutomationStatus:
    project_id: int
    enabled: bool
    auto_merge_enabled: bool
    run_tests_enabled: bool
    last_action: Optional[str] = None
    last_task_id: Optional[int] = None
    last_run_at: Optional[str] = None


class ReviewAutomationService(Service):
    """
    Tests and merges in-review tasks.

    Passes over the same task are mutually exclusive; a second concurrent
    pass raises ConflictError immediately. Test and merge calls are bounded
    by a timeout and a timeout is recorded as an `error` step.

    Example:
        review = ReviewAutomationService(context, db, hierarchy=hierarchy)
        review.enable(project.id)
        outcome = review.process_task(task.id)
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        hierarchy=None,
        test_runner: Optional[TestRunner] = None,
        merger: Optional[WorkspaceMerger] = None,
        change_probe: Optional[ChangeProbe] = None,
        event_bus: Optional[EventBus] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        super().__init__(context, db)
        if hierarchy is None:
            from taskpilot.services.hierarchy import TaskHierarchyService

            hierarchy = TaskHierarchyService(context, db, event_bus=event_bus)
        self.hierarchy = hierarchy
        self.test_runner = test_runner or SubprocessTestRunner(test_command=self.config.review_test_command)
        self.merger = merger or GitWorkspaceMerger()
        self.change_probe = change_probe
        self.event_bus = event_bus or get_event_bus()
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()
        self._task_locks: Dict[int, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()
        self._stragglers: Dict[int, Future] = {}
        self._dispatch: Optional[Callable[..., Any]] = None

    # Wiring

    def attach(self, event_bus: Optional[EventBus] = None, dispatch: Optional[Callable[..., Any]] = None) -> None:
        """
        React to tasks entering review.

        dispatch(fn, task_id) decides where the pass runs (the runner passes
        its thread pool's submit); by default it runs in the publisher's thread.
        """
        self._dispatch = dispatch
        (event_bus or self.event_bus).add_handler(TaskStatusChanged, self._on_status_changed)

    def detach(self, event_bus: Optional[EventBus] = None) -> None:
        (event_bus or self.event_bus).remove_handler(TaskStatusChanged, self._on_status_changed)

    def _on_status_changed(self, event: TaskStatusChanged) -> None:
        if event.new_status != TaskStatus.IN_REVIEW:
            return
        if self._dispatch is not None:
            self._dispatch(self._process_from_event, event.task_id)
        else:
            self._process_from_event(event.task_id)

    def _process_from_event(self, task_id: int) -> None:
        try:
            self.process_task(task_id)
        except ConflictError:
            self.logger.debug("review_pass_already_running", extra=self.log_extra(task_id=task_id))
        except Exception:
            self.logger.exception("review_pass_crashed", extra=self.log_extra(task_id=task_id))

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.runner_max_workers,
                    thread_name_prefix="taskpilot-review",
                )
            return self._executor

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None and self._owns_executor:
            executor.shutdown(wait=wait)

    def _lock_for(self, task_id: int) -> threading.Lock:
        with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = self._task_locks[task_id] = threading.Lock()
            return lock

    def _bounded(self, what: str, fn: Callable[..., Any], workspace: Workspace, timeout: float) -> Any:
        """
        Run a collaborator call, giving up after timeout seconds.

        A call that is still running when the wait gives up is left to finish
        and recorded as the task's straggler; the task stays locked until it does.
        """
        future = self._get_executor().submit(fn, workspace, timeout)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            if not future.cancel():
                with self._task_locks_guard:
                    self._stragglers[workspace.task_id] = future
                future.add_done_callback(
                    lambda done: self.logger.warning(
                        "review_call_finished_after_timeout",
                        extra=self.log_extra(
                            task_id=workspace.task_id,
                            workspace_id=workspace.id,
                            call=what.lower(),
                            error=repr(done.exception()) if done.exception() else None,
                        ),
                    )
                )
            raise CollaboratorTimeout(
                f"{what} timed out after {timeout:g}s",
                metadata={"workspace_id": workspace.id},
            ) from exc

    # Settings

    def _settings_or_defaults(self, project_id: int) -> ProjectReviewSettings:
        settings = self.db.get_review_settings(project_id)
        if settings is not None:
            return settings
        self.db.get_project(project_id)
        return ProjectReviewSettings(
            id=0,
            project_id=project_id,
            enabled=False,
            auto_merge_enabled=True,
            run_tests_enabled=True,
            created_at="",
            updated_at="",
        )

    def enable(self, project_id: int) -> ProjectReviewSettings:
        return self.update_settings(project_id, enabled=True)

    def disable(self, project_id: int) -> ProjectReviewSettings:
        return self.update_settings(project_id, enabled=False)

    def update_settings(
        self,
        project_id: int,
        *,
        enabled: Optional[bool] = None,
        auto_merge_enabled: Optional[bool] = None,
        run_tests_enabled: Optional[bool] = None,
    ) -> ProjectReviewSettings:
        settings = self.db.upsert_review_settings(
            project_id,
            enabled=enabled,
            auto_merge_enabled=auto_merge_enabled,
            run_tests_enabled=run_tests_enabled,
        )
        self.logger.info(
            "review_settings_updated",
            extra=self.log_extra(
                project_id=project_id,
                enabled=settings.enabled,
                auto_merge_enabled=settings.auto_merge_enabled,
                run_tests_enabled=settings.run_tests_enabled,
            ),
        )
        return settings

    # Queries

    def get_status(self, project_id: int) -> ReviewAutomationStatus:
        settings = self._settings_or_defaults(project_id)
        latest = self.db.list_review_logs_for_project(project_id, limit=1)
        last = latest[0] if latest else None
        return ReviewAutomationStatus(
            project_id=project_id,
            enabled=settings.enabled,
            auto_merge_enabled=settings.auto_merge_enabled,
            run_tests_enabled=settings.run_tests_enabled,
            last_action=last.action if last else None,
            last_task_id=last.task_id if last else None,
            last_run_at=last.created_at if last else None,
        )

    def list_logs(self, project_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]:
        self.db.get_project(project_id)
        return self.db.list_review_logs_for_project(project_id, limit=limit)

    def list_task_logs(self, task_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]:
        self.db.get_task(task_id)
        return self.db.list_review_logs_for_task(task_id, limit=limit)

    def count_merge_conflicts(self, task_id: int) -> int:
        return self.db.count_review_actions(task_id, ReviewAction.MERGE_CONFLICT)

    # Passes

    def process_task(self, task_id: int, *, timeout: Optional[float] = None) -> ReviewOutcome:
        """
        Run one automation pass over a task.

        timeout bounds each collaborator call; by default tests and merges
        use their configured timeouts.
        """
        lock = self._lock_for(task_id)
        if not lock.acquire(blocking=False):
            raise ConflictError(
                f"Review automation already running for task {task_id}",
                metadata={"task_id": task_id},
            )
        try:
            task = self.db.get_task(task_id)
            with self.bound(project_id=task.project_id, task_id=task_id):
                return self._process(task, timeout)
        finally:
            with self._task_locks_guard:
                straggler = self._stragglers.pop(task_id, None)
            if straggler is None:
                lock.release()
            else:
                straggler.add_done_callback(lambda _done: lock.release())

    def _process(self, task: Task, timeout: Optional[float]) -> ReviewOutcome:
        settings = self.db.get_review_settings(task.project_id)
        if settings is None or not settings.enabled:
            return ReviewOutcome(task_id=task.id, action=None, message="review automation disabled")

        outcome = ReviewOutcome(task_id=task.id, action=None)

        def record(
            action: str,
            *,
            workspace: Optional[Workspace] = None,
            output: Optional[str] = None,
            error_message: Optional[str] = None,
        ) -> ReviewOutcome:
            entry = self.db.append_review_log(
                task.id,
                action,
                workspace_id=workspace.id if workspace else None,
                output=output,
                error_message=error_message,
            )
            outcome.logs.append(entry)
            outcome.action = action
            outcome.message = error_message
            outcome.workspace_id = entry.workspace_id
            self.logger.info(
                f"review_{action}",
                extra=self.log_extra(
                    project_id=task.project_id,
                    task_id=task.id,
                    workspace_id=outcome.workspace_id,
                    error=error_message,
                ),
            )
            return outcome

        if task.status == TaskStatus.DONE:
            return record(ReviewAction.SKIPPED, error_message="Task already done")
        if task.status != TaskStatus.IN_REVIEW:
            return record(ReviewAction.SKIPPED, error_message=f"Task is {task.status}, not inreview")

        workspace = self.db.get_active_workspace(task.id)
        if workspace is None:
            return record(ReviewAction.SKIPPED, error_message="Task has no active workspace")

        if self.change_probe is not None:
            try:
                changed = self.change_probe.has_changes(workspace)
            except Exception as exc:
                return record(ReviewAction.ERROR, workspace=workspace, error_message=f"Change check failed: {exc}")
            if not changed:
                return record(ReviewAction.SKIPPED, workspace=workspace, error_message="Workspace has no changes")

        if not settings.run_tests_enabled and not settings.auto_merge_enabled:
            return record(ReviewAction.SKIPPED, workspace=workspace, error_message=NOTHING_ENABLED_MESSAGE)

        if settings.run_tests_enabled:
            test_timeout = timeout if timeout is not None else self.config.review_test_timeout_seconds
            try:
                result = self._bounded("Tests", self.test_runner.run_tests, workspace, test_timeout)
            except Exception as exc:
                return record(ReviewAction.ERROR, workspace=workspace, error_message=self._describe(exc))
            if not result.passed:
                return record(
                    ReviewAction.TEST_FAILED,
                    workspace=workspace,
                    output=result.output,
                    error_message=TESTS_FAILED_MESSAGE,
                )
            record(ReviewAction.TEST_PASSED, workspace=workspace, output=result.output)

        if settings.auto_merge_enabled:
            merge_timeout = timeout if timeout is not None else self.config.review_merge_timeout_seconds
            try:
                merge = self._bounded("Merge", self.merger.merge, workspace, merge_timeout)
            except Exception as exc:
                return record(ReviewAction.ERROR, workspace=workspace, error_message=self._describe(exc))
            if not merge.completed:
                return record(
                    ReviewAction.MERGE_CONFLICT,
                    workspace=workspace,
                    error_message=f"Merge conflict detected. Details: {merge.details}",
                )
            record(ReviewAction.MERGE_COMPLETED, workspace=workspace, output=merge.details)
            try:
                self.hierarchy.transition_status(task.id, TaskStatus.DONE, expected_status=TaskStatus.IN_REVIEW)
            except ConflictError as exc:
                return record(ReviewAction.ERROR, workspace=workspace, error_message=str(exc))
            self.db.set_workspace_archived(workspace.id, True)

        return outcome

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, TaskPilotError):
            return str(exc)
        return f"{type(exc).__name__}: {exc}"

    def _reviewed_this_stage(self, task: Task) -> bool:
        latest = self.db.list_review_logs_for_task(task.id, limit=1)
        if not latest or not task.stage_started_at:
            return False
        return latest[0].created_at >= task.stage_started_at

    def sweep_project(self, project_id: int) -> List[ReviewOutcome]:
        """
        Process in-review tasks that have not had a pass since entering review.

        Tasks with a pass already running are skipped.
        """
        settings = self.db.get_review_settings(project_id)
        if settings is None or not settings.enabled:
            return []
        outcomes: List[ReviewOutcome] = []
        for task in self.db.list_tasks(project_id, statuses=[TaskStatus.IN_REVIEW]):
            if self._reviewed_this_stage(task):
                continue
            try:
                outcomes.append(self.process_task(task.id))
            except ConflictError:
                self.logger.debug("review_pass_already_running", extra=self.log_extra(task_id=task.id))
        return outcomes

    def sweep_enabled_projects(self) -> Dict[int, List[ReviewOutcome]]:
        results: Dict[int, List[ReviewOutcome]] = {}
        for settings in self.db.list_enabled_review_settings():
            try:
                results[settings.project_id] = self.sweep_project(settings.project_id)
            except TaskPilotError as exc:
                self.logger.warning(
                    "review_sweep_failed",
                    extra=self.log_extra(project_id=settings.project_id, error=str(exc)),
                )
        return results
