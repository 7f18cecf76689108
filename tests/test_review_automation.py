"""
Tests for ReviewAutomationService.

**Validates: one log row per step, disabled projects stay silent, merge
conflicts leave the task in review and passes never overlap**
"""

import threading
import time

import pytest

from taskpilot.errors import ConflictError, EntityNotFoundError
from taskpilot.models.domain import ReviewAction, TaskStatus
from taskpilot.services.collaborators import MergeResult
from taskpilot.services.review_automation import NOTHING_ENABLED_MESSAGE, TESTS_FAILED_MESSAGE


@pytest.fixture
def review(container):
    return container.review


@pytest.fixture
def hierarchy(container):
    return container.hierarchy


def _task_in_review(db, hierarchy, project_id, *, workspace=True, title="Checkout flow"):
    task = db.create_task(project_id, title)
    if workspace:
        db.create_workspace(task.id, "/tmp/ws-checkout", branch="feature/checkout", target_branch="main")
    hierarchy.transition_status(task.id, TaskStatus.IN_PROGRESS)
    return hierarchy.transition_status(task.id, TaskStatus.IN_REVIEW)


def _actions(logs):
    # Logs come back newest first
    return [entry.action for entry in reversed(logs)]


def test_disabled_project_logs_nothing(review, hierarchy, db, project, test_runner):
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action is None
    assert outcome.logs == []
    assert review.list_task_logs(task.id) == []
    assert test_runner.calls == []


def test_clean_pass_tests_merges_and_completes(review, hierarchy, db, project, test_runner, merger):
    review.enable(project.id)
    task = _task_in_review(db, hierarchy, project.id)
    workspace = db.get_active_workspace(task.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.MERGE_COMPLETED
    assert outcome.workspace_id == workspace.id
    assert _actions(review.list_task_logs(task.id)) == [ReviewAction.TEST_PASSED, ReviewAction.MERGE_COMPLETED]
    assert db.get_task(task.id).status == TaskStatus.DONE
    assert db.get_active_workspace(task.id) is None
    assert db.get_workspace(workspace.id).archived is True
    assert test_runner.calls == [workspace.id]
    assert merger.calls == [workspace.id]

    logs = review.list_task_logs(task.id)
    assert logs[0].output == "Merged feature into main"
    assert logs[1].output == "3 passed"


def test_failing_tests_stop_the_pass(review, hierarchy, db, project, test_runner, merger):
    review.enable(project.id)
    test_runner.passed = False
    test_runner.output = "1 failed, 2 passed"
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.TEST_FAILED
    assert outcome.message == TESTS_FAILED_MESSAGE
    logs = review.list_task_logs(task.id)
    assert len(logs) == 1
    assert logs[0].output == "1 failed, 2 passed"
    assert db.get_task(task.id).status == TaskStatus.IN_REVIEW
    assert merger.calls == []


def test_merge_conflict_keeps_task_in_review(review, hierarchy, db, project, merger):
    review.enable(project.id)
    merger.completed = False
    merger.details = "CONFLICT (content): Merge conflict in app.py"
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.MERGE_CONFLICT
    assert outcome.message == "Merge conflict detected. Details: CONFLICT (content): Merge conflict in app.py"
    assert _actions(review.list_task_logs(task.id)) == [ReviewAction.TEST_PASSED, ReviewAction.MERGE_CONFLICT]
    assert db.get_task(task.id).status == TaskStatus.IN_REVIEW
    assert db.get_active_workspace(task.id) is not None
    assert review.count_merge_conflicts(task.id) == 1


def test_tests_disabled_goes_straight_to_merge(review, hierarchy, db, project, test_runner):
    review.update_settings(project.id, enabled=True, run_tests_enabled=False)
    task = _task_in_review(db, hierarchy, project.id)

    review.process_task(task.id)

    assert _actions(review.list_task_logs(task.id)) == [ReviewAction.MERGE_COMPLETED]
    assert test_runner.calls == []


def test_merge_disabled_stops_after_tests(review, hierarchy, db, project, merger):
    review.update_settings(project.id, enabled=True, auto_merge_enabled=False)
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.TEST_PASSED
    assert merger.calls == []
    assert db.get_task(task.id).status == TaskStatus.IN_REVIEW


def test_nothing_enabled_is_skipped(review, hierarchy, db, project):
    review.update_settings(project.id, enabled=True, auto_merge_enabled=False, run_tests_enabled=False)
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.SKIPPED
    assert outcome.message == NOTHING_ENABLED_MESSAGE


def test_missing_workspace_is_skipped(review, hierarchy, db, project):
    review.enable(project.id)
    task = _task_in_review(db, hierarchy, project.id, workspace=False)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.SKIPPED
    assert outcome.workspace_id is None
    assert outcome.message == "Task has no active workspace"


def test_task_not_in_review_is_skipped(review, db, project):
    review.enable(project.id)
    task = db.create_task(project.id, "Still todo")

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.SKIPPED
    assert outcome.message == "Task is todo, not inreview"


def test_done_task_is_skipped(review, hierarchy, db, project):
    review.enable(project.id)
    task = db.create_task(project.id, "Finished")
    hierarchy.transition_status(task.id, TaskStatus.DONE)

    outcome = review.process_task(task.id)

    assert outcome.message == "Task already done"
    assert len(review.list_task_logs(task.id)) == 1


def test_unknown_task_raises(review):
    with pytest.raises(EntityNotFoundError):
        review.process_task(12345)


def test_runner_crash_is_recorded_as_error(review, hierarchy, db, project, test_runner):
    review.enable(project.id)
    test_runner.error = RuntimeError("pytest not installed")
    task = _task_in_review(db, hierarchy, project.id)

    outcome = review.process_task(task.id)

    assert outcome.action == ReviewAction.ERROR
    assert outcome.message == "RuntimeError: pytest not installed"
    assert db.get_task(task.id).status == TaskStatus.IN_REVIEW


def test_test_timeout_is_recorded_as_error(review, hierarchy, db, project, test_runner):
    review.enable(project.id)
    test_runner.gate = threading.Event()
    task = _task_in_review(db, hierarchy, project.id)

    try:
        outcome = review.process_task(task.id, timeout=0.05)
    finally:
        test_runner.gate.set()

    assert outcome.action == ReviewAction.ERROR
    assert outcome.message == "Tests timed out after 0.05s"


def test_concurrent_pass_on_same_task_conflicts(review, hierarchy, db, project, test_runner):
    review.enable(project.id)
    test_runner.gate = threading.Event()
    task = _task_in_review(db, hierarchy, project.id)
    results = []

    worker = threading.Thread(target=lambda: results.append(review.process_task(task.id)))
    worker.start()
    try:
        assert test_runner.started.wait(5)
        with pytest.raises(ConflictError):
            review.process_task(task.id)
    finally:
        test_runner.gate.set()
        worker.join(5)

    assert results[0].action == ReviewAction.MERGE_COMPLETED
    assert len(test_runner.calls) == 1


def test_workspace_without_changes_is_skipped(make_container, db, project):
    class NoChanges:
        def has_changes(self, workspace):
            return False

    container = make_container(change_probe=NoChanges())
    container.review.enable(project.id)
    task = _task_in_review(db, container.hierarchy, project.id)

    outcome = container.review.process_task(task.id)

    assert outcome.action == ReviewAction.SKIPPED
    assert outcome.message == "Workspace has no changes"
    assert outcome.workspace_id == db.get_active_workspace(task.id).id


def test_entering_review_triggers_a_pass(review, hierarchy, db, project, bus):
    review.enable(project.id)
    review.attach(bus)
    try:
        task = _task_in_review(db, hierarchy, project.id)
    finally:
        review.detach(bus)

    assert db.get_task(task.id).status == TaskStatus.DONE
    assert _actions(review.list_task_logs(task.id)) == [ReviewAction.TEST_PASSED, ReviewAction.MERGE_COMPLETED]


def test_sweep_skips_tasks_already_reviewed_in_this_stage(review, hierarchy, db, project, clock, test_runner):
    review.enable(project.id)
    test_runner.passed = False
    task = _task_in_review(db, hierarchy, project.id)

    assert [o.task_id for o in review.sweep_project(project.id)] == [task.id]
    clock.advance(minutes=1)
    assert review.sweep_project(project.id) == []

    clock.advance(minutes=1)
    hierarchy.transition_status(task.id, TaskStatus.IN_PROGRESS)
    clock.advance(minutes=1)
    hierarchy.transition_status(task.id, TaskStatus.IN_REVIEW)

    assert [o.task_id for o in review.sweep_project(project.id)] == [task.id]
    assert len(review.list_task_logs(task.id)) == 2


def test_sweep_ignores_disabled_projects(review, hierarchy, db, project):
    _task_in_review(db, hierarchy, project.id)
    assert review.sweep_project(project.id) == []
    assert review.sweep_enabled_projects() == {}


def test_status_defaults_and_last_action(review, hierarchy, db, project):
    status = review.get_status(project.id)
    assert (status.enabled, status.auto_merge_enabled, status.run_tests_enabled) == (False, True, True)
    assert status.last_action is None

    review.enable(project.id)
    task = _task_in_review(db, hierarchy, project.id)
    review.process_task(task.id)

    status = review.get_status(project.id)
    assert status.enabled is True
    assert status.last_action == ReviewAction.MERGE_COMPLETED
    assert status.last_task_id == task.id

    with pytest.raises(EntityNotFoundError):
        review.get_status(999)


class GatedMerger:
    """Merger that blocks until released and tracks overlapping calls."""

    def __init__(self) -> None:
        self.gate = threading.Event()
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def merge(self, workspace, timeout):
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            self.gate.wait(5)
            return MergeResult(completed=True, details="Merged feature into main")
        finally:
            with self._lock:
                self.running -= 1


def test_timed_out_merge_keeps_task_locked_until_it_finishes(make_container, db, project):
    merger = GatedMerger()
    container = make_container(merger=merger)
    review = container.review
    review.update_settings(project.id, enabled=True, run_tests_enabled=False)
    task = _task_in_review(db, container.hierarchy, project.id)

    try:
        first = review.process_task(task.id, timeout=0.05)
        assert (first.action, first.message) == (ReviewAction.ERROR, "Merge timed out after 0.05s")
        with pytest.raises(ConflictError):
            review.process_task(task.id, timeout=0.05)
    finally:
        merger.gate.set()

    deadline = time.monotonic() + 5
    while True:
        try:
            second = review.process_task(task.id)
            break
        except ConflictError:
            assert time.monotonic() < deadline, "task lock never released"
            time.sleep(0.01)

    assert second.action == ReviewAction.MERGE_COMPLETED
    assert merger.calls == 2
    assert merger.max_running == 1
    assert db.get_task(task.id).status == TaskStatus.DONE
