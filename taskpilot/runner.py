"""
TaskPilot Automation Runner

Background loops driving the orchestration services:

- scheduler: polls agent settings and fires each enabled project's tick once
  its interval has elapsed, on a thread pool;
- review sweep: processes in-review tasks of projects with review automation;
- stalled-task watch: reports tasks past their stage timeout.

Stopping the runner lets in-flight ticks and passes finish.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from taskpilot.logging import get_logger, log_extra
from taskpilot.models.domain import Task
from taskpilot.services.base import ServiceContext
from taskpilot.services.events import EventBus, TaskTimedOut, get_event_bus

logger = get_logger(__name__)

EscalationHook = Callable[[Task], None]


class AutomationRunner:
    """
    Thread-based driver for ticks, review sweeps and timeout checks.

    Example:
        runner = AutomationRunner(context, db, scheduler=scheduler, review=review, hierarchy=hierarchy)
        runner.start()
        ...
        runner.stop()
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        scheduler,
        review,
        hierarchy,
        event_bus: Optional[EventBus] = None,
        escalate: Optional[EscalationHook] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.config = context.config
        self.db = db
        self.scheduler = scheduler
        self.review = review
        self.hierarchy = hierarchy
        self.event_bus = event_bus or get_event_bus()
        self.escalate = escalate
        self._monotonic = monotonic

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._pool: Optional[ThreadPoolExecutor] = None
        self._next_runs: Dict[int, float] = {}
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()
        self._reported_timeouts: Dict[int, str] = {}

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.runner_max_workers,
            thread_name_prefix="taskpilot-runner",
        )
        self.review.attach(self.event_bus, dispatch=self._submit)
        loops = (
            ("scheduler", self.config.runner_poll_seconds, self.run_scheduler_once),
            ("review-sweep", self.config.review_sweep_seconds, self.run_review_sweep_once),
            ("timeout-watch", self.config.timeout_check_seconds, self.check_timeouts_once),
        )
        for name, period, fn in loops:
            thread = threading.Thread(
                target=self._loop,
                args=(name, period, fn),
                name=f"taskpilot-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("runner_started", extra=log_extra(workers=self.config.runner_max_workers))

    def stop(self, wait: bool = True, timeout: float = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.review.detach(self.event_bus)
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info("runner_stopped")

    def _loop(self, name: str, period: float, fn: Callable[[], object]) -> None:
        while not self._stop.is_set():
            try:
                fn()
            except Exception as exc:
                logger.exception("runner_loop_failed", extra=log_extra(loop=name, error=str(exc)))
            self._stop.wait(period)

    def _submit(self, fn: Callable[..., object], *args) -> Optional[Future]:
        if self._pool is None:
            fn(*args)
            return None
        return self._pool.submit(fn, *args)

    # Scheduler

    def _run_tick(self, project_id: int) -> None:
        try:
            self.scheduler.tick(project_id)
        except Exception as exc:
            logger.exception("agent_tick_failed", extra=log_extra(project_id=project_id, error=str(exc)))
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(project_id)

    def run_scheduler_once(self) -> List[int]:
        """Fire ticks for enabled projects whose interval elapsed. Returns the project ids fired."""
        now = self._monotonic()
        fired: List[int] = []
        enabled = self.db.list_enabled_agent_settings()
        enabled_ids = {s.project_id for s in enabled}
        for project_id in list(self._next_runs):
            if project_id not in enabled_ids:
                del self._next_runs[project_id]

        for settings in enabled:
            project_id = settings.project_id
            if now < self._next_runs.get(project_id, 0.0):
                continue
            with self._in_flight_lock:
                if project_id in self._in_flight:
                    continue
                self._in_flight.add(project_id)
            self._next_runs[project_id] = now + settings.interval_seconds
            self._submit(self._run_tick, project_id)
            fired.append(project_id)
        return fired

    # Review automation

    def run_review_sweep_once(self) -> int:
        results = self.review.sweep_enabled_projects()
        processed = sum(len(outcomes) for outcomes in results.values())
        if processed:
            logger.info("review_sweep_completed", extra=log_extra(processed=processed))
        return processed

    # Stalled-task watch

    def check_timeouts_once(self) -> List[Task]:
        """Report tasks past their stage timeout once per stage entry."""
        stalled = self.hierarchy.find_all_timed_out()
        current = {task.id for task in stalled}
        for task_id in list(self._reported_timeouts):
            if task_id not in current:
                del self._reported_timeouts[task_id]

        reported: List[Task] = []
        for task in stalled:
            if self._reported_timeouts.get(task.id) == task.stage_started_at:
                continue
            self._reported_timeouts[task.id] = task.stage_started_at or ""
            reported.append(task)
            logger.warning(
                "task_stage_timed_out",
                extra=log_extra(
                    project_id=task.project_id,
                    task_id=task.id,
                    status=task.status,
                    stage_started_at=task.stage_started_at,
                ),
            )
            self.event_bus.publish(
                TaskTimedOut(
                    task_id=task.id,
                    project_id=task.project_id,
                    status=task.status,
                    stage_started_at=task.stage_started_at,
                )
            )
            if self.escalate is not None:
                try:
                    self.escalate(task)
                except Exception as exc:
                    logger.exception("timeout_escalation_failed", extra=log_extra(task_id=task.id, error=str(exc)))
        return reported
