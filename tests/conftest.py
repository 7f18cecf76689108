import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure repository root is on sys.path so the in-tree package imports cleanly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskpilot.config import Config, _reset_config_for_tests  # noqa: E402
from taskpilot.db.database import SQLiteDatabase  # noqa: E402
from taskpilot.services.base import ServiceContext  # noqa: E402
from taskpilot.services.collaborators import MergeResult, TestRunResult  # noqa: E402
from taskpilot.services.container import build_services  # noqa: E402
from taskpilot.services.events import EventBus  # noqa: E402

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock used for every persisted timestamp."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeTestRunner:
    __test__ = False

    def __init__(self, passed: bool = True, output: str = "3 passed", error: Optional[Exception] = None) -> None:
        self.passed = passed
        self.output = output
        self.error = error
        self.calls: List[int] = []
        self.started = threading.Event()
        self.gate: Optional[threading.Event] = None

    def run_tests(self, workspace, timeout):
        self.calls.append(workspace.id)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return TestRunResult(passed=self.passed, output=self.output)


class FakeMerger:
    def __init__(self, completed: bool = True, details: str = "Merged feature into main", error: Optional[Exception] = None) -> None:
        self.completed = completed
        self.details = details
        self.error = error
        self.calls: List[int] = []

    def merge(self, workspace, timeout):
        self.calls.append(workspace.id)
        if self.error is not None:
            raise self.error
        return MergeResult(completed=self.completed, details=self.details)


@pytest.fixture(autouse=True)
def _reset_global_config():
    _reset_config_for_tests()
    yield
    _reset_config_for_tests()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        db_path=tmp_path / "taskpilot.sqlite",
        runner_enabled=False,
        runner_poll_seconds=0.02,
        review_sweep_seconds=0.02,
        timeout_check_seconds=0.02,
        review_test_timeout_seconds=5,
        review_merge_timeout_seconds=5,
    )


@pytest.fixture
def context(config: Config) -> ServiceContext:
    return ServiceContext(config=config)


@pytest.fixture
def db(config: Config, clock: FakeClock) -> SQLiteDatabase:
    database = SQLiteDatabase(config.db_path, clock=clock)
    database.init_schema()
    return database


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def test_runner() -> FakeTestRunner:
    return FakeTestRunner()


@pytest.fixture
def merger() -> FakeMerger:
    return FakeMerger()


@pytest.fixture
def make_container(context, db, bus, test_runner, merger):
    built = []

    def _make(**overrides):
        kwargs = {"event_bus": bus, "test_runner": test_runner, "merger": merger}
        kwargs.update(overrides)
        container = build_services(context, db, **kwargs)
        built.append(container)
        return container

    yield _make
    for container in built:
        container.shutdown(wait=True)


@pytest.fixture
def container(make_container):
    return make_container()


@pytest.fixture
def project(db):
    return db.create_project("demo")
