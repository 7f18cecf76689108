"""
Tests for RequirementsAnalyzerService.

**Validates: linear generation status path, in-flight conflict, ai_generated
task sequencing and failure reporting**
"""

import sqlite3
import tempfile
from pathlib import Path
from typing import List, Tuple

import pytest
from hypothesis import given, settings, strategies as st

from taskpilot.config import Config
from taskpilot.db.database import SQLiteDatabase
from taskpilot.errors import ConflictError, EntityNotFoundError, ValidationError
from taskpilot.models.domain import Feature, GenerationStatus, TaskDraft, TaskSource, TaskType
from taskpilot.services.base import ServiceContext
from taskpilot.services.events import EventBus, RequirementsCompleted, RequirementsFailed
from taskpilot.services.requirements import NO_FEATURES_MESSAGE, RequirementsAnalyzerService

P, A, G, C, F = (
    GenerationStatus.PENDING,
    GenerationStatus.ANALYZING,
    GenerationStatus.GENERATING,
    GenerationStatus.COMPLETED,
    GenerationStatus.FAILED,
)
VALID_PATHS = (
    [(P, A), (A, G), (G, C)],
    [(P, A), (A, F)],
    [(P, A), (A, G), (G, F)],
)


class RecordingDatabase(SQLiteDatabase):
    """Records every successful generation status transition."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.transitions: List[Tuple[str, str]] = []

    def transition_requirements(self, requirements_id, from_status, to_status, *, error_message=None):
        updated = super().transition_requirements(
            requirements_id, from_status, to_status, error_message=error_message
        )
        if updated is not None:
            self.transitions.append((from_status, to_status))
        return updated


@pytest.fixture
def recording_db(config, clock):
    database = RecordingDatabase(config.db_path, clock=clock)
    database.init_schema()
    return database


@pytest.fixture
def analyzer(context, recording_db, bus):
    service = RequirementsAnalyzerService(context, recording_db, event_bus=bus)
    yield service
    service.shutdown(wait=True)


@pytest.fixture
def demo(recording_db):
    return recording_db.create_project("demo")


def test_submit_and_generate_tasks(analyzer, recording_db, demo, bus):
    completed = []
    bus.add_handler(RequirementsCompleted, completed.append)

    request = analyzer.submit(demo.id, "Build login page", wait=True)

    assert request.generation_status == P
    final = analyzer.get_request(request.id)
    assert final.generation_status == C
    assert final.error_message is None
    assert [f["name"] for f in final.features] == ["Build login page"]
    assert final.analysis_result["summary"] == "1 feature(s) across frontend"
    assert recording_db.transitions == VALID_PATHS[0]

    tasks = recording_db.list_tasks(demo.id)
    assert [t.title for t in tasks] == [
        "Design frontend architecture",
        "Implement Build login page",
        "Integrate features end to end",
    ]
    assert [t.sequence for t in tasks] == [0, 1, 2]
    assert all(t.source == TaskSource.AI_GENERATED for t in tasks)
    assert [t.task_type for t in tasks] == [
        TaskType.ARCHITECTURE,
        TaskType.IMPLEMENTATION,
        TaskType.INTEGRATION,
    ]
    assert completed[0].task_ids == [t.id for t in tasks]


def test_background_submission_completes(analyzer, demo):
    request = analyzer.submit(demo.id, "- Users can sign up\n- Admin dashboard shows signups")
    analyzer.shutdown(wait=True)

    status = analyzer.get_status(demo.id)
    assert status.id == request.id
    assert status.generation_status == C
    assert analyzer.is_terminal(status.generation_status)


def test_submit_rejects_empty_requirements(analyzer, demo):
    with pytest.raises(ValidationError):
        analyzer.submit(demo.id, "  \n\t ")
    assert analyzer.get_status(demo.id) is None


def test_submit_unknown_project(analyzer):
    with pytest.raises(EntityNotFoundError):
        analyzer.submit(999, "- something")


@pytest.mark.parametrize("in_flight", [P, A, G])
def test_submit_conflicts_while_in_flight(analyzer, recording_db, demo, in_flight):
    request = recording_db.create_requirements(demo.id, "- first")
    path = [P, A, G]
    for before, after in zip(path, path[1:path.index(in_flight) + 1]):
        recording_db.transition_requirements(request.id, before, after)

    with pytest.raises(ConflictError):
        analyzer.submit(demo.id, "- second", wait=True)

    assert analyzer.get_status(demo.id).id == request.id
    assert analyzer.get_status(demo.id).generation_status == in_flight


def test_no_features_fails(context, recording_db, demo, bus):
    class EmptyExtractor:
        def extract(self, raw, prd):
            return []

    failures = []
    bus.add_handler(RequirementsFailed, failures.append)
    analyzer = RequirementsAnalyzerService(context, recording_db, extractor=EmptyExtractor(), event_bus=bus)

    request = analyzer.submit(demo.id, "???", wait=True)

    final = analyzer.get_request(request.id)
    assert final.generation_status == F
    assert final.error_message == NO_FEATURES_MESSAGE
    assert recording_db.transitions == VALID_PATHS[1]
    assert failures[0].error == NO_FEATURES_MESSAGE
    assert recording_db.list_tasks(demo.id) == []


def test_extractor_crash_fails_with_message(context, recording_db, demo, bus):
    class BrokenExtractor:
        def extract(self, raw, prd):
            raise RuntimeError("model unavailable")

    analyzer = RequirementsAnalyzerService(context, recording_db, extractor=BrokenExtractor(), event_bus=bus)
    request = analyzer.submit(demo.id, "- Login", wait=True)

    final = analyzer.get_request(request.id)
    assert final.generation_status == F
    assert final.error_message == "Feature extraction failed: model unavailable"


def test_storage_failure_while_analyzing_fails_and_releases_project(config, clock, context, bus):
    class LockedAnalysisDatabase(RecordingDatabase):
        def update_requirements_analysis(self, requirements_id, analysis):
            raise sqlite3.OperationalError("database is locked")

    database = LockedAnalysisDatabase(config.db_path, clock=clock)
    database.init_schema()
    project = database.create_project("locked")
    analyzer = RequirementsAnalyzerService(context, database, event_bus=bus)

    request = analyzer.submit(project.id, "- Login", wait=True)

    final = analyzer.get_request(request.id)
    assert final.generation_status == F
    assert final.error_message == "Storing the analysis failed: OperationalError: database is locked"
    assert database.transitions == VALID_PATHS[1]

    # a failed request no longer blocks the project
    again = analyzer.submit(project.id, "- Login", wait=True)
    assert analyzer.get_request(again.id).generation_status == F


def test_generation_failure_keeps_partial_tasks(context, recording_db, demo, bus):
    class FlakyGenerator:
        def generate(self, features):
            yield TaskDraft(title="Design core architecture", task_type=TaskType.ARCHITECTURE)
            raise RuntimeError("connection reset")

    analyzer = RequirementsAnalyzerService(context, recording_db, generator=FlakyGenerator(), event_bus=bus)
    request = analyzer.submit(demo.id, "- Login", wait=True)

    final = analyzer.get_request(request.id)
    assert final.generation_status == F
    assert final.error_message == "Task generation failed after 1 task(s): RuntimeError: connection reset"
    assert recording_db.transitions == VALID_PATHS[2]
    assert [t.title for t in recording_db.list_tasks(demo.id)] == ["Design core architecture"]


def test_generated_drafts_are_normalized(context, recording_db, demo, bus):
    class LooseGenerator:
        def generate(self, features):
            return [
                TaskDraft(title="  Wire webhooks ", layer="Backend", task_type="INTEGRATION"),
                TaskDraft(title="", layer="mobile", task_type="epic"),
            ]

    analyzer = RequirementsAnalyzerService(context, recording_db, generator=LooseGenerator(), event_bus=bus)
    analyzer.submit(demo.id, "- Webhooks", wait=True)

    first, second = recording_db.list_tasks(demo.id)
    assert (first.title, first.layer, first.task_type) == ("Wire webhooks", "backend", TaskType.INTEGRATION)
    assert (second.title, second.layer, second.task_type) == ("Untitled task", None, TaskType.IMPLEMENTATION)


def test_prd_content_contributes_features(analyzer, demo):
    request = analyzer.submit(
        demo.id,
        "- Users can reset their password",
        prd_content="# PRD\n\n- Password reset emails are sent via the API",
        wait=True,
    )
    final = analyzer.get_request(request.id)
    assert final.prd_content.startswith("# PRD")
    assert len(final.features) == 2


def test_delete_during_analysis_stops_quietly(context, recording_db, demo, bus):
    holder = {}

    class DeletingExtractor:
        def extract(self, raw, prd):
            holder["analyzer"].delete(demo.id)
            return [Feature(name="Login", description="Login page", layer="frontend")]

    analyzer = RequirementsAnalyzerService(context, recording_db, extractor=DeletingExtractor(), event_bus=bus)
    holder["analyzer"] = analyzer
    request = analyzer.submit(demo.id, "- Login", wait=False)
    analyzer.shutdown(wait=True)

    assert analyzer.get_status(demo.id) is None
    assert recording_db.list_tasks(demo.id) == []
    assert analyzer.run_analysis(request.id) is None


def test_delete_keeps_generated_tasks(analyzer, recording_db, demo):
    analyzer.submit(demo.id, "- Login page", wait=True)
    assert analyzer.delete(demo.id) == 1
    assert analyzer.get_status(demo.id) is None
    assert len(recording_db.list_tasks(demo.id)) == 3


def test_resubmission_after_completion_continues_sequence(analyzer, recording_db, demo):
    analyzer.submit(demo.id, "- Login page", wait=True)
    analyzer.submit(demo.id, "- Checkout API", wait=True)

    sequences = [t.sequence for t in recording_db.list_tasks(demo.id)]
    assert sequences == list(range(6))


line_text = st.text(
    alphabet=st.characters(exclude_categories=("Cs", "Cc")),
    min_size=0,
    max_size=30,
)


@settings(max_examples=40, deadline=None)
@given(lines=st.lists(line_text, min_size=1, max_size=6))
def test_status_path_is_always_linear(lines):
    """Whatever the text, the request walks one of the linear paths to a terminal state."""
    raw = "\n".join(f"- {line}" for line in lines)
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(db_path=Path(tmpdir) / "prop.sqlite")
        db = RecordingDatabase(config.db_path)
        db.init_schema()
        project = db.create_project("prop")
        analyzer = RequirementsAnalyzerService(ServiceContext(config=config), db, event_bus=EventBus())

        request = analyzer.submit(project.id, raw, wait=True)

        final = analyzer.get_request(request.id)
        assert final.generation_status in GenerationStatus.TERMINAL
        assert db.transitions in VALID_PATHS
        if final.generation_status == C:
            assert [t.sequence for t in db.list_tasks(project.id)] == list(range(len(db.list_tasks(project.id))))
