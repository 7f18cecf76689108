"""Tests for the default collaborator implementations."""

import re
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from taskpilot.errors import CollaboratorError, CollaboratorTimeout
from taskpilot.models.domain import Feature, Task, TaskLayer, TaskStatus, TaskType, Workspace
from taskpilot.services.collaborators import (
    ArchitectureFirstGenerator,
    GitChangeProbe,
    GitWorkspaceMerger,
    HeuristicFeatureExtractor,
    LayerSplitDecomposer,
    SequenceDecider,
    SubprocessTestRunner,
    TaskDecider,
    TestRunner,
    detect_test_command,
    infer_layer,
    normalize_layer,
    normalize_task_type,
)


def _task(task_id, title="Task", task_type=TaskType.IMPLEMENTATION, sequence=None, description=None):
    return Task(
        id=task_id,
        project_id=1,
        title=title,
        status=TaskStatus.TODO,
        created_at="2026-01-05T09:00:00.000000+00:00",
        updated_at="2026-01-05T09:00:00.000000+00:00",
        task_type=task_type,
        sequence=sequence,
        description=description,
    )


def _workspace(path, **kwargs):
    return Workspace(
        id=1,
        task_id=1,
        path=str(path),
        created_at="2026-01-05T09:00:00.000000+00:00",
        updated_at="2026-01-05T09:00:00.000000+00:00",
        **kwargs,
    )


# Decider

def test_sequence_decider_orders_by_type_then_board_order():
    candidates = [
        _task(1, "Wire it up", TaskType.INTEGRATION, 0),
        _task(2, "Build it", TaskType.IMPLEMENTATION, 1),
        _task(3, "Fake it", TaskType.MOCK, 2),
        _task(4, "Fake more", TaskType.MOCK, 3),
    ]
    decision = SequenceDecider().decide(candidates)
    assert decision.task_id == 3
    assert "out of 4 eligible task(s)" in decision.reasoning


def test_sequence_decider_idle_without_candidates():
    assert SequenceDecider().decide([]) is None
    assert isinstance(SequenceDecider(), TaskDecider)


# Normalization

@pytest.mark.parametrize(
    "raw, expected",
    [("Frontend", "frontend"), (" data ", "data"), ("mobile", None), ("", None), (None, None)],
)
def test_normalize_layer(raw, expected):
    assert normalize_layer(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [("MOCK", "mock"), ("architecture", "architecture"), ("epic", "implementation"), (None, "implementation")],
)
def test_normalize_task_type(raw, expected):
    assert normalize_task_type(raw) == expected


@pytest.mark.parametrize(
    "text, layer",
    [
        ("Store orders in a database table", TaskLayer.DATA),
        ("Expose an API endpoint for orders", TaskLayer.BACKEND),
        ("Add a settings page", TaskLayer.FRONTEND),
        ("API endpoint and page for orders", TaskLayer.FULLSTACK),
        ("Deploy with docker", TaskLayer.DEVOPS),
        ("Make it delightful", None),
    ],
)
def test_infer_layer(text, layer):
    assert infer_layer(text) == layer


# Feature extraction

def test_extractor_reads_bullets_and_skips_headings():
    text = "# Checkout\n\nIntro paragraph that is not a bullet.\n- Cart page shows totals\n* Payment API: charge cards\n1. Receipt emails\n"
    features = HeuristicFeatureExtractor().extract(text, None)
    assert [f.name for f in features] == ["Cart page shows totals", "Payment API", "Receipt emails"]
    assert features[1].description == "Payment API: charge cards"
    assert [f.priority for f in features] == [1, 2, 3]


def test_extractor_falls_back_to_lines_and_dedupes_across_prd():
    features = HeuristicFeatureExtractor().extract("Login page\nlogin page\nok", "- Login page\n- Audit log storage")
    assert [f.name for f in features] == ["Login page", "Audit log storage"]
    assert features[1].layer == TaskLayer.DATA


def test_extractor_truncates_long_names():
    line = "x" * 120
    (feature,) = HeuristicFeatureExtractor(max_name_length=10).extract(line, None)
    assert feature.name == "xxxxxxxxxx..."
    assert feature.description == line


# Generation and decomposition

def test_generator_orders_architecture_implementation_integration():
    features = [
        Feature(name="Orders table", description="Orders table", layer=TaskLayer.DATA),
        Feature(name="Orders API", description="Orders API", layer=TaskLayer.BACKEND),
        Feature(name="Audit table", description="Audit table", layer=TaskLayer.DATA),
    ]
    drafts = list(ArchitectureFirstGenerator().generate(features))

    assert [d.task_type for d in drafts] == [
        TaskType.ARCHITECTURE,
        TaskType.ARCHITECTURE,
        TaskType.IMPLEMENTATION,
        TaskType.IMPLEMENTATION,
        TaskType.IMPLEMENTATION,
        TaskType.INTEGRATION,
    ]
    assert drafts[0].title == "Design data architecture"
    assert drafts[0].description.endswith("Orders table, Audit table")
    assert drafts[-1].layer == TaskLayer.FULLSTACK
    assert drafts[2].post_task_actions.startswith("## Orders table")


def test_generator_without_features_yields_nothing():
    assert list(ArchitectureFirstGenerator().generate([])) == []


def test_layer_split_decomposer():
    parent = _task(7, "Payments", TaskType.MOCK, description="Take payments")
    drafts = LayerSplitDecomposer().decompose(parent)
    assert [d.title for d in drafts] == ["Payments - Data Layer", "Payments - Backend Layer", "Payments - Frontend Layer"]
    assert [d.layer for d in drafts] == [TaskLayer.DATA, TaskLayer.BACKEND, TaskLayer.FRONTEND]
    assert all(d.task_type == TaskType.MOCK for d in drafts)
    assert drafts[0].description == "Take payments\n\n[Data layer subtask of task 7]"


# Test running

@pytest.mark.parametrize(
    "marker, command",
    [
        ("package.json", ["npm", "test"]),
        ("Cargo.toml", ["cargo", "test"]),
        ("pyproject.toml", ["pytest", "--tb=short", "-q"]),
        ("go.mod", ["go", "test", "./..."]),
    ],
)
def test_detect_test_command(tmp_path, marker, command):
    (tmp_path / marker).write_text("")
    assert detect_test_command(tmp_path) == command


def test_detect_test_command_unknown_stack(tmp_path):
    assert detect_test_command(tmp_path) is None


def test_subprocess_runner_reports_exit_status(tmp_path):
    passing = SubprocessTestRunner(test_command=[sys.executable, "-c", "print('all good')"])
    failing = SubprocessTestRunner(test_command=[sys.executable, "-c", "import sys; sys.exit(1)"])

    ok = passing.run_tests(_workspace(tmp_path), timeout=30)
    assert ok.passed is True
    assert "all good" in ok.output
    assert failing.run_tests(_workspace(tmp_path), timeout=30).passed is False
    assert isinstance(passing, TestRunner)


def test_subprocess_runner_unknown_stack_passes(tmp_path):
    result = SubprocessTestRunner().run_tests(_workspace(tmp_path), timeout=30)
    assert result.passed is True
    assert result.output == "Unknown stack, tests skipped"


def test_subprocess_runner_missing_workspace(tmp_path):
    with pytest.raises(CollaboratorError):
        SubprocessTestRunner().run_tests(_workspace(tmp_path / "gone"), timeout=30)


def test_subprocess_runner_timeout(tmp_path):
    runner = SubprocessTestRunner(test_command=[sys.executable, "-c", "import time; time.sleep(5)"])
    with pytest.raises(CollaboratorTimeout, match="timed out after 0.2s"):
        runner.run_tests(_workspace(tmp_path), timeout=0.2)


# Git merging

def _git_version():
    if shutil.which("git") is None:
        return None
    out = subprocess.run(["git", "--version"], capture_output=True, text=True).stdout
    match = re.search(r"(\d+)\.(\d+)", out)
    return (int(match.group(1)), int(match.group(2))) if match else None


requires_git = pytest.mark.skipif(_git_version() is None, reason="git not installed")
requires_merge_tree = pytest.mark.skipif(
    (_git_version() or (0, 0)) < (2, 38), reason="git merge-tree --write-tree needs git >= 2.38"
)


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return proc.stdout.strip()


def _commit(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content)
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", message)


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q")
    _git(path, "config", "user.email", "dev@example.com")
    _git(path, "config", "user.name", "Dev")
    _git(path, "config", "commit.gpgsign", "false")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _commit(path, "app.py", "print('v1')\n", "initial")
    _git(path, "checkout", "-q", "-b", "feature")
    return path


@requires_git
def test_merger_fast_forwards(repo):
    _commit(repo, "feature.py", "x = 1\n", "add feature")
    feature_sha = _git(repo, "rev-parse", "feature")

    result = GitWorkspaceMerger().merge(_workspace(repo, branch="feature", target_branch="main"), timeout=30)

    assert result.completed is True
    assert result.details == "Fast-forwarded main to feature"
    assert _git(repo, "rev-parse", "main") == feature_sha
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "feature"


@requires_git
def test_merger_up_to_date(repo):
    result = GitWorkspaceMerger().merge(_workspace(repo, branch="feature"), timeout=30)
    assert result.completed is True
    assert result.details == "Already up to date"


@requires_merge_tree
def test_merger_creates_merge_commit(repo):
    _commit(repo, "feature.py", "x = 1\n", "add feature")
    _git(repo, "checkout", "-q", "main")
    _commit(repo, "other.py", "y = 2\n", "main moves on")
    _git(repo, "checkout", "-q", "feature")
    main_before = _git(repo, "rev-parse", "main")

    result = GitWorkspaceMerger().merge(_workspace(repo, branch="feature", target_branch="main"), timeout=30)

    assert result.completed is True
    assert result.details == "Merge feature into main"
    parents = _git(repo, "rev-list", "--parents", "-n", "1", "main").split()
    assert parents[1:] == [main_before, _git(repo, "rev-parse", "feature")]
    assert "feature.py" in _git(repo, "ls-tree", "--name-only", "main")


@requires_merge_tree
def test_merger_reports_conflict_without_touching_refs(repo):
    _commit(repo, "app.py", "print('feature')\n", "feature edit")
    _git(repo, "checkout", "-q", "main")
    _commit(repo, "app.py", "print('main')\n", "main edit")
    _git(repo, "checkout", "-q", "feature")
    main_before = _git(repo, "rev-parse", "main")

    result = GitWorkspaceMerger().merge(_workspace(repo, branch="feature", target_branch="main"), timeout=30)

    assert result.completed is False
    assert "app.py" in result.details
    assert _git(repo, "rev-parse", "main") == main_before


@requires_git
def test_change_probe(repo):
    probe = GitChangeProbe()
    workspace = _workspace(repo, branch="feature", target_branch="main")
    assert probe.has_changes(workspace) is False

    (repo / "scratch.txt").write_text("wip")
    assert probe.has_changes(workspace) is True

    (repo / "scratch.txt").unlink()
    _commit(repo, "feature.py", "x = 1\n", "add feature")
    assert probe.has_changes(workspace) is True
    assert probe.has_changes(_workspace(repo / "missing")) is False
