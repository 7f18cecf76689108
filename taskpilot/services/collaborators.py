"""
TaskPilot Collaborators

Pluggable capabilities the services depend on, each a one-method Protocol,
plus the default rule-based and subprocess-backed implementations.

The AI agent, git plumbing and test toolchains live behind these seams so
the orchestration services never depend on them directly.
"""

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from taskpilot.errors import CollaboratorError, CollaboratorTimeout
from taskpilot.logging import get_logger, log_extra
from taskpilot.models.domain import Feature, Task, TaskDraft, TaskLayer, TaskType, Workspace

logger = get_logger(__name__)


# Results

@dataclass
class Decision:
    """A task decider's answer. task_id None means "stay idle"."""
    task_id: Optional[int]
    reasoning: str = ""


@dataclass
class TestRunResult:
    """Outcome of running a workspace's test suite."""
    __test__ = False

    passed: bool
    output: str = ""


@dataclass
class MergeResult:
    """Outcome of merging a workspace into its target branch."""
    completed: bool
    details: str = ""
    commit: Optional[str] = None


# Capabilities

@runtime_checkable
class TaskDecider(Protocol):
    def decide(self, candidates: Sequence[Task]) -> Optional[Decision]: ...


@runtime_checkable
class FeatureExtractor(Protocol):
    def extract(self, raw_requirements: str, prd_content: Optional[str]) -> List[Feature]: ...


@runtime_checkable
class TaskGenerator(Protocol):
    def generate(self, features: Sequence[Feature]) -> Iterable[TaskDraft]: ...


@runtime_checkable
class TaskDecomposer(Protocol):
    def decompose(self, task: Task) -> List[TaskDraft]: ...


@runtime_checkable
class TestRunner(Protocol):
    def run_tests(self, workspace: Workspace, timeout: float) -> TestRunResult: ...


@runtime_checkable
class WorkspaceMerger(Protocol):
    def merge(self, workspace: Workspace, timeout: float) -> MergeResult: ...


@runtime_checkable
class ChangeProbe(Protocol):
    def has_changes(self, workspace: Workspace) -> bool: ...


# Normalization helpers

def normalize_layer(value: Optional[str]) -> Optional[str]:
    """Map a free-form layer string onto a known layer, or None."""
    if not value:
        return None
    lowered = str(value).strip().lower()
    return lowered if lowered in TaskLayer.ALL else None


def normalize_task_type(value: Optional[str]) -> str:
    """Map a free-form task type onto a known type, defaulting to implementation."""
    if not value:
        return TaskType.IMPLEMENTATION
    lowered = str(value).strip().lower()
    return lowered if lowered in TaskType.ALL else TaskType.IMPLEMENTATION


# Task decider

_TYPE_PRIORITY = {
    TaskType.ARCHITECTURE: 0,
    TaskType.MOCK: 1,
    TaskType.IMPLEMENTATION: 2,
    TaskType.INTEGRATION: 3,
}


class SequenceDecider:
    """
    Pick the first candidate by task type, then board order.

    Architecture work comes before mocks, mocks before implementation and
    implementation before integration. Candidates arrive in board order so
    a stable sort keeps sequence/created_at ordering within a type.
    """

    def decide(self, candidates: Sequence[Task]) -> Optional[Decision]:
        if not candidates:
            return None
        ranked = sorted(candidates, key=lambda t: _TYPE_PRIORITY.get(t.task_type, len(_TYPE_PRIORITY)))
        chosen = ranked[0]
        reasoning = (
            f"Selected '{chosen.title}' ({chosen.task_type}"
            f"{', sequence ' + str(chosen.sequence) if chosen.sequence is not None else ''}) "
            f"out of {len(candidates)} eligible task(s)"
        )
        return Decision(task_id=chosen.id, reasoning=reasoning)


# Feature extraction

_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+(?P<text>.+?)\s*$")
_HEADING_RE = re.compile(r"^\s*#")

_LAYER_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (TaskLayer.DATA, ("database", "schema", "table", "migration", "model", "storage", "persist", "sql")),
    (TaskLayer.BACKEND, ("api", "endpoint", "server", "service", "backend", "auth", "webhook", "queue")),
    (TaskLayer.FRONTEND, ("ui", "page", "screen", "button", "form", "view", "component", "frontend", "display")),
    (TaskLayer.DEVOPS, ("deploy", "docker", "pipeline", "ci", "infrastructure", "kubernetes", "monitoring")),
    (TaskLayer.TESTING, ("test", "tests", "qa", "coverage")),
)

_WORD_RE = re.compile(r"[a-z0-9]+")


def infer_layer(text: str) -> Optional[str]:
    """Guess a layer from keywords. Backend plus frontend reads as fullstack."""
    words = set(_WORD_RE.findall(text.lower()))
    matched = [layer for layer, keywords in _LAYER_KEYWORDS if words.intersection(keywords)]
    if TaskLayer.BACKEND in matched and TaskLayer.FRONTEND in matched:
        return TaskLayer.FULLSTACK
    return matched[0] if matched else None


class HeuristicFeatureExtractor:
    """
    One feature per bullet (or per line when the text has no bullets).

    Headings and blank lines are ignored, duplicate lines collapse to one
    feature, and the layer is inferred from keywords.
    """

    def __init__(self, *, max_name_length: int = 80) -> None:
        self.max_name_length = max_name_length

    def _candidate_lines(self, text: str) -> List[str]:
        lines = [line for line in text.splitlines() if line.strip() and not _HEADING_RE.match(line)]
        bullets = [m.group("text") for m in (_BULLET_RE.match(line) for line in lines) if m]
        if bullets:
            return bullets
        return [line.strip() for line in lines]

    def _name_for(self, line: str) -> str:
        head = line.split(":", 1)[0].strip() if ":" in line else line
        if len(head) > self.max_name_length:
            head = head[: self.max_name_length].rstrip() + "..."
        return head

    def extract(self, raw_requirements: str, prd_content: Optional[str]) -> List[Feature]:
        features: List[Feature] = []
        seen = set()
        for source in (raw_requirements, prd_content or ""):
            for line in self._candidate_lines(source):
                key = line.lower()
                if len(line) < 3 or key in seen:
                    continue
                seen.add(key)
                features.append(
                    Feature(
                        name=self._name_for(line),
                        description=line,
                        layer=infer_layer(line),
                        priority=min(len(features) + 1, 5),
                    )
                )
        return features


# Task generation

class ArchitectureFirstGenerator:
    """
    Architecture tasks first, then one implementation task per feature, then
    a single integration task. Drafts are yielded lazily in that order.
    """

    def generate(self, features: Sequence[Feature]) -> Iterator[TaskDraft]:
        if not features:
            return
        layers: List[Optional[str]] = []
        for feature in features:
            if feature.layer not in layers:
                layers.append(feature.layer)

        for layer in layers:
            group = [f for f in features if f.layer == layer]
            label = layer or "core"
            yield TaskDraft(
                title=f"Design {label} architecture",
                description=(
                    f"Define the {label} models, contracts and interfaces needed for: "
                    + ", ".join(f.name for f in group)
                ),
                layer=layer,
                task_type=TaskType.ARCHITECTURE,
                testing_criteria=f"Interfaces for {len(group)} feature(s) are documented and reviewed",
            )

        for feature in features:
            yield TaskDraft(
                title=f"Implement {feature.name}",
                description=feature.description,
                layer=feature.layer,
                task_type=TaskType.IMPLEMENTATION,
                testing_criteria=f"{feature.name} behaves as described and is covered by tests",
                post_task_actions=f"## {feature.name}\n\n- Status: done\n- Summary: {feature.description}\n\n---",
            )

        distinct = [layer for layer in layers if layer]
        yield TaskDraft(
            title="Integrate features end to end",
            description="Wire the new features into the application and verify the complete flow.",
            layer=TaskLayer.FULLSTACK if len(distinct) > 1 else (distinct[0] if distinct else None),
            task_type=TaskType.INTEGRATION,
            testing_criteria="End-to-end flow works with every generated feature enabled",
        )


# Task decomposition

class LayerSplitDecomposer:
    """Split a task into data, backend and frontend layer subtasks."""

    LAYERS = ((TaskLayer.DATA, "Data"), (TaskLayer.BACKEND, "Backend"), (TaskLayer.FRONTEND, "Frontend"))

    def decompose(self, task: Task) -> List[TaskDraft]:
        drafts = []
        for layer, label in self.LAYERS:
            description = None
            if task.description:
                description = f"{task.description}\n\n[{label} layer subtask of task {task.id}]"
            drafts.append(
                TaskDraft(
                    title=f"{task.title} - {label} Layer",
                    description=description,
                    layer=layer,
                    task_type=task.task_type,
                    testing_criteria=task.testing_criteria,
                )
            )
        return drafts


# Test running

STACK_TEST_COMMANDS: Tuple[Tuple[Tuple[str, ...], List[str]], ...] = (
    (("package.json",), ["npm", "test"]),
    (("Cargo.toml",), ["cargo", "test"]),
    (("pyproject.toml", "setup.py", "pytest.ini"), ["pytest", "--tb=short", "-q"]),
    (("go.mod",), ["go", "test", "./..."]),
)


def detect_test_command(workspace_root: Path) -> Optional[List[str]]:
    """Return the test command for the stack found in the workspace, or None."""
    for markers, command in STACK_TEST_COMMANDS:
        if any((workspace_root / marker).exists() for marker in markers):
            return list(command)
    return None


def format_process_output(stdout: Optional[str], stderr: Optional[str]) -> str:
    return f"STDOUT:\n{stdout or ''}\n\nSTDERR:\n{stderr or ''}"


class SubprocessTestRunner:
    """
    Run the workspace's test suite in a subprocess.

    The command is either fixed (test_command) or detected from marker
    files. An unrecognized stack passes with a note instead of failing.
    """
    __test__ = False

    def __init__(self, *, test_command: Optional[List[str]] = None, max_output_chars: int = 20000) -> None:
        self.test_command = test_command
        self.max_output_chars = max_output_chars

    def run_tests(self, workspace: Workspace, timeout: float) -> TestRunResult:
        root = Path(workspace.path)
        if not root.is_dir():
            raise CollaboratorError(
                f"Workspace path does not exist: {workspace.path}",
                metadata={"workspace_id": workspace.id},
            )
        cmd = self.test_command or detect_test_command(root)
        if not cmd:
            return TestRunResult(passed=True, output="Unknown stack, tests skipped")

        logger.info(
            "review_tests_started",
            extra=log_extra(workspace_id=workspace.id, command=" ".join(cmd)),
        )
        try:
            proc = subprocess.run(
                cmd,
                cwd=root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CollaboratorTimeout(
                f"Tests timed out after {timeout:g}s",
                metadata={"workspace_id": workspace.id, "command": cmd},
            ) from exc
        except OSError as exc:
            raise CollaboratorError(
                f"Could not run {' '.join(cmd)}: {exc}",
                metadata={"workspace_id": workspace.id},
            ) from exc

        output = format_process_output(proc.stdout, proc.stderr)
        if len(output) > self.max_output_chars:
            output = output[-self.max_output_chars:]
        return TestRunResult(passed=proc.returncode == 0, output=output)


# Merging

def run_git(args: List[str], *, cwd: Path, timeout: float) -> subprocess.CompletedProcess:
    """Run a git command, turning a timeout into CollaboratorTimeout."""
    try:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CollaboratorTimeout(f"git {args[0]} timed out after {timeout:g}s") from exc
    except OSError as exc:
        raise CollaboratorError(f"Could not run git: {exc}") from exc


def _git_ok(proc: subprocess.CompletedProcess, what: str) -> str:
    if proc.returncode != 0:
        raise CollaboratorError(f"{what} failed: {(proc.stderr or proc.stdout).strip()}")
    return proc.stdout.strip()


class GitWorkspaceMerger:
    """
    Merge a workspace branch into its target branch without checking either out.

    Fast-forwards when possible; otherwise computes the merge with
    `git merge-tree --write-tree` and commits it onto the target ref. A
    conflicting merge touches no refs and is reported, never resolved.
    """

    def __init__(self, *, default_target_branch: str = "main") -> None:
        self.default_target_branch = default_target_branch

    def merge(self, workspace: Workspace, timeout: float) -> MergeResult:
        root = Path(workspace.path)
        if not root.is_dir():
            raise CollaboratorError(f"Workspace path does not exist: {workspace.path}")

        branch = workspace.branch or _git_ok(
            run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=root, timeout=timeout), "Resolving branch"
        )
        target = workspace.target_branch or self.default_target_branch
        target_ref = f"refs/heads/{target}"

        target_sha = _git_ok(run_git(["rev-parse", target_ref], cwd=root, timeout=timeout), "Resolving target")
        branch_sha = _git_ok(run_git(["rev-parse", branch], cwd=root, timeout=timeout), "Resolving branch head")

        if target_sha == branch_sha:
            return MergeResult(completed=True, details="Already up to date", commit=target_sha)

        ancestor = run_git(["merge-base", "--is-ancestor", target_sha, branch_sha], cwd=root, timeout=timeout)
        if ancestor.returncode == 0:
            _git_ok(
                run_git(["update-ref", target_ref, branch_sha, target_sha], cwd=root, timeout=timeout),
                "Fast-forward",
            )
            return MergeResult(completed=True, details=f"Fast-forwarded {target} to {branch}", commit=branch_sha)

        tree = run_git(["merge-tree", "--write-tree", target_sha, branch_sha], cwd=root, timeout=timeout)
        if tree.returncode == 1:
            return MergeResult(completed=False, details=tree.stdout.strip())
        tree_sha = _git_ok(tree, "Merge").splitlines()[0]

        message = f"Merge {branch} into {target}"
        commit_sha = _git_ok(
            run_git(
                ["commit-tree", tree_sha, "-p", target_sha, "-p", branch_sha, "-m", message],
                cwd=root,
                timeout=timeout,
            ),
            "Commit",
        )
        _git_ok(
            run_git(["update-ref", target_ref, commit_sha, target_sha], cwd=root, timeout=timeout),
            "Updating target",
        )
        return MergeResult(completed=True, details=message, commit=commit_sha)


class GitChangeProbe:
    """A workspace has changes when its tree is dirty or its branch is ahead of the target."""

    def __init__(self, *, timeout: float = 30.0, default_target_branch: str = "main") -> None:
        self.timeout = timeout
        self.default_target_branch = default_target_branch

    def has_changes(self, workspace: Workspace) -> bool:
        root = Path(workspace.path)
        if not root.is_dir():
            return False
        status = run_git(["status", "--porcelain"], cwd=root, timeout=self.timeout)
        if status.returncode == 0 and status.stdout.strip():
            return True
        target = workspace.target_branch or self.default_target_branch
        branch = workspace.branch or "HEAD"
        ahead = run_git(["rev-list", "--count", f"{target}..{branch}"], cwd=root, timeout=self.timeout)
        if ahead.returncode != 0:
            raise CollaboratorError(f"Could not compare {branch} with {target}: {ahead.stderr.strip()}")
        return int(ahead.stdout.strip() or "0") > 0
