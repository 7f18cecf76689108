"""
TaskPilot Database Service

SQLite-backed board store with a Protocol describing the database contract.
Every multi-column state change (status + stage clock, sequence allocation +
insert, subtask creation + parent cancellation) is a single transaction.
"""

import json
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from taskpilot.errors import ConflictError, EntityNotFoundError, StorageError, ValidationError
from taskpilot.logging import get_logger
from taskpilot.models.domain import (
    AgentAction,
    AgentActivityLog,
    GenerationStatus,
    Project,
    ProjectAgentSettings,
    ProjectReviewSettings,
    RequirementsRequest,
    ReviewAction,
    ReviewAutomationLog,
    Task,
    TaskDraft,
    TaskLayer,
    TaskSource,
    TaskStatus,
    TaskType,
    Workspace,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Format a timestamp the way it is stored (fixed width, so text order is time order)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_complexity_score(score: Optional[int]) -> None:
    if score is None:
        return
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 10:
        raise ValidationError(
            f"complexity_score must be an integer between 1 and 10, got {score!r}",
            metadata={"complexity_score": score},
        )


def _check_choice(field: str, value: Optional[str], choices: Sequence[str], *, nullable: bool = False) -> None:
    if value is None and nullable:
        return
    if value not in choices:
        raise ValidationError(f"Invalid {field} {value!r}; expected one of {', '.join(choices)}")


class DatabaseProtocol(Protocol):
    """Protocol defining the board store interface."""

    def init_schema(self) -> None: ...
    def now(self) -> datetime: ...

    # Projects
    def create_project(self, name: str) -> Project: ...
    def get_project(self, project_id: int) -> Project: ...
    def list_projects(self) -> List[Project]: ...
    def delete_project(self, project_id: int) -> None: ...

    # Tasks
    def create_task(
        self,
        project_id: int,
        title: str,
        *,
        description: Optional[str] = None,
        status: str = TaskStatus.TODO,
        source: str = TaskSource.MANUAL,
        task_type: str = TaskType.IMPLEMENTATION,
        layer: Optional[str] = None,
        sequence: Optional[int] = None,
        complexity_score: Optional[int] = None,
        parent_task_id: Optional[int] = None,
        testing_criteria: Optional[str] = None,
        post_task_actions: Optional[str] = None,
    ) -> Task: ...

    def get_task(self, task_id: int) -> Task: ...
    def get_parent_task_id(self, task_id: int) -> Optional[int]: ...
    def list_tasks(
        self,
        project_id: int,
        *,
        statuses: Optional[Sequence[str]] = None,
        source: Optional[str] = None,
        limit: int = 500,
    ) -> List[Task]: ...
    def list_subtasks(self, parent_task_id: int) -> List[Task]: ...
    def list_timed_tasks(self, project_id: Optional[int] = None) -> List[Task]: ...
    def update_task(self, task_id: int, **kwargs: Any) -> Task: ...
    def update_task_status(
        self, task_id: int, status: str, *, expected_status: Optional[str] = None
    ) -> Optional[Task]: ...
    def create_generated_task(self, project_id: int, draft: TaskDraft) -> Task: ...
    def create_subtasks(self, parent_task_id: int, drafts: Sequence[TaskDraft]) -> List[Task]: ...
    def delete_task(self, task_id: int) -> None: ...

    # Requirements
    def create_requirements(
        self, project_id: int, raw_requirements: str, prd_content: Optional[str] = None
    ) -> RequirementsRequest: ...
    def get_requirements(self, requirements_id: int) -> RequirementsRequest: ...
    def get_latest_requirements(self, project_id: int) -> Optional[RequirementsRequest]: ...
    def transition_requirements(
        self,
        requirements_id: int,
        from_status: str,
        to_status: str,
        *,
        error_message: Optional[str] = None,
    ) -> Optional[RequirementsRequest]: ...
    def update_requirements_analysis(self, requirements_id: int, analysis_result: Dict[str, Any]) -> None: ...
    def delete_requirements_for_project(self, project_id: int) -> int: ...

    # Workspaces
    def create_workspace(
        self,
        task_id: int,
        path: str,
        *,
        branch: Optional[str] = None,
        target_branch: Optional[str] = None,
    ) -> Workspace: ...
    def get_workspace(self, workspace_id: int) -> Workspace: ...
    def get_active_workspace(self, task_id: int) -> Optional[Workspace]: ...
    def set_workspace_archived(self, workspace_id: int, archived: bool) -> Workspace: ...

    # Agent activity
    def get_agent_settings(self, project_id: int) -> Optional[ProjectAgentSettings]: ...
    def upsert_agent_settings(self, project_id: int, **kwargs: Any) -> ProjectAgentSettings: ...
    def list_enabled_agent_settings(self) -> List[ProjectAgentSettings]: ...
    def append_agent_activity(
        self,
        project_id: int,
        action: str,
        *,
        task_id: Optional[int] = None,
        reasoning: Optional[str] = None,
    ) -> AgentActivityLog: ...
    def list_agent_activity(self, project_id: int, *, limit: int = 50) -> List[AgentActivityLog]: ...

    # Review automation
    def get_review_settings(self, project_id: int) -> Optional[ProjectReviewSettings]: ...
    def upsert_review_settings(self, project_id: int, **kwargs: Any) -> ProjectReviewSettings: ...
    def list_enabled_review_settings(self) -> List[ProjectReviewSettings]: ...
    def append_review_log(
        self,
        task_id: int,
        action: str,
        *,
        workspace_id: Optional[int] = None,
        output: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ReviewAutomationLog: ...
    def list_review_logs_for_task(self, task_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]: ...
    def list_review_logs_for_project(self, project_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]: ...
    def count_review_actions(self, task_id: int, action: str) -> int: ...


class SQLiteDatabase:
    """
    SQLite-backed persistence for TaskPilot state.
    """

    def __init__(self, db_path: Path, *, clock: Optional[Clock] = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def _now(self) -> str:
        return format_ts(self._clock())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, *, immediate: bool = False):
        """
        Context manager for database transactions.

        immediate=True takes the write lock up front so read-then-write
        sequences (conflict checks, sequence allocation) cannot interleave.
        """
        conn = self._connect()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetchone(self, query: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with closing(self._connect()) as conn:
            cur = conn.execute(query, tuple(params))
            return cur.fetchone()

    def _fetchall(self, query: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with closing(self._connect()) as conn:
            cur = conn.execute(query, tuple(params))
            return cur.fetchall()

    def init_schema(self) -> None:
        """Initialize database schema."""
        from taskpilot.db.schema import SCHEMA_SQLITE

        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQLITE)
            conn.commit()

    # Helper methods for JSON parsing
    @staticmethod
    def _parse_json(value: Any) -> Optional[Union[dict, list]]:
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None

    # Row to model converters
    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            source=row["source"],
            task_type=row["task_type"],
            layer=row["layer"],
            sequence=row["sequence"],
            stage_started_at=row["stage_started_at"],
            complexity_score=row["complexity_score"],
            parent_task_id=row["parent_task_id"],
            testing_criteria=row["testing_criteria"],
            post_task_actions=row["post_task_actions"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_requirements(self, row: sqlite3.Row) -> RequirementsRequest:
        analysis = self._parse_json(row["analysis_result"])
        return RequirementsRequest(
            id=row["id"],
            project_id=row["project_id"],
            raw_requirements=row["raw_requirements"],
            prd_content=row["prd_content"],
            analysis_result=analysis if isinstance(analysis, dict) else None,
            generation_status=row["generation_status"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_workspace(self, row: sqlite3.Row) -> Workspace:
        return Workspace(
            id=row["id"],
            task_id=row["task_id"],
            path=row["path"],
            branch=row["branch"],
            target_branch=row["target_branch"],
            archived=bool(row["archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_agent_settings(self, row: sqlite3.Row) -> ProjectAgentSettings:
        return ProjectAgentSettings(
            id=row["id"],
            project_id=row["project_id"],
            enabled=bool(row["enabled"]),
            interval_seconds=row["interval_seconds"],
            max_breakdown_depth=row["max_breakdown_depth"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_agent_activity(self, row: sqlite3.Row) -> AgentActivityLog:
        return AgentActivityLog(
            id=row["id"],
            project_id=row["project_id"],
            task_id=row["task_id"],
            action=row["action"],
            reasoning=row["reasoning"],
            created_at=row["created_at"],
        )

    def _row_to_review_settings(self, row: sqlite3.Row) -> ProjectReviewSettings:
        return ProjectReviewSettings(
            id=row["id"],
            project_id=row["project_id"],
            enabled=bool(row["enabled"]),
            auto_merge_enabled=bool(row["auto_merge_enabled"]),
            run_tests_enabled=bool(row["run_tests_enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_review_log(self, row: sqlite3.Row) -> ReviewAutomationLog:
        return ReviewAutomationLog(
            id=row["id"],
            task_id=row["task_id"],
            workspace_id=row["workspace_id"],
            action=row["action"],
            output=row["output"],
            error_message=row["error_message"],
            created_at=row["created_at"],
        )

    # Projects
    def create_project(self, name: str) -> Project:
        if not (name or "").strip():
            raise ValidationError("Project name must not be empty")
        now = self._now()
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT INTO projects (name, created_at, updated_at) VALUES (?, ?, ?)",
                (name.strip(), now, now),
            )
            project_id = cur.lastrowid
        return self.get_project(project_id)

    def get_project(self, project_id: int) -> Project:
        row = self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        if row is None:
            raise EntityNotFoundError(f"Project {project_id} not found")
        return self._row_to_project(row)

    def list_projects(self) -> List[Project]:
        rows = self._fetchall("SELECT * FROM projects ORDER BY id ASC")
        return [self._row_to_project(row) for row in rows]

    def delete_project(self, project_id: int) -> None:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            if cur.rowcount == 0:
                raise EntityNotFoundError(f"Project {project_id} not found")

    # Tasks
    @staticmethod
    def _validate_task_fields(fields: Dict[str, Any]) -> None:
        if "status" in fields:
            _check_choice("status", fields["status"], TaskStatus.ALL)
        if "source" in fields:
            _check_choice("source", fields["source"], TaskSource.ALL)
        if "task_type" in fields:
            _check_choice("task_type", fields["task_type"], TaskType.ALL)
        if "layer" in fields:
            _check_choice("layer", fields["layer"], TaskLayer.ALL, nullable=True)
        if "complexity_score" in fields:
            validate_complexity_score(fields["complexity_score"])
        if "title" in fields and not (fields["title"] or "").strip():
            raise ValidationError("Task title must not be empty")

    @staticmethod
    def _next_sequence(conn: sqlite3.Connection, project_id: int) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(sequence) + 1, 0) AS next_seq FROM tasks WHERE project_id = ?",
            (project_id,),
        ).fetchone()
        return int(row["next_seq"])

    def _insert_task(self, conn: sqlite3.Connection, project_id: int, fields: Dict[str, Any]) -> int:
        now = self._now()
        status = fields.get("status", TaskStatus.TODO)
        stage_started_at = now if status in TaskStatus.TIMED else None
        cur = conn.execute(
            """
            INSERT INTO tasks (
                project_id, title, description, status, source, task_type, layer,
                sequence, stage_started_at, complexity_score, parent_task_id,
                testing_criteria, post_task_actions, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                fields["title"].strip(),
                fields.get("description"),
                status,
                fields.get("source", TaskSource.MANUAL),
                fields.get("task_type") or TaskType.IMPLEMENTATION,
                fields.get("layer"),
                fields.get("sequence"),
                stage_started_at,
                fields.get("complexity_score"),
                fields.get("parent_task_id"),
                fields.get("testing_criteria"),
                fields.get("post_task_actions"),
                now,
                now,
            ),
        )
        return cur.lastrowid

    def create_task(
        self,
        project_id: int,
        title: str,
        *,
        description: Optional[str] = None,
        status: str = TaskStatus.TODO,
        source: str = TaskSource.MANUAL,
        task_type: str = TaskType.IMPLEMENTATION,
        layer: Optional[str] = None,
        sequence: Optional[int] = None,
        complexity_score: Optional[int] = None,
        parent_task_id: Optional[int] = None,
        testing_criteria: Optional[str] = None,
        post_task_actions: Optional[str] = None,
    ) -> Task:
        fields = {
            "title": title,
            "description": description,
            "status": status,
            "source": source,
            "task_type": task_type,
            "layer": layer,
            "sequence": sequence,
            "complexity_score": complexity_score,
            "parent_task_id": parent_task_id,
            "testing_criteria": testing_criteria,
            "post_task_actions": post_task_actions,
        }
        self._validate_task_fields(fields)
        self.get_project(project_id)
        with self._transaction() as conn:
            task_id = self._insert_task(conn, project_id, fields)
        return self.get_task(task_id)

    def create_generated_task(self, project_id: int, draft: TaskDraft) -> Task:
        """Insert an AI-generated task with the next project-wide sequence number."""
        fields = {
            "title": draft.title,
            "description": draft.description,
            "source": TaskSource.AI_GENERATED,
            "task_type": draft.task_type or TaskType.IMPLEMENTATION,
            "layer": draft.layer,
            "testing_criteria": draft.testing_criteria,
            "post_task_actions": draft.post_task_actions,
        }
        self._validate_task_fields(fields)
        with self._transaction(immediate=True) as conn:
            fields["sequence"] = self._next_sequence(conn, project_id)
            task_id = self._insert_task(conn, project_id, fields)
        return self.get_task(task_id)

    def create_subtasks(self, parent_task_id: int, drafts: Sequence[TaskDraft]) -> List[Task]:
        """
        Create child tasks of a parent and cancel the parent, all in one transaction.

        Children inherit the parent's project, task_type (unless the draft
        overrides it) and testing criteria, and take fresh sequence numbers.
        """
        parent = self.get_task(parent_task_id)
        created_ids: List[int] = []
        now = self._now()
        with self._transaction(immediate=True) as conn:
            current = conn.execute("SELECT status FROM tasks WHERE id = ?", (parent.id,)).fetchone()
            if current is None:
                raise EntityNotFoundError(f"Task {parent.id} not found")
            if current["status"] in (TaskStatus.DONE, TaskStatus.CANCELLED):
                raise ConflictError(
                    f"Task {parent.id} is already {current['status']}",
                    metadata={"task_id": parent.id, "status": current["status"]},
                )
            next_seq = self._next_sequence(conn, parent.project_id)
            for offset, draft in enumerate(drafts):
                fields = {
                    "title": draft.title,
                    "description": draft.description,
                    "source": parent.source,
                    "task_type": draft.task_type or parent.task_type,
                    "layer": draft.layer if draft.layer is not None else parent.layer,
                    "sequence": next_seq + offset,
                    "parent_task_id": parent.id,
                    "testing_criteria": draft.testing_criteria or parent.testing_criteria,
                    "post_task_actions": draft.post_task_actions,
                }
                self._validate_task_fields(fields)
                created_ids.append(self._insert_task(conn, parent.project_id, fields))
            cur = conn.execute(
                """
                UPDATE tasks SET status = ?, stage_started_at = NULL, updated_at = ?
                WHERE id = ? AND status NOT IN (?, ?)
                """,
                (TaskStatus.CANCELLED, now, parent.id, TaskStatus.DONE, TaskStatus.CANCELLED),
            )
            if cur.rowcount != 1:
                raise ConflictError(f"Task {parent.id} changed during breakdown", metadata={"task_id": parent.id})
        return [self.get_task(task_id) for task_id in created_ids]

    def get_task(self, task_id: int) -> Task:
        row = self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise EntityNotFoundError(f"Task {task_id} not found")
        return self._row_to_task(row)

    def get_parent_task_id(self, task_id: int) -> Optional[int]:
        row = self._fetchone("SELECT parent_task_id FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise EntityNotFoundError(f"Task {task_id} not found")
        return row["parent_task_id"]

    def list_tasks(
        self,
        project_id: int,
        *,
        statuses: Optional[Sequence[str]] = None,
        source: Optional[str] = None,
        limit: int = 500,
    ) -> List[Task]:
        """List tasks in board order: sequence (nulls last), then creation time, then id."""
        limit = max(1, min(int(limit), 5000))
        where = ["project_id = ?"]
        params: List[Any] = [project_id]
        if statuses:
            where.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if source is not None:
            where.append("source = ?")
            params.append(source)
        rows = self._fetchall(
            f"""
            SELECT * FROM tasks
            WHERE {' AND '.join(where)}
            ORDER BY sequence IS NULL, sequence ASC, created_at ASC, id ASC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [self._row_to_task(row) for row in rows]

    def list_subtasks(self, parent_task_id: int) -> List[Task]:
        rows = self._fetchall(
            """
            SELECT * FROM tasks WHERE parent_task_id = ?
            ORDER BY sequence IS NULL, sequence ASC, created_at ASC, id ASC
            """,
            (parent_task_id,),
        )
        return [self._row_to_task(row) for row in rows]

    def list_timed_tasks(self, project_id: Optional[int] = None) -> List[Task]:
        """Tasks whose stage clock is running, oldest stage first."""
        where = "status IN (?, ?) AND stage_started_at IS NOT NULL"
        params: List[Any] = list(TaskStatus.TIMED)
        if project_id is not None:
            where += " AND project_id = ?"
            params.append(project_id)
        rows = self._fetchall(
            f"SELECT * FROM tasks WHERE {where} ORDER BY stage_started_at ASC, id ASC",
            params,
        )
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: int, **kwargs: Any) -> Task:
        """
        Update board-owned task fields.

        Status is not accepted here; update_task_status moves it together
        with the stage clock.
        """
        allowed = {
            "title", "description", "task_type", "layer", "sequence",
            "complexity_score", "parent_task_id", "testing_criteria", "post_task_actions",
        }
        fields = {k: v for k, v in kwargs.items() if k in allowed}
        self._validate_task_fields(fields)
        if not fields:
            return self.get_task(task_id)

        updates = ["updated_at = ?"]
        params: List[Any] = [self._now()]
        for key, value in fields.items():
            updates.append(f"{key} = ?")
            params.append(value)
        params.append(task_id)
        with self._transaction() as conn:
            cur = conn.execute(f"UPDATE tasks SET {', '.join(updates)} WHERE id = ?", tuple(params))
            if cur.rowcount == 0:
                raise EntityNotFoundError(f"Task {task_id} not found")
        return self.get_task(task_id)

    def update_task_status(
        self, task_id: int, status: str, *, expected_status: Optional[str] = None
    ) -> Optional[Task]:
        """
        Move a task to a new status and maintain stage_started_at in the same statement.

        Entering inprogress/inreview starts the stage clock, leaving them clears
        it, and re-writing the current status leaves it untouched. Returns None
        when expected_status is given and the task is no longer in it.
        """
        _check_choice("status", status, TaskStatus.ALL)
        now = self._now()
        query = """
            UPDATE tasks SET
                stage_started_at = CASE
                    WHEN :status IN ('inprogress', 'inreview') THEN
                        CASE WHEN status = :status THEN COALESCE(stage_started_at, :now) ELSE :now END
                    ELSE NULL
                END,
                status = :status,
                updated_at = :now
            WHERE id = :task_id
        """
        params: Dict[str, Any] = {"status": status, "now": now, "task_id": task_id}
        if expected_status is not None:
            query += " AND status = :expected"
            params["expected"] = expected_status
        with self._transaction() as conn:
            cur = conn.execute(query, params)
            changed = cur.rowcount
        if changed == 0:
            task = self.get_task(task_id)
            if expected_status is not None and task.status != expected_status:
                return None
        return self.get_task(task_id)

    def delete_task(self, task_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    # Requirements
    def create_requirements(
        self, project_id: int, raw_requirements: str, prd_content: Optional[str] = None
    ) -> RequirementsRequest:
        """Insert a pending request; ConflictError if one is already in flight for the project."""
        self.get_project(project_id)
        now = self._now()
        try:
            with self._transaction(immediate=True) as conn:
                in_flight = conn.execute(
                    f"""
                    SELECT id, generation_status FROM project_requirements
                    WHERE project_id = ? AND generation_status IN ({', '.join('?' for _ in GenerationStatus.IN_FLIGHT)})
                    """,
                    (project_id, *GenerationStatus.IN_FLIGHT),
                ).fetchone()
                if in_flight is not None:
                    raise ConflictError(
                        f"Requirements analysis already in progress for project {project_id}",
                        metadata={
                            "project_id": project_id,
                            "requirements_id": in_flight["id"],
                            "generation_status": in_flight["generation_status"],
                        },
                    )
                cur = conn.execute(
                    """
                    INSERT INTO project_requirements (
                        project_id, raw_requirements, prd_content, generation_status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (project_id, raw_requirements, prd_content, GenerationStatus.PENDING, now, now),
                )
                requirements_id = cur.lastrowid
        except sqlite3.IntegrityError as exc:
            # The partial unique index caught a concurrent writer
            raise ConflictError(
                f"Requirements analysis already in progress for project {project_id}",
                metadata={"project_id": project_id},
            ) from exc
        return self.get_requirements(requirements_id)

    def get_requirements(self, requirements_id: int) -> RequirementsRequest:
        row = self._fetchone("SELECT * FROM project_requirements WHERE id = ?", (requirements_id,))
        if row is None:
            raise EntityNotFoundError(f"Requirements {requirements_id} not found")
        return self._row_to_requirements(row)

    def get_latest_requirements(self, project_id: int) -> Optional[RequirementsRequest]:
        row = self._fetchone(
            "SELECT * FROM project_requirements WHERE project_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (project_id,),
        )
        return self._row_to_requirements(row) if row else None

    def transition_requirements(
        self,
        requirements_id: int,
        from_status: str,
        to_status: str,
        *,
        error_message: Optional[str] = None,
    ) -> Optional[RequirementsRequest]:
        """Compare-and-set the generation status. Returns None if the row moved or vanished."""
        _check_choice("generation_status", to_status, GenerationStatus.ALL)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE project_requirements
                SET generation_status = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND generation_status = ?
                """,
                (to_status, error_message, self._now(), requirements_id, from_status),
            )
            if cur.rowcount == 0:
                return None
        return self.get_requirements(requirements_id)

    def update_requirements_analysis(self, requirements_id: int, analysis_result: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE project_requirements SET analysis_result = ?, updated_at = ? WHERE id = ?",
                (json.dumps(analysis_result), self._now(), requirements_id),
            )

    def delete_requirements_for_project(self, project_id: int) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM project_requirements WHERE project_id = ?", (project_id,))
            return cur.rowcount

    # Workspaces
    def create_workspace(
        self,
        task_id: int,
        path: str,
        *,
        branch: Optional[str] = None,
        target_branch: Optional[str] = None,
    ) -> Workspace:
        if not (path or "").strip():
            raise ValidationError("Workspace path must not be empty")
        self.get_task(task_id)
        now = self._now()
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO workspaces (task_id, path, branch, target_branch, archived, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (task_id, path, branch, target_branch, now, now),
            )
            workspace_id = cur.lastrowid
        return self.get_workspace(workspace_id)

    def get_workspace(self, workspace_id: int) -> Workspace:
        row = self._fetchone("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        if row is None:
            raise EntityNotFoundError(f"Workspace {workspace_id} not found")
        return self._row_to_workspace(row)

    def get_active_workspace(self, task_id: int) -> Optional[Workspace]:
        row = self._fetchone(
            "SELECT * FROM workspaces WHERE task_id = ? AND archived = 0 ORDER BY created_at DESC, id DESC LIMIT 1",
            (task_id,),
        )
        return self._row_to_workspace(row) if row else None

    def list_workspaces(self, task_id: int) -> List[Workspace]:
        rows = self._fetchall(
            "SELECT * FROM workspaces WHERE task_id = ? ORDER BY created_at DESC, id DESC",
            (task_id,),
        )
        return [self._row_to_workspace(row) for row in rows]

    def set_workspace_archived(self, workspace_id: int, archived: bool) -> Workspace:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE workspaces SET archived = ?, updated_at = ? WHERE id = ?",
                (1 if archived else 0, self._now(), workspace_id),
            )
            if cur.rowcount == 0:
                raise EntityNotFoundError(f"Workspace {workspace_id} not found")
        return self.get_workspace(workspace_id)

    # Settings (shared upsert)
    def _upsert_settings(self, table: str, project_id: int, values: Dict[str, Any]) -> None:
        self.get_project(project_id)
        now = self._now()
        with self._transaction(immediate=True) as conn:
            conn.execute(
                f"INSERT OR IGNORE INTO {table} (project_id, created_at, updated_at) VALUES (?, ?, ?)",
                (project_id, now, now),
            )
            if values:
                assignments = ", ".join(f"{key} = ?" for key in values)
                conn.execute(
                    f"UPDATE {table} SET {assignments}, updated_at = ? WHERE project_id = ?",
                    (*values.values(), now, project_id),
                )

    # Agent activity
    def get_agent_settings(self, project_id: int) -> Optional[ProjectAgentSettings]:
        row = self._fetchone("SELECT * FROM project_agent_settings WHERE project_id = ?", (project_id,))
        return self._row_to_agent_settings(row) if row else None

    def upsert_agent_settings(
        self,
        project_id: int,
        *,
        enabled: Optional[bool] = None,
        interval_seconds: Optional[int] = None,
        max_breakdown_depth: Optional[int] = None,
    ) -> ProjectAgentSettings:
        values: Dict[str, Any] = {}
        if enabled is not None:
            values["enabled"] = 1 if enabled else 0
        if interval_seconds is not None:
            if int(interval_seconds) < 1:
                raise ValidationError(f"interval_seconds must be >= 1, got {interval_seconds}")
            values["interval_seconds"] = int(interval_seconds)
        if max_breakdown_depth is not None:
            if int(max_breakdown_depth) < 0:
                raise ValidationError(f"max_breakdown_depth must be >= 0, got {max_breakdown_depth}")
            values["max_breakdown_depth"] = int(max_breakdown_depth)
        self._upsert_settings("project_agent_settings", project_id, values)
        settings = self.get_agent_settings(project_id)
        if settings is None:  # pragma: no cover
            raise StorageError(f"Agent settings for project {project_id} missing after upsert")
        return settings

    def list_enabled_agent_settings(self) -> List[ProjectAgentSettings]:
        rows = self._fetchall("SELECT * FROM project_agent_settings WHERE enabled = 1 ORDER BY project_id ASC")
        return [self._row_to_agent_settings(row) for row in rows]

    def append_agent_activity(
        self,
        project_id: int,
        action: str,
        *,
        task_id: Optional[int] = None,
        reasoning: Optional[str] = None,
    ) -> AgentActivityLog:
        _check_choice("action", action, AgentAction.ALL)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO agent_activity_logs (project_id, task_id, action, reasoning, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (project_id, task_id, action, reasoning, self._now()),
            )
            log_id = cur.lastrowid
        row = self._fetchone("SELECT * FROM agent_activity_logs WHERE id = ?", (log_id,))
        return self._row_to_agent_activity(row)

    def list_agent_activity(
        self, project_id: int, *, action: Optional[str] = None, limit: int = 50
    ) -> List[AgentActivityLog]:
        limit = max(1, min(int(limit), 1000))
        where = "project_id = ?"
        params: List[Any] = [project_id]
        if action is not None:
            where += " AND action = ?"
            params.append(action)
        rows = self._fetchall(
            f"SELECT * FROM agent_activity_logs WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        return [self._row_to_agent_activity(row) for row in rows]

    # Review automation
    def get_review_settings(self, project_id: int) -> Optional[ProjectReviewSettings]:
        row = self._fetchone("SELECT * FROM project_review_settings WHERE project_id = ?", (project_id,))
        return self._row_to_review_settings(row) if row else None

    def upsert_review_settings(
        self,
        project_id: int,
        *,
        enabled: Optional[bool] = None,
        auto_merge_enabled: Optional[bool] = None,
        run_tests_enabled: Optional[bool] = None,
    ) -> ProjectReviewSettings:
        values: Dict[str, Any] = {}
        if enabled is not None:
            values["enabled"] = 1 if enabled else 0
        if auto_merge_enabled is not None:
            values["auto_merge_enabled"] = 1 if auto_merge_enabled else 0
        if run_tests_enabled is not None:
            values["run_tests_enabled"] = 1 if run_tests_enabled else 0
        self._upsert_settings("project_review_settings", project_id, values)
        settings = self.get_review_settings(project_id)
        if settings is None:  # pragma: no cover
            raise StorageError(f"Review settings for project {project_id} missing after upsert")
        return settings

    def list_enabled_review_settings(self) -> List[ProjectReviewSettings]:
        rows = self._fetchall("SELECT * FROM project_review_settings WHERE enabled = 1 ORDER BY project_id ASC")
        return [self._row_to_review_settings(row) for row in rows]

    def append_review_log(
        self,
        task_id: int,
        action: str,
        *,
        workspace_id: Optional[int] = None,
        output: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ReviewAutomationLog:
        _check_choice("action", action, ReviewAction.ALL)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO review_automation_logs (task_id, workspace_id, action, output, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (task_id, workspace_id, action, output, error_message, self._now()),
            )
            log_id = cur.lastrowid
        row = self._fetchone("SELECT * FROM review_automation_logs WHERE id = ?", (log_id,))
        return self._row_to_review_log(row)

    def list_review_logs_for_task(self, task_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]:
        limit = max(1, min(int(limit), 1000))
        rows = self._fetchall(
            "SELECT * FROM review_automation_logs WHERE task_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (task_id, limit),
        )
        return [self._row_to_review_log(row) for row in rows]

    def list_review_logs_for_project(self, project_id: int, *, limit: int = 50) -> List[ReviewAutomationLog]:
        limit = max(1, min(int(limit), 1000))
        rows = self._fetchall(
            """
            SELECT ral.* FROM review_automation_logs ral
            JOIN tasks t ON t.id = ral.task_id
            WHERE t.project_id = ?
            ORDER BY ral.created_at DESC, ral.id DESC
            LIMIT ?
            """,
            (project_id, limit),
        )
        return [self._row_to_review_log(row) for row in rows]

    def count_review_actions(self, task_id: int, action: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM review_automation_logs WHERE task_id = ? AND action = ?",
            (task_id, action),
        )
        return int(row["n"]) if row else 0


# Type alias for the unified database interface
Database = SQLiteDatabase


def get_database(db_path: Optional[Path] = None, *, clock: Optional[Clock] = None) -> Database:
    """
    Factory function to create the database instance.

    Args:
        db_path: SQLite database file path (default: .taskpilot.sqlite)
        clock: Optional clock used for every persisted timestamp
    """
    return SQLiteDatabase(Path(db_path) if db_path else Path(".taskpilot.sqlite"), clock=clock)
