"""
TaskPilot Database Schema Definitions

Raw SQL schema for SQLite. Timestamps are ISO-8601 UTC strings written by
the application clock; the column defaults only cover rows inserted by hand.
"""

SCHEMA_SQLITE = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS project_requirements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    raw_requirements TEXT NOT NULL,
    prd_content TEXT,
    analysis_result TEXT,
    generation_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (generation_status IN ('pending', 'analyzing', 'generating', 'completed', 'failed')),
    error_message TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_project_requirements_project ON project_requirements(project_id, created_at);
-- At most one in-flight analysis per project
CREATE UNIQUE INDEX IF NOT EXISTS idx_project_requirements_in_flight ON project_requirements(project_id)
    WHERE generation_status IN ('pending', 'analyzing', 'generating');

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    source TEXT NOT NULL DEFAULT 'manual'
        CHECK (source IN ('manual', 'ai_generated')),
    task_type TEXT NOT NULL DEFAULT 'implementation'
        CHECK (task_type IN ('architecture', 'mock', 'implementation', 'integration')),
    layer TEXT
        CHECK (layer IS NULL OR layer IN ('data', 'backend', 'frontend', 'fullstack', 'devops', 'testing')),
    sequence INTEGER,
    stage_started_at TEXT,
    complexity_score INTEGER
        CHECK (complexity_score IS NULL OR (complexity_score BETWEEN 1 AND 10)),
    parent_task_id INTEGER REFERENCES tasks(id) ON DELETE SET NULL,
    testing_criteria TEXT,
    post_task_actions TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks(project_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_sequence ON tasks(project_id, sequence) WHERE sequence IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_tasks_stage_timeout ON tasks(status, stage_started_at)
    WHERE status IN ('inprogress', 'inreview') AND stage_started_at IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_tasks_parent_task_id ON tasks(parent_task_id) WHERE parent_task_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS workspaces (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    branch TEXT,
    target_branch TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_workspaces_task ON workspaces(task_id, archived);

CREATE TABLE IF NOT EXISTS project_agent_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL UNIQUE REFERENCES projects(id) ON DELETE CASCADE,
    enabled INTEGER NOT NULL DEFAULT 0,
    interval_seconds INTEGER NOT NULL DEFAULT 60 CHECK (interval_seconds >= 1),
    max_breakdown_depth INTEGER NOT NULL DEFAULT 1 CHECK (max_breakdown_depth >= 0),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS agent_activity_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    task_id INTEGER REFERENCES tasks(id) ON DELETE SET NULL,
    action TEXT NOT NULL CHECK (action IN ('selected', 'skipped', 'error')),
    reasoning TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_agent_activity_logs_project ON agent_activity_logs(project_id, created_at);

CREATE TABLE IF NOT EXISTS project_review_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL UNIQUE REFERENCES projects(id) ON DELETE CASCADE,
    enabled INTEGER NOT NULL DEFAULT 0,
    auto_merge_enabled INTEGER NOT NULL DEFAULT 1,
    run_tests_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS review_automation_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    workspace_id INTEGER REFERENCES workspaces(id) ON DELETE SET NULL,
    action TEXT NOT NULL
        CHECK (action IN ('test_passed', 'test_failed', 'merge_completed', 'merge_conflict', 'skipped', 'error')),
    output TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_review_automation_logs_task ON review_automation_logs(task_id, created_at);
CREATE INDEX IF NOT EXISTS idx_review_automation_logs_workspace ON review_automation_logs(workspace_id);
"""
