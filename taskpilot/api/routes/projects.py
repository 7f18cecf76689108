from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from taskpilot.api import schemas
from taskpilot.api.dependencies import get_container, get_db
from taskpilot.db.database import Database
from taskpilot.services.container import ServiceContainer

router = APIRouter()


@router.get("/projects", response_model=List[schemas.ProjectOut])
def list_projects(db: Database = Depends(get_db)):
    return db.list_projects()


@router.post("/projects", response_model=schemas.ProjectOut, status_code=201)
def create_project(payload: schemas.ProjectCreate, db: Database = Depends(get_db)):
    return db.create_project(payload.name)


@router.get("/projects/{project_id}", response_model=schemas.ProjectOut)
def get_project(project_id: int, db: Database = Depends(get_db)):
    return db.get_project(project_id)


@router.delete("/projects/{project_id}", status_code=204)
def delete_project(project_id: int, db: Database = Depends(get_db)):
    """Delete a project with its tasks, requirements, settings and logs."""
    db.delete_project(project_id)
    return Response(status_code=204)


@router.get("/projects/{project_id}/tasks", response_model=List[schemas.TaskOut])
def list_project_tasks(
    project_id: int,
    status: Optional[List[schemas.TaskStatusValue]] = Query(None),
    source: Optional[str] = None,
    limit: int = Query(500, ge=1, le=5000),
    db: Database = Depends(get_db),
):
    """Tasks in board order (sequence, then creation time)."""
    db.get_project(project_id)
    statuses = [s.value for s in status] if status else None
    return db.list_tasks(project_id, statuses=statuses, source=source, limit=limit)


@router.post("/projects/{project_id}/tasks", response_model=schemas.TaskOut, status_code=201)
def create_project_task(project_id: int, payload: schemas.TaskCreate, db: Database = Depends(get_db)):
    return db.create_task(
        project_id,
        payload.title,
        description=payload.description,
        task_type=payload.task_type.value,
        layer=payload.layer.value if payload.layer else None,
        sequence=payload.sequence,
        complexity_score=payload.complexity_score,
        testing_criteria=payload.testing_criteria,
        post_task_actions=payload.post_task_actions,
    )


@router.get("/projects/{project_id}/tasks/timed-out", response_model=List[schemas.TaskOut])
def list_timed_out_tasks(
    project_id: int,
    threshold_seconds: Optional[float] = Query(None, gt=0),
    container: ServiceContainer = Depends(get_container),
):
    """Tasks whose current stage started longer ago than the threshold (default: in-progress timeout)."""
    container.db.get_project(project_id)
    threshold = threshold_seconds or container.context.config.in_progress_timeout_seconds
    return container.hierarchy.find_timed_out(project_id, threshold)
