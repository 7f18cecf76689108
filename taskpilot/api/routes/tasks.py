from typing import List

from fastapi import APIRouter, Depends

from taskpilot.api import schemas
from taskpilot.api.dependencies import get_container, get_db
from taskpilot.db.database import Database
from taskpilot.services.container import ServiceContainer

router = APIRouter()


@router.get("/tasks/{task_id}", response_model=schemas.TaskOut)
def get_task(task_id: int, db: Database = Depends(get_db)):
    return db.get_task(task_id)


@router.post("/tasks/{task_id}/status", response_model=schemas.TaskOut)
def update_task_status(
    task_id: int,
    payload: schemas.TaskStatusUpdate,
    container: ServiceContainer = Depends(get_container),
):
    """Move a task to a new status; 409 if expected_status no longer holds."""
    return container.hierarchy.transition_status(
        task_id,
        payload.status.value,
        expected_status=payload.expected_status.value if payload.expected_status else None,
    )


@router.put("/tasks/{task_id}/complexity", response_model=schemas.TaskOut)
def set_task_complexity(
    task_id: int,
    payload: schemas.ComplexityUpdate,
    container: ServiceContainer = Depends(get_container),
):
    return container.hierarchy.set_complexity_score(task_id, payload.complexity_score)


@router.put("/tasks/{task_id}/parent", response_model=schemas.TaskOut)
def set_task_parent(
    task_id: int,
    payload: schemas.ParentUpdate,
    container: ServiceContainer = Depends(get_container),
):
    return container.hierarchy.set_parent(task_id, payload.parent_task_id)


@router.get("/tasks/{task_id}/depth", response_model=schemas.TaskDepthOut)
def get_task_depth(task_id: int, container: ServiceContainer = Depends(get_container)):
    return schemas.TaskDepthOut(task_id=task_id, depth=container.hierarchy.compute_depth(task_id))


@router.post("/tasks/{task_id}/breakdown", response_model=List[schemas.TaskOut], status_code=201)
def breakdown_task(
    task_id: int,
    payload: schemas.BreakdownRequest = schemas.BreakdownRequest(),
    container: ServiceContainer = Depends(get_container),
):
    """Split a complex task into subtasks; the task itself is cancelled."""
    return container.hierarchy.breakdown(task_id, max_depth=payload.max_depth)


@router.get("/tasks/{task_id}/subtasks", response_model=List[schemas.TaskOut])
def list_subtasks(task_id: int, container: ServiceContainer = Depends(get_container)):
    return container.hierarchy.list_subtasks(task_id)


@router.get("/tasks/{task_id}/workspaces", response_model=List[schemas.WorkspaceOut])
def list_workspaces(task_id: int, db: Database = Depends(get_db)):
    db.get_task(task_id)
    return db.list_workspaces(task_id)


@router.post("/tasks/{task_id}/workspaces", response_model=schemas.WorkspaceOut, status_code=201)
def create_workspace(task_id: int, payload: schemas.WorkspaceCreate, db: Database = Depends(get_db)):
    return db.create_workspace(
        task_id,
        payload.path,
        branch=payload.branch,
        target_branch=payload.target_branch,
    )


@router.post("/tasks/{task_id}/review", response_model=schemas.ReviewOutcomeOut)
def run_review_pass(task_id: int, container: ServiceContainer = Depends(get_container)):
    """Run one review automation pass now; 409 while another pass holds the task."""
    return container.review.process_task(task_id)


@router.get("/tasks/{task_id}/review-logs", response_model=List[schemas.ReviewLogOut])
def list_task_review_logs(task_id: int, limit: int = 50, container: ServiceContainer = Depends(get_container)):
    return container.review.list_task_logs(task_id, limit=limit)


@router.get("/tasks/{task_id}/merge-conflicts", response_model=schemas.MergeConflictCount)
def count_merge_conflicts(task_id: int, container: ServiceContainer = Depends(get_container)):
    container.db.get_task(task_id)
    return schemas.MergeConflictCount(
        task_id=task_id,
        merge_conflicts=container.review.count_merge_conflicts(task_id),
    )
