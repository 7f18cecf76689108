from typing import List

from fastapi import APIRouter, Depends, Query

from taskpilot.api import schemas
from taskpilot.api.dependencies import get_container
from taskpilot.services.container import ServiceContainer

router = APIRouter(prefix="/projects/{project_id}/review-automation")


@router.post("/enable", response_model=schemas.ReviewSettingsOut)
def enable_review_automation(project_id: int, container: ServiceContainer = Depends(get_container)):
    return container.review.enable(project_id)


@router.post("/disable", response_model=schemas.ReviewSettingsOut)
def disable_review_automation(project_id: int, container: ServiceContainer = Depends(get_container)):
    return container.review.disable(project_id)


@router.put("/settings", response_model=schemas.ReviewSettingsOut)
def update_review_settings(
    project_id: int,
    payload: schemas.ReviewSettingsUpdate,
    container: ServiceContainer = Depends(get_container),
):
    return container.review.update_settings(
        project_id,
        enabled=payload.enabled,
        auto_merge_enabled=payload.auto_merge_enabled,
        run_tests_enabled=payload.run_tests_enabled,
    )


@router.get("/status", response_model=schemas.ReviewStatusOut)
def get_review_automation_status(project_id: int, container: ServiceContainer = Depends(get_container)):
    return container.review.get_status(project_id)


@router.post("/trigger", response_model=List[schemas.ReviewOutcomeOut])
def trigger_review_sweep(project_id: int, container: ServiceContainer = Depends(get_container)):
    """Sweep the project's in-review tasks now."""
    container.db.get_project(project_id)
    return container.review.sweep_project(project_id)


@router.get("/logs", response_model=List[schemas.ReviewLogOut])
def list_review_logs(
    project_id: int,
    limit: int = Query(50, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    """Review automation log rows for the project, newest first."""
    return container.review.list_logs(project_id, limit=limit)
