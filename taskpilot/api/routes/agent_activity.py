from typing import List

from fastapi import APIRouter, Depends, Query

from taskpilot.api import schemas
from taskpilot.api.dependencies import get_container
from taskpilot.services.container import ServiceContainer

router = APIRouter(prefix="/projects/{project_id}/agent-activity")


@router.post("/enable", response_model=schemas.AgentSettingsOut)
def enable_agent_activity(project_id: int, container: ServiceContainer = Depends(get_container)):
    return container.scheduler.enable(project_id)


@router.post("/disable", response_model=schemas.AgentSettingsOut)
def disable_agent_activity(project_id: int, container: ServiceContainer = Depends(get_container)):
    """Disable the scheduler; a tick already running completes."""
    return container.scheduler.disable(project_id)


@router.put("/settings", response_model=schemas.AgentSettingsOut)
def update_agent_settings(
    project_id: int,
    payload: schemas.AgentSettingsUpdate,
    container: ServiceContainer = Depends(get_container),
):
    return container.scheduler.update_settings(
        project_id,
        enabled=payload.enabled,
        interval_seconds=payload.interval_seconds,
        max_breakdown_depth=payload.max_breakdown_depth,
    )


@router.get("/status", response_model=schemas.AgentActivityStatusOut)
def get_agent_activity_status(project_id: int, container: ServiceContainer = Depends(get_container)):
    return container.scheduler.get_status(project_id)


@router.post("/trigger", response_model=schemas.TickResultOut)
def trigger_agent_activity(project_id: int, container: ServiceContainer = Depends(get_container)):
    """Run one scheduler tick now."""
    container.db.get_project(project_id)
    return container.scheduler.trigger(project_id)


@router.get("/logs", response_model=List[schemas.AgentActivityLogOut])
def list_agent_activity_logs(
    project_id: int,
    limit: int = Query(50, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    return container.scheduler.list_logs(project_id, limit=limit)
