from typing import Optional

from fastapi import APIRouter, Depends

from taskpilot.api import schemas
from taskpilot.api.dependencies import get_container
from taskpilot.errors import EntityNotFoundError
from taskpilot.services.container import ServiceContainer

router = APIRouter(prefix="/projects/{project_id}/requirements")


@router.post("", response_model=schemas.RequirementsOut, status_code=202)
def submit_requirements(
    project_id: int,
    payload: schemas.RequirementsCreate,
    container: ServiceContainer = Depends(get_container),
):
    """
    Submit requirements for analysis.

    Returns the pending record immediately; poll /status for progress.
    409 while another analysis for the project is in flight.
    """
    return container.requirements.submit(project_id, payload.raw_requirements, payload.prd_content)


@router.get("/status", response_model=Optional[schemas.RequirementsOut])
def get_requirements_status(project_id: int, container: ServiceContainer = Depends(get_container)):
    """Newest requirements record for the project, or null."""
    container.db.get_project(project_id)
    return container.requirements.get_status(project_id)


@router.get("/{requirements_id}", response_model=schemas.RequirementsOut)
def get_requirements(project_id: int, requirements_id: int, container: ServiceContainer = Depends(get_container)):
    request = container.requirements.get_request(requirements_id)
    if request.project_id != project_id:
        raise EntityNotFoundError(f"Requirements {requirements_id} not found in project {project_id}")
    return request


@router.delete("", response_model=schemas.RequirementsDeleted)
def delete_requirements(project_id: int, container: ServiceContainer = Depends(get_container)):
    """Delete the project's requirements records. Generated tasks are kept."""
    container.db.get_project(project_id)
    return schemas.RequirementsDeleted(project_id=project_id, deleted=container.requirements.delete(project_id))
