from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from taskpilot.db.database import Database
from taskpilot.services.base import ServiceContext
from taskpilot.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """Services built for this app instance."""
    return request.app.state.container  # type: ignore[attr-defined]


def get_db(container: ServiceContainer = Depends(get_container)) -> Database:
    """Get database instance."""
    return container.db  # type: ignore[return-value]


def get_service_context(
    container: ServiceContainer = Depends(get_container),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
) -> ServiceContext:
    if x_request_id:
        return container.context.with_request_id(x_request_id)
    return container.context


def require_api_token(
    container: ServiceContainer = Depends(get_container),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_taskpilot_token: Optional[str] = Header(None, alias="X-TaskPilot-Token"),
) -> None:
    """
    Require an API bearer token if `TASKPILOT_API_TOKEN` is set.

    Accepted headers:
    - `Authorization: Bearer <token>`
    - `X-TaskPilot-Token: <token>`
    """
    expected = container.context.config.api_token
    if not expected:
        return

    if x_taskpilot_token and x_taskpilot_token == expected:
        return

    if authorization:
        parts = authorization.strip().split(None, 1)
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1] == expected:
            return

    raise HTTPException(status_code=401, detail="Unauthorized")
