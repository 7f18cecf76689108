from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskpilot import __version__
from taskpilot.api import schemas
from taskpilot.api.dependencies import get_db, require_api_token
from taskpilot.api.routes import agent_activity, projects, requirements, review_automation, tasks
from taskpilot.config import Config, load_config
from taskpilot.db.database import Database, get_database
from taskpilot.errors import (
    ConflictError,
    EntityNotFoundError,
    HierarchyError,
    TaskPilotError,
    ValidationError,
)
from taskpilot.logging import get_logger, log_extra
from taskpilot.services.base import ServiceContext
from taskpilot.services.container import ServiceContainer, build_services

logger = get_logger(__name__)


def _status_for(exc: TaskPilotError) -> int:
    if isinstance(exc, EntityNotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, (ValidationError, HierarchyError)):
        return 422
    return 500


async def _taskpilot_error_handler(request: Request, exc: TaskPilotError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(
            "api_request_failed",
            extra=log_extra(path=request.url.path, category=exc.category, error=str(exc)),
        )
    body = schemas.ErrorOut(detail=str(exc), category=exc.category, metadata=exc.metadata)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    container: Optional[ServiceContainer] = None,
    *,
    config: Optional[Config] = None,
    start_runner: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API application.

    Without a container, services are built from configuration. The
    automation runner starts with the app when runner_enabled is set
    (override with start_runner).
    """
    if container is None:
        config = config or load_config()
        container = build_services(ServiceContext(config=config), get_database(config.db_path))
    config = container.context.config
    run_background = config.runner_enabled if start_runner is None else start_runner

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # CREATE TABLE IF NOT EXISTS, safe on every start
        container.db.init_schema()
        runner = None
        if run_background:
            runner = container.build_runner()
            runner.start()
        app.state.runner = runner
        logger.info("api_started", extra=log_extra(runner=bool(runner), environment=config.environment))
        try:
            yield
        finally:
            if runner is not None:
                runner.stop()
            container.shutdown(wait=True)
            logger.info("api_stopped")

    app = FastAPI(
        title="TaskPilot API",
        description="Task board orchestration: requirements, agent scheduling and review automation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins or [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TaskPilotError, _taskpilot_error_handler)

    auth_deps = [Depends(require_api_token)]
    app.include_router(projects.router, tags=["Projects"], dependencies=auth_deps)
    app.include_router(tasks.router, tags=["Tasks"], dependencies=auth_deps)
    app.include_router(requirements.router, tags=["Requirements"], dependencies=auth_deps)
    app.include_router(agent_activity.router, tags=["Agent Activity"], dependencies=auth_deps)
    app.include_router(review_automation.router, tags=["Review Automation"], dependencies=auth_deps)

    @app.get("/health", response_model=schemas.Health)
    def health_check():
        """Health check endpoint."""
        return schemas.Health()

    @app.get("/health/ready")
    def health_ready(db: Database = Depends(get_db)):
        """Readiness probe (database reachable)."""
        components = {"database": "ok"}
        try:
            db.list_projects()
        except Exception:
            components["database"] = "error"
        status = "ok" if all(v == "ok" for v in components.values()) else "degraded"
        return {"status": status, "components": components}

    return app
