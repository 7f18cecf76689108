"""
TaskPilot Service Base

Every service is built from a ServiceContext (config plus the request id of
the caller, if any) and the database it operates on.
"""

from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Optional

from taskpilot.config import Config
from taskpilot.logging import get_logger, log_context, log_extra


@dataclass(frozen=True)
class ServiceContext:
    config: Config
    request_id: Optional[str] = None

    def with_request_id(self, request_id: str) -> "ServiceContext":
        return replace(self, request_id=request_id)


class Service:
    """
    Base class for TaskPilot services.

    Subclasses log snake_case event names through ``self.logger`` with
    ``extra=self.log_extra(...)``; the context's request id is always included.
    """

    def __init__(self, context: ServiceContext, db) -> None:
        self.context = context
        self.config = context.config
        self.db = db
        self.logger = get_logger(f"taskpilot.services.{type(self).__name__}")

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        fields.setdefault("request_id", self.context.request_id)
        return log_extra(**fields)

    @contextmanager
    def bound(self, **ids: Any) -> Iterator[None]:
        """Bind ids (project_id, task_id, ...) to every record logged in the block."""
        with log_context(request_id=self.context.request_id, **ids):
            yield
