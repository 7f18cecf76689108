"""
TaskPilot Requirements Analyzer Service

Turns free-form requirements (plus an optional PRD) into a feature list and
an ordered set of AI-generated tasks.

Each request moves strictly pending -> analyzing -> generating -> completed,
or to failed from analyzing/generating. Every move is a compare-and-set on
the stored status, so a request deleted mid-analysis simply stops at its
next transition.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Dict, List, Optional

from taskpilot.errors import EntityNotFoundError, TaskPilotError, ValidationError
from taskpilot.models.domain import Feature, GenerationStatus, RequirementsRequest, TaskDraft
from taskpilot.services.base import Service, ServiceContext
from taskpilot.services.collaborators import (
    ArchitectureFirstGenerator,
    FeatureExtractor,
    HeuristicFeatureExtractor,
    TaskGenerator,
    normalize_layer,
    normalize_task_type,
)
from taskpilot.services.events import EventBus, RequirementsCompleted, RequirementsFailed, get_event_bus

NO_FEATURES_MESSAGE = "No features could be extracted from the requirements"


def _describe(exc: Exception) -> str:
    if isinstance(exc, TaskPilotError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


def summarize_features(features: List[Feature]) -> str:
    layers = sorted({f.layer for f in features if f.layer})
    scope = f" across {', '.join(layers)}" if layers else ""
    return f"{len(features)} feature(s){scope}"


class RequirementsAnalyzerService(Service):
    """
    Requirements submission and background analysis.

    Example:
        analyzer = RequirementsAnalyzerService(context, db)
        request = analyzer.submit(project.id, "- Users can sign up\\n- Show a dashboard")
        status = analyzer.get_status(project.id)
    """

    def __init__(
        self,
        context: ServiceContext,
        db,
        *,
        extractor: Optional[FeatureExtractor] = None,
        generator: Optional[TaskGenerator] = None,
        event_bus: Optional[EventBus] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        super().__init__(context, db)
        self.extractor = extractor or HeuristicFeatureExtractor()
        self.generator = generator or ArchitectureFirstGenerator()
        self.event_bus = event_bus or get_event_bus()
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.analysis_max_workers,
                    thread_name_prefix="taskpilot-analysis",
                )
            return self._executor

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. In-flight analyses finish when wait is True."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None and self._owns_executor:
            executor.shutdown(wait=wait)

    # Commands

    def submit(
        self,
        project_id: int,
        raw_requirements: str,
        prd_content: Optional[str] = None,
        *,
        wait: bool = False,
    ) -> RequirementsRequest:
        """
        Persist a pending request and start its analysis.

        Raises ValidationError for empty requirements, EntityNotFoundError for
        an unknown project and ConflictError while another request for the
        project is in flight. With wait=True the analysis runs to completion
        before returning; the returned record is the pending snapshot either way.
        """
        if not (raw_requirements or "").strip():
            raise ValidationError("Requirements text must not be empty", metadata={"project_id": project_id})

        request = self.db.create_requirements(project_id, raw_requirements, prd_content)
        self.logger.info(
            "requirements_submitted",
            extra=self.log_extra(project_id=project_id, requirements_id=request.id, wait=wait),
        )
        if wait:
            self.run_analysis(request.id)
        else:
            self._get_executor().submit(self._run_in_background, request.id)
        return request

    def delete(self, project_id: int) -> int:
        """Remove the project's requirements rows. Generated tasks are kept."""
        removed = self.db.delete_requirements_for_project(project_id)
        self.logger.info("requirements_deleted", extra=self.log_extra(project_id=project_id, removed=removed))
        return removed

    # Queries

    def get_status(self, project_id: int) -> Optional[RequirementsRequest]:
        """Newest request for the project, or None."""
        return self.db.get_latest_requirements(project_id)

    def get_request(self, requirements_id: int) -> RequirementsRequest:
        return self.db.get_requirements(requirements_id)

    @staticmethod
    def is_terminal(status: str) -> bool:
        return status in GenerationStatus.TERMINAL

    # Analysis

    def _run_in_background(self, requirements_id: int) -> None:
        try:
            self.run_analysis(requirements_id)
        except Exception:
            # Worker boundary: the request row already carries any failure
            self.logger.exception(
                "requirements_analysis_crashed",
                extra=self.log_extra(requirements_id=requirements_id),
            )

    def _advance(self, request: RequirementsRequest, from_status: str, to_status: str) -> bool:
        updated = self.db.transition_requirements(request.id, from_status, to_status)
        if updated is None:
            self.logger.warning(
                "requirements_transition_lost",
                extra=self.log_extra(
                    project_id=request.project_id,
                    requirements_id=request.id,
                    from_status=from_status,
                    to_status=to_status,
                ),
            )
            return False
        return True

    def _fail(self, request: RequirementsRequest, from_status: str, message: str) -> None:
        updated = self.db.transition_requirements(
            request.id, from_status, GenerationStatus.FAILED, error_message=message
        )
        self.logger.warning(
            "requirements_analysis_failed",
            extra=self.log_extra(
                project_id=request.project_id,
                requirements_id=request.id,
                phase=from_status,
                error=message,
                recorded=updated is not None,
            ),
        )
        if updated is not None:
            self.event_bus.publish(
                RequirementsFailed(requirements_id=request.id, project_id=request.project_id, error=message)
            )

    @staticmethod
    def _normalize_draft(draft: TaskDraft) -> TaskDraft:
        return replace(
            draft,
            title=(draft.title or "").strip() or "Untitled task",
            layer=normalize_layer(draft.layer),
            task_type=normalize_task_type(draft.task_type),
        )

    def run_analysis(self, requirements_id: int) -> Optional[RequirementsRequest]:
        """
        Drive one request through analysis and task generation.

        Returns the final record, or None when the request vanished or was
        moved by someone else along the way.
        """
        try:
            request = self.db.get_requirements(requirements_id)
        except EntityNotFoundError:
            self.logger.warning("requirements_missing", extra=self.log_extra(requirements_id=requirements_id))
            return None

        with self.bound(project_id=request.project_id, requirements_id=request.id):
            if not self._advance(request, GenerationStatus.PENDING, GenerationStatus.ANALYZING):
                return None

            try:
                features = list(self.extractor.extract(request.raw_requirements, request.prd_content))
            except Exception as exc:
                self._fail(request, GenerationStatus.ANALYZING, f"Feature extraction failed: {exc}")
                return self._final(request.id)
            if not features:
                self._fail(request, GenerationStatus.ANALYZING, NO_FEATURES_MESSAGE)
                return self._final(request.id)

            try:
                analysis: Dict[str, Any] = {
                    "features": [f.to_dict() for f in features],
                    "summary": summarize_features(features),
                }
                self.db.update_requirements_analysis(request.id, analysis)
                advanced = self._advance(request, GenerationStatus.ANALYZING, GenerationStatus.GENERATING)
            except Exception as exc:
                self._fail(request, GenerationStatus.ANALYZING, f"Storing the analysis failed: {_describe(exc)}")
                return self._final(request.id)
            if not advanced:
                return None
            self.logger.info(
                "requirements_features_extracted",
                extra=self.log_extra(requirements_id=request.id, feature_count=len(features)),
            )

            task_ids: List[int] = []
            try:
                for draft in self.generator.generate(features):
                    task = self.db.create_generated_task(request.project_id, self._normalize_draft(draft))
                    task_ids.append(task.id)
                completed = self._advance(request, GenerationStatus.GENERATING, GenerationStatus.COMPLETED)
            except Exception as exc:
                self._fail(
                    request,
                    GenerationStatus.GENERATING,
                    f"Task generation failed after {len(task_ids)} task(s): {_describe(exc)}",
                )
                return self._final(request.id)
            if not completed:
                return None

            self.logger.info(
                "requirements_tasks_generated",
                extra=self.log_extra(requirements_id=request.id, task_count=len(task_ids)),
            )
            self.event_bus.publish(
                RequirementsCompleted(requirements_id=request.id, project_id=request.project_id, task_ids=task_ids)
            )
            return self._final(request.id)

    def _final(self, requirements_id: int) -> Optional[RequirementsRequest]:
        try:
            return self.db.get_requirements(requirements_id)
        except EntityNotFoundError:
            return None

