"""
TaskPilot Error Hierarchy

Base error and specific error types for all TaskPilot components.
Errors carry metadata for structured logging.
"""

from typing import Any, Dict, Optional


class TaskPilotError(RuntimeError):
    """
    Base error for TaskPilot components. Carries metadata for structured logging.

    Attributes:
        category: Error category for classification (e.g., "runtime", "validation")
        retryable: Whether the operation can be retried
        metadata: Additional context for logging and debugging
    """

    category: str = "runtime"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable


# Validation Errors
class ValidationError(TaskPilotError, ValueError):
    """Raised when input validation fails. Nothing is persisted."""

    category = "validation"
    retryable = False


# Configuration Errors
class ConfigError(TaskPilotError):
    """Raised when configuration is invalid or missing."""

    category = "config"
    retryable = False


# Concurrency Errors
class ConflictError(TaskPilotError):
    """
    Raised when an operation collides with in-flight work.

    Examples: a second requirements analysis for the same project, or a
    second automation pass over the same task. Existing state is untouched.
    """

    category = "conflict"
    retryable = True


# Task Hierarchy Errors
class HierarchyError(TaskPilotError):
    """Base class for task tree errors."""

    category = "hierarchy"
    retryable = False


class DepthExceededError(HierarchyError):
    """Raised when a breakdown would exceed the project's max breakdown depth."""

    def __init__(
        self,
        message: str,
        *,
        depth: Optional[int] = None,
        max_depth: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, metadata=metadata)
        self.depth = depth
        self.max_depth = max_depth


class IntegrityError(HierarchyError):
    """Raised when parent links form a cycle or an unbounded chain."""

    category = "integrity"


# Collaborator Errors
class CollaboratorError(TaskPilotError):
    """Raised when a pluggable collaborator (agent, runner, merger) fails."""

    category = "collaborator"


class CollaboratorTimeout(CollaboratorError):
    """Raised when a collaborator call exceeds its time bound."""

    category = "timeout"


# Storage Errors
class StorageError(TaskPilotError):
    """Raised when database operations fail."""

    category = "storage"


class EntityNotFoundError(StorageError, KeyError):
    """Raised when a requested entity is not found in storage."""

    category = "storage"
    retryable = False

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0] if self.args else ""
