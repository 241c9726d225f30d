"""
core/errors.py -- Error taxonomy shared by every layer of GRC Admin.

Four failure kinds, all rooted at GRCError so callers can catch the family:

  ValidationError  -- bad input caught before the backend is contacted
                      (undeclared filter, bad date range, unknown column,
                      attempt to write a server-managed field).
  NotFound         -- get/update/delete/status change on a missing id.
  RepositoryError  -- the backend failed. Carries the operation name and the
                      entity so the UI can render a retry affordance.
  Timeout          -- a backend call exceeded the configured bound.

Propagation policy: the filter and query layers raise ValidationError locally
and never let malformed input reach the backend. The repository wraps backend
exceptions in RepositoryError and never retries. The metrics reducers never
raise at all.

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

from typing import Optional


class GRCError(Exception):
    """Base class for every error raised by the access facade."""


class ValidationError(GRCError):
    """Input rejected before any backend call was made."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotFound(GRCError):
    """No record with the given id exists for the entity."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} record {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class RepositoryError(GRCError):
    """The backend failed while executing an operation."""

    def __init__(self, operation: str, entity: str, message: str = "backend operation failed") -> None:
        super().__init__(f"{operation} on {entity}: {message}")
        self.operation = operation
        self.entity = entity
        self.message = message


class Timeout(GRCError):
    """A backend call did not complete within the configured bound."""

    def __init__(self, operation: str, entity: str, seconds: float) -> None:
        super().__init__(f"{operation} on {entity} timed out after {seconds:g}s")
        self.operation = operation
        self.entity = entity
        self.seconds = seconds
