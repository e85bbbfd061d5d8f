"""
Error taxonomy shared by the core and the HTTP boundary.

Each error carries a stable ``kind`` plus enough context to explain the
rejection (which entity, field, policy or precondition) without exposing
storage internals.
"""
from __future__ import annotations

from typing import Any


class DomainError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, "context": self.context}


class NotFound(DomainError):
    kind = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(DomainError):
    kind = "validation"
    http_status = 400

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}", field=field, reason=reason)
        self.field = field
        self.reason = reason


class AccessDenied(DomainError):
    kind = "access_denied"
    http_status = 403

    def __init__(self, policy: str, message: str | None = None) -> None:
        super().__init__(message or f"Access denied by policy {policy}", policy=policy)
        self.policy = policy


class PreconditionFailed(DomainError):
    kind = "precondition_failed"
    http_status = 412

    def __init__(self, required_state: str, actual_state: str | None = None, message: str | None = None) -> None:
        super().__init__(
            message or f"Operation requires state {required_state}",
            required_state=required_state,
            actual_state=actual_state,
        )
        self.required_state = required_state
        self.actual_state = actual_state


class ConflictError(DomainError):
    kind = "conflict"
    http_status = 409

    def __init__(self, entity: str, entity_id: Any, message: str | None = None) -> None:
        super().__init__(message or f"Concurrent modification of {entity} {entity_id}", entity=entity, id=entity_id)


class StorageUnavailable(DomainError):
    kind = "storage_unavailable"
    http_status = 503

    def __init__(self, message: str = "Storage is unavailable") -> None:
        super().__init__(message)


class RenderingFailed(DomainError):
    kind = "rendering_failed"
    http_status = 502

    def __init__(self, message: str = "Rendering failed", **context: Any) -> None:
        super().__init__(message, **context)
