"""
Error taxonomy for the document registry.

Every error carries a stable ``code`` and the HTTP status the API layer maps
it to. ``PartialAvailabilityWarning`` is a warning category: the allocator
logs it and keeps going instead of raising.
"""

from __future__ import annotations

from typing import Any


class DmsError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        out.update(self.details)
        return out


class ValidationError(DmsError):
    code = "validation_error"
    status_code = 400


class PermissionError(DmsError):  # noqa: A001
    code = "permission_denied"
    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action.") -> None:
        # Never attach details: a denied caller learns nothing about the record.
        super().__init__(message)


class InvalidTransitionError(DmsError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move a document from {current} to {target}.",
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class NotFoundError(DmsError):
    code = "not_found"
    status_code = 404


class CodeAllocationError(DmsError):
    code = "code_allocation_failed"
    status_code = 409


class NetworkError(DmsError):
    code = "network_error"
    status_code = 502


class PartialAvailabilityWarning(UserWarning):
    pass
