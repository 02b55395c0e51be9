"""
skillport.errors

Typed failures raised by every layer of the connector. Each class carries a
stable ``kind`` string that the tool layer reports back to the client as
``{"error": {"kind": ..., "message": ...}}``.
"""

from __future__ import annotations

from typing import Any


class SkillportError(Exception):
    kind: str = "error"
    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_failure(self) -> dict[str, Any]:
        return {"error": {"kind": self.kind, "message": self.message}}


class NotFoundError(SkillportError):
    kind = "not_found"
    http_status = 404


class UnauthorizedError(SkillportError):
    """Access policy denies the operation."""

    kind = "unauthorized"
    http_status = 403


class UnauthenticatedError(UnauthorizedError):
    """Missing, malformed or expired API session token."""

    http_status = 401


class RemoteAuthError(SkillportError):
    """The content API refused our credentials (401/403)."""

    kind = "remote_unauthorized"
    http_status = 502


class RateLimitedError(SkillportError):
    kind = "rate_limited"
    http_status = 503


class ConflictError(SkillportError):
    """Version tag mismatch on a write."""

    kind = "conflict"
    http_status = 409


class AlreadyConsumedError(SkillportError):
    kind = "already_consumed"
    http_status = 410


class ExpiredError(SkillportError):
    kind = "expired"
    http_status = 404


class InvalidError(SkillportError):
    kind = "invalid"
    http_status = 400


class RemoteUnavailableError(SkillportError):
    kind = "remote_unavailable"
    http_status = 503


class RemoteError(SkillportError):
    kind = "remote_error"
    http_status = 502


class PartialFailureError(SkillportError):
    """
    A multi-step mutation stopped part-way. Nothing is rolled back; the
    completed and failed steps are reported so the caller can reconcile.
    """

    kind = "partial_failure"
    http_status = 500

    def __init__(
        self,
        message: str,
        completed: list[str] | None = None,
        failed: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.completed = list(completed or [])
        self.failed = list(failed or [])

    def to_failure(self) -> dict[str, Any]:
        payload = super().to_failure()
        payload["error"]["completed"] = self.completed
        payload["error"]["failed"] = self.failed
        return payload
