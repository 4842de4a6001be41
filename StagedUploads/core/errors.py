"""
Rejection taxonomy for grant issuing, uploads and promotion.

Every error carries a machine-readable ``reason`` and whether the same request
may succeed when retried, so admin clients can tell "try again" apart from a
policy violation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import PermanentObject


class UploadError(Exception):
    reason = "upload_error"
    retryable = False
    http_status = 400

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.reason.replace("_", " ")
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"reason": self.reason, "detail": self.detail, "retryable": self.retryable}


class QuotaExceeded(UploadError):
    reason = "quota_exceeded"
    http_status = 413


class ContentTypeNotAllowed(UploadError):
    reason = "content_type_not_allowed"
    http_status = 415


class RateLimited(UploadError):
    reason = "rate_limited"
    retryable = True
    http_status = 429


class Forbidden(UploadError):
    reason = "forbidden"
    http_status = 403


class NotReady(UploadError):
    reason = "not_ready"
    retryable = True
    http_status = 409


class SourceMissing(UploadError):
    reason = "source_missing"
    http_status = 410


class TypeMismatch(UploadError):
    reason = "type_mismatch"
    http_status = 422


class SizeMismatch(UploadError):
    reason = "size_mismatch"
    http_status = 422


class InvalidDestination(UploadError):
    reason = "invalid_destination"
    http_status = 400


class DestinationConflict(UploadError):
    reason = "destination_conflict"
    http_status = 409


class CopyFailed(UploadError):
    reason = "copy_failed"
    retryable = True
    http_status = 502


class TransportError(UploadError):
    reason = "transport_error"
    retryable = True
    http_status = 503


class PromotionInProgress(UploadError):
    reason = "promotion_in_progress"
    retryable = True
    http_status = 409


class InvalidTransition(UploadError):
    reason = "invalid_transition"
    http_status = 409


class GrantExpired(UploadError):
    reason = "grant_expired"
    http_status = 410


class InvalidCredential(UploadError):
    reason = "invalid_credential"
    http_status = 403


class AlreadyPromoted(UploadError):
    """Replay of a promoted grant without idempotent semantics."""

    reason = "already_promoted"
    http_status = 409

    def __init__(self, permanent_object: "PermanentObject", detail: Optional[str] = None) -> None:
        self.permanent_object = permanent_object
        super().__init__(detail or f"upload already promoted to {permanent_object.destination_key}")

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["permanent_object"] = self.permanent_object.to_dict()
        return payload


# Terminal rejection reasons recorded on a grant, replayed on later attempts.
TERMINAL_REJECTIONS = {
    TypeMismatch.reason: TypeMismatch,
    SizeMismatch.reason: SizeMismatch,
}


class NotFound(Exception):
    """Raised by object stores when a key does not exist."""


class Conflict(Exception):
    """Raised by object stores when a destination key is already occupied."""


class PreconditionFailed(Exception):
    """Raised by object stores when a source no longer has the expected etag."""
