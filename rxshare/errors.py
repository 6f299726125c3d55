"""Error taxonomy shared by the issuer, gateway and linker.

Every error carries a stable ``code`` used in API responses and a default
user-facing message.  ``ExpiredError`` and ``LinkConflictError`` deliberately
read differently: the former means "ask your clinician to re-share", the
latter "this prescription was already claimed by another account".
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ShareError(Exception):
    """Base error for sharing and linking failures."""

    code = "share_error"
    status_code = 400
    retryable = False
    default_message = "The request could not be completed."

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["details"] = dict(self.context)
        return payload


class NotFoundError(ShareError):
    """Raised when a token or record does not exist."""

    code = "not_found"
    status_code = 404
    default_message = "This prescription link is invalid or no longer exists."


class ExpiredError(ShareError):
    """Raised when a share token is used after its expiry."""

    code = "expired"
    status_code = 410
    default_message = (
        "This prescription link has expired. Please ask your clinician to share it again."
    )


class LinkConflictError(ShareError):
    """Raised when a grant is already linked to a different account."""

    code = "link_conflict"
    status_code = 409
    default_message = "This prescription has already been claimed by another account."


class ForbiddenError(ShareError):
    """Raised when the caller may not access the requested record."""

    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this prescription."


class InvalidRequestError(ShareError):
    """Raised for malformed identities, contacts or payloads."""

    code = "invalid_request"
    status_code = 422
    default_message = "The request was invalid."


class GrantAlreadyIssuedError(ShareError):
    """Raised when issuing a second grant for the same record."""

    code = "grant_exists"
    status_code = 409
    default_message = "A share link has already been issued for this record."


class TransientStoreError(ShareError):
    """Raised when the record store is unreachable; safe to retry."""

    code = "transient"
    status_code = 503
    retryable = True
    default_message = "The service is temporarily unavailable. Please try again."


__all__ = [
    "ShareError",
    "NotFoundError",
    "ExpiredError",
    "LinkConflictError",
    "ForbiddenError",
    "InvalidRequestError",
    "GrantAlreadyIssuedError",
    "TransientStoreError",
]
