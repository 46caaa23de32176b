from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``error_code`` is the stable wire value. For the OAuth endpoints it is one
    of the RFC 6749 error codes; the envelope endpoints reuse the same value.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidRequest(ServiceError):
    """Malformed or missing parameters (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidClient(ServiceError):
    """Unknown client_id (401)."""
    status_code = 401
    error_code = "invalid_client"


class InvalidRedirect(InvalidRequest):
    """redirect_uri is not on the client's allow-list (400).

    Never answered with a redirect: the target itself is untrusted.
    """


class InvalidScope(ServiceError):
    """Requested or approved scope is not permitted (400)."""
    status_code = 400
    error_code = "invalid_scope"


class UnknownOrExpiredState(InvalidRequest):
    """No pending authorization request for this state, or it expired (400)."""


class AccessDenied(ServiceError):
    """The resource owner or the external identity check refused (403)."""
    status_code = 403
    error_code = "access_denied"


class InvalidGrant(ServiceError):
    """Bad, expired or already used code or refresh token, or binding mismatch (400)."""
    status_code = 400
    error_code = "invalid_grant"


class TokenReuseDetected(InvalidGrant):
    """A refresh token was presented after it had already been rotated.

    Rendered as ``invalid_grant`` on the wire; the distinct type lets callers
    alert and audit. The token family is revoked before this is raised.
    """

    def __init__(self, message: str, *, family_id: Optional[str] = None) -> None:
        super().__init__(message, detail={"family_id": family_id} if family_id else None)
        self.family_id = family_id


class InvalidCredentials(ServiceError):
    """Password verification failed or the account is unknown (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class AccountLocked(InvalidCredentials):
    """Too many failed attempts; verification is short-circuited (401).

    Shares the wire code and status of InvalidCredentials so responses do not
    reveal which condition occurred.
    """

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class Unavailable(ServiceError):
    """Backing store timed out or failed; outcome of a mutation is unknown (503)."""
    status_code = 503
    error_code = "temporarily_unavailable"


__all__ = [
    "ServiceError",
    "InvalidRequest",
    "InvalidClient",
    "InvalidRedirect",
    "InvalidScope",
    "UnknownOrExpiredState",
    "AccessDenied",
    "InvalidGrant",
    "TokenReuseDetected",
    "InvalidCredentials",
    "AccountLocked",
    "Unavailable",
]
