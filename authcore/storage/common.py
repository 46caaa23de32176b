"""Storage contract shared by the memory, Redis and Postgres backends.

Every method that mutates one-time-use state (authorization codes, refresh
tokens, attempt counters) is a single atomic operation in each backend. The
service layer never composes a read and a write into a mutation; it calls one
of these methods and interprets the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Type, TypeVar

from authcore.storage.models import (
    AuthorizationCode,
    AuthorizationRequest,
    ChallengeMethod,
    LockState,
    LoginAttemptCounter,
    RefreshTokenRecord,
    TokenFamily,
)


class RedemptionStatus(str, Enum):
    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


@dataclass
class RedemptionResult:
    status: RedemptionStatus
    # family minted by the first redemption; revoked when status is ALREADY_USED
    family_id: Optional[str] = None


class RotationStatus(str, Enum):
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    FAMILY_REVOKED = "family_revoked"
    REUSE_DETECTED = "reuse_detected"
    EXPIRED = "expired"


@dataclass
class RotationResult:
    status: RotationStatus
    family: Optional[TokenFamily] = None
    generation: Optional[int] = None


@dataclass
class AttemptOutcome:
    locked: bool
    count: int
    locked_until: Optional[datetime] = None


class AuthCoreStore(Protocol):
    def ping(self) -> None: ...

    # authorization_requests, keyed by state
    def save_authorization_request(self, request: AuthorizationRequest) -> None: ...

    def consume_authorization_request(
        self, state: str
    ) -> Optional[AuthorizationRequest]: ...

    # authorization_codes, keyed by hash of the code
    def save_authorization_code(self, code: AuthorizationCode) -> None: ...

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]: ...

    def redeem_authorization_code(
        self,
        code_hash: str,
        family: TokenFamily,
        first_token: RefreshTokenRecord,
        now: datetime,
    ) -> RedemptionResult: ...

    # token families and refresh_tokens, keyed by hash and indexed by family_id
    def create_family(self, family: TokenFamily, first_token: RefreshTokenRecord) -> None: ...

    def get_family(self, family_id: str) -> Optional[TokenFamily]: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_hash: str, next_token: RefreshTokenRecord, now: datetime
    ) -> RotationResult: ...

    def revoke_family(self, family_id: str, now: datetime) -> bool: ...

    # login_attempts, keyed by account_key
    def get_lock_state(self, account_key: str, now: datetime) -> Optional[LockState]: ...

    def get_attempt_counter(
        self, account_key: str, now: datetime
    ) -> Optional[LoginAttemptCounter]: ...

    def record_failed_attempt(
        self,
        account_key: str,
        now: datetime,
        *,
        threshold: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> AttemptOutcome: ...

    def clear_attempts(self, account_key: str) -> None: ...

    # account credentials for password login
    def save_password(
        self, account_key: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_key: str) -> Optional[tuple[str, str]]: ...

    def sweep_expired(self, now: datetime) -> Dict[str, int]: ...


# ============================================================================
# Flat (string-valued) record encoding used by the Redis backend
# ============================================================================

T = TypeVar("T")


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(float(value)) / 1000, tz=timezone.utc)


def encode_record(record: Any) -> Dict[str, str]:
    """Flatten a model dataclass into string fields.

    Datetimes become epoch milliseconds so Lua scripts can compare them
    numerically; booleans become ``"1"``/``"0"``; ``None`` fields are omitted.
    """
    encoded: Dict[str, str] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[f.name] = "1" if value else "0"
        elif isinstance(value, datetime):
            encoded[f.name] = str(to_epoch_ms(value))
        elif isinstance(value, Enum):
            encoded[f.name] = str(value.value)
        else:
            encoded[f.name] = str(value)
    return encoded


_DATETIME_FIELDS = {
    "created_at",
    "expires_at",
    "retain_until",
    "revoked_at",
    "issued_at",
    "used_at",
    "window_expires_at",
    "locked_until",
}
_BOOL_FIELDS = {"used", "revoked"}
_INT_FIELDS = {"generation", "count"}
_TYPED_FIELDS = _DATETIME_FIELDS | _BOOL_FIELDS | _INT_FIELDS | {"code_challenge_method"}


def decode_record(cls: Type[T], raw: Dict[str, Any]) -> T:
    """Inverse of :func:`encode_record` for the model dataclasses."""
    values: Dict[str, Any] = {}
    names = {f.name for f in fields(cls)}
    for key, value in raw.items():
        if isinstance(key, bytes):
            key = key.decode()
        if isinstance(value, bytes):
            value = value.decode()
        if key not in names or value is None:
            continue
        # empty strings are real values for text fields such as scope
        if value == "" and key in _TYPED_FIELDS:
            continue
        if key in _DATETIME_FIELDS:
            values[key] = from_epoch_ms(value)
        elif key in _BOOL_FIELDS:
            values[key] = value in ("1", "true", "True", 1, True)
        elif key in _INT_FIELDS:
            values[key] = int(value)
        elif key == "code_challenge_method":
            values[key] = ChallengeMethod(value)
        else:
            values[key] = value
    return cls(**values)


__all__ = [
    "AttemptOutcome",
    "AuthCoreStore",
    "RedemptionResult",
    "RedemptionStatus",
    "RotationResult",
    "RotationStatus",
    "decode_record",
    "encode_record",
    "from_epoch_ms",
    "to_epoch_ms",
]
