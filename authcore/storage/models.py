from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional


class ChallengeMethod(str, Enum):
    """PKCE code_challenge_method values."""

    PLAIN = "plain"
    S256 = "S256"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_scope(raw: Optional[str | Iterable[str]]) -> frozenset[str]:
    """Split a space-delimited scope string into a set of scope tokens."""
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        return frozenset(part for part in raw.split() if part)
    return frozenset(part for part in raw if part)


def format_scope(scope: Iterable[str]) -> str:
    """Canonical space-delimited, sorted scope string."""
    return " ".join(sorted(set(scope)))


@dataclass
class AuthorizationRequest:
    state: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: ChallengeMethod
    scope: str
    created_at: datetime
    expires_at: datetime
    # state value supplied by the client on the wire; echoed on the redirect
    client_state: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuthorizationCode:
    code_hash: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: ChallengeMethod
    subject_id: str
    scope: str
    created_at: datetime
    expires_at: datetime
    # kept past expiry so late replays still revoke what the code minted
    retain_until: datetime
    used: bool = False
    family_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class TokenFamily:
    family_id: str
    subject_id: str
    scope: str
    created_at: datetime
    client_id: Optional[str] = None
    generation: int = 0
    revoked: bool = False
    revoked_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    token_hash: str
    family_id: str
    generation: int
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AccessTokenClaims:
    subject_id: str
    scope: str
    family_id: str
    expires_at: datetime
    issued_at: datetime
    token_id: str
    client_id: Optional[str] = None


@dataclass
class Introspection:
    valid: bool
    subject_id: Optional[str] = None
    scope: Optional[str] = None
    family_id: Optional[str] = None
    client_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def inactive(cls) -> "Introspection":
        return cls(valid=False)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    family_id: str
    generation: int
    scope: str
    token_type: str = "Bearer"

    def as_response(self) -> Dict[str, object]:
        """Body of a successful token endpoint response."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


@dataclass
class LoginAttemptCounter:
    account_key: str
    count: int
    window_expires_at: datetime


@dataclass
class LockState:
    account_key: str
    locked_until: datetime

    def retry_after(self, now: datetime) -> int:
        """Whole seconds until the lock lifts, at least 1 while locked."""
        remaining = (self.locked_until - now).total_seconds()
        return max(1, math.ceil(remaining))


@dataclass
class AttemptDecision:
    allowed: bool
    retry_after: Optional[int] = None
    failures: int = 0


@dataclass
class ApprovalRedirect:
    """Where the user agent goes after approval or denial."""

    redirect_uri: str
    params: Dict[str, str] = field(default_factory=dict)
