"""Secret primitives and the access-token codec.

Nothing here implements a cryptographic algorithm: randomness comes from
:mod:`secrets`, password hashing from argon2-cffi, digests and MACs from
:mod:`hashlib` and :mod:`hmac`. This module fixes the contracts the rest of the
core relies on.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.storage.models import AccessTokenClaims, ChallengeMethod

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class SecretPrimitives:
    """Opaque tokens, password hashing, PKCE derivation and constant-time compare."""

    def __init__(self, *, password_hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    @staticmethod
    def generate_opaque_token(byte_length: int = 32) -> str:
        return secrets.token_urlsafe(byte_length)

    @staticmethod
    def hash_token(raw: str) -> str:
        """Storage key for a one-time secret; the raw value is never persisted."""
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, password: str, stored_hash: str, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend one hash verification so unknown accounts take as long as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.verify_password(password, self._dummy_hash)

    @staticmethod
    def derive_challenge(verifier: str, method: ChallengeMethod) -> str:
        if method == ChallengeMethod.S256:
            digest = hashlib.sha256(verifier.encode("ascii")).digest()
            return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        if method == ChallengeMethod.PLAIN:
            return verifier
        raise ValueError(f"unsupported code_challenge_method: {method}")

    @staticmethod
    def constant_time_equal(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class AccessTokenCodec:
    """HS256 JWTs carrying subject, scope and token family.

    Verification checks signature, issuer, audience and expiry only; the store
    is never consulted, so a revoked family's access tokens stay valid until
    they expire.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock_skew_seconds: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("access token secret must be set")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(
        self,
        *,
        subject_id: str,
        scope: str,
        family_id: str,
        issued_at: datetime,
        expires_at: datetime,
        client_id: Optional[str] = None,
    ) -> str:
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "scope": scope,
            "fid": family_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        if client_id:
            payload["cid"] = client_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: datetime) -> Optional[AccessTokenClaims]:
        """Return the claims of a valid token, or ``None``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= (now - self._clock_skew_leeway).timestamp():
            return None
        if not payload.get("sub") or not payload.get("fid"):
            return None
        return AccessTokenClaims(
            subject_id=payload["sub"],
            scope=payload.get("scope", ""),
            family_id=payload["fid"],
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            token_id=payload.get("jti", ""),
            client_id=payload.get("cid"),
        )
