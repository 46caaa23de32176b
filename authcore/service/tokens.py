from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from authcore.config import Settings
from authcore.logging import fingerprint, get_logger
from authcore.service.deadline import run_store_call
from authcore.service.errors import InvalidGrant, TokenReuseDetected
from authcore.service.primitives import AccessTokenCodec, SecretPrimitives
from authcore.storage.common import AuthCoreStore, RotationStatus
from authcore.storage.models import (
    Introspection,
    RefreshTokenRecord,
    TokenFamily,
    TokenPair,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class IssuedPair:
    """A freshly minted pair and the hashed record that must be persisted for it."""

    pair: TokenPair
    record: RefreshTokenRecord


class TokenLifecycleManager:
    """Issue, rotate, revoke and introspect tokens.

    Refresh tokens are opaque and stored only as SHA-256 hashes. Each rotation
    is one atomic store call that marks the presented token used and records
    the next generation; presenting a used token revokes the whole family.
    """

    def __init__(
        self,
        store: AuthCoreStore,
        settings: Settings,
        *,
        primitives: Optional[SecretPrimitives] = None,
        codec: Optional[AccessTokenCodec] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.primitives = primitives or SecretPrimitives()
        self.codec = codec or AccessTokenCodec(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock_skew_seconds=settings.clock_skew_seconds,
        )
        self._now = now

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.store_timeout_seconds

    def new_family(
        self, subject_id: str, scope: str, *, client_id: Optional[str] = None
    ) -> TokenFamily:
        return TokenFamily(
            family_id=str(uuid.uuid4()),
            subject_id=subject_id,
            scope=scope,
            client_id=client_id,
            created_at=self._now(),
            generation=0,
        )

    def _access_token(
        self,
        *,
        subject_id: str,
        scope: str,
        family_id: str,
        client_id: Optional[str],
        now: datetime,
    ) -> str:
        return self.codec.encode(
            subject_id=subject_id,
            scope=scope,
            family_id=family_id,
            client_id=client_id,
            issued_at=now,
            expires_at=now + self.access_ttl,
        )

    def _refresh_record(
        self, raw_refresh: str, family_id: str, generation: int, now: datetime
    ) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=self.primitives.hash_token(raw_refresh),
            family_id=family_id,
            generation=generation,
            issued_at=now,
            expires_at=now + self.refresh_ttl,
        )

    def issue_pair(
        self,
        family_id: str,
        generation: int,
        subject_id: str,
        scope: str,
        *,
        client_id: Optional[str] = None,
    ) -> IssuedPair:
        """Mint an access token and a refresh token for ``family_id``.

        Nothing is persisted; the returned record goes to the store through
        one of its atomic family operations. The raw refresh token appears only
        in ``pair`` and is never stored.
        """
        now = self._now()
        raw_refresh = self.primitives.generate_opaque_token(32)
        pair = TokenPair(
            access_token=self._access_token(
                subject_id=subject_id,
                scope=scope,
                family_id=family_id,
                client_id=client_id,
                now=now,
            ),
            refresh_token=raw_refresh,
            expires_in=int(self.access_ttl.total_seconds()),
            family_id=family_id,
            generation=generation,
            scope=scope,
        )
        return IssuedPair(
            pair=pair, record=self._refresh_record(raw_refresh, family_id, generation, now)
        )

    async def start_family(
        self,
        subject_id: str,
        scope: str,
        *,
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TokenPair:
        """Create a family at generation 0 and return its first pair."""
        family = self.new_family(subject_id, scope, client_id=client_id)
        issued = self.issue_pair(
            family.family_id, 0, subject_id, scope, client_id=client_id
        )
        await run_store_call(
            self.store.create_family,
            family,
            issued.record,
            timeout=self._timeout(timeout),
            operation="create_family",
        )
        logger.info(
            "token_family_created",
            family_id=family.family_id,
            subject_id=subject_id,
            client_id=client_id,
        )
        return issued.pair

    async def rotate_refresh_token(
        self,
        raw_refresh_token: str,
        *,
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TokenPair:
        """Exchange a current refresh token for the next generation's pair.

        Raises:
            InvalidGrant: unknown, expired or revoked token, or a token issued
                to a different client.
            TokenReuseDetected: the token was already rotated; its family has
                been revoked before this is raised.
            Unavailable: the store did not answer in time.
        """
        if not raw_refresh_token:
            raise InvalidGrant("refresh_token is required")
        deadline = self._timeout(timeout)
        token_hash = self.primitives.hash_token(raw_refresh_token)

        if client_id is not None:
            await self._check_client_binding(token_hash, client_id, deadline)

        now = self._now()
        raw_next = self.primitives.generate_opaque_token(32)
        # family_id and generation are filled in by the store under its lock
        next_record = self._refresh_record(raw_next, "", 0, now)
        result = await run_store_call(
            self.store.rotate_refresh_token,
            token_hash,
            next_record,
            now,
            timeout=deadline,
            operation="rotate_refresh_token",
        )
        family = result.family
        token_fp = fingerprint(raw_refresh_token)

        if result.status == RotationStatus.REUSE_DETECTED:
            family_id = family.family_id if family else None
            logger.warning(
                "refresh_token_reuse_detected",
                family_id=family_id,
                subject_id=family.subject_id if family else None,
                token_fp=token_fp,
            )
            logger.warning("token_family_revoked", family_id=family_id, reason="refresh_reuse")
            raise TokenReuseDetected("refresh token already used", family_id=family_id)
        if result.status == RotationStatus.FAMILY_REVOKED:
            logger.info(
                "refresh_token_family_revoked",
                family_id=family.family_id if family else None,
                token_fp=token_fp,
            )
            raise InvalidGrant("refresh token revoked")
        if result.status == RotationStatus.EXPIRED:
            raise InvalidGrant("refresh token expired")
        if result.status != RotationStatus.ROTATED or family is None:
            logger.info("refresh_token_unknown", token_fp=token_fp)
            raise InvalidGrant("refresh token not recognized")

        generation = result.generation if result.generation is not None else family.generation
        pair = TokenPair(
            access_token=self._access_token(
                subject_id=family.subject_id,
                scope=family.scope,
                family_id=family.family_id,
                client_id=family.client_id,
                now=now,
            ),
            refresh_token=raw_next,
            expires_in=int(self.access_ttl.total_seconds()),
            family_id=family.family_id,
            generation=generation,
            scope=family.scope,
        )
        logger.info(
            "refresh_token_rotated",
            family_id=family.family_id,
            generation=generation,
        )
        return pair

    async def _check_client_binding(
        self, token_hash: str, client_id: str, deadline: float
    ) -> None:
        record = await run_store_call(
            self.store.get_refresh_token,
            token_hash,
            timeout=deadline,
            operation="get_refresh_token",
        )
        if record is None:
            return
        family = await run_store_call(
            self.store.get_family,
            record.family_id,
            timeout=deadline,
            operation="get_family",
        )
        if family is not None and family.client_id and family.client_id != client_id:
            logger.warning(
                "refresh_token_client_mismatch",
                family_id=family.family_id,
                client_id=client_id,
            )
            raise InvalidGrant("refresh token was issued to another client")

    async def revoke(self, family_id: str, *, timeout: Optional[float] = None) -> bool:
        """Revoke every token in the family. Idempotent; False if it does not exist."""
        found = await run_store_call(
            self.store.revoke_family,
            family_id,
            self._now(),
            timeout=self._timeout(timeout),
            operation="revoke_family",
        )
        if found:
            logger.info("token_family_revoked", family_id=family_id, reason="explicit")
        return found

    async def revoke_by_refresh_token(
        self, raw_refresh_token: str, *, timeout: Optional[float] = None
    ) -> Optional[str]:
        """Logout: revoke the family a refresh token belongs to.

        Unknown tokens are not an error; the revoked family id or ``None`` is
        returned.
        """
        if not raw_refresh_token:
            return None
        deadline = self._timeout(timeout)
        record = await run_store_call(
            self.store.get_refresh_token,
            self.primitives.hash_token(raw_refresh_token),
            timeout=deadline,
            operation="get_refresh_token",
        )
        if record is None:
            return None
        await self.revoke(record.family_id, timeout=deadline)
        return record.family_id

    def introspect(self, access_token: str) -> Introspection:
        """Signature and expiry check only; revocation is seen at the next refresh."""
        claims = self.codec.decode(access_token, now=self._now())
        if claims is None:
            return Introspection.inactive()
        return Introspection(
            valid=True,
            subject_id=claims.subject_id,
            scope=claims.scope,
            family_id=claims.family_id,
            client_id=claims.client_id,
            expires_at=claims.expires_at,
        )
