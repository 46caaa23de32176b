from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from authcore.config import ClientRegistration, Settings
from authcore.logging import fingerprint, get_logger
from authcore.service.deadline import run_store_call
from authcore.service.errors import (
    AccessDenied,
    InvalidClient,
    InvalidGrant,
    InvalidRedirect,
    InvalidRequest,
    InvalidScope,
    Unavailable,
    UnknownOrExpiredState,
)
from authcore.service.primitives import SecretPrimitives
from authcore.service.tokens import TokenLifecycleManager
from authcore.storage.common import AuthCoreStore, RedemptionStatus
from authcore.storage.models import (
    ApprovalRedirect,
    AuthorizationCode,
    AuthorizationRequest,
    ChallengeMethod,
    TokenFamily,
    TokenPair,
    format_scope,
    parse_scope,
    utcnow,
)

logger = get_logger(__name__)

# RFC 7636 section 4.2: 43..128 characters from the unreserved set
_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# section 4.1 puts the same limits on the verifier
_VERIFIER_RE = _CHALLENGE_RE


@dataclass
class IssuedCode:
    """An authorization code as handed to the client; ``code`` is never stored."""

    code: str
    record: AuthorizationCode
    client_state: Optional[str] = None

    @property
    def redirect(self) -> ApprovalRedirect:
        params = {"code": self.code}
        if self.client_state is not None:
            params["state"] = self.client_state
        return ApprovalRedirect(redirect_uri=self.record.redirect_uri, params=params)


@dataclass
class CodeGrant:
    family: TokenFamily
    pair: TokenPair


class AuthorizationFlowCoordinator:
    """Authorization code flow with CSRF state and PKCE.

    ``Started -> Approved -> Redeemed``; requests and codes also end in
    ``Expired``, and a second redemption of a code ends in ``ReplayDetected``
    which revokes the family minted by the first.
    """

    def __init__(
        self,
        store: AuthCoreStore,
        settings: Settings,
        tokens: TokenLifecycleManager,
        *,
        primitives: Optional[SecretPrimitives] = None,
        now: Callable[[], datetime] = utcnow,
        sweep_interval_seconds: int = 0,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.primitives = primitives or tokens.primitives
        self._now = now
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._last_sweep: Optional[datetime] = None
        self._sweep_lock = threading.Lock()

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.store_timeout_seconds

    # -- validation -------------------------------------------------------------

    def get_client(self, client_id: Optional[str]) -> ClientRegistration:
        client = self.settings.clients.get(client_id or "")
        if client is None:
            logger.warning("authorization_unknown_client", client_id=client_id)
            raise InvalidClient("unknown client_id")
        return client

    def validate_redirect(
        self, client_id: Optional[str], redirect_uri: Optional[str]
    ) -> ClientRegistration:
        """Resolve the client and check ``redirect_uri`` against its allow-list."""
        client = self.get_client(client_id)
        if not redirect_uri or not client.allows_redirect(redirect_uri):
            logger.warning(
                "authorization_redirect_rejected",
                client_id=client.client_id,
                redirect_uri=redirect_uri,
            )
            raise InvalidRedirect("redirect_uri is not registered for this client")
        return client

    def _challenge_method(self, raw: Optional[str]) -> ChallengeMethod:
        # RFC 7636: an absent method means plain
        value = raw or ChallengeMethod.PLAIN.value
        try:
            method = ChallengeMethod(value)
        except ValueError as exc:
            raise InvalidRequest(
                "unsupported code_challenge_method",
                detail={"code_challenge_method": value},
            ) from exc
        if method == ChallengeMethod.PLAIN and not self.settings.plain_pkce_enabled:
            raise InvalidRequest(
                "code_challenge_method S256 is required",
                detail={"code_challenge_method": value},
            )
        return method

    # -- operations -------------------------------------------------------------

    async def start_flow(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        requested_scope: Optional[str] = None,
        *,
        client_state: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AuthorizationRequest:
        """Validate a new authorization request and persist it under a fresh state.

        Raises:
            InvalidClient: ``client_id`` is not registered.
            InvalidRedirect: ``redirect_uri`` is not on the client's allow-list.
            InvalidRequest: challenge missing or malformed, or method not allowed.
            InvalidScope: scope outside what the client may request.
        """
        client = self.validate_redirect(client_id, redirect_uri)
        if not code_challenge:
            raise InvalidRequest("code_challenge is required")
        method = self._challenge_method(code_challenge_method)
        if not _CHALLENGE_RE.match(code_challenge):
            raise InvalidRequest("code_challenge is malformed")
        scope = parse_scope(requested_scope)
        if not client.allows_scope(scope):
            raise InvalidScope(
                "requested scope is not allowed for this client",
                detail={"scope": format_scope(scope - client.scopes)},
            )

        await self._maybe_sweep()
        now = self._now()
        request = AuthorizationRequest(
            state=self.primitives.generate_opaque_token(32),
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=method,
            scope=format_scope(scope),
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.authorization_request_ttl_seconds),
            client_state=client_state,
        )
        await run_store_call(
            self.store.save_authorization_request,
            request,
            timeout=self._timeout(timeout),
            operation="save_authorization_request",
        )
        logger.info(
            "authorization_flow_started",
            client_id=client.client_id,
            state_fp=fingerprint(request.state),
            code_challenge_method=method.value,
            scope=request.scope,
        )
        return request

    async def _consume_request(
        self, state: str, deadline: float
    ) -> AuthorizationRequest:
        if not state:
            raise UnknownOrExpiredState("state is required")
        request = await run_store_call(
            self.store.consume_authorization_request,
            state,
            timeout=deadline,
            operation="consume_authorization_request",
        )
        if request is None:
            logger.info("authorization_state_unknown", state_fp=fingerprint(state))
            raise UnknownOrExpiredState("unknown or expired state")
        if request.is_expired(self._now()):
            logger.info("authorization_state_expired", state_fp=fingerprint(state))
            raise UnknownOrExpiredState("unknown or expired state")
        return request

    async def complete_approval(
        self,
        state: str,
        subject_id: str,
        approved_scope: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> IssuedCode:
        """Consume the pending request and mint a one-time authorization code.

        ``approved_scope`` defaults to everything requested and may only narrow it.
        """
        if not subject_id:
            raise InvalidRequest("subject_id is required")
        deadline = self._timeout(timeout)
        request = await self._consume_request(state, deadline)

        requested = parse_scope(request.scope)
        approved = requested if approved_scope is None else parse_scope(approved_scope)
        if not approved <= requested:
            logger.warning(
                "authorization_scope_escalation",
                client_id=request.client_id,
                scope=format_scope(approved - requested),
            )
            raise InvalidScope(
                "approved scope exceeds the requested scope",
                detail={"scope": format_scope(approved - requested)},
            )

        now = self._now()
        raw_code = self.primitives.generate_opaque_token(32)
        expires_at = now + timedelta(seconds=self.settings.authorization_code_ttl_seconds)
        record = AuthorizationCode(
            code_hash=self.primitives.hash_token(raw_code),
            client_id=request.client_id,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            subject_id=subject_id,
            scope=format_scope(approved),
            created_at=now,
            expires_at=expires_at,
            retain_until=expires_at
            + timedelta(seconds=self.settings.code_replay_retention_seconds),
        )
        await run_store_call(
            self.store.save_authorization_code,
            record,
            timeout=deadline,
            operation="save_authorization_code",
        )
        logger.info(
            "authorization_code_issued",
            client_id=record.client_id,
            subject_id=subject_id,
            code_fp=fingerprint(raw_code),
            scope=record.scope,
        )
        return IssuedCode(code=raw_code, record=record, client_state=request.client_state)

    async def deny_approval(
        self, state: str, *, timeout: Optional[float] = None
    ) -> ApprovalRedirect:
        """Consume the pending request and build the ``access_denied`` redirect."""
        request = await self._consume_request(state, self._timeout(timeout))
        params: Dict[str, str] = {"error": AccessDenied.error_code}
        if request.client_state is not None:
            params["state"] = request.client_state
        logger.info("authorization_denied", client_id=request.client_id)
        return ApprovalRedirect(redirect_uri=request.redirect_uri, params=params)

    async def redeem_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        client_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> CodeGrant:
        """Exchange an authorization code for a new token family and its first pair.

        Raises:
            InvalidRequest: a required parameter is missing.
            InvalidClient: ``client_id`` is not registered.
            InvalidGrant: unknown, expired or already used code, binding
                mismatch, or PKCE failure. A reused code also revokes the
                family minted by its first redemption.
            Unavailable: the store did not answer in time.
        """
        if not code or not code_verifier or not redirect_uri:
            raise InvalidRequest("code, redirect_uri and code_verifier are required")
        self.get_client(client_id)
        deadline = self._timeout(timeout)
        code_hash = self.primitives.hash_token(code)
        code_fp = fingerprint(code)

        record = await run_store_call(
            self.store.get_authorization_code,
            code_hash,
            timeout=deadline,
            operation="get_authorization_code",
        )
        if record is None:
            logger.info("authorization_code_unknown", code_fp=code_fp)
            raise InvalidGrant("authorization code not recognized")
        if record.used:
            await self._revoke_replayed(record, code_fp, deadline)
            raise InvalidGrant("authorization code already used")
        if record.is_expired(self._now()):
            logger.info("authorization_code_expired", code_fp=code_fp)
            raise InvalidGrant("authorization code expired")

        if record.client_id != client_id or record.redirect_uri != redirect_uri:
            logger.warning(
                "authorization_code_binding_mismatch",
                code_fp=code_fp,
                client_id=client_id,
                client_matches=record.client_id == client_id,
                redirect_matches=record.redirect_uri == redirect_uri,
            )
            raise InvalidGrant("client_id or redirect_uri does not match the authorization")

        if not _VERIFIER_RE.match(code_verifier):
            logger.warning(
                "pkce_verifier_malformed",
                code_fp=code_fp,
                client_id=client_id,
                verifier_length=len(code_verifier),
            )
            raise InvalidGrant("code_verifier does not match code_challenge")

        derived = self.primitives.derive_challenge(code_verifier, record.code_challenge_method)
        if not self.primitives.constant_time_equal(derived, record.code_challenge):
            logger.warning(
                "pkce_verification_failed",
                code_fp=code_fp,
                client_id=client_id,
                code_challenge_method=record.code_challenge_method.value,
            )
            raise InvalidGrant("code_verifier does not match code_challenge")

        family = self.tokens.new_family(
            record.subject_id, record.scope, client_id=record.client_id
        )
        issued = self.tokens.issue_pair(
            family.family_id,
            0,
            record.subject_id,
            record.scope,
            client_id=record.client_id,
        )
        result = await run_store_call(
            self.store.redeem_authorization_code,
            code_hash,
            family,
            issued.record,
            self._now(),
            timeout=deadline,
            operation="redeem_authorization_code",
        )
        if result.status == RedemptionStatus.ALREADY_USED:
            # lost a race with a concurrent redemption; the store revoked its family
            logger.warning(
                "authorization_code_replay",
                code_fp=code_fp,
                family_id=result.family_id,
                client_id=client_id,
            )
            raise InvalidGrant("authorization code already used")
        if result.status != RedemptionStatus.REDEEMED:
            raise InvalidGrant("authorization code expired or not recognized")

        logger.info(
            "authorization_code_redeemed",
            client_id=client_id,
            subject_id=record.subject_id,
            family_id=family.family_id,
        )
        return CodeGrant(family=family, pair=issued.pair)

    async def _revoke_replayed(
        self, record: AuthorizationCode, code_fp: Optional[str], deadline: float
    ) -> None:
        logger.warning(
            "authorization_code_replay",
            code_fp=code_fp,
            family_id=record.family_id,
            client_id=record.client_id,
        )
        if record.family_id:
            await run_store_call(
                self.store.revoke_family,
                record.family_id,
                self._now(),
                timeout=deadline,
                operation="revoke_family",
            )
            logger.warning(
                "token_family_revoked", family_id=record.family_id, reason="code_replay"
            )

    # -- maintenance ------------------------------------------------------------

    async def sweep_expired(self, *, timeout: Optional[float] = None) -> Dict[str, int]:
        """Drop expired requests, codes past their retention, and expired refresh tokens."""
        now = self._now()
        swept = await run_store_call(
            self.store.sweep_expired,
            now,
            timeout=self._timeout(timeout),
            operation="sweep_expired",
        )
        self._last_sweep = now
        return swept

    async def _maybe_sweep(self) -> None:
        if not self._sweep_interval:
            return
        now = self._now()
        with self._sweep_lock:
            if self._last_sweep is not None and now - self._last_sweep < self._sweep_interval:
                return
            self._last_sweep = now
        try:
            await self.sweep_expired()
        except Unavailable:
            logger.warning("opportunistic_sweep_failed")
