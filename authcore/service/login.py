from __future__ import annotations

import asyncio
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.deadline import run_store_call
from authcore.service.errors import AccountLocked, InvalidCredentials, InvalidRequest
from authcore.service.lockout import AttemptOutcomeKind, LockoutGuard
from authcore.service.primitives import SecretPrimitives
from authcore.service.tokens import TokenLifecycleManager
from authcore.storage.common import AuthCoreStore
from authcore.storage.models import TokenPair

logger = get_logger(__name__)

_MIN_PASSWORD_LENGTH = 8


class PasswordLoginService:
    """Password login: Lockout Guard, then hash verification, then a new token family."""

    def __init__(
        self,
        store: AuthCoreStore,
        settings: Settings,
        guard: LockoutGuard,
        tokens: TokenLifecycleManager,
        *,
        primitives: Optional[SecretPrimitives] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.guard = guard
        self.tokens = tokens
        self.primitives = primitives or tokens.primitives

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.store_timeout_seconds

    async def login(
        self,
        account_key: str,
        password: str,
        *,
        scope: str = "",
        timeout: Optional[float] = None,
    ) -> TokenPair:
        """Verify a password and start a token family for the account.

        Raises:
            AccountLocked: the account is locked; no hash was computed.
            InvalidCredentials: unknown account or wrong password.
            Unavailable: the store did not answer in time.
        """
        if not account_key or not password:
            raise InvalidRequest("account_key and password are required")
        deadline = self._timeout(timeout)

        decision = await self.guard.check(account_key, timeout=deadline)
        if not decision.allowed:
            raise AccountLocked("account locked", retry_after=decision.retry_after or 1)

        record = await run_store_call(
            self.store.get_password_record,
            account_key,
            timeout=deadline,
            operation="get_password_record",
        )
        if record is None:
            await asyncio.to_thread(self.primitives.dummy_verify, password)
            verified = False
        else:
            stored_hash, algo = record
            verified = await asyncio.to_thread(
                self.primitives.verify_password, password, stored_hash, algo
            )

        if not verified:
            decision = await self.guard.record(
                account_key, AttemptOutcomeKind.FAILURE, timeout=deadline
            )
            logger.info("password_login_failed", account_key=account_key, failures=decision.failures)
            if not decision.allowed:
                raise AccountLocked("account locked", retry_after=decision.retry_after or 1)
            raise InvalidCredentials("invalid credentials")

        await self.guard.record(account_key, AttemptOutcomeKind.SUCCESS, timeout=deadline)
        pair = await self.tokens.start_family(account_key, scope, timeout=deadline)
        logger.info("password_login_succeeded", account_key=account_key, family_id=pair.family_id)
        return pair

    async def set_password(
        self, account_key: str, password: str, *, timeout: Optional[float] = None
    ) -> None:
        """Enroll or replace the argon2id credential for ``account_key``."""
        if not account_key:
            raise InvalidRequest("account_key is required")
        if not password or len(password) < _MIN_PASSWORD_LENGTH:
            raise InvalidRequest(
                f"password must be at least {_MIN_PASSWORD_LENGTH} characters"
            )
        password_hash, algo = await asyncio.to_thread(self.primitives.hash_password, password)
        await run_store_call(
            self.store.save_password,
            account_key,
            password_hash,
            algo,
            timeout=self._timeout(timeout),
            operation="save_password",
        )
        logger.info("password_set", account_key=account_key)
