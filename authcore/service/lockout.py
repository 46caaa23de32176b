from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.deadline import run_store_call
from authcore.storage.common import AuthCoreStore
from authcore.storage.models import AttemptDecision, LockState, utcnow

logger = get_logger(__name__)


class AttemptOutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class LockStatus:
    account_key: str
    failures: int
    locked_until: Optional[datetime] = None
    retry_after: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutGuard:
    """Per-account failed attempt counting with time-boxed locks.

    ``Clear -> Counting -> Locked -> Clear``. Counting and the threshold check
    are one atomic store call; a success clears both counter and lock.
    """

    def __init__(
        self,
        store: AuthCoreStore,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = now

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.store_timeout_seconds

    async def check(self, account_key: str, *, timeout: Optional[float] = None) -> AttemptDecision:
        """Decide whether a verification may run. Call before touching the hash."""
        now = self._now()
        lock = await run_store_call(
            self.store.get_lock_state,
            account_key,
            now,
            timeout=self._timeout(timeout),
            operation="get_lock_state",
        )
        if lock is not None:
            retry_after = lock.retry_after(now)
            logger.info(
                "lockout_short_circuit", account_key=account_key, retry_after=retry_after
            )
            return AttemptDecision(allowed=False, retry_after=retry_after)
        return AttemptDecision(allowed=True)

    async def record(
        self,
        account_key: str,
        outcome: AttemptOutcomeKind,
        *,
        timeout: Optional[float] = None,
    ) -> AttemptDecision:
        """Record the result of a verification that actually ran."""
        deadline = self._timeout(timeout)
        if AttemptOutcomeKind(outcome) == AttemptOutcomeKind.SUCCESS:
            await run_store_call(
                self.store.clear_attempts,
                account_key,
                timeout=deadline,
                operation="clear_attempts",
            )
            return AttemptDecision(allowed=True)

        now = self._now()
        result = await run_store_call(
            self.store.record_failed_attempt,
            account_key,
            now,
            threshold=self.settings.lockout_threshold,
            window_seconds=self.settings.lockout_window_seconds,
            lockout_seconds=self.settings.lockout_duration_seconds,
            timeout=deadline,
            operation="record_failed_attempt",
        )
        if result.locked and result.locked_until is not None:
            retry_after = LockState(account_key, result.locked_until).retry_after(now)
            logger.warning(
                "lockout_triggered",
                account_key=account_key,
                failures=result.count,
                retry_after=retry_after,
            )
            return AttemptDecision(
                allowed=False, retry_after=retry_after, failures=result.count
            )
        logger.info("login_attempt_failed", account_key=account_key, failures=result.count)
        return AttemptDecision(allowed=True, failures=result.count)

    async def check_and_record_attempt(
        self,
        account_key: str,
        outcome: Optional[AttemptOutcomeKind] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AttemptDecision:
        """``outcome=None`` is the pre-verification check; otherwise record it.

        A locked account answers ``allowed=False`` for both forms without
        counting anything further.
        """
        if outcome is None:
            return await self.check(account_key, timeout=timeout)
        if AttemptOutcomeKind(outcome) == AttemptOutcomeKind.SUCCESS:
            return await self.record(account_key, outcome, timeout=timeout)
        decision = await self.check(account_key, timeout=timeout)
        if not decision.allowed:
            return decision
        return await self.record(account_key, outcome, timeout=timeout)

    async def lock_status(self, account_key: str, *, timeout: Optional[float] = None) -> LockStatus:
        """Read-only view of an account's counter and lock, for operators."""
        now = self._now()
        deadline = self._timeout(timeout)
        lock = await run_store_call(
            self.store.get_lock_state,
            account_key,
            now,
            timeout=deadline,
            operation="get_lock_state",
        )
        counter = await run_store_call(
            self.store.get_attempt_counter,
            account_key,
            now,
            timeout=deadline,
            operation="get_attempt_counter",
        )
        return LockStatus(
            account_key=account_key,
            failures=counter.count if counter else 0,
            locked_until=lock.locked_until if lock else None,
            retry_after=lock.retry_after(now) if lock else None,
        )
