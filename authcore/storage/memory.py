from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from authcore.logging import get_logger
from authcore.storage.common import (
    AttemptOutcome,
    RedemptionResult,
    RedemptionStatus,
    RotationResult,
    RotationStatus,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthorizationCode,
    AuthorizationRequest,
    LockState,
    LoginAttemptCounter,
    RefreshTokenRecord,
    TokenFamily,
)


class MemoryStore:
    """In-process backing store for development and tests.

    A single re-entrant lock guards every table, so each public method is
    atomic with respect to every other. Records are copied on the way in and
    out; callers never hold references into the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.authorization_requests: Dict[str, AuthorizationRequest] = {}
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self.families: Dict[str, TokenFamily] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.family_tokens: Dict[str, Set[str]] = {}
        self.attempts: Dict[str, LoginAttemptCounter] = {}
        self.locks: Dict[str, LockState] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self._data_lock = threading.RLock()

    def ping(self) -> None:
        return None

    # -- authorization requests -------------------------------------------------

    def save_authorization_request(self, request: AuthorizationRequest) -> None:
        with self._data_lock:
            if request.state in self.authorization_requests:
                raise ConstraintViolation(
                    "authorization request state already exists", {"field": "state"}
                )
            self.authorization_requests[request.state] = replace(request)

    def consume_authorization_request(
        self, state: str
    ) -> Optional[AuthorizationRequest]:
        with self._data_lock:
            return self.authorization_requests.pop(state, None)

    # -- authorization codes ----------------------------------------------------

    def save_authorization_code(self, code: AuthorizationCode) -> None:
        with self._data_lock:
            if code.code_hash in self.authorization_codes:
                raise ConstraintViolation(
                    "authorization code already exists", {"field": "code"}
                )
            self.authorization_codes[code.code_hash] = replace(code)

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            code = self.authorization_codes.get(code_hash)
            return replace(code) if code else None

    def redeem_authorization_code(
        self,
        code_hash: str,
        family: TokenFamily,
        first_token: RefreshTokenRecord,
        now: datetime,
    ) -> RedemptionResult:
        with self._data_lock:
            code = self.authorization_codes.get(code_hash)
            if code is None:
                return RedemptionResult(RedemptionStatus.NOT_FOUND)
            if code.used:
                if code.family_id:
                    self._revoke_family_locked(code.family_id, now)
                return RedemptionResult(
                    RedemptionStatus.ALREADY_USED, family_id=code.family_id
                )
            if code.is_expired(now):
                return RedemptionResult(RedemptionStatus.EXPIRED)
            code.used = True
            code.family_id = family.family_id
            self._insert_family_locked(family, first_token)
            return RedemptionResult(RedemptionStatus.REDEEMED, family_id=family.family_id)

    # -- token families ---------------------------------------------------------

    def create_family(self, family: TokenFamily, first_token: RefreshTokenRecord) -> None:
        with self._data_lock:
            self._insert_family_locked(family, first_token)

    def _insert_family_locked(
        self, family: TokenFamily, first_token: RefreshTokenRecord
    ) -> None:
        if family.family_id in self.families:
            raise ConstraintViolation("token family already exists", {"field": "family_id"})
        if first_token.token_hash in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        self.families[family.family_id] = replace(family)
        self.refresh_tokens[first_token.token_hash] = replace(first_token)
        self.family_tokens[family.family_id] = {first_token.token_hash}

    def get_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._data_lock:
            family = self.families.get(family_id)
            return replace(family) if family else None

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, token_hash: str, next_token: RefreshTokenRecord, now: datetime
    ) -> RotationResult:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None:
                return RotationResult(RotationStatus.NOT_FOUND)
            family = self.families.get(record.family_id)
            if family is None:
                return RotationResult(RotationStatus.NOT_FOUND)
            if family.revoked:
                return RotationResult(RotationStatus.FAMILY_REVOKED, family=replace(family))
            if record.used:
                self._revoke_family_locked(family.family_id, now)
                return RotationResult(
                    RotationStatus.REUSE_DETECTED, family=replace(family)
                )
            if record.is_expired(now):
                return RotationResult(RotationStatus.EXPIRED, family=replace(family))

            record.used = True
            record.used_at = now
            generation = record.generation + 1
            stored = replace(next_token, family_id=family.family_id, generation=generation)
            self.refresh_tokens[stored.token_hash] = stored
            self.family_tokens.setdefault(family.family_id, set()).add(stored.token_hash)
            family.generation = generation
            return RotationResult(
                RotationStatus.ROTATED, family=replace(family), generation=generation
            )

    def revoke_family(self, family_id: str, now: datetime) -> bool:
        with self._data_lock:
            return self._revoke_family_locked(family_id, now)

    def _revoke_family_locked(self, family_id: str, now: datetime) -> bool:
        family = self.families.get(family_id)
        if family is None:
            return False
        if not family.revoked:
            family.revoked = True
            family.revoked_at = now
        return True

    # -- login attempts ---------------------------------------------------------

    def get_lock_state(self, account_key: str, now: datetime) -> Optional[LockState]:
        with self._data_lock:
            lock = self.locks.get(account_key)
            if lock is None:
                return None
            if lock.locked_until <= now:
                self.locks.pop(account_key, None)
                return None
            return replace(lock)

    def get_attempt_counter(
        self, account_key: str, now: datetime
    ) -> Optional[LoginAttemptCounter]:
        with self._data_lock:
            counter = self.attempts.get(account_key)
            if counter is None or counter.window_expires_at <= now:
                return None
            return replace(counter)

    def record_failed_attempt(
        self,
        account_key: str,
        now: datetime,
        *,
        threshold: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> AttemptOutcome:
        with self._data_lock:
            lock = self.locks.get(account_key)
            if lock is not None and lock.locked_until > now:
                return AttemptOutcome(
                    locked=True, count=threshold, locked_until=lock.locked_until
                )
            counter = self.attempts.get(account_key)
            if counter is None or counter.window_expires_at <= now:
                counter = LoginAttemptCounter(
                    account_key=account_key,
                    count=0,
                    window_expires_at=now + timedelta(seconds=window_seconds),
                )
                self.attempts[account_key] = counter
            counter.count += 1
            if counter.count >= threshold:
                locked_until = now + timedelta(seconds=lockout_seconds)
                self.locks[account_key] = LockState(account_key, locked_until)
                self.attempts.pop(account_key, None)
                return AttemptOutcome(
                    locked=True, count=counter.count, locked_until=locked_until
                )
            return AttemptOutcome(locked=False, count=counter.count)

    def clear_attempts(self, account_key: str) -> None:
        with self._data_lock:
            self.attempts.pop(account_key, None)
            self.locks.pop(account_key, None)

    # -- credentials ------------------------------------------------------------

    def save_password(
        self, account_key: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            self.credentials[account_key] = (password_hash, password_algo)

    def get_password_record(self, account_key: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_key)

    # -- maintenance ------------------------------------------------------------

    def sweep_expired(self, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            stale_requests = [
                state
                for state, req in self.authorization_requests.items()
                if req.is_expired(now)
            ]
            for state in stale_requests:
                self.authorization_requests.pop(state, None)

            stale_codes = [
                code_hash
                for code_hash, code in self.authorization_codes.items()
                if code.retain_until <= now
            ]
            for code_hash in stale_codes:
                self.authorization_codes.pop(code_hash, None)

            stale_tokens: List[str] = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.is_expired(now)
            ]
            for token_hash in stale_tokens:
                record = self.refresh_tokens.pop(token_hash)
                self.family_tokens.get(record.family_id, set()).discard(token_hash)

            # a family with no live refresh token can never be used again
            stale_families = [
                family_id
                for family_id in self.families
                if not self.family_tokens.get(family_id)
            ]
            for family_id in stale_families:
                self.families.pop(family_id, None)
                self.family_tokens.pop(family_id, None)

            stale_attempts = [
                key for key, counter in self.attempts.items() if counter.window_expires_at <= now
            ]
            for key in stale_attempts:
                self.attempts.pop(key, None)
            stale_locks = [key for key, lock in self.locks.items() if lock.locked_until <= now]
            for key in stale_locks:
                self.locks.pop(key, None)

        swept = {
            "authorization_requests": len(stale_requests),
            "authorization_codes": len(stale_codes),
            "refresh_tokens": len(stale_tokens),
            "token_families": len(stale_families),
            "login_attempts": len(stale_attempts) + len(stale_locks),
        }
        self.logger.info("memory_store_swept", **swept)
        return swept
