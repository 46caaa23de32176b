from __future__ import annotations

from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional, Tuple, Type, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import (
    AttemptOutcome,
    RedemptionResult,
    RedemptionStatus,
    RotationResult,
    RotationStatus,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    AuthorizationCode,
    AuthorizationRequest,
    ChallengeMethod,
    LockState,
    LoginAttemptCounter,
    RefreshTokenRecord,
    TokenFamily,
)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS authorization_requests (
        state TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        client_state TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authorization_codes (
        code_hash TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        retain_until TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        family_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_families (
        family_id TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        client_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        generation INTEGER NOT NULL DEFAULT 0,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        token_hash TEXT PRIMARY KEY,
        family_id TEXT NOT NULL REFERENCES token_families (family_id) ON DELETE CASCADE,
        generation INTEGER NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_family_idx ON refresh_tokens (family_id)",
    """
    CREATE TABLE IF NOT EXISTS login_attempts (
        account_key TEXT PRIMARY KEY,
        count INTEGER NOT NULL DEFAULT 0,
        window_expires_at TIMESTAMPTZ NOT NULL,
        locked_until TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credentials (
        account_key TEXT PRIMARY KEY,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _row_to(cls: Type[T], row: Dict[str, Any]) -> T:
    names = {f.name for f in fields(cls)}
    values = {key: value for key, value in row.items() if key in names}
    if "code_challenge_method" in values:
        values["code_challenge_method"] = ChallengeMethod(values["code_challenge_method"])
    return cls(**values)


def next_attempt_state(
    row: Dict[str, Any],
    now: datetime,
    *,
    threshold: int,
    window_seconds: int,
    lockout_seconds: int,
) -> Tuple[AttemptOutcome, Dict[str, Any]]:
    """Apply one failed attempt to a locked ``login_attempts`` row.

    Returns the outcome and the column values to write back.
    """
    locked_until = row.get("locked_until")
    if locked_until is not None and locked_until > now:
        return (
            AttemptOutcome(locked=True, count=threshold, locked_until=locked_until),
            dict(row),
        )
    count = row.get("count") or 0
    window_expires_at = row.get("window_expires_at")
    if window_expires_at is None or window_expires_at <= now:
        count = 0
        window_expires_at = now + timedelta(seconds=window_seconds)
    count += 1
    if count >= threshold:
        locked_until = now + timedelta(seconds=lockout_seconds)
        return (
            AttemptOutcome(locked=True, count=count, locked_until=locked_until),
            {"count": 0, "window_expires_at": now, "locked_until": locked_until},
        )
    return (
        AttemptOutcome(locked=False, count=count),
        {"count": count, "window_expires_at": window_expires_at, "locked_until": None},
    )


class PostgresStore:
    """Postgres-backed store.

    Each atomic operation runs in one transaction: the row being consumed is
    locked with ``SELECT ... FOR UPDATE`` and changed with a conditional
    ``UPDATE``. A per-transaction ``statement_timeout`` bounds every call so a
    stuck lock surfaces as :class:`StoreUnavailable` instead of a hang.
    """

    def __init__(self, dsn: str, *, statement_timeout_seconds: float = 2.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.statement_timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=statement_timeout_seconds,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the authcore tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(self.statement_timeout_ms),),
                    )
                    yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{operation} conflicts with existing record", {"operation": operation}
            ) from exc
        except (errors.QueryCanceled, errors.LockNotAvailable, PoolTimeout) as exc:
            self.logger.warning("postgres_store_timeout", operation=operation, error=str(exc))
            raise StoreUnavailable(str(exc), operation=operation) from exc
        except psycopg.OperationalError as exc:
            self.logger.warning(
                "postgres_store_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(str(exc), operation=operation) from exc

    def ping(self) -> None:
        with self._transaction("ping") as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # -- authorization requests -------------------------------------------------

    def save_authorization_request(self, request: AuthorizationRequest) -> None:
        with self._transaction("save_authorization_request") as conn:
            conn.execute(
                """
                INSERT INTO authorization_requests (
                    state, client_id, redirect_uri, code_challenge,
                    code_challenge_method, scope, client_state, created_at, expires_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    request.state,
                    request.client_id,
                    request.redirect_uri,
                    request.code_challenge,
                    request.code_challenge_method.value,
                    request.scope,
                    request.client_state,
                    request.created_at,
                    request.expires_at,
                ),
            )

    def consume_authorization_request(
        self, state: str
    ) -> Optional[AuthorizationRequest]:
        with self._transaction("consume_authorization_request") as conn:
            row = conn.execute(
                "DELETE FROM authorization_requests WHERE state = %s RETURNING *",
                (state,),
            ).fetchone()
        return _row_to(AuthorizationRequest, row) if row else None

    # -- authorization codes ----------------------------------------------------

    def save_authorization_code(self, code: AuthorizationCode) -> None:
        with self._transaction("save_authorization_code") as conn:
            conn.execute(
                """
                INSERT INTO authorization_codes (
                    code_hash, client_id, redirect_uri, code_challenge,
                    code_challenge_method, subject_id, scope, created_at,
                    expires_at, retain_until, used, family_id
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    code.code_hash,
                    code.client_id,
                    code.redirect_uri,
                    code.code_challenge,
                    code.code_challenge_method.value,
                    code.subject_id,
                    code.scope,
                    code.created_at,
                    code.expires_at,
                    code.retain_until,
                    code.used,
                    code.family_id,
                ),
            )

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._transaction("get_authorization_code") as conn:
            row = conn.execute(
                "SELECT * FROM authorization_codes WHERE code_hash = %s", (code_hash,)
            ).fetchone()
        return _row_to(AuthorizationCode, row) if row else None

    def redeem_authorization_code(
        self,
        code_hash: str,
        family: TokenFamily,
        first_token: RefreshTokenRecord,
        now: datetime,
    ) -> RedemptionResult:
        with self._transaction("redeem_authorization_code") as conn:
            row = conn.execute(
                "SELECT * FROM authorization_codes WHERE code_hash = %s FOR UPDATE",
                (code_hash,),
            ).fetchone()
            if not row:
                return RedemptionResult(RedemptionStatus.NOT_FOUND)
            if row["used"]:
                if row.get("family_id"):
                    self._revoke_family_in(conn, row["family_id"], now)
                return RedemptionResult(
                    RedemptionStatus.ALREADY_USED, family_id=row.get("family_id")
                )
            if row["expires_at"] <= now:
                return RedemptionResult(RedemptionStatus.EXPIRED)
            updated = conn.execute(
                """
                UPDATE authorization_codes SET used = TRUE, family_id = %s
                WHERE code_hash = %s AND used = FALSE
                """,
                (family.family_id, code_hash),
            )
            if updated.rowcount != 1:
                return RedemptionResult(RedemptionStatus.ALREADY_USED)
            self._insert_family_in(conn, family, first_token)
        return RedemptionResult(RedemptionStatus.REDEEMED, family_id=family.family_id)

    # -- token families ---------------------------------------------------------

    def _insert_family_in(
        self, conn, family: TokenFamily, first_token: RefreshTokenRecord
    ) -> None:
        conn.execute(
            """
            INSERT INTO token_families (
                family_id, subject_id, scope, client_id, created_at, generation, revoked
            ) VALUES (%s, %s, %s, %s, %s, %s, FALSE)
            """,
            (
                family.family_id,
                family.subject_id,
                family.scope,
                family.client_id,
                family.created_at,
                family.generation,
            ),
        )
        self._insert_token_in(conn, first_token)

    @staticmethod
    def _insert_token_in(conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_tokens (
                token_hash, family_id, generation, issued_at, expires_at, used
            ) VALUES (%s, %s, %s, %s, %s, FALSE)
            """,
            (
                record.token_hash,
                record.family_id,
                record.generation,
                record.issued_at,
                record.expires_at,
            ),
        )

    def create_family(self, family: TokenFamily, first_token: RefreshTokenRecord) -> None:
        with self._transaction("create_family") as conn:
            self._insert_family_in(conn, family, first_token)

    def get_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._transaction("get_family") as conn:
            row = conn.execute(
                "SELECT * FROM token_families WHERE family_id = %s", (family_id,)
            ).fetchone()
        return _row_to(TokenFamily, row) if row else None

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._transaction("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to(RefreshTokenRecord, row) if row else None

    def rotate_refresh_token(
        self, token_hash: str, next_token: RefreshTokenRecord, now: datetime
    ) -> RotationResult:
        with self._transaction("rotate_refresh_token") as conn:
            # token row first, then family row; revoke_family only takes the latter
            token_row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s FOR UPDATE",
                (token_hash,),
            ).fetchone()
            if not token_row:
                return RotationResult(RotationStatus.NOT_FOUND)
            family_row = conn.execute(
                "SELECT * FROM token_families WHERE family_id = %s FOR UPDATE",
                (token_row["family_id"],),
            ).fetchone()
            if not family_row:
                return RotationResult(RotationStatus.NOT_FOUND)
            family = _row_to(TokenFamily, family_row)
            if family.revoked:
                return RotationResult(RotationStatus.FAMILY_REVOKED, family=family)
            if token_row["used"]:
                self._revoke_family_in(conn, family.family_id, now)
                family.revoked = True
                family.revoked_at = now
                return RotationResult(RotationStatus.REUSE_DETECTED, family=family)
            if token_row["expires_at"] <= now:
                return RotationResult(RotationStatus.EXPIRED, family=family)

            generation = token_row["generation"] + 1
            updated = conn.execute(
                """
                UPDATE refresh_tokens SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND used = FALSE
                """,
                (now, token_hash),
            )
            if updated.rowcount != 1:
                return RotationResult(RotationStatus.REUSE_DETECTED, family=family)
            next_token.family_id = family.family_id
            next_token.generation = generation
            self._insert_token_in(conn, next_token)
            conn.execute(
                "UPDATE token_families SET generation = %s WHERE family_id = %s",
                (generation, family.family_id),
            )
            family.generation = generation
        return RotationResult(RotationStatus.ROTATED, family=family, generation=generation)

    @staticmethod
    def _revoke_family_in(conn, family_id: str, now: datetime) -> bool:
        updated = conn.execute(
            """
            UPDATE token_families
            SET revoked = TRUE, revoked_at = COALESCE(revoked_at, %s)
            WHERE family_id = %s
            """,
            (now, family_id),
        )
        return updated.rowcount == 1

    def revoke_family(self, family_id: str, now: datetime) -> bool:
        with self._transaction("revoke_family") as conn:
            return self._revoke_family_in(conn, family_id, now)

    # -- login attempts ---------------------------------------------------------

    def get_lock_state(self, account_key: str, now: datetime) -> Optional[LockState]:
        with self._transaction("get_lock_state") as conn:
            row = conn.execute(
                """
                SELECT account_key, locked_until FROM login_attempts
                WHERE account_key = %s AND locked_until > %s
                """,
                (account_key, now),
            ).fetchone()
        return _row_to(LockState, row) if row else None

    def get_attempt_counter(
        self, account_key: str, now: datetime
    ) -> Optional[LoginAttemptCounter]:
        with self._transaction("get_attempt_counter") as conn:
            row = conn.execute(
                """
                SELECT account_key, count, window_expires_at FROM login_attempts
                WHERE account_key = %s AND count > 0 AND window_expires_at > %s
                """,
                (account_key, now),
            ).fetchone()
        return _row_to(LoginAttemptCounter, row) if row else None

    def record_failed_attempt(
        self,
        account_key: str,
        now: datetime,
        *,
        threshold: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> AttemptOutcome:
        with self._transaction("record_failed_attempt") as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (account_key, count, window_expires_at)
                VALUES (%s, 0, %s) ON CONFLICT (account_key) DO NOTHING
                """,
                (account_key, now),
            )
            row = conn.execute(
                "SELECT * FROM login_attempts WHERE account_key = %s FOR UPDATE",
                (account_key,),
            ).fetchone()
            outcome, values = next_attempt_state(
                row,
                now,
                threshold=threshold,
                window_seconds=window_seconds,
                lockout_seconds=lockout_seconds,
            )
            conn.execute(
                """
                UPDATE login_attempts
                SET count = %s, window_expires_at = %s, locked_until = %s
                WHERE account_key = %s
                """,
                (
                    values["count"],
                    values["window_expires_at"],
                    values["locked_until"],
                    account_key,
                ),
            )
        return outcome

    def clear_attempts(self, account_key: str) -> None:
        with self._transaction("clear_attempts") as conn:
            conn.execute("DELETE FROM login_attempts WHERE account_key = %s", (account_key,))

    # -- credentials ------------------------------------------------------------

    def save_password(
        self, account_key: str, password_hash: str, password_algo: str
    ) -> None:
        with self._transaction("save_password") as conn:
            conn.execute(
                """
                INSERT INTO account_credentials (account_key, password_hash, password_algo)
                VALUES (%s, %s, %s)
                ON CONFLICT (account_key) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (account_key, password_hash, password_algo),
            )

    def get_password_record(self, account_key: str) -> Optional[tuple[str, str]]:
        with self._transaction("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credentials WHERE account_key = %s",
                (account_key,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- maintenance ------------------------------------------------------------

    def sweep_expired(self, now: datetime) -> Dict[str, int]:
        with self._transaction("sweep_expired") as conn:
            requests = conn.execute(
                "DELETE FROM authorization_requests WHERE expires_at <= %s", (now,)
            ).rowcount
            codes = conn.execute(
                "DELETE FROM authorization_codes WHERE retain_until <= %s", (now,)
            ).rowcount
            tokens = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (now,)
            ).rowcount
            families = conn.execute(
                """
                DELETE FROM token_families f
                WHERE NOT EXISTS (
                    SELECT 1 FROM refresh_tokens t WHERE t.family_id = f.family_id
                )
                """
            ).rowcount
            attempts = conn.execute(
                """
                DELETE FROM login_attempts
                WHERE window_expires_at <= %s
                  AND (locked_until IS NULL OR locked_until <= %s)
                """,
                (now, now),
            ).rowcount
        swept = {
            "authorization_requests": requests,
            "authorization_codes": codes,
            "refresh_tokens": tokens,
            "token_families": families,
            "login_attempts": attempts,
        }
        self.logger.info("postgres_store_swept", **swept)
        return swept
