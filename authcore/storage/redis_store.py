from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authcore.logging import get_logger
from authcore.storage.common import (
    AttemptOutcome,
    RedemptionResult,
    RedemptionStatus,
    RotationResult,
    RotationStatus,
    decode_record,
    encode_record,
    from_epoch_ms,
    to_epoch_ms,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    AuthorizationCode,
    AuthorizationRequest,
    LockState,
    LoginAttemptCounter,
    RefreshTokenRecord,
    TokenFamily,
)

# Minimum key lifetime; Redis rejects zero or negative expirations.
_MIN_TTL_MS = 1000

_HSET_TABLE = """
local function hset_table(key, tbl)
  for k, v in pairs(tbl) do
    redis.call('HSET', key, k, v)
  end
end
local function revoke(key, now)
  if redis.call('EXISTS', key) == 0 then
    return 0
  end
  if redis.call('HGET', key, 'revoked') ~= '1' then
    redis.call('HSET', key, 'revoked', '1', 'revoked_at', now)
  end
  return 1
end
"""


class RedisStore:
    """Redis-backed store; every compound mutation is one Lua script.

    Times are stored as epoch milliseconds and the caller's ``now`` is passed
    to each script, so expiry decisions use the same clock as the service.
    Key expirations are only garbage collection.
    """

    # ARGV: now_ms, family_json, token_json, prefix, ttl_ms
    _REDEEM_SCRIPT = _HSET_TABLE + """
local now = tonumber(ARGV[1])
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'not_found', ''}
end
local fam = redis.call('HGET', KEYS[1], 'family_id')
if redis.call('HGET', KEYS[1], 'used') == '1' then
  if fam then
    revoke(ARGV[4] .. 'family:' .. fam, ARGV[1])
    return {'already_used', fam}
  end
  return {'already_used', ''}
end
local expires_at = tonumber(redis.call('HGET', KEYS[1], 'expires_at'))
if expires_at == nil or expires_at <= now then
  return {'expired', ''}
end
if redis.call('EXISTS', KEYS[2]) == 1 or redis.call('EXISTS', KEYS[3]) == 1 then
  return redis.error_reply('conflict')
end
local family = cjson.decode(ARGV[2])
local token = cjson.decode(ARGV[3])
redis.call('HSET', KEYS[1], 'used', '1', 'family_id', family['family_id'])
hset_table(KEYS[2], family)
hset_table(KEYS[3], token)
redis.call('SADD', KEYS[4], token['token_hash'])
local ttl = tonumber(ARGV[5])
redis.call('PEXPIRE', KEYS[2], ttl)
redis.call('PEXPIRE', KEYS[3], ttl)
redis.call('PEXPIRE', KEYS[4], ttl)
return {'redeemed', family['family_id']}
"""

    # ARGV: family_json, token_json, ttl_ms
    _CREATE_FAMILY_SCRIPT = _HSET_TABLE + """
if redis.call('EXISTS', KEYS[1]) == 1 or redis.call('EXISTS', KEYS[2]) == 1 then
  return redis.error_reply('conflict')
end
local family = cjson.decode(ARGV[1])
local token = cjson.decode(ARGV[2])
hset_table(KEYS[1], family)
hset_table(KEYS[2], token)
redis.call('SADD', KEYS[3], token['token_hash'])
local ttl = tonumber(ARGV[3])
redis.call('PEXPIRE', KEYS[1], ttl)
redis.call('PEXPIRE', KEYS[2], ttl)
redis.call('PEXPIRE', KEYS[3], ttl)
return 1
"""

    # ARGV: now_ms, next_token_json, prefix, ttl_ms
    _ROTATE_SCRIPT = _HSET_TABLE + """
local now = tonumber(ARGV[1])
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'not_found', '', {}}
end
local fam = redis.call('HGET', KEYS[1], 'family_id')
local fkey = ARGV[3] .. 'family:' .. fam
if redis.call('EXISTS', fkey) == 0 then
  return {'not_found', '', {}}
end
if redis.call('HGET', fkey, 'revoked') == '1' then
  return {'family_revoked', fam, redis.call('HGETALL', fkey)}
end
if redis.call('HGET', KEYS[1], 'used') == '1' then
  revoke(fkey, ARGV[1])
  return {'reuse_detected', fam, redis.call('HGETALL', fkey)}
end
local expires_at = tonumber(redis.call('HGET', KEYS[1], 'expires_at'))
if expires_at == nil or expires_at <= now then
  return {'expired', fam, redis.call('HGETALL', fkey)}
end
if redis.call('EXISTS', KEYS[2]) == 1 then
  return redis.error_reply('conflict')
end
local generation = tonumber(redis.call('HGET', KEYS[1], 'generation')) + 1
redis.call('HSET', KEYS[1], 'used', '1', 'used_at', ARGV[1])
local token = cjson.decode(ARGV[2])
token['family_id'] = fam
token['generation'] = tostring(generation)
hset_table(KEYS[2], token)
local ttl = tonumber(ARGV[4])
redis.call('PEXPIRE', KEYS[2], ttl)
local tokens_key = ARGV[3] .. 'family_tokens:' .. fam
redis.call('SADD', tokens_key, token['token_hash'])
redis.call('PEXPIRE', tokens_key, ttl)
redis.call('HSET', fkey, 'generation', generation)
redis.call('PEXPIRE', fkey, ttl)
return {'rotated', fam, redis.call('HGETALL', fkey)}
"""

    # ARGV: now_ms
    _REVOKE_SCRIPT = _HSET_TABLE + """
return revoke(KEYS[1], ARGV[1])
"""

    # KEYS: attempts, lock. ARGV: now_ms, threshold, window_ms, lockout_ms, account_key
    _ATTEMPT_SCRIPT = """
local now = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local raw_lock = redis.call('GET', KEYS[2])
if raw_lock then
  local locked_until = tonumber(raw_lock)
  if locked_until > now then
    return {1, threshold, locked_until}
  end
  redis.call('DEL', KEYS[2])
end
local count = tonumber(redis.call('HGET', KEYS[1], 'count'))
local window = tonumber(redis.call('HGET', KEYS[1], 'window_expires_at'))
if count == nil or window == nil or window <= now then
  count = 0
  window = now + tonumber(ARGV[3])
end
count = count + 1
if count >= threshold then
  local locked_until = now + tonumber(ARGV[4])
  redis.call('SET', KEYS[2], locked_until, 'PX', tonumber(ARGV[4]))
  redis.call('DEL', KEYS[1])
  return {1, count, locked_until}
end
redis.call('HSET', KEYS[1], 'account_key', ARGV[5], 'count', count, 'window_expires_at', window)
redis.call('PEXPIRE', KEYS[1], math.max(window - now, 1))
return {0, count, 0}
"""

    # ARGV: record_json, ttl_ms
    _INSERT_HASH_SCRIPT = _HSET_TABLE + """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
hset_table(KEYS[1], cjson.decode(ARGV[1]))
redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[2]))
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        prefix: str = "authcore:",
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._redeem = self.client.register_script(self._REDEEM_SCRIPT)
        self._create_family = self.client.register_script(self._CREATE_FAMILY_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._attempt = self.client.register_script(self._ATTEMPT_SCRIPT)
        self._insert_hash = self.client.register_script(self._INSERT_HASH_SCRIPT)

    # -- helpers ----------------------------------------------------------------

    def _key(self, kind: str, ident: str) -> str:
        return f"{self.prefix}{kind}:{ident}"

    @staticmethod
    def _ttl_ms(expires_at: datetime, now: datetime) -> int:
        return max(_MIN_TTL_MS, to_epoch_ms(expires_at) - to_epoch_ms(now))

    @staticmethod
    def _pairs(flat: List[Any]) -> Dict[str, Any]:
        it = iter(flat)
        return dict(zip(it, it))

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.warning("redis_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(str(exc), operation=operation) from exc
        except ResponseError as exc:
            if "conflict" in str(exc):
                raise ConstraintViolation(f"{operation} conflicts with existing record") from exc
            raise

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        self.ping()

    def ping(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    # -- authorization requests -------------------------------------------------

    def save_authorization_request(self, request: AuthorizationRequest) -> None:
        ttl = self._ttl_ms(request.expires_at, request.created_at)
        with self._guard("save_authorization_request"):
            stored = self.client.set(
                self._key("authz_req", request.state),
                json.dumps(encode_record(request)),
                px=ttl,
                nx=True,
            )
        if not stored:
            raise ConstraintViolation(
                "authorization request state already exists", {"field": "state"}
            )

    def consume_authorization_request(
        self, state: str
    ) -> Optional[AuthorizationRequest]:
        with self._guard("consume_authorization_request"):
            cached = self.client.getdel(self._key("authz_req", state))
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # already deleted; a corrupt entry is as good as absent
            self.logger.warning("authorization_request_corrupt")
            return None
        return decode_record(AuthorizationRequest, data)

    # -- authorization codes ----------------------------------------------------

    def save_authorization_code(self, code: AuthorizationCode) -> None:
        ttl = self._ttl_ms(code.retain_until, code.created_at)
        with self._guard("save_authorization_code"):
            inserted = self._insert_hash(
                keys=[self._key("authz_code", code.code_hash)],
                args=[json.dumps(encode_record(code)), ttl],
            )
        if not inserted:
            raise ConstraintViolation("authorization code already exists", {"field": "code"})

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._guard("get_authorization_code"):
            raw = self.client.hgetall(self._key("authz_code", code_hash))
        if not raw:
            return None
        return decode_record(AuthorizationCode, raw)

    def redeem_authorization_code(
        self,
        code_hash: str,
        family: TokenFamily,
        first_token: RefreshTokenRecord,
        now: datetime,
    ) -> RedemptionResult:
        with self._guard("redeem_authorization_code"):
            status, family_id = self._redeem(
                keys=[
                    self._key("authz_code", code_hash),
                    self._key("family", family.family_id),
                    self._key("refresh", first_token.token_hash),
                    self._key("family_tokens", family.family_id),
                ],
                args=[
                    to_epoch_ms(now),
                    json.dumps(encode_record(family)),
                    json.dumps(encode_record(first_token)),
                    self.prefix,
                    self._ttl_ms(first_token.expires_at, now),
                ],
            )
        return RedemptionResult(RedemptionStatus(status), family_id=family_id or None)

    # -- token families ---------------------------------------------------------

    def create_family(self, family: TokenFamily, first_token: RefreshTokenRecord) -> None:
        with self._guard("create_family"):
            self._create_family(
                keys=[
                    self._key("family", family.family_id),
                    self._key("refresh", first_token.token_hash),
                    self._key("family_tokens", family.family_id),
                ],
                args=[
                    json.dumps(encode_record(family)),
                    json.dumps(encode_record(first_token)),
                    self._ttl_ms(first_token.expires_at, first_token.issued_at),
                ],
            )

    def get_family(self, family_id: str) -> Optional[TokenFamily]:
        with self._guard("get_family"):
            raw = self.client.hgetall(self._key("family", family_id))
        return decode_record(TokenFamily, raw) if raw else None

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._guard("get_refresh_token"):
            raw = self.client.hgetall(self._key("refresh", token_hash))
        return decode_record(RefreshTokenRecord, raw) if raw else None

    def rotate_refresh_token(
        self, token_hash: str, next_token: RefreshTokenRecord, now: datetime
    ) -> RotationResult:
        with self._guard("rotate_refresh_token"):
            status, _family_id, flat = self._rotate(
                keys=[
                    self._key("refresh", token_hash),
                    self._key("refresh", next_token.token_hash),
                ],
                args=[
                    to_epoch_ms(now),
                    json.dumps(encode_record(next_token)),
                    self.prefix,
                    self._ttl_ms(next_token.expires_at, now),
                ],
            )
        family = decode_record(TokenFamily, self._pairs(flat)) if flat else None
        result = RotationResult(RotationStatus(status), family=family)
        if result.status == RotationStatus.ROTATED and family is not None:
            result.generation = family.generation
        return result

    def revoke_family(self, family_id: str, now: datetime) -> bool:
        with self._guard("revoke_family"):
            found = self._revoke(
                keys=[self._key("family", family_id)], args=[to_epoch_ms(now)]
            )
        return bool(found)

    # -- login attempts ---------------------------------------------------------

    def get_lock_state(self, account_key: str, now: datetime) -> Optional[LockState]:
        with self._guard("get_lock_state"):
            raw = self.client.get(self._key("lock", account_key))
        if raw is None:
            return None
        locked_until = from_epoch_ms(raw)
        if locked_until <= now:
            return None
        return LockState(account_key=account_key, locked_until=locked_until)

    def get_attempt_counter(
        self, account_key: str, now: datetime
    ) -> Optional[LoginAttemptCounter]:
        with self._guard("get_attempt_counter"):
            raw = self.client.hgetall(self._key("attempts", account_key))
        if not raw:
            return None
        counter = decode_record(LoginAttemptCounter, raw)
        if counter.window_expires_at <= now:
            return None
        return counter

    def record_failed_attempt(
        self,
        account_key: str,
        now: datetime,
        *,
        threshold: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> AttemptOutcome:
        with self._guard("record_failed_attempt"):
            locked, count, locked_until_ms = self._attempt(
                keys=[self._key("attempts", account_key), self._key("lock", account_key)],
                args=[
                    to_epoch_ms(now),
                    threshold,
                    window_seconds * 1000,
                    lockout_seconds * 1000,
                    account_key,
                ],
            )
        return AttemptOutcome(
            locked=bool(locked),
            count=int(count),
            locked_until=from_epoch_ms(locked_until_ms) if locked else None,
        )

    def clear_attempts(self, account_key: str) -> None:
        with self._guard("clear_attempts"):
            self.client.delete(
                self._key("attempts", account_key), self._key("lock", account_key)
            )

    # -- credentials ------------------------------------------------------------

    def save_password(
        self, account_key: str, password_hash: str, password_algo: str
    ) -> None:
        with self._guard("save_password"):
            self.client.hset(
                self._key("credential", account_key),
                mapping={"password_hash": password_hash, "password_algo": password_algo},
            )

    def get_password_record(self, account_key: str) -> Optional[tuple[str, str]]:
        with self._guard("get_password_record"):
            raw = self.client.hgetall(self._key("credential", account_key))
        if not raw:
            return None
        return raw["password_hash"], raw["password_algo"]

    # -- maintenance ------------------------------------------------------------

    def sweep_expired(self, now: datetime) -> Dict[str, int]:
        """Prune family token indexes whose members have expired.

        Requests, codes, tokens and counters carry key expirations and are
        reclaimed by Redis itself.
        """
        pruned_tokens = 0
        pruned_families = 0
        with self._guard("sweep_expired"):
            for tokens_key in self.client.scan_iter(
                match=f"{self.prefix}family_tokens:*", count=500
            ):
                members = self.client.smembers(tokens_key)
                stale = [
                    token_hash
                    for token_hash in members
                    if not self.client.exists(self._key("refresh", token_hash))
                ]
                if stale:
                    self.client.srem(tokens_key, *stale)
                    pruned_tokens += len(stale)
                if len(stale) == len(members):
                    family_id = tokens_key[len(f"{self.prefix}family_tokens:"):]
                    self.client.delete(tokens_key, self._key("family", family_id))
                    pruned_families += 1
        swept = {
            "authorization_requests": 0,
            "authorization_codes": 0,
            "refresh_tokens": pruned_tokens,
            "token_families": pruned_families,
            "login_attempts": 0,
        }
        self.logger.info("redis_store_swept", **swept)
        return swept
