"""Redis-backed ``RateLimitStore`` for deployments with several workers.

Each record is a hash at ``{prefix}:{namespace}:{ip}``; the blacklist is one
set at ``{prefix}:blacklist`` shared by all namespaces. Reads that may reset
a window and increments run as Lua scripts, so every read-modify-write on a
key is atomic across processes.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from dcu_api.core.redis import RedisConnection
from dcu_api.core.timeutils import Clock, utcnow
from dcu_api.services.rate_limit_store import (
    BLACKLIST_VIOLATION_THRESHOLD,
    RECORD_RETENTION,
    IPBlacklistedError,
    RateLimitConfig,
    RateLimitRecord,
    RateLimitStorageError,
    RateLimitStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS[1] record hash, KEYS[2] blacklist set
# ARGV[1] ip, ARGV[2] now, ARGV[3] auth window, ARGV[4] unauth window, ARGV[5] ttl
_LOAD_RECORD = """
if redis.call('SISMEMBER', KEYS[2], ARGV[1]) == 1 then
  return {-1}
end

local data = redis.call('HMGET', KEYS[1], 'requests', 'last_reset', 'violations', 'is_authenticated')
local exists = data[1] ~= false
local requests = tonumber(data[1]) or 0
local last_raw = data[2] or ARGV[2]
local violations = tonumber(data[3]) or 0
local auth_flag = data[4] or '0'

if exists then
  local window = tonumber(ARGV[4])
  if auth_flag == '1' then
    window = tonumber(ARGV[3])
  end
  if tonumber(ARGV[2]) > tonumber(last_raw) + window then
    requests = 0
    violations = 0
    last_raw = ARGV[2]
    redis.call('HSET', KEYS[1], 'requests', 0, 'last_reset', last_raw, 'violations', 0)
    redis.call('EXPIRE', KEYS[1], ARGV[5])
  end
end
"""

_GET_RECORD = (
    _LOAD_RECORD
    + """
if not exists then
  return {0}
end
return {1, tostring(requests), last_raw, tostring(violations), auth_flag}
"""
)

# ARGV[6] new auth flag, ARGV[7] limit for that flag, ARGV[8] blacklist threshold
_INCREMENT_RECORD = (
    _LOAD_RECORD
    + """
requests = requests + 1
auth_flag = ARGV[6]
local blacklisted = 0
if requests > tonumber(ARGV[7]) then
  violations = violations + 1
  if violations >= tonumber(ARGV[8]) then
    redis.call('SADD', KEYS[2], ARGV[1])
    blacklisted = 1
  end
end

redis.call('HSET', KEYS[1], 'requests', requests, 'last_reset', last_raw,
           'violations', violations, 'is_authenticated', auth_flag)
redis.call('EXPIRE', KEYS[1], ARGV[5])
return {1, tostring(requests), last_raw, tostring(violations), auth_flag, blacklisted}
"""
)

# KEYS[1] record hash; ARGV[1] now, ARGV[2] ttl
_RESET_RECORD = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  redis.call('HSET', KEYS[1], 'requests', 0, 'last_reset', ARGV[1], 'violations', 0)
  redis.call('EXPIRE', KEYS[1], ARGV[2])
  return 1
end
return 0
"""

# KEYS[1] record hash; ARGV[1] cutoff
_DELETE_IF_STALE = """
local last = tonumber(redis.call('HGET', KEYS[1], 'last_reset'))
if last and last < tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""


class RedisRateLimitStore(RateLimitStore):
    """``RateLimitStore`` over a shared ``RedisConnection``."""

    def __init__(
        self,
        connection: RedisConnection,
        config: RateLimitConfig,
        namespace: str = "default",
        clock: Clock = utcnow,
        key_prefix: str = "ratelimit",
    ):
        super().__init__(config, namespace, clock)
        self.connection = connection
        self.key_prefix = key_prefix
        self.blacklist_key = f"{key_prefix}:blacklist"
        self._ttl_seconds = int(RECORD_RETENTION.total_seconds())

    def key_for(self, ip: str) -> str:
        return f"{self.key_prefix}:{self.namespace}:{ip}"

    async def _execute(self, operation: Callable[[aioredis.Redis], Awaitable[T]]) -> T:
        """Run ``operation``, reconnecting and retrying once on a dropped connection."""
        try:
            try:
                client = await self.connection.get_client()
                return await operation(client)
            except RedisConnectionError as e:
                logger.warning(f"Redis connection lost, retrying once: {e}")
                client = await self.connection.reconnect()
                return await operation(client)
        except (RedisError, OSError) as e:
            logger.error(f"Rate limit storage error ({self.namespace}): {e}")
            raise RateLimitStorageError("Rate limit storage unavailable") from e

    async def _eval(self, script: str, keys: list[str], args: list[Any]) -> Any:
        return await self._execute(lambda client: client.eval(script, len(keys), *keys, *args))

    def _now(self) -> float:
        return self._clock().timestamp()

    def _record_args(self, ip: str) -> list[Any]:
        return [
            ip,
            repr(self._now()),
            self.config.auth_window_seconds,
            self.config.unauth_window_seconds,
            self._ttl_seconds,
        ]

    @staticmethod
    def _to_record(ip: str, reply: list[Any]) -> RateLimitRecord:
        return RateLimitRecord(
            ip=ip,
            requests=int(reply[1]),
            last_reset=datetime.fromtimestamp(float(reply[2]), tz=UTC),
            violations=int(reply[3]),
            is_authenticated=str(reply[4]) == "1",
        )

    async def get_record(self, ip: str) -> RateLimitRecord | None:
        reply = await self._eval(
            _GET_RECORD, [self.key_for(ip), self.blacklist_key], self._record_args(ip)
        )
        status = int(reply[0])
        if status < 0:
            raise IPBlacklistedError(ip)
        if status == 0:
            return None
        return self._to_record(ip, reply)

    async def increment_record(self, ip: str, is_authenticated: bool) -> RateLimitRecord:
        args = self._record_args(ip) + [
            "1" if is_authenticated else "0",
            self.config.limit_for(is_authenticated),
            BLACKLIST_VIOLATION_THRESHOLD,
        ]
        reply = await self._eval(_INCREMENT_RECORD, [self.key_for(ip), self.blacklist_key], args)
        if int(reply[0]) < 0:
            raise IPBlacklistedError(ip)

        record = self._to_record(ip, reply)
        if record.requests > self.config.limit_for(is_authenticated):
            logger.warning(f"Rate limit violation {record.violations} for {ip} ({self.namespace})")
        if int(reply[5]):
            logger.warning(f"IP {ip} blacklisted after repeated rate limit violations")
        return record

    async def reset_record(self, ip: str) -> None:
        await self._eval(_RESET_RECORD, [self.key_for(ip)], [repr(self._now()), self._ttl_seconds])

    async def cleanup_old_records(self) -> int:
        """Sweep this namespace for records past retention.

        Keys normally expire on their own; this catches keys written without
        a TTL.
        """
        cutoff = repr((self._clock() - RECORD_RETENTION).timestamp())
        pattern = f"{self.key_prefix}:{self.namespace}:*"

        async def sweep(client: aioredis.Redis) -> int:
            removed = 0
            async for key in client.scan_iter(match=pattern, count=500):
                removed += int(await client.eval(_DELETE_IF_STALE, 1, key, cutoff))
            return removed

        removed = await self._execute(sweep)
        if removed:
            logger.info(f"Removed {removed} stale rate limit record(s) ({self.namespace})")
        return removed

    async def add_to_blacklist(self, ip: str) -> None:
        await self._execute(lambda client: client.sadd(self.blacklist_key, ip))
        logger.warning(f"IP {ip} added to blacklist")

    async def remove_from_blacklist(self, ip: str) -> None:
        await self._execute(lambda client: client.srem(self.blacklist_key, ip))
        logger.info(f"IP {ip} removed from blacklist")

    async def is_blacklisted(self, ip: str) -> bool:
        return bool(await self._execute(lambda client: client.sismember(self.blacklist_key, ip)))
