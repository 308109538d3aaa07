"""Durable Redis event ledger.

Features:
- One hash per event holding its full state
- Sorted sets indexing ready events, held leases and per-status membership
- Enqueue, claim, renew, report and replay each run as a single Lua
  script, so they are atomic with respect to every other client
- Claims optionally restricted to a set of event kinds
- Idempotent enqueue keyed on (tenant_id, idempotency_key)
- Connection pooling and health checks

Key layout (``{prefix}`` is a cluster hash tag, so all keys share a slot):
    {prefix}:ev:<id>            HASH  event fields, timestamps as epoch seconds
    {prefix}:ready              ZSET  PENDING/RETRY ids scored by next_attempt_ts
    {prefix}:ready:k:<KIND>     ZSET  the same, for one kind
    {prefix}:leases             ZSET  PROCESSING ids scored by lease expiry
    {prefix}:leases:k:<KIND>    ZSET  the same, for one kind
    {prefix}:st:<STATUS>        ZSET  ids per status scored by created_ts
    {prefix}:idem               HASH  "<tenant>\\x1f<key>" -> id
"""

import asyncio
import json
import time
from collections.abc import Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from redis.asyncio import ConnectionPool, Redis

from outrelay.core.backoff import BackoffPolicy
from outrelay.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    LeaseLostError,
)
from outrelay.core.event import (
    DEFAULT_MAX_ATTEMPTS,
    EventStatus,
    NewEvent,
    OutboxEvent,
    normalize_kinds,
    utcnow,
)
from outrelay.core.logging import get_logger
from outrelay.ledgers.base import StatusSummary

logger = get_logger("outrelay.redis")

_ENQUEUE_LUA = """
local base = KEYS[1]
local id = ARGV[1]
local idem = ARGV[6]
if idem ~= '' then
  local field = ARGV[3] .. '\\031' .. idem
  local existing = redis.call('HGET', base .. ':idem', field)
  if existing then
    return existing
  end
  redis.call('HSET', base .. ':idem', field, id)
end
redis.call('HSET', base .. ':ev:' .. id,
  'id', id, 'kind', ARGV[2], 'tenant_id', ARGV[3], 'payload', ARGV[4],
  'status', 'PENDING', 'attempt_count', '0', 'max_attempts', ARGV[5],
  'worker_id', '', 'claimed_ts', '', 'next_attempt_ts', ARGV[8],
  'last_error', '', 'idempotency_key', idem, 'replay_of', ARGV[7],
  'created_ts', ARGV[8], 'updated_ts', ARGV[8], 'processed_ts', '')
redis.call('ZADD', base .. ':ready', ARGV[8], id)
redis.call('ZADD', base .. ':ready:k:' .. ARGV[2], ARGV[8], id)
redis.call('ZADD', base .. ':st:PENDING', ARGV[8], id)
return id
"""

# ARGV[5..] optionally name the kinds to claim; without them every kind is eligible
_CLAIM_LUA = """
local base = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local worker = ARGV[3]
local lease_until = ARGV[4]
local kinds = {}
for i = 5, #ARGV do table.insert(kinds, ARGV[i]) end
local claimed = {}

local function due(index, want)
  if #kinds == 0 then
    return redis.call('ZRANGEBYSCORE', base .. ':' .. index, '-inf', now, 'LIMIT', 0, want)
  end
  local merged = {}
  for _, kind in ipairs(kinds) do
    local rows = redis.call('ZRANGEBYSCORE', base .. ':' .. index .. ':k:' .. kind,
      '-inf', now, 'WITHSCORES', 'LIMIT', 0, want)
    for i = 1, #rows, 2 do
      table.insert(merged, {rows[i], tonumber(rows[i + 1])})
    end
  end
  table.sort(merged, function(a, b)
    if a[2] == b[2] then return a[1] < b[1] end
    return a[2] < b[2]
  end)
  local ids = {}
  for i = 1, math.min(want, #merged) do ids[i] = merged[i][1] end
  return ids
end

local function take(id)
  local key = base .. ':ev:' .. id
  local fields = redis.call('HMGET', key, 'status', 'created_ts', 'kind')
  local status, created, kind = fields[1], fields[2], fields[3]
  redis.call('ZREM', base .. ':st:' .. status, id)
  redis.call('ZADD', base .. ':st:PROCESSING', created, id)
  redis.call('ZREM', base .. ':ready', id)
  redis.call('ZREM', base .. ':ready:k:' .. kind, id)
  redis.call('ZADD', base .. ':leases', lease_until, id)
  redis.call('ZADD', base .. ':leases:k:' .. kind, lease_until, id)
  redis.call('HSET', key, 'status', 'PROCESSING', 'worker_id', worker,
    'claimed_ts', ARGV[1], 'updated_ts', ARGV[1])
  table.insert(claimed, id)
end

local expired = due('leases', limit)
for _, id in ipairs(expired) do take(id) end

local remaining = limit - #expired
if remaining > 0 then
  for _, id in ipairs(due('ready', remaining)) do take(id) end
end
return claimed
"""

_RENEW_LUA = """
local base = KEYS[1]
local id = ARGV[1]
local key = base .. ':ev:' .. id
local fields = redis.call('HMGET', key, 'status', 'worker_id', 'kind')
local status, holder, kind = fields[1], fields[2], fields[3]
if not status then
  return {'ERR', 'NOT_FOUND', ''}
end
if status ~= 'PROCESSING' then
  return {'ERR', 'NOT_PROCESSING', status}
end
if holder ~= ARGV[2] then
  return {'ERR', 'LEASE_LOST', holder}
end
redis.call('HSET', key, 'claimed_ts', ARGV[3], 'updated_ts', ARGV[3])
redis.call('ZADD', base .. ':leases', ARGV[4], id)
redis.call('ZADD', base .. ':leases:k:' .. kind, ARGV[4], id)
return {'OK', '', ''}
"""

_REPORT_LUA = """
local base = KEYS[1]
local id = ARGV[1]
local key = base .. ':ev:' .. id
local status = redis.call('HGET', key, 'status')
if not status then
  return {'ERR', 'NOT_FOUND', ''}
end
if status ~= 'PROCESSING' then
  return {'ERR', 'NOT_PROCESSING', status}
end
local holder = redis.call('HGET', key, 'worker_id')
if ARGV[4] ~= '' and holder ~= ARGV[4] then
  return {'ERR', 'LEASE_LOST', holder}
end

local now = ARGV[6]
local created = redis.call('HGET', key, 'created_ts')
local kind = redis.call('HGET', key, 'kind')
redis.call('ZREM', base .. ':leases', id)
redis.call('ZREM', base .. ':leases:k:' .. kind, id)
redis.call('ZREM', base .. ':st:PROCESSING', id)

local new_status
if ARGV[2] == '1' then
  new_status = 'SENT'
  redis.call('HSET', key, 'worker_id', '', 'last_error', '', 'processed_ts', now, 'updated_ts', now)
else
  local attempts = tonumber(redis.call('HGET', key, 'attempt_count'))
  local max_attempts = tonumber(redis.call('HGET', key, 'max_attempts'))
  if ARGV[5] == '1' then
    attempts = math.min(attempts + 1, max_attempts)
  else
    attempts = max_attempts
  end
  redis.call('HSET', key, 'attempt_count', attempts, 'worker_id', '',
    'last_error', ARGV[3], 'updated_ts', now)
  if attempts >= max_attempts then
    new_status = 'DEAD'
  else
    new_status = 'RETRY'
    local exponent = math.min(attempts, 64)
    local delay = math.min(tonumber(ARGV[9]), tonumber(ARGV[7]) * tonumber(ARGV[8]) ^ exponent)
    local ready_ts = tonumber(now) + delay
    redis.call('HSET', key, 'next_attempt_ts', string.format('%.6f', ready_ts))
    redis.call('ZADD', base .. ':ready', ready_ts, id)
    redis.call('ZADD', base .. ':ready:k:' .. kind, ready_ts, id)
  end
end
redis.call('HSET', key, 'status', new_status)
redis.call('ZADD', base .. ':st:' .. new_status, created, id)
return {'OK', new_status, ''}
"""

_REPLAY_LUA = """
local base = KEYS[1]
local dead_key = base .. ':ev:' .. ARGV[2]
local status = redis.call('HGET', dead_key, 'status')
if not status then
  return {'ERR', 'NOT_FOUND', ''}
end
if status ~= 'DEAD' then
  return {'ERR', 'NOT_DEAD', status}
end
local src = redis.call('HMGET', dead_key, 'kind', 'tenant_id', 'payload', 'max_attempts')
local id = ARGV[1]
local now = ARGV[3]
redis.call('HSET', base .. ':ev:' .. id,
  'id', id, 'kind', src[1], 'tenant_id', src[2], 'payload', src[3],
  'status', 'PENDING', 'attempt_count', '0', 'max_attempts', src[4],
  'worker_id', '', 'claimed_ts', '', 'next_attempt_ts', now,
  'last_error', '', 'idempotency_key', '', 'replay_of', ARGV[2],
  'created_ts', now, 'updated_ts', now, 'processed_ts', '')
redis.call('ZADD', base .. ':ready', now, id)
redis.call('ZADD', base .. ':ready:k:' .. src[1], now, id)
redis.call('ZADD', base .. ':st:PENDING', now, id)
return {'OK', id, ''}
"""


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _ts(value: datetime) -> str:
    return f"{value.timestamp():.6f}"


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), UTC)


def _to_event(data: dict[str, str]) -> OutboxEvent:
    return OutboxEvent(
        id=data["id"],
        kind=data["kind"],
        tenant_id=data["tenant_id"],
        payload=json.loads(data["payload"]),
        status=EventStatus(data["status"]),
        attempt_count=int(data["attempt_count"]),
        max_attempts=int(data["max_attempts"]),
        worker_id=data.get("worker_id") or None,
        claimed_at=_dt(data.get("claimed_ts")),
        next_attempt_at=_dt(data["next_attempt_ts"]),
        last_error=data.get("last_error") or None,
        idempotency_key=data.get("idempotency_key") or None,
        replay_of=data.get("replay_of") or None,
        created_at=_dt(data["created_ts"]),
        updated_at=_dt(data["updated_ts"]),
        processed_at=_dt(data.get("processed_ts")),
    )


@dataclass
class LedgerHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


@dataclass
class RedisLedgerMetrics:
    """Redis ledger counters."""

    events_enqueued: int = 0
    events_deduplicated: int = 0
    events_claimed: int = 0
    results_reported: int = 0
    events_replayed: int = 0


class RedisLedger:
    """Production event ledger on Redis."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "outrelay",
        backoff: BackoffPolicy | None = None,
        lease_timeout: float = 300.0,
        pool_size: int = 10,
    ) -> None:
        """Initialize the Redis ledger.

        Args:
            redis_url: Redis connection URL.
            key_prefix: Namespace for all keys; wrapped in a cluster hash tag.
            backoff: Retry delay policy. Defaults to ``BackoffPolicy()``.
            lease_timeout: Seconds after which a PROCESSING lease may be reclaimed.
            pool_size: Connection pool size.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self._base = f"{{{key_prefix}}}"
        self._backoff = backoff or BackoffPolicy()
        self._lease_timeout = lease_timeout
        self._pool_size = pool_size

        self._redis: Redis | None = None
        self._scripts: dict[str, Any] = {}
        self._metrics = RedisLedgerMetrics()
        self._conn_lock = asyncio.Lock()

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    @property
    def metrics(self) -> RedisLedgerMetrics:
        return self._metrics

    async def _get_client(self) -> Redis:
        """Get Redis client, creating the pool and scripts on first use."""
        if self._redis is not None:
            return self._redis

        async with self._conn_lock:
            # Re-check after acquiring lock - another coroutine may have connected
            if self._redis is not None:
                return self._redis

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            client = Redis(connection_pool=pool)
            try:
                await client.ping()
            except Exception:
                await client.aclose()
                raise

            self._scripts = {
                "enqueue": client.register_script(_ENQUEUE_LUA),
                "claim": client.register_script(_CLAIM_LUA),
                "renew": client.register_script(_RENEW_LUA),
                "report": client.register_script(_REPORT_LUA),
                "replay": client.register_script(_REPLAY_LUA),
            }
            self._redis = client
            logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    def _event_key(self, event_id: str) -> str:
        return f"{self._base}:ev:{event_id}"

    async def _load(self, client: Any, event_ids: list[str]) -> list[OutboxEvent]:
        if not event_ids:
            return []
        async with client.pipeline(transaction=False) as pipe:
            for event_id in event_ids:
                pipe.hgetall(self._event_key(event_id))
            rows = await pipe.execute()
        return [_to_event(row) for row in rows if row]

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        tenant_id: str,
        *,
        idempotency_key: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboxEvent:
        request = NewEvent(
            kind=kind,
            payload=payload,
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            max_attempts=max_attempts,
        )
        client = await self._get_client()
        new_id = str(uuid4())
        stored_id = await self._scripts["enqueue"](
            keys=[self._base],
            args=[
                new_id,
                request.kind,
                request.tenant_id,
                json.dumps(request.payload),
                request.max_attempts,
                request.idempotency_key or "",
                "",
                _ts(utcnow()),
            ],
        )
        if stored_id == new_id:
            self._metrics.events_enqueued += 1
            logger.debug(f"Enqueued {new_id} ({request.kind}) for {request.tenant_id}")
        else:
            self._metrics.events_deduplicated += 1
            logger.debug(
                f"Idempotency key {request.idempotency_key!r} already used by {stored_id}"
            )
        return await self.get(stored_id)

    async def claim(
        self,
        batch_size: int,
        worker_id: str,
        *,
        kinds: Collection[str] | None = None,
        now: datetime | None = None,
    ) -> list[OutboxEvent]:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        wanted = normalize_kinds(kinds)

        client = await self._get_client()
        now = now or utcnow()
        event_ids = await self._scripts["claim"](
            keys=[self._base],
            args=[_ts(now), batch_size, worker_id, self._lease_until(now), *sorted(wanted or ())],
        )
        events = await self._load(client, list(event_ids))
        self._metrics.events_claimed += len(events)
        return events

    async def renew(
        self,
        event_id: str,
        worker_id: str,
        *,
        now: datetime | None = None,
    ) -> OutboxEvent:
        await self._get_client()
        now = now or utcnow()
        outcome, detail, extra = await self._scripts["renew"](
            keys=[self._base],
            args=[event_id, worker_id, _ts(now), self._lease_until(now)],
        )
        if outcome == "ERR":
            raise self._lease_error(event_id, worker_id, "renew", detail, extra)
        return await self.get(event_id)

    def _lease_until(self, now: datetime) -> str:
        return f"{now.timestamp() + self._lease_timeout:.6f}"

    @staticmethod
    def _lease_error(
        event_id: str, worker_id: str | None, action: str, detail: str, extra: str
    ) -> Exception:
        """Map an ``{'ERR', detail, extra}`` script reply to the ledger error."""
        if detail == "NOT_FOUND":
            return EventNotFoundError(event_id)
        if detail == "NOT_PROCESSING":
            return InvalidTransitionError(event_id, extra, action)
        return LeaseLostError(event_id, worker_id or "", extra or None)

    async def report_result(
        self,
        event_id: str,
        ok: bool,
        error: str | None = None,
        *,
        worker_id: str | None = None,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> OutboxEvent:
        await self._get_client()
        outcome, detail, extra = await self._scripts["report"](
            keys=[self._base],
            args=[
                event_id,
                "1" if ok else "0",
                error or "",
                worker_id or "",
                "1" if retryable else "0",
                _ts(now or utcnow()),
                self._backoff.base,
                self._backoff.multiplier,
                self._backoff.max_delay,
            ],
        )
        if outcome == "ERR":
            raise self._lease_error(event_id, worker_id, "report", detail, extra)

        self._metrics.results_reported += 1
        return await self.get(event_id)

    async def get(self, event_id: str) -> OutboxEvent:
        client = await self._get_client()
        data = await client.hgetall(self._event_key(event_id))
        if not data:
            raise EventNotFoundError(event_id)
        return _to_event(data)

    async def replay(self, event_id: str) -> OutboxEvent:
        await self._get_client()
        outcome, detail, extra = await self._scripts["replay"](
            keys=[self._base],
            args=[str(uuid4()), event_id, _ts(utcnow())],
        )
        if outcome == "ERR":
            if detail == "NOT_FOUND":
                raise EventNotFoundError(event_id)
            raise InvalidTransitionError(event_id, extra, "replay")

        self._metrics.events_replayed += 1
        logger.info(f"Replayed dead event {event_id} as {detail}")
        return await self.get(detail)

    async def status_summary(self) -> dict[EventStatus, StatusSummary]:
        client = await self._get_client()
        statuses = list(EventStatus)
        async with client.pipeline(transaction=True) as pipe:
            for status in statuses:
                key = f"{self._base}:st:{status.value}"
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.zrange(key, -1, -1, withscores=True)
            replies = await pipe.execute()

        summary: dict[EventStatus, StatusSummary] = {}
        for i, status in enumerate(statuses):
            total, oldest, newest = replies[i * 3 : i * 3 + 3]
            summary[status] = StatusSummary(
                total=int(total),
                oldest_created_at=datetime.fromtimestamp(oldest[0][1], UTC) if oldest else None,
                newest_created_at=datetime.fromtimestamp(newest[0][1], UTC) if newest else None,
            )
        return summary

    async def health(self) -> LedgerHealth:
        """Check ledger health."""
        start = time.monotonic()
        try:
            client = await self._get_client()
            await client.ping()
            ready = await client.zcard(f"{self._base}:ready")
            latency = (time.monotonic() - start) * 1000

            return LedgerHealth(
                healthy=True,
                latency_ms=latency,
                details={
                    "key_prefix": self.key_prefix,
                    "ready": ready,
                    "metrics": {
                        "enqueued": self._metrics.events_enqueued,
                        "claimed": self._metrics.events_claimed,
                        "reported": self._metrics.results_reported,
                    },
                },
            )
        except Exception as e:
            return LedgerHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def delete_all(self) -> None:
        """Delete every key under this ledger's prefix (for testing)."""
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{self._base}:*")]
        if keys:
            await client.delete(*keys)
