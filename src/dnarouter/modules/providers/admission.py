"""Admission controller for the rate-limited inference API.

Fleet-wide concurrency gate backed by Redis. Every stage transform invocation,
wherever it runs, acquires a ticket here before calling the inference API and
releases it afterwards. Counters are never held in process memory: each
invocation may run in a fresh execution context, and a per-process counter
would admit unlimited concurrency across the fleet.

Redis layout (``{prefix}`` defaults to ``dnarouter:admission``):

    {prefix}:global          - string, in-flight calls across all users
    {prefix}:users           - hash, user_id -> in-flight calls
    {prefix}:tickets         - sorted set, ticket_id scored by lease deadline
    {prefix}:owners          - hash, ticket_id -> user_id (lives exactly as long as the lease)
    {prefix}:ticket:{id}     - hash, ticket metadata (user_id, requested_at, granted_at)

Grant and release each run as a single Lua script, so check-and-increment is
atomic with respect to every concurrent caller. A grant first reclaims leases
whose deadline has passed, so a worker killed mid-call cannot hold its
user's slots past the lease.

Usage:
    controller = AdmissionController(redis, config.admission)
    async with controller.slot(user_id) as ticket:
        result = await client.submit(prompt)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from dnarouter.core.config import AdmissionConfig
from dnarouter.core.exceptions import AdmissionBlocked, TicketLeak
from dnarouter.core.types import AdmissionTicket, Blocked, LoadSample

from .redis import RedisProvider

logger = logging.getLogger(__name__)

# Shared by both scripts. KEYS: global, users, tickets, owners, ticket hash
_RECLAIM_LUA = """
local function reclaim(ticket_id, user)
  if redis.call('ZREM', KEYS[3], ticket_id) == 0 then
    return false
  end
  local owner = redis.call('HGET', KEYS[4], ticket_id)
  if user == '' and owner then
    user = owner
  end
  redis.call('HDEL', KEYS[4], ticket_id)
  local g = tonumber(redis.call('GET', KEYS[1]) or '0')
  if g > 0 then
    redis.call('DECR', KEYS[1])
  end
  if user ~= '' then
    local u = tonumber(redis.call('HGET', KEYS[2], user) or '0')
    if u > 1 then
      redis.call('HINCRBY', KEYS[2], user, -1)
    else
      redis.call('HDEL', KEYS[2], user)
    end
  end
  return true
end
"""

# ARGV: max_global, max_user, user_id, ticket_id, lease_deadline, now, ttl, ticket key prefix
_ACQUIRE_LUA = _RECLAIM_LUA + """
local reclaimed = {}
for _, id in ipairs(redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[6])) do
  if reclaim(id, '') then
    redis.call('DEL', ARGV[8] .. id)
    reclaimed[#reclaimed + 1] = id
  end
end
local g = tonumber(redis.call('GET', KEYS[1]) or '0')
local u = tonumber(redis.call('HGET', KEYS[2], ARGV[3]) or '0')
if g >= tonumber(ARGV[1]) or u >= tonumber(ARGV[2]) then
  return {0, g, u, reclaimed}
end
g = redis.call('INCR', KEYS[1])
u = redis.call('HINCRBY', KEYS[2], ARGV[3], 1)
redis.call('ZADD', KEYS[3], ARGV[5], ARGV[4])
redis.call('HSET', KEYS[4], ARGV[4], ARGV[3])
redis.call('HSET', KEYS[5], 'user_id', ARGV[3], 'requested_at', ARGV[6], 'granted_at', ARGV[6])
redis.call('EXPIRE', KEYS[5], ARGV[7])
return {1, g, u, reclaimed}
"""

# ARGV: ticket_id, user_id (may be empty; falls back to the owners hash)
_RELEASE_LUA = _RECLAIM_LUA + """
if not reclaim(ARGV[1], ARGV[2]) then
  return {0, 0, 0}
end
redis.call('DEL', KEYS[5])
local g = tonumber(redis.call('GET', KEYS[1]) or '0')
local u = 0
if ARGV[2] ~= '' then
  u = tonumber(redis.call('HGET', KEYS[2], ARGV[2]) or '0')
end
return {1, g, u}
"""


def stagger_delay(
    active_global: int,
    *,
    base: float = 0.0,
    per_active: float = 0.25,
    maximum: float = 5.0,
) -> float:
    """Pre-call delay as a function of observed global concurrency.

    Non-decreasing in ``active_global``; the exact curve is configuration.
    """
    active = max(0, int(active_global))
    return max(0.0, min(maximum, base + per_active * active))


class AdmissionController:
    """Redis-backed admission gate with per-user and global ceilings.

    Args:
        redis: RedisProvider shared by every invocation.
        settings: Ceilings, lease, backoff and stagger parameters.
        key_prefix: Prefix for all Redis keys.
        clock: Wall clock in seconds (injectable for tests).
        sleep: Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        redis: RedisProvider,
        settings: AdmissionConfig | None = None,
        *,
        key_prefix: str = "dnarouter:admission",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._redis = redis
        self.settings = settings or AdmissionConfig()
        self._prefix = key_prefix
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._acquire_script = redis.register_script(_ACQUIRE_LUA)
        self._release_script = redis.register_script(_RELEASE_LUA)

    # ---- keys ---------------------------------------------------------------

    @property
    def global_key(self) -> str:
        return f"{self._prefix}:global"

    @property
    def users_key(self) -> str:
        return f"{self._prefix}:users"

    @property
    def tickets_key(self) -> str:
        return f"{self._prefix}:tickets"

    @property
    def owners_key(self) -> str:
        return f"{self._prefix}:owners"

    def ticket_key(self, ticket_id: str) -> str:
        return f"{self._prefix}:ticket:{ticket_id}"

    def _script_keys(self, ticket_id: str) -> list[str]:
        return [
            self.global_key,
            self.users_key,
            self.tickets_key,
            self.owners_key,
            self.ticket_key(ticket_id),
        ]

    # ---- core operations ----------------------------------------------------

    async def acquire(self, user_id: str) -> AdmissionTicket | Blocked:
        """Try once to take a ticket. Never waits."""
        ticket_id = uuid.uuid4().hex
        now = self._clock()
        lease = self.settings.ticket_lease_seconds
        granted, active_global, active_user, reclaimed = await self._acquire_script(
            keys=self._script_keys(ticket_id),
            args=[
                self.settings.max_concurrent,
                self.settings.max_concurrent_per_user,
                user_id,
                ticket_id,
                now + lease,
                now,
                int(lease * 4) + 60,
                self.ticket_key(""),
            ],
        )
        for leaked_id in reclaimed or []:
            logger.error("%s; reclaimed on acquire", TicketLeak(str(leaked_id)).message)
        if not int(granted):
            logger.debug(
                "Admission blocked: user=%s global=%s user_active=%s",
                user_id,
                active_global,
                active_user,
            )
            return Blocked(
                user_id=user_id, active_global=int(active_global), active_user=int(active_user)
            )

        logger.debug(
            "Admission granted: ticket=%s user=%s global=%s user_active=%s",
            ticket_id,
            user_id,
            active_global,
            active_user,
        )
        return AdmissionTicket(
            ticket_id=ticket_id,
            user_id=user_id,
            requested_at=now,
            granted_at=now,
            active_global=int(active_global),
            active_user=int(active_user),
        )

    async def release(self, ticket: AdmissionTicket) -> bool:
        """Return the ticket's slot. Idempotent: a second release is a no-op.

        Returns:
            True if this call decremented the counters.
        """
        if ticket.released:
            logger.warning("Ticket %s already released (user=%s)", ticket.ticket_id, ticket.user_id)
            return False
        try:
            released, active_global, active_user = await self._release_script(
                keys=self._script_keys(ticket.ticket_id),
                args=[ticket.ticket_id, ticket.user_id],
            )
        except Exception as e:
            # Once the lease passes, the next acquire or audit reclaims it.
            logger.error(
                "Failed to release ticket %s (user=%s): %s", ticket.ticket_id, ticket.user_id, e
            )
            return False

        ticket.released = True
        if not int(released):
            leak = TicketLeak(ticket.ticket_id, ticket.user_id)
            logger.warning("%s; it was already reclaimed", leak.message)
            return False

        logger.debug(
            "Released ticket=%s user=%s global=%s user_active=%s",
            ticket.ticket_id,
            ticket.user_id,
            active_global,
            active_user,
        )
        return True

    async def current_load(self, user_id: str | None = None) -> LoadSample:
        client = await self._redis.client()
        raw_global = await client.get(self.global_key)
        raw_user = await client.hget(self.users_key, user_id) if user_id else None
        return LoadSample(
            active_global=int(raw_global or 0),
            active_user=int(raw_user or 0),
            timestamp=self._clock(),
        )

    async def load(self) -> dict[str, Any]:
        """Snapshot of all counters: ``{"global": int, "perUser": {user: int}}``."""
        client = await self._redis.client()
        raw_global = await client.get(self.global_key)
        per_user = await client.hgetall(self.users_key)
        return {
            "global": int(raw_global or 0),
            "perUser": {str(k): int(v) for k, v in per_user.items() if int(v) > 0},
        }

    # ---- waiting ------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter for the n-th blocked attempt (1-based)."""
        cap = min(
            self.settings.backoff_max_seconds,
            self.settings.backoff_base_seconds * (2 ** max(0, attempt - 1)),
        )
        return cap * self._rng()

    def stagger_delay(self, active_global: int) -> float:
        s = self.settings
        return stagger_delay(
            active_global,
            base=s.stagger_base_seconds,
            per_active=s.stagger_per_active_seconds,
            maximum=s.stagger_max_seconds,
        )

    async def acquire_with_backoff(
        self, user_id: str, *, timeout: float | None = None
    ) -> AdmissionTicket:
        """Retry ``acquire`` with backoff until granted or ``timeout`` elapses.

        Raises:
            AdmissionBlocked: if no ticket was granted in time.
        """
        limit = self.settings.acquire_timeout_seconds if timeout is None else timeout
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await self.acquire(user_id)
            except Exception as e:
                # Fails closed: an unreachable counter store must not admit callers.
                logger.error("Admission store error for user=%s: %s", user_id, e)
                raise AdmissionBlocked(user_id, waited=self._clock() - started) from e

            if isinstance(outcome, AdmissionTicket):
                outcome.requested_at = started
                return outcome

            waited = self._clock() - started
            if waited >= limit:
                raise AdmissionBlocked(
                    user_id,
                    active_global=outcome.active_global,
                    active_user=outcome.active_user,
                    waited=waited,
                )
            delay = min(self.backoff_delay(attempt), max(0.0, limit - waited))
            logger.debug(
                "Admission wait user=%s attempt=%d delay=%.2fs", user_id, attempt, delay
            )
            await self._sleep(delay)

    @asynccontextmanager
    async def slot(self, user_id: str, *, timeout: float | None = None) -> AsyncIterator[AdmissionTicket]:
        """Hold a ticket for the duration of the block.

        The ticket is released on every exit path, including cancellation
        and invocation timeouts.
        """
        ticket = await self.acquire_with_backoff(user_id, timeout=timeout)
        try:
            sample = await self.current_load(user_id)
            delay = self.stagger_delay(sample.active_global)
            jitter = self.settings.stagger_jitter_seconds
            if jitter > 0:
                delay += jitter * self._rng()
            if delay > 0:
                logger.debug(
                    "Stagger %.2fs before call (global=%d user=%s)",
                    delay,
                    sample.active_global,
                    user_id,
                )
                await self._sleep(delay)
            yield ticket
        finally:
            await asyncio.shield(self.release(ticket))

    # ---- audit --------------------------------------------------------------

    async def audit_leaks(self, now: float | None = None) -> list[str]:
        """Reclaim tickets whose lease has expired.

        Every acquire already does this atomically; the audit also covers
        periods with no new acquires.

        Returns:
            Ids of the reclaimed tickets.
        """
        client = await self._redis.client()
        deadline = self._clock() if now is None else now
        expired = await client.zrangebyscore(self.tickets_key, "-inf", deadline)
        reclaimed: list[str] = []
        for ticket_id in expired:
            ticket_id = str(ticket_id)
            user_id = await client.hget(self.owners_key, ticket_id) or ""
            released, _, _ = await self._release_script(
                keys=self._script_keys(ticket_id), args=[ticket_id, ""]
            )
            if int(released):
                leak = TicketLeak(ticket_id, str(user_id))
                logger.error("%s; reclaimed by audit", leak.message)
                reclaimed.append(ticket_id)
        return reclaimed


__all__ = ["AdmissionController", "stagger_delay"]
