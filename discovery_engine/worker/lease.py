"""Redis-based per-configuration leases for multi-instance coordination."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from discovery_engine.config import settings
from discovery_engine import metrics
from discovery_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

LEASE_KEY_PREFIX = "lease:config:"

# Atomically verify the token and delete
# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
RELEASE_SCRIPT = """
local lease_value = redis.call('GET', KEYS[1])
if not lease_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lease_value)
if not success then
    return 2
end

if data.token == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""

# Atomically verify the token and extend the TTL
# Returns: 0 = not found, 1 = refreshed, 2 = mismatch
REFRESH_SCRIPT = """
local lease_value = redis.call('GET', KEYS[1])
if not lease_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lease_value)
if not success then
    return 0
end

if data.token == ARGV[1] then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
    return 1
else
    return 2
end
"""


def lease_subject(tenant_id: str, configuration_id: str) -> str:
    """Lease name for a configuration; ids are only unique within a tenant."""
    return f"{tenant_id}:{configuration_id}"


def lease_key(configuration_id: str) -> str:
    return f"{LEASE_KEY_PREFIX}{configuration_id}"


class LeaseProvider(ABC):
    """Acquire-if-not-held leases with automatic expiry."""

    @abstractmethod
    async def acquire(self, configuration_id: str, ttl_seconds: int) -> Optional[str]:
        """Return an ownership token, or None when another holder has the lease."""

    @abstractmethod
    async def release(self, configuration_id: str, token: str) -> bool:
        pass

    @abstractmethod
    async def refresh(self, configuration_id: str, token: str, ttl_seconds: int) -> bool:
        pass

    async def close(self) -> None:
        return None


class RedisLeaseManager(LeaseProvider):
    """
    Leases stored as ``lease:config:<id>`` keys.

    Features:
    - SET NX EX acquisition so a crashed holder expires automatically
    - Token-based ownership verification for release and refresh
    - Lease info retrieval for diagnostics
    """

    def __init__(self, redis_url: Optional[str] = None, owner: Optional[str] = None):
        """
        Initialize lease manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            owner: Instance label stored in the lease value
        """
        self.redis_url = redis_url or settings.redis_url
        self.owner = owner or uuid4().hex[:12]
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def acquire(self, configuration_id: str, ttl_seconds: int) -> Optional[str]:
        """
        Acquire the lease for a configuration.

        Args:
            configuration_id: Configuration to lock
            ttl_seconds: Expiry in seconds

        Returns:
            Token string if acquired, None if already held
        """
        redis_client = await self._get_redis()

        token = uuid4().hex
        lease_value = json.dumps({
            "configuration_id": configuration_id,
            "token": token,
            "owner": self.owner,
            "acquired_at": utcnow().isoformat(),
        })

        acquired = await redis_client.set(
            lease_key(configuration_id),
            lease_value,
            nx=True,
            ex=ttl_seconds,
        )
        if acquired:
            metrics.record_lease("acquire", "acquired")
            logger.debug("Acquired lease for configuration %s", configuration_id)
            return token

        metrics.record_lease("acquire", "held")
        logger.debug("Lease for configuration %s already held", configuration_id)
        return None

    async def release(self, configuration_id: str, token: str) -> bool:
        """
        Release the lease only if the token still owns it.

        Returns:
            True if released or already gone, False on token mismatch or error
        """
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(RELEASE_SCRIPT, 1, lease_key(configuration_id), token)
        except redis.RedisError as e:
            metrics.record_lease("release", "error")
            logger.error("Error releasing lease for configuration %s: %s", configuration_id, e)
            return False

        if result == 2:
            metrics.record_lease("release", "mismatch")
            logger.warning(
                "Lease for configuration %s is owned by another holder; not released",
                configuration_id,
            )
            return False
        metrics.record_lease("release", "released")
        return True

    async def refresh(self, configuration_id: str, token: str, ttl_seconds: int) -> bool:
        """Extend the TTL if the token still owns the lease."""
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                REFRESH_SCRIPT,
                1,
                lease_key(configuration_id),
                token,
                str(ttl_seconds),
            )
        except redis.RedisError as e:
            logger.error("Error refreshing lease for configuration %s: %s", configuration_id, e)
            return False

        if result == 1:
            return True
        if result == 2:
            logger.warning("Lease for configuration %s was taken over", configuration_id)
        else:
            logger.debug("Lease for configuration %s expired before refresh", configuration_id)
        return False

    async def get_lease_info(self, configuration_id: str) -> Optional[Dict[str, Any]]:
        """
        Get current lease information.

        Returns:
            Dict with owner, acquired_at, ttl, or None if no lease
        """
        redis_client = await self._get_redis()
        key = lease_key(configuration_id)
        value = await redis_client.get(key)
        ttl = await redis_client.ttl(key)
        if not value:
            return None
        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "configuration_id": data.get("configuration_id"),
            "owner": data.get("owner"),
            "token": data.get("token"),
            "acquired_at": data.get("acquired_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def force_release(self, configuration_id: str) -> None:
        """Delete a lease without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        await redis_client.delete(lease_key(configuration_id))
        logger.warning("Force-cleared lease for configuration %s", configuration_id)


async def refresh_lease_heartbeat(
    leases: LeaseProvider,
    configuration_id: str,
    token: str,
    interval: int,
    ttl: int,
) -> None:
    """
    Background task that keeps a lease alive while a check runs.

    Args:
        leases: Lease provider that issued the token
        configuration_id: Leased configuration
        token: Ownership token
        interval: Refresh interval in seconds
        ttl: TTL to set on each refresh
    """
    failure_count = 0
    try:
        while True:
            await asyncio.sleep(interval)
            if await leases.refresh(configuration_id, token, ttl):
                failure_count = 0
                continue

            failure_count += 1
            logger.warning(
                "Lease heartbeat failed for configuration %s (consecutive failures: %d)",
                configuration_id,
                failure_count,
            )
            if failure_count >= 3:
                logger.error(
                    "Lease heartbeat stopping after %d failures for configuration %s",
                    failure_count,
                    configuration_id,
                )
                break
    except asyncio.CancelledError:
        logger.debug("Lease heartbeat cancelled for configuration %s", configuration_id)
        raise
