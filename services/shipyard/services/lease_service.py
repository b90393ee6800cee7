"""Per-application exclusive lease in Redis.

Only one step may run against an application at a time. The lease is a
Redis key set with NX and a TTL, holding a random token; release deletes the
key only if it still holds our token, so an expired lease that was taken over
by another request is never released from under it.
"""

import asyncio
import hashlib
import secrets
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from redis.exceptions import RedisError

from shipyard.errors import ApplicationBusyError
from shipyard.logging_config import get_logger
from shipyard.redis.client import get_redis_client

logger = get_logger(__name__)

LEASE_PREFIX = "shipyard:lease:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lease_key(host: str, username: str, application_name: str) -> str:
    """Redis key for an application's natural key.

    Hashed so that separators inside the parts cannot make two keys collide.
    """
    digest = hashlib.sha256("\0".join((host, username, application_name)).encode()).hexdigest()
    return LEASE_PREFIX + digest


@asynccontextmanager
async def application_lease(
    key: str,
    ttl_seconds: int = 900,
    wait_seconds: float = 10.0,
    poll_interval: float = 0.25,
) -> AsyncGenerator[str]:
    """Hold the lease for the duration of the block.

    Waits up to wait_seconds for a busy lease, then raises ApplicationBusyError.
    """
    redis = get_redis_client()
    token = secrets.token_urlsafe(16)
    deadline = time.monotonic() + wait_seconds

    while not await redis.set(key, token, nx=True, px=int(ttl_seconds * 1000)):
        if time.monotonic() >= deadline:
            logger.warning("Application lease busy", lease=key, waited_seconds=wait_seconds)
            raise ApplicationBusyError(
                "Another step is already running for this application. Try again shortly."
            )
        await asyncio.sleep(poll_interval)

    logger.debug("Application lease acquired", lease=key)
    try:
        yield token
    finally:
        try:
            await redis.eval(_RELEASE_SCRIPT, 1, key, token)
            logger.debug("Application lease released", lease=key)
        except RedisError as e:
            # The TTL reclaims it
            logger.warning("Failed to release application lease", lease=key, error=str(e))
