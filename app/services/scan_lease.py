"""Single-flight lease for periodic sweeps.

``SET key token NX EX ttl`` takes the lease; release deletes the key only
if it still holds our token, so an expired lease picked up by another
worker is never released by the first one.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import redis

from app.config import settings

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=5
        )
    return _client


class ScanLease:
    def __init__(
        self,
        client: redis.Redis,
        name: str,
        ttl_seconds: int | None = None,
    ) -> None:
        self.client = client
        self.key = f"lease:scan:{name}"
        self.ttl_seconds = ttl_seconds or settings.scan_lease_seconds
        self.token: str | None = None

    def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if self.client.set(self.key, token, nx=True, ex=self.ttl_seconds):
            self.token = token
            return True
        return False

    def release(self) -> None:
        if self.token is None:
            return
        try:
            released = self.client.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        except redis.RedisError:
            logger.exception("Failed to release lease %s", self.key)
            return
        finally:
            self.token = None
        if not released:
            logger.warning("Lease %s expired before release", self.key)


@contextmanager
def single_flight(
    name: str,
    client: redis.Redis | None = None,
    ttl_seconds: int | None = None,
) -> Iterator[bool]:
    """Yields True when this caller holds the lease for ``name``.

    A Redis error while acquiring also yields False.
    """
    lease = ScanLease(client or get_redis(), name, ttl_seconds)
    try:
        acquired = lease.acquire()
    except redis.RedisError:
        logger.exception("Could not take lease %s", lease.key)
        acquired = False
    try:
        yield acquired
    finally:
        if acquired:
            lease.release()
