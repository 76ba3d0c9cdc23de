"""
Redis Distributed Lock Module

Distributed locking using the Redis SET NX PX pattern.
Guards the reminder scan when several worker instances run side by side.

INFRASTRUCTURE ONLY - No business logic.
"""
import logging
import uuid
import asyncio
import os
from typing import Optional
import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete (safe lock release)
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLockUnavailableError(Exception):
    """Raised when Redis errored on every acquisition attempt (not contention)."""
    pass


class RedisDistributedLock:
    """
    Redis distributed lock.

    Uses SET key value NX PX with a UUID token for safe release.

    Features:
    - Atomic lock acquisition (SET NX PX)
    - Token-based safe release (Lua script)
    - Automatic TTL release on process crash
    - Non-blocking mode (wait_timeout=0): one attempt, no retry

    Example:
        lock = RedisDistributedLock(
            redis_client=redis_client,
            key="lock:prod:reminders:scan",
            ttl_seconds=900,
            wait_timeout=0,
        )
        if await lock.acquire():
            try:
                ...
            finally:
                await lock.release()
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = 60,
        wait_timeout: float = 5,
    ):
        """
        Args:
            redis_client: Redis client instance (must be connected)
            key: Redis key for the lock (e.g., "lock:prod:reminders:scan")
            ttl_seconds: Lock TTL in seconds (auto-release after this time)
            wait_timeout: Maximum time to wait for lock acquisition (seconds)
        """
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")
        self._release_script = None

    def _get_release_script(self):
        if self._release_script is None:
            self._release_script = self.redis_client.register_script(RELEASE_SCRIPT)
        return self._release_script

    async def acquire(self, correlation_id: Optional[str] = None) -> bool:
        """
        Acquire distributed lock, retrying until wait_timeout.

        Args:
            correlation_id: Optional correlation ID for logging

        Returns:
            True if lock acquired, False if held by someone else until timeout

        Raises:
            RedisLockUnavailableError: every attempt failed with a Redis error
        """
        if self.acquired:
            logger.warning(
                "REDIS_LOCK_ERROR",
                extra={
                    "component": "infra",
                    "operation": "lock_acquire",
                    "outcome": "failed",
                    "reason": "lock_already_acquired",
                    "key": self.key,
                    "correlation_id": correlation_id,
                }
            )
            return False

        self.token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        attempt = 0
        last_error: Optional[Exception] = None
        contended = False

        while True:
            attempt += 1
            try:
                # SET key token NX PX ttl_ms
                result = await self.redis_client.set(
                    self.key,
                    self.token,
                    nx=True,
                    px=int(self.ttl_seconds * 1000),
                )
                if result:
                    self.acquired = True
                    logger.info(
                        "REDIS_LOCK_ACQUIRED",
                        extra={
                            "component": "infra",
                            "operation": "lock_acquire",
                            "outcome": "success",
                            "key": self.key,
                            "attempts": attempt,
                            "ttl_seconds": self.ttl_seconds,
                            "correlation_id": correlation_id,
                            "instance_id": self.instance_id,
                        }
                    )
                    return True
                contended = True
            except Exception as e:
                last_error = e
                logger.error(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "error",
                        "reason": str(e)[:100],
                        "key": self.key,
                        "attempt": attempt,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )

            elapsed = loop.time() - start_time
            if elapsed >= self.wait_timeout:
                self.token = None
                if last_error is not None and not contended:
                    raise RedisLockUnavailableError(str(last_error)[:200]) from last_error
                logger.info(
                    "REDIS_LOCK_TIMEOUT",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "timeout",
                        "key": self.key,
                        "attempts": attempt,
                        "elapsed_seconds": round(elapsed, 2),
                        "wait_timeout": self.wait_timeout,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
                return False

            await asyncio.sleep(0.1 if last_error is None else 0.2)

    async def release(self, correlation_id: Optional[str] = None) -> None:
        """
        Release distributed lock safely.

        Only the token owner can delete the key. Safe to call multiple times.
        """
        if not self.acquired:
            return

        try:
            release_script = self._get_release_script()
            result = await release_script(keys=[self.key], args=[self.token])

            if result:
                logger.info(
                    "REDIS_LOCK_RELEASED",
                    extra={
                        "component": "infra",
                        "operation": "lock_release",
                        "outcome": "success",
                        "key": self.key,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
            else:
                # TTL expired mid-scan or another owner took over
                logger.warning(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_release",
                        "outcome": "failed",
                        "reason": "token_mismatch_or_already_released",
                        "key": self.key,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
        except Exception as e:
            logger.error(
                "REDIS_LOCK_ERROR",
                extra={
                    "component": "infra",
                    "operation": "lock_release",
                    "outcome": "error",
                    "reason": str(e)[:100],
                    "key": self.key,
                    "correlation_id": correlation_id,
                    "instance_id": self.instance_id,
                }
            )
        finally:
            self.acquired = False
            self.token = None
