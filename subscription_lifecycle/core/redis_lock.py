"""
Redis locks.

``distributed_lock`` keeps a scheduled sweep on one instance at a time (skip if
held). ``subscription_lock`` serializes mutations of one subscriber across
request handlers, webhook deliveries and sweeps (wait, then give up). It is
awaited, so a waiter never stalls the event loop the holder is running on.
``blocking_subscription_lock`` takes the same key from synchronous code that
runs in a worker thread.

All of them fail open when Redis itself is unreachable.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import AsyncGenerator, FrozenSet, Generator, Optional, Tuple
import redis
import redis.asyncio as aioredis

from .config import settings
from .exceptions import InvalidStateError

logger = logging.getLogger(__name__)

redis_client = None

# asyncio clients are bound to the loop that created their connections, and
# the scheduled sweeps each run their own loop via asyncio.run()
_async_clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aioredis.Redis]" = (
    weakref.WeakKeyDictionary()
)

# Subscriber ids whose lock the current task/thread already holds
_held_subscription_locks: ContextVar[FrozenSet[str]] = ContextVar(
    "held_subscription_locks", default=frozenset()
)


def _client_options() -> dict:
    return {"decode_responses": True, "socket_connect_timeout": 5, "socket_timeout": 5}


def get_redis_client() -> redis.Redis:
    global redis_client

    if redis_client is None:
        redis_client = redis.from_url(settings.REDIS_URL, **_client_options())
        logger.info(f"Connected Redis client to {settings.REDIS_URL}")

    return redis_client


def get_async_redis_client() -> aioredis.Redis:
    """asyncio Redis client for the running event loop."""
    loop = asyncio.get_running_loop()
    client = _async_clients.get(loop)
    if client is None:
        client = aioredis.from_url(settings.REDIS_URL, **_client_options())
        _async_clients[loop] = client
    return client


def _acquire(key: str, timeout: int, blocking: bool, blocking_timeout: float) -> Tuple[Optional[object], bool]:
    """
    Returns (lock, acquired). On a Redis error the lock is None and acquired
    is True, i.e. the caller proceeds unlocked.
    """
    try:
        lock = get_redis_client().lock(key, timeout=timeout, blocking=blocking, blocking_timeout=blocking_timeout)
        return lock, lock.acquire(blocking=blocking, blocking_timeout=blocking_timeout)
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis unavailable while locking {key}, continuing without lock: {e}")
        return None, True


def _release(lock, key: str) -> None:
    if lock is None:
        return
    try:
        lock.release()
    except redis.exceptions.RedisError as e:
        # Lock may already have expired
        logger.warning(f"Could not release {key}: {e}")


async def _acquire_async(key: str, timeout: int, blocking_timeout: float) -> Tuple[Optional[object], bool]:
    try:
        lock = get_async_redis_client().lock(key, timeout=timeout, blocking=True, blocking_timeout=blocking_timeout)
        return lock, await lock.acquire(blocking=True, blocking_timeout=blocking_timeout)
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis unavailable while locking {key}, continuing without lock: {e}")
        return None, True


async def _release_async(lock, key: str) -> None:
    if lock is None:
        return
    try:
        await lock.release()
    except redis.exceptions.RedisError as e:
        logger.warning(f"Could not release {key}: {e}")


def _subscription_key(subscriber_id: str) -> str:
    return f"subscription_lock:{subscriber_id}"


def _busy_error() -> InvalidStateError:
    return InvalidStateError(
        "Another change to this subscription is in progress. Please retry shortly.",
        code="subscription_busy"
    )


@contextmanager
def distributed_lock(
    lock_name: str,
    timeout: int = 3600,
    blocking: bool = False,
    blocking_timeout: int = 1
) -> Generator[bool, None, None]:
    """
    Yields True when this instance should run the job, False when another
    instance holds ``job_lock:<lock_name>``.
    """
    key = f"job_lock:{lock_name}"
    lock, acquired = _acquire(key, timeout, blocking, blocking_timeout)
    if not acquired:
        logger.info(f"Skipping {lock_name}: running on another instance")

    try:
        yield acquired
    finally:
        if acquired:
            _release(lock, key)


@asynccontextmanager
async def subscription_lock(subscriber_id: str) -> AsyncGenerator[None, None]:
    """
    Serialize mutations for one subscriber.

    Waits up to SUBSCRIPTION_LOCK_BLOCKING_SECONDS, then raises
    InvalidStateError(code="subscription_busy"). Nested calls for a subscriber
    the current task already holds pass straight through. When Redis is down
    the version column on Subscription still rejects lost updates.
    """
    held = _held_subscription_locks.get()
    if subscriber_id in held:
        yield
        return

    key = _subscription_key(subscriber_id)
    lock, acquired = await _acquire_async(
        key,
        settings.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS,
        settings.SUBSCRIPTION_LOCK_BLOCKING_SECONDS
    )
    if not acquired:
        raise _busy_error()

    token = _held_subscription_locks.set(held | {subscriber_id})
    try:
        yield
    finally:
        _held_subscription_locks.reset(token)
        await _release_async(lock, key)


@contextmanager
def blocking_subscription_lock(subscriber_id: str) -> Generator[None, None, None]:
    """
    ``subscription_lock`` for synchronous callers. Blocks the calling thread
    while waiting, so it must never be entered on the event loop thread.
    """
    held = _held_subscription_locks.get()
    if subscriber_id in held:
        yield
        return

    key = _subscription_key(subscriber_id)
    lock, acquired = _acquire(
        key,
        settings.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS,
        True,
        settings.SUBSCRIPTION_LOCK_BLOCKING_SECONDS
    )
    if not acquired:
        raise _busy_error()

    token = _held_subscription_locks.set(held | {subscriber_id})
    try:
        yield
    finally:
        _held_subscription_locks.reset(token)
        _release(lock, key)


def check_redis_connection() -> bool:
    try:
        get_redis_client().ping()
        return True
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis ping failed: {e}")
        return False
