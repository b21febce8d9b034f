"""Async helpers.

``run_async`` runs service coroutines from Celery tasks, which execute in a
synchronous context. ``SingleFlight`` and ``KeyedLock`` provide per-key
coordination for the async services without a global lock.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Coroutine, Dict, Hashable, TypeVar

from calendar_bot.utils.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """
    Run an async coroutine in a Celery task.

    Args:
        coro: The coroutine to run

    Returns:
        The result of the coroutine
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No loop in this thread, the normal case for a Celery worker
        return asyncio.run(coro)

    # A loop is already running (eager tasks called from async code); run in a thread
    logger.warning("Event loop is already running, running coroutine in a new thread")
    result: Dict[str, Any] = {}

    def run_in_thread() -> None:
        try:
            result["value"] = asyncio.run(coro)
        except BaseException as e:
            result["error"] = e

    thread = threading.Thread(target=run_in_thread)
    thread.start()
    thread.join()

    if "error" in result:
        raise result["error"]
    return result["value"]


class SingleFlight:
    """Coalesce concurrent calls for the same key into one in-flight call.

    Callers arriving while a call for their key is running await the same
    future and receive its result or exception. If the caller running the
    call is cancelled, the waiters get a TransientProviderError instead of
    being cancelled with it.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        future = self._inflight.get(key)
        if future is not None:
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await fn()
        except asyncio.CancelledError:
            future.set_exception(TransientProviderError(f"In-flight call for {key!r} was cancelled"))
            future.exception()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a flight with no waiters does not warn
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight


class KeyedLock:
    """One asyncio lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __call__(self, key: Hashable) -> "_KeyedLockContext":
        return _KeyedLockContext(self, key)

    async def _acquire(self, key: Hashable) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_user(key)
            raise

    def _release(self, key: Hashable) -> None:
        self._locks[key].release()
        self._release_user(key)

    def _release_user(self, key: Hashable) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class _KeyedLockContext:
    def __init__(self, owner: KeyedLock, key: Hashable) -> None:
        self._owner = owner
        self._key = key

    async def __aenter__(self) -> None:
        await self._owner._acquire(self._key)

    async def __aexit__(self, *exc_info: Any) -> None:
        self._owner._release(self._key)
