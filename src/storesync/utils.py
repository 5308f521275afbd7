"""Utility functions shared by the storesync components."""

import asyncio
from typing import Awaitable, TypeVar

from .errors import NotAuthenticatedError, OperationTimeoutError

T = TypeVar("T")


def require_user(user_id: str | None, operation: str) -> str:
    """
    Return ``user_id`` or fail before any remote call is attempted.

    Raises:
        NotAuthenticatedError: If the user id is missing or blank.
    """
    if not user_id or not isinstance(user_id, str) or not user_id.strip():
        raise NotAuthenticatedError(operation)
    return user_id


async def call_remote(awaitable: Awaitable[T], operation: str, timeout: float | None) -> T:
    """
    Await a remote call, bounded by ``timeout`` seconds.

    Raises:
        OperationTimeoutError: If the call doesn't finish in time. The
            underlying call is cancelled.
    """
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout) from None


def error_message(error: Exception, fallback: str) -> str:
    """Message suitable for a component's ``error`` field."""
    text = str(error).strip()
    return text or fallback


def format_money(amount: float) -> str:
    return f"${amount:,.2f}"


class KeyedLocks:
    """
    ``asyncio.Lock`` per key.

    Locks bind to the event loop they first wait on, so the table is
    rebuilt whenever a different loop asks for a lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def get(self, key: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._locks = {}
            self._loop = loop
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock
