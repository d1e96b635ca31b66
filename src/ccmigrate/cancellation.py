"""
Caller-supplied cancellation and deadlines.

A CancellationToken is threaded through every connector call of a migrate or
rollback operation. Cancelling it (explicitly, or by letting its deadline
pass) interrupts the in-flight connector call with OperationCancelledError;
the executor records the in-flight item as failed and stops issuing items.

Example:
    >>> token = CancellationToken(timeout=120.0)
    >>> result = await engine.migrate(EntityType.USER, "org-1", "env-prod", cancellation=token)
    >>> # elsewhere
    >>> token.cancel("operator requested stop")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import TypeVar

from ccmigrate.exceptions import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEADLINE_REASON = "deadline exceeded"


class CancellationToken:
    """
    Explicit cancellation signal with an optional deadline.

    Attributes:
        deadline: ``time.monotonic()`` value after which the token counts as
            cancelled, None for no deadline.
    """

    def __init__(self, *, timeout: float | None = None) -> None:
        """
        Create a token.

        Args:
            timeout: Seconds from now until the deadline (None = no deadline)
        """
        if timeout is not None and timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if self._reason is None:
            self._reason = reason
            logger.info("Cancellation requested: %s", reason)
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def reason(self) -> str | None:
        """Why the token fired, None while it has not."""
        if self._reason is not None:
            return self._reason
        if self.is_cancelled:
            return DEADLINE_REASON
        return None

    def remaining(self) -> float | None:
        """Seconds until the deadline, None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelledError: If the token has fired.
        """
        if self.is_cancelled:
            raise OperationCancelledError(self.reason or DEADLINE_REASON)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await a connector call unless the token fires first.

        The call is cancelled when the token fires while it is in flight.

        Args:
            awaitable: The connector call.

        Returns:
            The call's result.

        Raises:
            OperationCancelledError: If the token fired before or during the call.
        """
        task = asyncio.ensure_future(awaitable)
        if self.is_cancelled:
            task.cancel()
            raise OperationCancelledError(self.reason or DEADLINE_REASON)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise OperationCancelledError(self.reason or DEADLINE_REASON)
