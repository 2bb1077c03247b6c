"""Cooperative cancellation tokens.

A token is checked at defined suspension points (between steps, before
each agent call, during retry delays).  In-flight provider calls are never
aborted by it; they finish or time out on their own.
"""

from __future__ import annotations

import asyncio
import threading

from llm_dispatch.domain.exceptions import OperationCancelledError


class CancellationToken:
    """Thread-safe cancellation flag that can also be awaited.

    Child tokens created with :meth:`linked` observe their parent: cancelling
    the parent cancels every child, cancelling a child leaves the parent alone.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._waiters: set[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = set()
        self._children: list[CancellationToken] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._attach(self)

    @classmethod
    def none(cls) -> CancellationToken:
        """A fresh token nobody else holds, so it never trips."""
        return cls()

    def linked(self) -> CancellationToken:
        return CancellationToken(parent=self)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            waiters = list(self._waiters)
            self._waiters.clear()
            children = list(self._children)

        for loop, fut in waiters:
            loop.call_soon_threadsafe(_resolve, fut)
        for child in children:
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError(f"Operation was cancelled: {self._reason}")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        entry = (loop, fut)
        with self._lock:
            if self._cancelled:
                return
            self._waiters.add(entry)
        try:
            await fut
        finally:
            with self._lock:
                self._waiters.discard(entry)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, aborting immediately on cancellation.

        Raises:
            OperationCancelledError: if the token trips before or during the wait.
        """
        self.raise_if_cancelled()
        if delay <= 0:
            return
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            if not waiter.done():
                waiter.cancel()
        self.raise_if_cancelled()

    def _attach(self, child: CancellationToken) -> None:
        with self._lock:
            if not self._cancelled:
                self._children.append(child)
                return
            reason = self._reason or "cancelled"
        child.cancel(reason)


def _resolve(fut: asyncio.Future[None]) -> None:
    if not fut.done():
        fut.set_result(None)
