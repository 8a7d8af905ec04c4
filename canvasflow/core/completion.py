"""One-shot completion channels keyed by node id.

In batch mode the execute callback only means "dispatched". The scheduler then
waits on a per-node future that the generation collaborator resolves through
``CompletionRegistry.signal`` once the output really exists.

Rules:
- ``arm(node_id)`` opens a fresh channel before dispatch and discards any stale
  signal left over from an earlier pass.
- A signal that arrives with no open channel is recorded, and the next ``wait``
  for that node returns it immediately.
- Every wait has a timeout. ``cancel_all`` rejects outstanding waits so nothing
  blocks after a stop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """Error waiting for a node to complete."""

    pass


class ExecutionCancelledError(CompletionError):
    """The run was stopped while waiting."""

    pass


class NodeTimeoutError(CompletionError):
    """No completion signal arrived before the timeout."""

    pass


class NodeExecutionError(CompletionError):
    """The collaborator reported that generation failed."""

    pass


@dataclass(frozen=True)
class CompletionSignal:
    node_id: str
    success: bool = True
    error: str | None = None
    output: str | None = None


class CompletionRegistry:
    """Per-node table of one-shot futures.

    ``signal`` may be called from any thread; results are delivered on the loop
    that armed the channel.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiters: dict[str, asyncio.Future] = {}
        self._early: dict[str, CompletionSignal] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancelled = False

    def arm(self, node_id: str) -> None:
        """Open a channel for ``node_id``, dropping stale signals.

        Must be called from the event loop that will wait.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._cancelled:
                raise ExecutionCancelledError("Run was stopped")
            self._loop = loop
            self._early.pop(node_id, None)
            old = self._waiters.pop(node_id, None)
            if old is not None and not old.done():
                old.cancel()
            self._waiters[node_id] = loop.create_future()

    async def wait(self, node_id: str, timeout: float) -> CompletionSignal:
        """Wait for the completion signal of ``node_id``.

        Returns:
            The signal; ``success`` is always True

        Raises:
            NodeExecutionError: If the signal reports failure
            NodeTimeoutError: If no signal arrives within ``timeout`` seconds
            ExecutionCancelledError: If ``cancel_all`` is called while waiting
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._cancelled:
                raise ExecutionCancelledError("Run was stopped")
            early = self._early.pop(node_id, None)
            if early is None:
                self._loop = loop
                future = self._waiters.get(node_id)
                if future is None:
                    future = loop.create_future()
                    self._waiters[node_id] = future

        if early is not None:
            logger.debug(f"Node {node_id} already signalled, not waiting")
            return self._check(early)

        try:
            result = await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            raise NodeTimeoutError(
                f"Node {node_id} did not signal completion within {timeout:g}s"
            )
        finally:
            with self._lock:
                if self._waiters.get(node_id) is future:
                    del self._waiters[node_id]
        return self._check(result)

    def signal(
        self,
        node_id: str,
        success: bool = True,
        error: str | None = None,
        output: str | None = None,
    ) -> bool:
        """Resolve the wait for ``node_id``.

        Returns:
            True if an open channel was resolved, False if the signal was
            recorded for a later wait.
        """
        sig = CompletionSignal(node_id=node_id, success=success, error=error, output=output)
        with self._lock:
            future = self._waiters.pop(node_id, None)
            if future is None or future.done():
                self._early[node_id] = sig
                logger.debug(f"No waiter for node {node_id}, recorded signal")
                return False
            loop = self._loop

        self._call_on_loop(loop, _set_result, future, sig)
        return True

    def cancel_all(self, reason: str = "Run was stopped") -> int:
        """Reject every outstanding wait. Returns the number rejected."""
        with self._lock:
            self._cancelled = True
            waiters = list(self._waiters.values())
            self._waiters.clear()
            self._early.clear()
            loop = self._loop

        for future in waiters:
            self._call_on_loop(loop, _set_exception, future, ExecutionCancelledError(reason))
        return len(waiters)

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return [node_id for node_id, f in self._waiters.items() if not f.done()]

    @staticmethod
    def _call_on_loop(loop: asyncio.AbstractEventLoop | None, fn, *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            fn(*args)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(fn, *args)

    @staticmethod
    def _check(sig: CompletionSignal) -> CompletionSignal:
        if not sig.success:
            raise NodeExecutionError(sig.error or f"Node {sig.node_id} reported failure")
        return sig


def _set_result(future: asyncio.Future, value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _set_exception(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)
