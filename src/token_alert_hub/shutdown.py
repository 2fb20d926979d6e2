"""Graceful shutdown handler for the Token Alert Hub.

Traps SIGTERM/SIGINT and runs named cleanup steps in reverse registration
order, so components started last (the hub, the feed consumer) stop before
the ones they depend on (scheduler, database).

Usage:
    ```python
    async def main():
        async with GracefulShutdown() as shutdown:
            pipeline = Pipeline(settings)
            await pipeline.start()
            shutdown.register_cleanup("pipeline", pipeline.stop)
            await shutdown.wait()
    ```
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from contextlib import suppress
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownTimeoutError(Exception):
    """Raised when cleanup exceeds the shutdown timeout."""


class GracefulShutdown:
    """Signal-driven shutdown coordinator.

    The first signal sets the shutdown event; a second one exits the
    process immediately with ``128 + signum``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        *,
        raise_on_timeout: bool = False,
    ) -> None:
        """Initialize the shutdown handler.

        Args:
            timeout: Maximum seconds allowed for all cleanup steps together.
            raise_on_timeout: Raise ShutdownTimeoutError instead of only
                logging when cleanup runs over.
        """
        self._timeout = timeout
        self._raise_on_timeout = raise_on_timeout

        self._shutdown_event: asyncio.Event | None = None
        self._shutdown_requested = False
        self._force_exit_requested = False
        self._original_handlers: dict[signal.Signals, Any] = {}
        self._cleanup_steps: list[tuple[str, Callable[[], Any]]] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit_requested(self) -> bool:
        return self._force_exit_requested

    def register_cleanup(self, name: str, callback: Callable[[], Any]) -> None:
        """Register a sync or async cleanup step.

        Steps run in reverse order of registration.
        """
        self._cleanup_steps.append((name, callback))

    def _event(self) -> asyncio.Event:
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event

    def request_shutdown(self) -> None:
        """Request shutdown from application code."""
        if not self._shutdown_requested:
            self._shutdown_requested = True
            logger.info("Shutdown requested programmatically")
            if self._shutdown_event:
                self._shutdown_event.set()

    async def wait(self) -> None:
        """Block until a signal arrives or request_shutdown() is called."""
        if self._shutdown_requested:
            return
        await self._event().wait()

    async def wait_with_timeout(self) -> bool:
        """Wait for shutdown for at most ``timeout`` seconds.

        Returns:
            True if shutdown was requested, False if the wait timed out.
        """
        if self._shutdown_requested:
            return True
        try:
            await asyncio.wait_for(self._event().wait(), timeout=self._timeout)
            return True
        except TimeoutError:
            return False

    def install_signal_handlers(self) -> None:
        """Trap SIGTERM and SIGINT (SIGINT only on Windows)."""
        self._loop = asyncio.get_running_loop()
        event = self._event()
        if self._shutdown_requested:
            event.set()

        if sys.platform == "win32":
            for sig in SHUTDOWN_SIGNALS:
                try:
                    self._original_handlers[sig] = signal.signal(sig, self._handle_signal_sync)
                except (ValueError, OSError) as e:
                    logger.warning("Could not install handler for %s: %s", sig.name, e)
        else:
            for sig in SHUTDOWN_SIGNALS:
                try:
                    self._loop.add_signal_handler(sig, self._handle_signal, sig)
                except (ValueError, OSError, NotImplementedError) as e:
                    logger.warning("Could not install handler for %s: %s", sig.name, e)

        logger.debug("Signal handlers installed")

    def remove_signal_handlers(self) -> None:
        """Remove installed handlers and restore the originals."""
        if sys.platform == "win32":
            for sig, original in self._original_handlers.items():
                with suppress(ValueError, OSError):
                    signal.signal(sig, original)
            self._original_handlers.clear()
        elif self._loop is not None:
            for sig in SHUTDOWN_SIGNALS:
                with suppress(ValueError, OSError, NotImplementedError):
                    self._loop.remove_signal_handler(sig)

        logger.debug("Signal handlers removed")

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_requested:
            self._force_exit_requested = True
            logger.warning("Received %s again - forcing exit!", sig.name)
            sys.exit(128 + sig.value)

        self._shutdown_requested = True
        logger.info("Received %s - initiating graceful shutdown...", sig.name)
        if self._shutdown_event:
            self._shutdown_event.set()

    def _handle_signal_sync(self, sig: int, _frame: FrameType | None) -> None:
        self._handle_signal(signal.Signals(sig))

    async def _run_steps(self) -> None:
        for name, callback in reversed(self._cleanup_steps):
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
                logger.debug("Cleanup step finished: %s", name)
            except Exception as e:
                logger.error("Cleanup step %s failed: %s", name, e)

    async def run_cleanup_callbacks(self) -> None:
        """Run all cleanup steps within the shutdown timeout.

        Raises:
            ShutdownTimeoutError: If cleanup runs over and
                ``raise_on_timeout`` is set.
        """
        try:
            await asyncio.wait_for(self._run_steps(), timeout=self._timeout)
        except TimeoutError as e:
            logger.error("Cleanup did not finish within %.1fs", self._timeout)
            if self._raise_on_timeout:
                raise ShutdownTimeoutError(f"Cleanup exceeded {self._timeout}s") from e
        finally:
            self._cleanup_steps.clear()

    async def __aenter__(self) -> GracefulShutdown:
        self.install_signal_handlers()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        self.remove_signal_handlers()
        await self.run_cleanup_callbacks()


async def run_with_graceful_shutdown(
    coro: Any,
    *,
    timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> None:
    """Run a coroutine until it completes or a shutdown signal arrives.

    Exceptions raised by the coroutine propagate.
    """
    shutdown = GracefulShutdown(timeout=timeout)

    async with shutdown:
        task = asyncio.create_task(coro)
        shutdown_wait = asyncio.create_task(shutdown.wait())

        done, pending = await asyncio.wait(
            [task, shutdown_wait],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for pending_task in pending:
            pending_task.cancel()
            with suppress(asyncio.CancelledError):
                await pending_task

        if task in done:
            task.result()
