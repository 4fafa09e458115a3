"""Cooperative shutdown token shared by the loop and the session manager.

Signal handlers only flip the token. The first request asks the loop to stop
at its next checkpoint; a second request runs the registered force callbacks
(killing child process groups) and exits immediately.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Callable, Optional

logger = logging.getLogger(__name__)

FORCED_EXIT_CODE = 130


class ShutdownToken:
    def __init__(self, exit_func: Callable[[int], None] = os._exit) -> None:
        self._requested = False
        self._event = asyncio.Event()
        self._force_callbacks: list[Callable[[], None]] = []
        self._request_callbacks: list[Callable[[str], None]] = []
        self._exit = exit_func
        self.reason: Optional[str] = None
        self.signal_count = 0

    @property
    def requested(self) -> bool:
        return self._requested

    def add_force_callback(self, callback: Callable[[], None]) -> None:
        self._force_callbacks.append(callback)

    def add_request_callback(self, callback: Callable[[str], None]) -> None:
        """Called once, with the reason, when the first shutdown request arrives."""
        self._request_callbacks.append(callback)

    def request(self, reason: str = "shutdown requested") -> None:
        self.signal_count += 1
        if not self._requested:
            self._requested = True
            self.reason = reason
            self._event.set()
            logger.info("Shutdown requested: %s", reason)
            for callback in self._request_callbacks:
                try:
                    callback(reason)
                except Exception:
                    logger.exception("Shutdown callback failed")
            return
        self.force()

    def force(self) -> None:
        logger.warning("Forced shutdown, killing child processes")
        for callback in self._force_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Force-shutdown callback failed")
        self._exit(FORCED_EXIT_CODE)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cut short by shutdown."""
        if self._requested:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            name = signal.Signals(signum).name
            try:
                loop.add_signal_handler(signum, self.request, f"received {name}")
            except (NotImplementedError, RuntimeError):
                signal.signal(
                    signum,
                    lambda _sig, _frame, label=name: loop.call_soon_threadsafe(
                        self.request, f"received {label}"
                    ),
                )

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                signal.signal(signum, signal.SIG_DFL)
