from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class IdleController:
    """
    Single-shot shutdown timer.

    ``arm`` (re)starts the countdown and ``cancel`` drops any pending firing.
    A non-positive timeout disables the controller entirely.
    """

    def __init__(self, *, timeout_seconds: float, on_idle: Callable[[], None]) -> None:
        self._timeout_seconds = timeout_seconds
        self._on_idle = on_idle
        self._handle: asyncio.TimerHandle | None = None
        self._fired = False

    @property
    def enabled(self) -> bool:
        return self._timeout_seconds > 0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def arm(self) -> None:
        self.cancel()
        if not self.enabled or self._fired:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._timeout_seconds, self._fire)
        logger.debug("idle timer armed timeout_seconds=%s", self._timeout_seconds)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        logger.info("idle for %ss with no queued or active jobs; shutting down", self._timeout_seconds)
        self._on_idle()
