"""
IdleTimer — a single-slot rolling deadline.

Holds at most one scheduled callback. reset() cancels the pending one and
schedules a fresh one, so activity never stacks up timers.
"""

import asyncio
from typing import Callable, Optional


class IdleTimer:
    """Calls on_expire after `timeout` seconds with no reset()."""

    def __init__(self, timeout: float, on_expire: Callable[[], None]):
        self.timeout = timeout
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        """Arm the timer, replacing any pending deadline."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def reset(self) -> None:
        """Push the deadline out by a full timeout. No-op when not armed."""
        if self._handle is not None:
            self.start()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._on_expire()
