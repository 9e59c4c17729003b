import asyncio
import logging
from typing import Callable, Optional

LOG = logging.getLogger(__name__)


class CancellableTimer:
    """One-shot timer on the running event loop.

    ``armed`` is the single source of truth: it is True from ``start`` until the
    callback runs or ``cancel`` is called. Starting an armed timer cancels the
    pending handle first so a callback never fires twice.
    """

    def __init__(self, name: str = "timer", loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.name = name
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._callback: Optional[Callable[[], None]] = None
        self.armed = False

    def start(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._callback = callback
        self.armed = True
        self._handle = loop.call_later(max(0.0, float(delay_seconds)), self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._callback = None
        self.armed = False

    def _fire(self) -> None:
        if not self.armed:
            return
        callback = self._callback
        self._handle = None
        self._callback = None
        self.armed = False
        if callback is None:
            return
        try:
            callback()
        except Exception:
            LOG.exception("Timer %s callback failed", self.name)


TimerFactory = Callable[[str], CancellableTimer]


def default_timer_factory(name: str) -> CancellableTimer:
    return CancellableTimer(name)
