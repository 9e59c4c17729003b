"""Live stream fallback: ad-filtered route first, one switch to the direct stream."""
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from render_engine import PlaybackStatus, RenderEngine
from timers import TimerFactory, default_timer_factory

LOG = logging.getLogger(__name__)

PLAYBACK_TIMEOUT = 15.0

MSG_SWITCHED = "Ad-filtered route failed, switched to direct stream"
MSG_DIRECT = "Playing direct stream"
MSG_LOAD_FAILED = "Load failed, please retry"
MSG_SELECT_CHANNEL = "Press down to choose a channel"
MSG_LOADING = "Loading..."


@dataclass(frozen=True)
class LiveState:
    active_url: Optional[str] = None
    is_loading: bool = False
    is_timeout: bool = False
    status_message: Optional[str] = None
    has_switched_to_fallback: bool = False

    @property
    def overlay_text(self) -> Optional[str]:
        if not self.active_url:
            return MSG_SELECT_CHANNEL
        if self.is_timeout:
            return MSG_LOAD_FAILED
        if self.is_loading:
            return self.status_message or MSG_LOADING
        return self.status_message


class LiveFallbackController:
    def __init__(
        self,
        render: Optional[RenderEngine] = None,
        timeout: float = PLAYBACK_TIMEOUT,
        timer_factory: TimerFactory = default_timer_factory,
    ) -> None:
        self.render = render
        self.timeout = timeout
        self._timer = timer_factory("live-timeout")
        self._fallback_url: Optional[str] = None
        self._state = LiveState()
        self._listeners: List[Callable[[LiveState], None]] = []
        if render is not None:
            render.on_status = self.handle_status
            render.on_error = self.handle_error

    @property
    def state(self) -> LiveState:
        return self._state

    def subscribe(self, listener: Callable[[LiveState], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, **changes) -> None:
        previous_url = self._state.active_url
        self._state = replace(self._state, **changes)
        if self.render is not None and self._state.active_url and self._state.active_url != previous_url:
            try:
                self.render.open(self._state.active_url)
            except Exception as e:
                LOG.error("Failed to open live stream %s: %s", self._state.active_url, e)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                LOG.exception("Live state listener failed")

    def set_stream(self, url: Optional[str], fallback_url: Optional[str] = None) -> None:
        """Start ``url`` from scratch; ``None`` clears the controller."""
        self._timer.cancel()
        if url:
            LOG.info("Live stream %s (fallback: %s)", url, fallback_url or "none")
            self._fallback_url = fallback_url or None
            # Force a reopen even when the same URL is selected again.
            self._state = replace(self._state, active_url=None)
            self._set(
                active_url=url,
                is_loading=True,
                is_timeout=False,
                status_message=None,
                has_switched_to_fallback=False,
            )
            self._arm()
        else:
            self._fallback_url = None
            self._set(
                active_url=None,
                is_loading=False,
                is_timeout=False,
                status_message=None,
                has_switched_to_fallback=False,
            )

    def _arm(self) -> None:
        self._timer.start(self.timeout, self._on_timeout)

    def _switch_to_fallback(self) -> bool:
        if self._state.has_switched_to_fallback or not self._fallback_url:
            return False
        LOG.warning("Live route %s failed, switching to %s", self._state.active_url, self._fallback_url)
        self._set(
            active_url=self._fallback_url,
            has_switched_to_fallback=True,
            status_message=MSG_SWITCHED,
            is_loading=True,
            is_timeout=False,
        )
        self._arm()
        return True

    def _fail(self) -> None:
        self._timer.cancel()
        LOG.warning("Live stream failed: %s", self._state.active_url)
        self._set(is_timeout=True, is_loading=False, status_message=None)

    def _on_timeout(self) -> None:
        if self._switch_to_fallback():
            return
        self._fail()

    def handle_status(self, status: PlaybackStatus) -> None:
        if status.is_loaded:
            if status.is_playing:
                self._timer.cancel()
                message = MSG_DIRECT if self._state.has_switched_to_fallback else None
                if self._state.is_loading or self._state.is_timeout or self._state.status_message != message:
                    self._set(is_loading=False, is_timeout=False, status_message=message)
            elif status.is_buffering and not self._state.is_loading:
                self._set(is_loading=True)
        elif status.error:
            self.handle_error(status.error, status.url)

    def handle_error(self, error: Optional[str] = None, url: Optional[str] = None) -> None:
        """React to a playback error on the active route.

        Errors for a route that is no longer active, or arriving after the
        terminal failure, are dropped so one broken stream fails only once.
        """
        if not self._state.active_url or self._state.is_timeout:
            return
        if url and url != self._state.active_url:
            LOG.debug("Ignore live error for inactive route %s", url)
            return
        LOG.debug("Live playback error: %s", error)
        if not self._switch_to_fallback():
            self._fail()

    def stop(self) -> None:
        self._timer.cancel()
