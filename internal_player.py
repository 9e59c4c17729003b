import asyncio
import logging
import os
import urllib.error
import urllib.request
from typing import List, Optional

from render_engine import PlaybackStatus, RenderEngine
from timers import TimerFactory, default_timer_factory


def _prime_vlc_search_path() -> None:
    """Let ctypes find a Windows VLC install before python-vlc loads libvlc.dll."""
    for env_name in ("ProgramFiles(x86)", "ProgramFiles"):
        root = os.environ.get(env_name)
        vlc_dir = os.path.join(root, "VideoLAN", "VLC") if root else ""
        if not vlc_dir or not os.path.isfile(os.path.join(vlc_dir, "libvlc.dll")):
            continue
        if hasattr(os, "add_dll_directory"):
            os.add_dll_directory(vlc_dir)
        else:
            os.environ["PATH"] = vlc_dir + os.pathsep + os.environ.get("PATH", "")
        return


_prime_vlc_search_path()

try:
    import vlc  # type: ignore
except (ImportError, OSError) as _err:  # pragma: no cover - libVLC missing
    vlc = None  # type: ignore
    _VLC_IMPORT_ERROR = _err
else:
    _VLC_IMPORT_ERROR = None

LOG = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
PREFLIGHT_TIMEOUT = 5

_DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36"
)


class InternalPlayerUnavailableError(RuntimeError):
    """Raised when the built-in player cannot be created."""


_VLC_RUNTIME_PREPARED = False


def _prepare_vlc_runtime() -> None:
    """Fail early with a readable error when python-vlc could not be imported."""
    global _VLC_RUNTIME_PREPARED
    if _VLC_RUNTIME_PREPARED:
        return
    if vlc is None:
        reason = _VLC_IMPORT_ERROR or "libVLC bindings are missing"
        raise InternalPlayerUnavailableError(f"Built-in player unavailable: {reason}")
    _VLC_RUNTIME_PREPARED = True


def _open_vlc(opts: List[str]):
    """Create a libVLC instance and its media player, releasing on failure."""
    try:
        instance = vlc.Instance(opts)
    except Exception as err:
        LOG.warning("libVLC refused options %s (%s), using its defaults", opts, err)
        instance = vlc.Instance()
    if not instance:
        raise InternalPlayerUnavailableError("libVLC did not return an instance")
    try:
        player = instance.media_player_new()
    except Exception as err:
        instance.release()
        raise InternalPlayerUnavailableError(f"libVLC media player creation failed: {err}") from err
    if not player:
        instance.release()
        raise InternalPlayerUnavailableError("libVLC returned no media player")
    return instance, player


def describe_stream_failure(url: str, timeout: float = PREFLIGHT_TIMEOUT) -> str:
    """Probe ``url`` once and turn the outcome into an error text.

    libVLC only reports a bare error state; the probe recovers the HTTP or
    socket level cause so the session can word its message.
    """
    if not url or not url.startswith(("http://", "https://")):
        return "IOException: local media could not be opened"

    class NoRedirectHandler(urllib.request.HTTPRedirectHandler):
        def redirect_request(self, req, fp, code, msg, headers, newurl):
            return None

    req = urllib.request.Request(url, headers={"User-Agent": _DEFAULT_UA}, method="GET")
    opener = urllib.request.build_opener(NoRedirectHandler)
    try:
        resp = opener.open(req, timeout=timeout)
        status = resp.status
        resp.close()
        if status >= 400:
            return f"HttpDataSourceException: HTTP error {status}"
        return "Playback error: decoder rejected the stream"
    except urllib.error.HTTPError as e:
        if 300 <= e.code < 400:
            return "Playback error: decoder rejected the stream"
        LOG.warning("Stream probe failed: HTTP %d %s for %s", e.code, e.reason, url)
        return f"HttpDataSourceException: HTTP error {e.code}: {e.reason}"
    except urllib.error.URLError as e:
        reason = str(e.reason) if e.reason else "Unknown error"
        LOG.warning("Stream probe failed: %s for %s", reason, url)
        lowered = reason.lower()
        if "ssl" in lowered or "certificate" in lowered:
            return f"SSLHandshakeException: {reason}"
        if "timeout" in lowered or "timed out" in lowered:
            return f"SocketTimeoutException: {reason}"
        return f"IOException: {reason}"
    except OSError as e:
        LOG.debug("Stream probe exception: %s", e)
        return f"IOException: {e}"


class VlcRenderEngine(RenderEngine):
    """libVLC render engine.

    libVLC is polled every half second (state, time, length) and each poll is
    turned into a :class:`PlaybackStatus`. The first transition to playing is
    reported through ``on_load``; an error state is probed once and reported
    through ``on_error`` with the URL that failed.
    """

    def __init__(
        self,
        instance_opts: Optional[List[str]] = None,
        video_visible: bool = True,
        poll_interval: float = POLL_INTERVAL,
        timer_factory: TimerFactory = default_timer_factory,
    ) -> None:
        super().__init__()
        _prepare_vlc_runtime()
        opts = ["--quiet", "--intf=dummy", "--no-video-title-show"]
        if instance_opts is not None:
            opts = list(instance_opts)
        if not video_visible:
            opts.append("--no-video")
        self.instance, self.player = _open_vlc(opts)

        self.poll_interval = poll_interval
        self._poll_timer = timer_factory("vlc-poll")
        self._current_url: Optional[str] = None
        self._loaded = False
        self._finished = False
        self._error_reported = False
        self._manual_stop = False
        self._last_state_name: Optional[str] = None

    @property
    def current_url(self) -> Optional[str]:
        return self._current_url

    def open(self, url: str) -> None:
        if not url:
            raise InternalPlayerUnavailableError("No stream URL provided.")
        LOG.info("Opening URL: %s", url)
        self._current_url = url
        self._loaded = False
        self._finished = False
        self._error_reported = False
        self._manual_stop = False
        self._last_state_name = None
        media = self.instance.media_new(url)
        try:
            self.player.stop()
        except Exception as e:
            LOG.debug("Stopping previous media failed: %s", e)
        self.player.set_media(media)
        self.player.play()
        self._schedule_poll()

    def play(self) -> None:
        self._manual_stop = False
        self.player.play()

    def pause(self) -> None:
        self.player.set_pause(1)

    def seek(self, position_ms: int) -> None:
        self.player.set_time(int(position_ms))

    def set_rate(self, rate: float) -> None:
        self.player.set_rate(float(rate))

    def reload(self) -> None:
        if self._current_url:
            self.open(self._current_url)

    def stop(self) -> None:
        self._manual_stop = True
        self._poll_timer.cancel()
        try:
            self.player.stop()
        except Exception as e:
            LOG.debug("libVLC stop failed: %s", e)

    def release(self) -> None:
        self.stop()
        for obj in (self.player, self.instance):
            try:
                obj.release()
            except Exception as e:
                LOG.debug("libVLC release failed: %s", e)

    # ---------------------------------------------------------------- polling
    def _schedule_poll(self) -> None:
        try:
            self._poll_timer.start(self.poll_interval, self._on_timer)
        except RuntimeError:
            LOG.debug("No running event loop; status polling disabled")

    def _state_key(self) -> str:
        try:
            state = self.player.get_state()
        except Exception:
            return "unknown"
        if state is None:
            return "unknown"
        name = getattr(state, "name", None) or str(state).split(".")[-1]
        return str(name).lower()

    def _on_timer(self) -> None:
        if self._manual_stop:
            return
        self.poll()
        if not self._error_reported and not self._manual_stop:
            self._schedule_poll()

    def poll(self) -> Optional[PlaybackStatus]:
        """Read libVLC once and emit the resulting status."""
        url = self._current_url
        state_key = self._state_key()
        if self._last_state_name != state_key:
            LOG.debug("libVLC state %s -> %s", self._last_state_name, state_key)
            self._last_state_name = state_key

        if state_key == "error":
            if not self._error_reported:
                self._error_reported = True
                self._report_error(url)
            status = PlaybackStatus(is_loaded=False, error="libVLC error state", url=url)
            self._emit_status(status)
            return status

        if state_key == "stopped" and self._manual_stop:
            return None

        try:
            position = max(int(self.player.get_time()), 0)
        except Exception:
            position = 0
        try:
            length = int(self.player.get_length())
        except Exception:
            length = -1
        duration = length if length > 0 else None

        if state_key == "playing" and not self._loaded:
            self._loaded = True
            self._emit_load(url or "")

        just_finished = False
        if state_key == "ended" and not self._finished:
            self._finished = True
            just_finished = True
            if duration:
                position = duration

        status = PlaybackStatus(
            is_loaded=self._loaded or state_key in ("playing", "paused", "ended"),
            is_playing=state_key == "playing",
            is_buffering=state_key in ("buffering", "opening"),
            position_millis=position,
            duration_millis=duration,
            did_just_finish=just_finished,
            url=url,
        )
        self._emit_status(status)
        return status

    def _report_error(self, url: Optional[str]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._emit_error(describe_stream_failure(url or ""), url or "")
            return
        task = loop.create_task(asyncio.to_thread(describe_stream_failure, url or ""))

        def _done(fut: "asyncio.Future[str]") -> None:
            if fut.cancelled():
                return
            error = fut.exception()
            text = fut.result() if error is None else f"IOException: {error}"
            if url != self._current_url:
                LOG.debug("Dropping error for replaced URL %s", url)
                return
            self._emit_error(text, url or "")

        task.add_done_callback(_done)


__all__ = [
    "VlcRenderEngine",
    "InternalPlayerUnavailableError",
    "describe_stream_failure",
]
