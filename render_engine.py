from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class PlaybackStatus:
    """Snapshot reported by a render engine on every state or position change."""

    is_loaded: bool = False
    is_playing: bool = False
    is_buffering: bool = False
    position_millis: int = 0
    duration_millis: Optional[int] = None
    did_just_finish: bool = False
    error: Optional[str] = None
    url: Optional[str] = None

    @property
    def progress(self) -> float:
        if not self.duration_millis:
            return 0.0
        return self.position_millis / self.duration_millis


StatusCallback = Callable[[PlaybackStatus], None]
ErrorCallback = Callable[[str, str], None]


class RenderEngine:
    """Contract for the on-device decoder.

    Implementations accept a URL, report :class:`PlaybackStatus` through
    ``on_status`` and failures through ``on_error(error_text, url)``.
    """

    def __init__(self) -> None:
        self.on_status: Optional[StatusCallback] = None
        self.on_error: Optional[ErrorCallback] = None
        self.on_load: Optional[Callable[[str], None]] = None

    def open(self, url: str) -> None:
        raise NotImplementedError

    def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def seek(self, position_ms: int) -> None:
        raise NotImplementedError

    def set_rate(self, rate: float) -> None:
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    # Helpers for implementations
    def _emit_status(self, status: PlaybackStatus) -> None:
        if self.on_status is not None:
            self.on_status(status)

    def _emit_error(self, error: str, url: str) -> None:
        if self.on_error is not None:
            self.on_error(error, url)

    def _emit_load(self, url: str) -> None:
        if self.on_load is not None:
            self.on_load(url)
