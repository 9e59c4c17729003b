"""Playback session for on-demand titles.

The session owns the episode list of one title, the active URL candidate of the
current episode and every transition between them. Render-engine events come
in through :meth:`PlaybackSession.handle_status` and
:meth:`PlaybackSession.handle_video_error`; recovery is strictly two-level:
first the next URL candidate of the same episode, then the next catalog source
that still covers the episode. Screens read state through :meth:`subscribe`.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from candidates import Episode, advance_candidate, map_episodes_for_playback, prepend_candidate
from hls_filter import PlaylistFilter, is_http_url, is_m3u8_url
from options import ClientSettings
from providers import DetailRegistry, SourceDetail
from render_engine import PlaybackStatus, RenderEngine
from storage import PlayerSettingsStore, PlayRecordStore, StorageError
from timers import TimerFactory, default_timer_factory

LOG = logging.getLogger(__name__)

NEAR_END_FRACTION = 0.95
SEEK_OVERLAY_SECONDS = 1.0


class PlaybackPhase(Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    BUFFERING = "buffering"
    CANDIDATE_FAILED = "candidate_failed"
    SOURCE_FAILED = "source_failed"
    EPISODE_ADVANCE = "episode_advance"
    LOAD_FAILED = "load_failed"
    PLAYBACK_FAILED = "playback_failed"


TERMINAL_PHASES = frozenset({PlaybackPhase.LOAD_FAILED, PlaybackPhase.PLAYBACK_FAILED})

ERROR_SSL = "ssl"
ERROR_NETWORK = "network"
ERROR_OTHER = "other"

_SSL_MARKERS = (
    "sslhandshakeexception",
    "certpathvalidatorexception",
    "trust anchor for certification path not found",
    "certificate_verify_failed",
    "certificate",
    "ssl",
    "tls",
)
_NETWORK_MARKERS = (
    "httpdatasourceexception",
    "ioexception",
    "sockettimeoutexception",
    "timed out",
    "timeout",
    "connection refused",
    "connection reset",
    "network",
    "unreachable",
)

_ERROR_TOASTS = {
    ERROR_SSL: "SSL certificate error, switching route",
    ERROR_NETWORK: "Network connection failed, switching route",
    ERROR_OTHER: "Video playback failed, switching route",
}


def classify_error(error) -> str:
    """Bucket a render error for user messaging; recovery is the same for all buckets."""
    text = str(error or "").lower()
    if any(marker in text for marker in _SSL_MARKERS):
        return ERROR_SSL
    if any(marker in text for marker in _NETWORK_MARKERS):
        return ERROR_NETWORK
    return ERROR_OTHER


Notifier = Callable[[str, str, Optional[str]], None]
Listener = Callable[["SessionState"], None]


def log_notifier(level: str, text: str, detail: Optional[str] = None) -> None:
    message = f"{text} ({detail})" if detail else text
    if level == "error":
        LOG.error("[toast] %s", message)
    else:
        LOG.info("[toast] %s", message)


@dataclass(frozen=True)
class SessionState:
    phase: PlaybackPhase = PlaybackPhase.IDLE
    episodes: Tuple[Episode, ...] = ()
    current_episode_index: int = -1
    status: Optional[PlaybackStatus] = None
    show_next_episode_overlay: bool = False
    is_seeking: bool = False
    seek_position: float = 0.0
    progress_position: float = 0.0
    initial_position: int = 0
    playback_rate: float = 1.0
    intro_end_time: Optional[int] = None
    outro_start_time: Optional[int] = None
    source: Optional[str] = None
    item_id: Optional[str] = None
    title: str = ""
    error_message: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.phase == PlaybackPhase.LOADING

    @property
    def current_episode(self) -> Optional[Episode]:
        if 0 <= self.current_episode_index < len(self.episodes):
            episode = self.episodes[self.current_episode_index]
            if episode.url and episode.url.strip():
                return episode
        return None

    @property
    def has_next_episode(self) -> bool:
        return 0 <= self.current_episode_index < len(self.episodes) - 1


class _FilterJob:
    def __init__(self, episode_index: int, raw_url: str):
        self.episode_index = episode_index
        self.raw_url = raw_url
        self.superseded = False


class PlaybackSession:
    def __init__(
        self,
        registry: DetailRegistry,
        play_records: PlayRecordStore,
        player_settings: PlayerSettingsStore,
        settings: ClientSettings,
        render: Optional[RenderEngine] = None,
        playlist_filter: Optional[PlaylistFilter] = None,
        notifier: Optional[Notifier] = None,
        timer_factory: TimerFactory = default_timer_factory,
    ) -> None:
        self.registry = registry
        self.play_records = play_records
        self.player_settings = player_settings
        self.settings = settings
        self.render = render
        self.playlist_filter = playlist_filter
        self.notify: Notifier = notifier or log_notifier
        self._state = SessionState()
        self._listeners: List[Listener] = []
        self._save_throttle = timer_factory("record-save")
        self._seek_timer = timer_factory("seek-overlay")
        self._filter_job: Optional[_FilterJob] = None
        self._filter_identity: Optional[Tuple[int, str]] = None
        self._opened_url: Optional[str] = None
        self._suppress_tail = False
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        if render is not None:
            render.on_status = self.handle_status
            render.on_error = self._on_render_error
            render.on_load = lambda _url: self.on_load()

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_episode(self) -> Optional[Episode]:
        return self._state.current_episode

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                LOG.exception("Session listener failed")

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            LOG.debug("No running loop; background task skipped")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _map_episodes(self, episode_urls: Sequence[str], source_key: str) -> Tuple[Episode, ...]:
        return map_episodes_for_playback(
            episode_urls,
            self.settings.api_base_url,
            source_key,
            self.settings.vod_ad_block_enabled,
            self.settings.proxy_token or None,
        )

    # ------------------------------------------------------------------ load
    async def load(
        self,
        source: str,
        item_id: str,
        title: str,
        episode_index: int,
        position: Optional[int] = None,
    ) -> bool:
        """Resolve episodes for a title and start loading ``episode_index``."""
        self._generation += 1
        generation = self._generation
        self._cancel_filter_job()
        self._opened_url = None
        registry = self.registry

        detail = registry.detail
        if detail is not None and detail.source:
            episodes = registry.episodes_for(detail.source)
        else:
            episodes = registry.episodes_for(source)

        self._set(phase=PlaybackPhase.LOADING, error_message=None, title=title)

        needs_init = detail is None or not episodes or detail.title != title
        if needs_init:
            LOG.info("Initializing detail for %r (source=%s, id=%s)", title, source, item_id)
            await registry.init(title, source, item_id)
            if generation != self._generation:
                return False
            detail = registry.detail
            if detail is None:
                self._fail_load(registry.error or f"No detail found for {title}")
                return False
            episodes = registry.episodes_for(detail.source)
            if not episodes:
                alternative = registry.first_source_with_episodes()
                if alternative is None:
                    self._fail_load(f"No source with episodes for {title}")
                    return False
                LOG.info("Using alternative source %s with %d episodes",
                         alternative.source, len(alternative.episodes))
                await registry.set_detail(alternative)
                if generation != self._generation:
                    return False
                detail = alternative
                episodes = list(alternative.episodes)
        elif detail.source != source:
            LOG.info("Cached detail source %s differs from requested %s", detail.source, source)
            episodes = registry.episodes_for(detail.source) or registry.episodes_for(source)

        if not episodes:
            self._fail_load(f"No episodes available for source {detail.source}")
            return False

        record = self._read_store(self.play_records, detail)
        player_settings = self._read_store(self.player_settings, detail)
        initial_from_record = int((record.get("play_time") or 0) * 1000)
        rate = float(player_settings.get("playback_rate") or 1.0)

        mapped = self._map_episodes(episodes, detail.source)
        index = max(0, min(int(episode_index), len(mapped) - 1))
        self._suppress_tail = False
        self._save_throttle.cancel()
        self._set(
            phase=PlaybackPhase.LOADING,
            episodes=mapped,
            current_episode_index=index,
            status=None,
            progress_position=0.0,
            show_next_episode_overlay=False,
            initial_position=position or initial_from_record,
            playback_rate=rate,
            intro_end_time=record.get("intro_end_time") or player_settings.get("intro_end_time"),
            outro_start_time=record.get("outro_start_time") or player_settings.get("outro_start_time"),
            source=detail.source,
            item_id=detail.id,
        )
        LOG.info("Loaded %d episodes from %s, starting episode %d", len(mapped), detail.source, index + 1)
        self._activate_current()
        if self.render is not None and rate != 1.0:
            self._render_call("set_rate", rate)
        return True

    def _read_store(self, store, detail: SourceDetail) -> Dict:
        try:
            return store.get(detail.source, detail.id) or {}
        except StorageError as e:
            LOG.warning("Failed to read stored playback state: %s", e)
            return {}

    def _fail_load(self, message: str) -> None:
        LOG.error("Load failed: %s", message)
        self._set(phase=PlaybackPhase.LOAD_FAILED, error_message=message)
        self.notify("error", "Failed to load video", message)

    # ------------------------------------------------------------------ render wiring
    def _render_call(self, method: str, *args) -> bool:
        if self.render is None:
            return False
        try:
            getattr(self.render, method)(*args)
            return True
        except Exception as e:
            LOG.error("Render engine %s failed: %s", method, e)
            return False

    def _activate_current(self) -> None:
        episode = self.current_episode
        if episode is None:
            return
        if self.render is not None and episode.url != self._opened_url:
            self._opened_url = episode.url
            self._render_call("open", episode.url)
        identity = (self._state.current_episode_index, episode.raw_url)
        if identity != self._filter_identity:
            self._filter_identity = identity
            self._start_filter_job(episode)

    def on_load(self) -> None:
        """Render engine finished opening the active URL."""
        state = self._state
        jump = state.initial_position or state.intro_end_time or 0
        if jump > 0:
            LOG.debug("Seeking to initial position %dms", jump)
            self._render_call("seek", int(jump))
        if self._render_call("play") and state.phase == PlaybackPhase.LOADING:
            self._set(phase=PlaybackPhase.PLAYING)

    def _on_render_error(self, error: str, url: str) -> None:
        self._spawn(self.handle_video_error(error, url))

    # ------------------------------------------------------------------ status
    def handle_status(self, status: PlaybackStatus) -> None:
        state = self._state
        if not status.is_loaded:
            if status.error:
                LOG.debug("Playback error: %s", status.error)
            self._set(status=status)
            return

        index = state.current_episode_index
        has_next = state.has_next_episode
        duration = status.duration_millis
        outro = state.outro_start_time
        in_tail = bool(outro and duration and status.position_millis >= duration - outro)

        if self._suppress_tail:
            if in_tail:
                return
            self._suppress_tail = False

        if in_tail and has_next:
            LOG.info("Outro reached on episode %d, advancing", index + 1)
            self._advance_episode(index + 1)
            self._suppress_tail = True
            return

        if self.registry.detail is not None and duration:
            self._save_play_record(status=status)
            near_end = status.position_millis / duration >= NEAR_END_FRACTION
            show_overlay = near_end and has_next and not outro
            if show_overlay != state.show_next_episode_overlay:
                self._set(show_next_episode_overlay=show_overlay)

        if status.did_just_finish and has_next:
            self._advance_episode(index + 1)
            return

        phase = self._state.phase
        if phase not in TERMINAL_PHASES:
            if status.is_playing:
                phase = PlaybackPhase.PLAYING
            elif status.is_buffering:
                phase = PlaybackPhase.BUFFERING
        progress = status.position_millis / duration if duration else 0.0
        self._set(status=status, progress_position=progress, phase=phase)

    def _advance_episode(self, index: int) -> None:
        self._set(phase=PlaybackPhase.EPISODE_ADVANCE)
        self.play_episode(index)

    def play_episode(self, index: int) -> None:
        episodes = self._state.episodes
        if not 0 <= index < len(episodes):
            return
        self._suppress_tail = False
        self._set(
            phase=PlaybackPhase.LOADING,
            current_episode_index=index,
            show_next_episode_overlay=False,
            initial_position=0,
            progress_position=0.0,
            seek_position=0.0,
            status=None,
        )
        self._activate_current()

    # ------------------------------------------------------------------ persistence
    def _save_play_record(self, updates: Optional[Dict] = None, immediate: bool = False,
                          status: Optional[PlaybackStatus] = None) -> None:
        if not immediate:
            if self._save_throttle.armed:
                return
            self._save_throttle.start(self.settings.record_save_interval, lambda: None)

        detail = self.registry.detail
        state = self._state
        status = status or state.status
        if detail is None or status is None or not status.is_loaded:
            return
        record = {
            "title": detail.title,
            "cover": detail.poster or "",
            "index": state.current_episode_index + 1,
            "total_episodes": len(state.episodes),
            "play_time": int(status.position_millis // 1000),
            "total_time": int(status.duration_millis // 1000) if status.duration_millis else 0,
            "source_name": detail.source_name,
            "year": detail.year or "",
            "intro_end_time": state.intro_end_time,
            "outro_start_time": state.outro_start_time,
        }
        record.update(updates or {})
        try:
            self.play_records.save(detail.source, detail.id, record)
        except StorageError as e:
            LOG.warning("Failed to save play record: %s", e)

    def set_intro_end_time(self) -> None:
        state = self._state
        status = state.status
        if status is None or not status.is_loaded or self.registry.detail is None:
            return
        if state.intro_end_time:
            self._set(intro_end_time=None)
            self._save_play_record({"intro_end_time": None}, immediate=True)
            self.notify("info", "Intro end time cleared", None)
        else:
            value = int(status.position_millis)
            self._set(intro_end_time=value)
            self._save_play_record({"intro_end_time": value}, immediate=True)
            self.notify("success", "Saved", "Intro end time recorded")

    def set_outro_start_time(self) -> None:
        state = self._state
        status = state.status
        if status is None or not status.is_loaded or self.registry.detail is None:
            return
        if state.outro_start_time:
            self._set(outro_start_time=None)
            self._save_play_record({"outro_start_time": None}, immediate=True)
            self.notify("info", "Outro start time cleared", None)
        else:
            if not status.duration_millis:
                return
            value = int(status.duration_millis - status.position_millis)
            self._set(outro_start_time=value)
            self._save_play_record({"outro_start_time": value}, immediate=True)
            self.notify("success", "Saved", "Outro start time recorded")

    def set_playback_rate(self, rate: float) -> None:
        if not self._render_call("set_rate", rate) and self.render is not None:
            return
        self._set(playback_rate=rate)
        detail = self.registry.detail
        if detail is None:
            return
        try:
            self.player_settings.save(detail.source, detail.id, {"playback_rate": rate})
        except StorageError as e:
            LOG.warning("Failed to save playback rate: %s", e)

    # ------------------------------------------------------------------ controls
    def toggle_play_pause(self) -> None:
        status = self._state.status
        if status is None or not status.is_loaded:
            return
        if status.is_playing:
            ok = self._render_call("pause")
        else:
            ok = self._render_call("play")
        if not ok and self.render is not None:
            self.notify("error", "Operation failed", None)

    def seek(self, delta_ms: int) -> None:
        status = self._state.status
        if status is None or not status.is_loaded or not status.duration_millis:
            return
        new_position = max(0, min(status.position_millis + delta_ms, status.duration_millis))
        if not self._render_call("seek", new_position) and self.render is not None:
            self.notify("error", "Seek failed", None)
        self._set(is_seeking=True, seek_position=new_position / status.duration_millis)
        self._seek_timer.start(SEEK_OVERLAY_SECONDS, lambda: self._set(is_seeking=False))

    def refresh_episode_urls(self) -> None:
        """Recompute candidates, e.g. after the ad-block preference changed."""
        detail = self.registry.detail
        if detail is None:
            return
        source_episodes = self.registry.episodes_for(detail.source)
        if not source_episodes:
            return
        mapped = self._map_episodes(source_episodes, detail.source)
        safe_index = max(0, min(self._state.current_episode_index, len(mapped) - 1))
        self._filter_identity = None
        self._set(episodes=mapped, current_episode_index=safe_index)
        self._activate_current()

    # ------------------------------------------------------------------ candidates
    def _replace_current(self, episode: Episode) -> None:
        episodes = list(self._state.episodes)
        episodes[self._state.current_episode_index] = episode
        self._set(episodes=tuple(episodes))

    def inject_candidate(self, candidate_url: str, original_url: Optional[str] = None) -> bool:
        updated = prepend_candidate(self.current_episode, candidate_url, original_url)
        if updated is None:
            return False
        self._replace_current(updated)
        if self._state.phase not in TERMINAL_PHASES:
            self._set(phase=PlaybackPhase.LOADING)
        LOG.info("Injected local filtered playlist for episode %d", self._state.current_episode_index + 1)
        self._activate_current()
        return True

    def try_fallback_url(self, failed_url: str) -> bool:
        current = self.current_episode
        updated = advance_candidate(current, failed_url)
        if updated is None:
            return False
        self._replace_current(updated)
        self._set(phase=PlaybackPhase.LOADING)
        LOG.warning("Switching episode %d url candidate %d/%d",
                    self._state.current_episode_index + 1,
                    updated.current_candidate_index + 1,
                    len(updated.url_candidates))
        self._activate_current()
        return True

    # ------------------------------------------------------------------ errors
    async def handle_video_error(self, error, failed_url: str) -> None:
        if self._state.phase in TERMINAL_PHASES:
            LOG.debug("Ignoring video error after terminal failure: %s", failed_url)
            return
        current = self.current_episode
        if current is None or not failed_url or current.url != failed_url:
            LOG.warning("Ignore stale error callback for old URL: %s", failed_url)
            return
        self._set(phase=PlaybackPhase.CANDIDATE_FAILED)
        if self.try_fallback_url(failed_url):
            self.notify("info", "Switched to backup route", None)
            return

        kind = classify_error(error)
        LOG.error("Video playback error (%s) for URL %s: %s", kind, failed_url, error)
        self.notify("error", _ERROR_TOASTS[kind], "Please wait")
        try:
            await self._fallback_to_next_source(kind, failed_url)
        except Exception:
            LOG.exception("Failed to switch to fallback source")
            self._set(phase=PlaybackPhase.PLAYBACK_FAILED, error_message="Failed to switch source")

    async def _fallback_to_next_source(self, kind: str, failed_url: str) -> None:
        generation = self._generation
        detail = self.registry.detail
        index = self._state.current_episode_index
        if detail is None:
            LOG.error("Cannot fall back: no detail available")
            self._set(phase=PlaybackPhase.PLAYBACK_FAILED, error_message="No detail available")
            return

        reason = f"{kind} error: {failed_url[:100]}..."
        self.registry.mark_source_failed(detail.source, reason)
        self._set(phase=PlaybackPhase.SOURCE_FAILED)

        fallback = self.registry.next_available_source(detail.source, index)
        if fallback is None:
            message = "All sources are unavailable, please try again later"
            LOG.error("No fallback sources available for episode %d", index + 1)
            self.notify("error", "Playback failed", message)
            self._set(phase=PlaybackPhase.PLAYBACK_FAILED, error_message=message)
            return

        LOG.info("Switching to fallback source %s (%s)", fallback.source, fallback.source_name)
        await self.registry.set_detail(fallback)
        if generation != self._generation:
            return
        if len(fallback.episodes) <= index:
            message = f"Fallback source has no episode {index + 1}"
            LOG.error(message)
            self._set(phase=PlaybackPhase.PLAYBACK_FAILED, error_message=message)
            return

        mapped = self._map_episodes(fallback.episodes, fallback.source)
        self._filter_identity = None
        self._set(
            phase=PlaybackPhase.LOADING,
            episodes=mapped,
            source=fallback.source,
            item_id=fallback.id,
            error_message=None,
        )
        self.notify("success", "Switched source", f"Now using {fallback.source_name or fallback.source}")
        self._activate_current()

    # ------------------------------------------------------------------ ad filtering
    def _cancel_filter_job(self) -> None:
        if self._filter_job is not None:
            self._filter_job.superseded = True
        self._filter_job = None
        self._filter_identity = None

    def _start_filter_job(self, episode: Episode) -> None:
        if self._filter_job is not None:
            self._filter_job.superseded = True
            self._filter_job = None
        if self.playlist_filter is None or not self.settings.vod_ad_block_enabled:
            return
        targets = [u for u in dict.fromkeys([episode.raw_url, episode.url]) if u]
        targets = [u for u in targets if is_http_url(u) and is_m3u8_url(u)]
        if not targets:
            return
        job = _FilterJob(self._state.current_episode_index, episode.raw_url)
        self._filter_job = job
        self._spawn(self._run_filter_job(job, targets))

    async def _run_filter_job(self, job: _FilterJob, targets: List[str]) -> None:
        for target in targets:
            if job.superseded:
                return
            try:
                path = await self.playlist_filter.create_discontinuity_filtered_playlist(
                    target, is_superseded=lambda: job.superseded
                )
            except Exception as e:
                LOG.warning("Failed to prepare local filtered playlist for %s: %s", target, e)
                return
            if not path or job.superseded:
                continue
            if self._state.current_episode_index != job.episode_index:
                return
            if self.inject_candidate(path, job.raw_url):
                LOG.info("Switched to local filtered playlist: %s", path)
                return

    # ------------------------------------------------------------------ teardown
    def reset(self) -> None:
        self._generation += 1
        self._cancel_filter_job()
        self._save_throttle.cancel()
        self._seek_timer.cancel()
        self._opened_url = None
        self._suppress_tail = False
        self._set(**{f: getattr(SessionState(), f) for f in SessionState.__dataclass_fields__})
