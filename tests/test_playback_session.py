"""
Tests for the on-demand playback session: loading, candidate and source
fallback, episode progression, resume records and filtered-playlist injection.
"""
import asyncio
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import FakeRender, FakeTimerFactory
from options import ClientSettings
from playback_session import (
    ERROR_NETWORK,
    ERROR_OTHER,
    ERROR_SSL,
    PlaybackPhase,
    PlaybackSession,
    SessionState,
    classify_error,
)
from providers import DetailRegistry, ProviderError, SourceDetail
from render_engine import PlaybackStatus
from storage import JsonStateStore, PlayerSettingsStore, PlayRecordStore, StorageError

API = "https://api.example.com"
TITLE = "The Show"


def _source(key, count=3):
    return SourceDetail(
        source=key,
        id=f"{key}-id",
        title=TITLE,
        source_name=f"Source {key.upper()}",
        episodes=[f"https://{key}.example.com/ep{i + 1}/index.m3u8" for i in range(count)],
    )


def _playing(position, duration=100_000, **kwargs):
    return PlaybackStatus(is_loaded=True, is_playing=True, position_millis=position,
                          duration_millis=duration, **kwargs)


class Harness:
    def __init__(self, tmp_path, sources=None, ad_block=False, playlist_filter=None, client=None):
        self.sources = sources if sources is not None else [_source("a"), _source("b")]
        self.registry = DetailRegistry(client or Mock())
        self.registry.search_results = list(self.sources)
        self.registry.detail = self.sources[0] if self.sources else None
        store = JsonStateStore(str(tmp_path / "state.json"))
        self.records = PlayRecordStore(store)
        self.player_settings = PlayerSettingsStore(store)
        self.render = FakeRender()
        self.timers = FakeTimerFactory()
        self.notify = Mock()
        self.settings = ClientSettings(api_base_url=API, vod_ad_block_enabled=ad_block)
        self.session = PlaybackSession(
            self.registry,
            self.records,
            self.player_settings,
            self.settings,
            render=self.render,
            playlist_filter=playlist_filter,
            notifier=self.notify,
            timer_factory=self.timers,
        )

    def load(self, index=0, **kwargs):
        source = self.sources[0]
        return asyncio.run(self.session.load(source.source, source.id, TITLE, index, **kwargs))

    def fail_current(self, error="boom"):
        url = self.session.current_episode.url
        asyncio.run(self.session.handle_video_error(error, url))
        return url


class TestClassifyError:
    """Error buckets used for messaging."""

    def test_ssl(self):
        """Certificate problems are SSL errors."""
        assert classify_error("javax.net.ssl.SSLHandshakeException: x") == ERROR_SSL
        assert classify_error("Trust anchor for certification path not found") == ERROR_SSL
        assert classify_error("CertPathValidatorException") == ERROR_SSL

    def test_network(self):
        """Transport failures are network errors."""
        assert classify_error("HttpDataSourceException: 404") == ERROR_NETWORK
        assert classify_error("java.net.SocketTimeoutException") == ERROR_NETWORK
        assert classify_error("IOException: reset") == ERROR_NETWORK

    def test_other(self):
        """Everything else."""
        assert classify_error("decoder init failed") == ERROR_OTHER
        assert classify_error(None) == ERROR_OTHER


class TestLoad:
    """Resolving episodes and entering LOADING."""

    def test_load_uses_cached_detail(self, tmp_path):
        """A matching detail record is used without re-initializing."""
        h = Harness(tmp_path)
        assert h.load(index=1)
        state = h.session.state
        assert state.phase == PlaybackPhase.LOADING
        assert state.is_loading
        assert state.current_episode_index == 1
        assert len(state.episodes) == 3
        assert h.render.opened == [h.sources[0].episodes[1]]
        h.registry.client.search.assert_not_called()

    def test_load_merges_resume_record_and_settings(self, tmp_path):
        """Resume position, rate and markers come from storage."""
        h = Harness(tmp_path)
        a = h.sources[0]
        h.records.save(a.source, a.id, {"index": 1, "play_time": 42, "intro_end_time": 5000})
        h.player_settings.save(a.source, a.id, {"playback_rate": 1.25, "outro_start_time": 8000})
        h.load()
        state = h.session.state
        assert state.initial_position == 42_000
        assert state.playback_rate == 1.25
        assert state.intro_end_time == 5000
        assert state.outro_start_time == 8000
        assert h.render.rates == [1.25]

    def test_explicit_position_wins(self, tmp_path):
        """A caller-supplied position overrides the record."""
        h = Harness(tmp_path)
        a = h.sources[0]
        h.records.save(a.source, a.id, {"play_time": 42})
        h.load(position=7000)
        assert h.session.state.initial_position == 7000

    def test_index_clamped(self, tmp_path):
        """Out-of-range requests land on a valid episode."""
        h = Harness(tmp_path)
        h.load(index=99)
        assert h.session.state.current_episode_index == 2

    def test_init_falls_back_to_source_with_episodes(self, tmp_path):
        """When the chosen source has no episodes the first one that does is used."""
        client = Mock()
        empty = SourceDetail(source="a", id="a-id", title=TITLE, episodes=[])
        client.search.return_value = [empty, _source("b", count=2)]
        h = Harness(tmp_path, sources=[empty], client=client)
        h.registry.detail = None
        assert asyncio.run(h.session.load("a", "a-id", TITLE, 0))
        assert h.registry.detail.source == "b"
        assert h.session.state.source == "b"
        assert len(h.session.state.episodes) == 2

    def test_no_episodes_is_terminal(self, tmp_path):
        """Nothing resolvable means LOAD_FAILED and a user-facing error."""
        client = Mock()
        client.search.return_value = []
        client.detail.side_effect = ProviderError("HTTP error 500 from /api/detail")
        h = Harness(tmp_path, sources=[], client=client)
        assert not asyncio.run(h.session.load("a", "a-id", TITLE, 0))
        assert h.session.state.phase == PlaybackPhase.LOAD_FAILED
        assert h.notify.call_args[0][0] == "error"
        assert h.render.opened == []

    def test_storage_read_failure_uses_defaults(self, tmp_path):
        """A broken state file does not block loading."""
        h = Harness(tmp_path)
        h.session.play_records = Mock(get=Mock(side_effect=StorageError("bad json")))
        assert h.load()
        assert h.session.state.initial_position == 0

    def test_on_load_seeks_then_plays(self, tmp_path):
        """The resume position is applied before playback starts."""
        h = Harness(tmp_path)
        h.load(position=30_000)
        h.render._emit_load(h.session.current_episode.url)
        assert h.render.seeks == [30_000]
        assert h.render.plays == 1
        assert h.session.state.phase == PlaybackPhase.PLAYING

    def test_on_load_uses_intro_end_without_resume(self, tmp_path):
        """The intro marker is the start point when there is no resume position."""
        h = Harness(tmp_path)
        a = h.sources[0]
        h.records.save(a.source, a.id, {"intro_end_time": 9000})
        h.load()
        h.session.on_load()
        assert h.render.seeks == [9000]


class TestVideoErrors:
    """Two-level recovery: candidates first, then sources."""

    def test_stale_error_is_ignored(self, tmp_path):
        """An error for a URL that is not active changes nothing."""
        h = Harness(tmp_path)
        h.load()
        before = h.session.state
        asyncio.run(h.session.handle_video_error("boom", "https://old.example.com/x.m3u8"))
        assert h.session.state is before
        assert h.render.opened == [h.sources[0].episodes[0]]
        h.notify.assert_not_called()

    def test_error_advances_candidate(self, tmp_path):
        """The next candidate of the same episode is tried first."""
        h = Harness(tmp_path)
        h.load()
        failed = h.fail_current()
        episode = h.session.current_episode
        assert episode.current_candidate_index == 1
        assert episode.url != failed
        assert h.render.opened[-1] == episode.url
        assert h.session.state.phase == PlaybackPhase.LOADING
        h.notify.assert_called_with("info", "Switched to backup route", None)
        assert h.registry.failed_sources == {}

    def test_second_report_for_same_url_is_stale(self, tmp_path):
        """Duplicate error callbacks do not skip candidates."""
        h = Harness(tmp_path)
        h.load()
        failed = h.fail_current()
        asyncio.run(h.session.handle_video_error("boom", failed))
        assert h.session.current_episode.current_candidate_index == 1

    def test_exhaustion_switches_source(self, tmp_path):
        """After the last candidate the next source covering the episode is used."""
        h = Harness(tmp_path)
        h.load(index=1)
        phases = []
        h.session.subscribe(lambda s: phases.append(s.phase))
        for _ in range(3):
            last = h.fail_current("SocketTimeoutException")
        assert h.registry.failed_sources["a"] == f"network error: {last[:100]}..."
        assert h.registry.detail.source == "b"
        state = h.session.state
        assert state.source == "b"
        assert state.current_episode_index == 1
        assert h.session.current_episode.raw_url == h.sources[1].episodes[1]
        assert h.render.opened[-1] == h.sources[1].episodes[1]
        assert PlaybackPhase.SOURCE_FAILED in phases
        assert phases[-1] == PlaybackPhase.LOADING
        h.notify.assert_called_with("success", "Switched source", "Now using Source B")

    def test_source_too_short_is_skipped(self, tmp_path):
        """Sources without the current episode index are not candidates."""
        h = Harness(tmp_path, sources=[_source("a", 3), _source("b", 1), _source("c", 3)])
        h.load(index=2)
        for _ in range(3):
            h.fail_current()
        assert h.registry.detail.source == "c"

    def test_all_sources_exhausted(self, tmp_path):
        """No usable source left is terminal and reported."""
        h = Harness(tmp_path, sources=[_source("a")])
        h.load()
        for _ in range(3):
            h.fail_current()
        state = h.session.state
        assert state.phase == PlaybackPhase.PLAYBACK_FAILED
        assert state.error_message
        h.notify.assert_called_with("error", "Playback failed", state.error_message)

    def test_errors_after_terminal_failure_are_ignored(self, tmp_path):
        """Once playback has failed, further errors neither retry nor notify."""
        h = Harness(tmp_path, sources=[_source("a")])
        h.load()
        for _ in range(3):
            h.fail_current()
        assert h.session.state.phase == PlaybackPhase.PLAYBACK_FAILED
        notified = h.notify.call_count
        h.registry.mark_source_failed = Mock()
        h.registry.next_available_source = Mock()
        h.fail_current()
        assert h.notify.call_count == notified
        h.registry.mark_source_failed.assert_not_called()
        h.registry.next_available_source.assert_not_called()
        assert h.session.state.phase == PlaybackPhase.PLAYBACK_FAILED

    def test_render_error_callback_runs_recovery(self, tmp_path):
        """Errors reported by the render engine go through the same path."""
        h = Harness(tmp_path)
        h.load()

        async def scenario():
            h.render._emit_error("boom", h.session.current_episode.url)
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert h.session.current_episode.current_candidate_index == 1


class TestEpisodeProgression:
    """Natural end, outro markers and the next-episode overlay."""

    def test_natural_end_advances_and_resets_progress(self, tmp_path):
        """did_just_finish with a next episode loads it from the start."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(50_000))
        h.session.handle_status(_playing(100_000, did_just_finish=True))
        state = h.session.state
        assert state.current_episode_index == 1
        assert state.progress_position == 0.0
        assert state.initial_position == 0
        assert state.show_next_episode_overlay is False
        assert h.render.opened[-1] == h.sources[0].episodes[1]

    def test_natural_end_of_last_episode_stays(self, tmp_path):
        """Nothing to advance to on the last episode."""
        h = Harness(tmp_path)
        h.load(index=2)
        h.session.handle_status(_playing(100_000, did_just_finish=True))
        assert h.session.state.current_episode_index == 2
        assert len(h.render.opened) == 1

    def test_outro_advances_exactly_once(self, tmp_path):
        """Repeated tail events after an outro advance are suppressed."""
        h = Harness(tmp_path)
        a = h.sources[0]
        h.records.save(a.source, a.id, {"outro_start_time": 10_000})
        h.load()
        h.session.handle_status(_playing(91_000))
        assert h.session.state.current_episode_index == 1
        opened = len(h.render.opened)
        h.session.handle_status(_playing(92_000))
        h.session.handle_status(_playing(95_000))
        assert h.session.state.current_episode_index == 1
        assert len(h.render.opened) == opened

    def test_outro_guard_clears_on_fresh_position(self, tmp_path):
        """Once the new episode reports a normal position, its own outro works."""
        h = Harness(tmp_path)
        a = h.sources[0]
        h.records.save(a.source, a.id, {"outro_start_time": 10_000})
        h.load()
        h.session.handle_status(_playing(91_000))
        h.session.handle_status(_playing(1_000))
        h.session.handle_status(_playing(95_000))
        assert h.session.state.current_episode_index == 2

    def test_next_episode_overlay(self, tmp_path):
        """95% progress without an outro marker shows the overlay."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(94_000))
        assert not h.session.state.show_next_episode_overlay
        h.session.handle_status(_playing(95_000))
        assert h.session.state.show_next_episode_overlay

    def test_no_overlay_on_last_episode(self, tmp_path):
        """There is nothing to offer on the final episode."""
        h = Harness(tmp_path)
        h.load(index=2)
        h.session.handle_status(_playing(99_000))
        assert not h.session.state.show_next_episode_overlay

    def test_status_phases(self, tmp_path):
        """Playing and buffering events drive the phase."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(1_000))
        assert h.session.state.phase == PlaybackPhase.PLAYING
        h.session.handle_status(PlaybackStatus(is_loaded=True, is_buffering=True,
                                               position_millis=1_000, duration_millis=100_000))
        assert h.session.state.phase == PlaybackPhase.BUFFERING
        assert h.session.state.progress_position == pytest.approx(0.01)

    def test_unloaded_error_status_stored(self, tmp_path):
        """Not-loaded events are kept for observers without advancing anything."""
        h = Harness(tmp_path)
        h.load()
        status = PlaybackStatus(is_loaded=False, error="decoder")
        h.session.handle_status(status)
        assert h.session.state.status is status
        assert h.session.state.current_episode_index == 0

    def test_play_episode_out_of_range(self, tmp_path):
        """Invalid indexes are ignored."""
        h = Harness(tmp_path)
        h.load()
        h.session.play_episode(7)
        assert h.session.state.current_episode_index == 0


class TestPersistence:
    """Resume records, markers and playback rate."""

    def test_save_is_throttled(self, tmp_path):
        """One save per throttle window."""
        h = Harness(tmp_path)
        h.load()
        a = h.sources[0]
        h.session.handle_status(_playing(12_000))
        record = h.records.get(a.source, a.id)
        assert record["play_time"] == 12
        assert record["index"] == 1
        assert record["total_episodes"] == 3
        assert h.timers.timers["record-save"].delay == 10.0
        h.session.handle_status(_playing(15_000))
        assert h.records.get(a.source, a.id)["play_time"] == 12
        h.timers.timers["record-save"].fire()
        h.session.handle_status(_playing(20_000))
        assert h.records.get(a.source, a.id)["play_time"] == 20

    def test_save_failure_does_not_interrupt(self, tmp_path):
        """Storage write errors are logged only."""
        h = Harness(tmp_path)
        h.load()
        h.session.play_records = Mock(save=Mock(side_effect=StorageError("disk full")))
        h.session.handle_status(_playing(12_000))
        assert h.session.state.phase == PlaybackPhase.PLAYING

    def test_intro_marker_toggle(self, tmp_path):
        """Setting stores the position immediately; setting again clears it."""
        h = Harness(tmp_path)
        h.load()
        a = h.sources[0]
        h.session.handle_status(_playing(30_000))
        h.timers.timers["record-save"].cancel()
        h.session.set_intro_end_time()
        assert h.session.state.intro_end_time == 30_000
        assert h.records.get(a.source, a.id)["intro_end_time"] == 30_000
        h.session.set_intro_end_time()
        assert h.session.state.intro_end_time is None
        assert "intro_end_time" not in h.records.get(a.source, a.id)

    def test_outro_marker_is_time_from_end(self, tmp_path):
        """The outro marker stores duration minus position."""
        h = Harness(tmp_path)
        h.load()
        a = h.sources[0]
        h.session.handle_status(_playing(90_000))
        h.session.set_outro_start_time()
        assert h.session.state.outro_start_time == 10_000
        assert h.records.get(a.source, a.id)["outro_start_time"] == 10_000

    def test_markers_need_loaded_status(self, tmp_path):
        """Without a loaded status nothing is recorded."""
        h = Harness(tmp_path)
        h.load()
        h.session.set_intro_end_time()
        assert h.session.state.intro_end_time is None

    def test_playback_rate_persisted(self, tmp_path):
        """Rate changes reach the engine and player settings."""
        h = Harness(tmp_path)
        h.load()
        h.session.set_playback_rate(1.5)
        a = h.sources[0]
        assert h.render.rates[-1] == 1.5
        assert h.session.state.playback_rate == 1.5
        assert h.player_settings.get(a.source, a.id) == {"playback_rate": 1.5}


class TestControls:
    """Seek and pause."""

    def test_seek_clamps_and_clears_overlay(self, tmp_path):
        """Seeks stay inside the media and the overlay clears on its timer."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(5_000))
        h.session.seek(-10_000)
        h.session.seek(500_000)
        assert h.render.seeks == [0, 100_000]
        assert h.session.state.is_seeking
        assert h.session.state.seek_position == 1.0
        h.timers.timers["seek-overlay"].fire()
        assert not h.session.state.is_seeking

    def test_toggle_play_pause(self, tmp_path):
        """Playing pauses, paused plays."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(5_000))
        h.session.toggle_play_pause()
        assert h.render.pauses == 1
        h.session.handle_status(PlaybackStatus(is_loaded=True, position_millis=5_000, duration_millis=100_000))
        h.session.toggle_play_pause()
        assert h.render.plays == 1

    def test_refresh_episode_urls(self, tmp_path):
        """Changing the ad-block preference reorders candidates in place."""
        h = Harness(tmp_path)
        h.load(index=1)
        assert h.session.current_episode.url == h.sources[0].episodes[1]
        h.settings.vod_ad_block_enabled = True
        h.session.refresh_episode_urls()
        episode = h.session.current_episode
        assert h.session.state.current_episode_index == 1
        assert episode.url_candidates[-1] == h.sources[0].episodes[1]
        assert h.render.opened[-1] == episode.url


class TestFilteredInjection:
    """Background filtered-playlist injection."""

    def test_filtered_playlist_injected(self, tmp_path):
        """A produced local file becomes the active candidate."""
        engine = Mock()
        engine.create_discontinuity_filtered_playlist = AsyncMock(return_value="/cache/ep1.m3u8")
        h = Harness(tmp_path, ad_block=True, playlist_filter=engine)
        source = h.sources[0]

        async def scenario():
            await h.session.load(source.source, source.id, TITLE, 0)
            for _ in range(5):
                await asyncio.sleep(0)

        asyncio.run(scenario())
        episode = h.session.current_episode
        assert episode.url == "/cache/ep1.m3u8"
        assert episode.url_candidates[0] == "/cache/ep1.m3u8"
        assert episode.current_candidate_index == 0
        assert h.render.opened[-1] == "/cache/ep1.m3u8"
        assert engine.create_discontinuity_filtered_playlist.await_args[0][0] == source.episodes[0]

    def test_superseded_job_discarded(self, tmp_path):
        """Switching episodes before the job runs drops its result."""
        engine = Mock()

        async def produce(url, is_superseded=None):
            await asyncio.sleep(0)
            return "/cache/" + url.split("/")[3] + ".m3u8"

        engine.create_discontinuity_filtered_playlist = AsyncMock(side_effect=produce)
        h = Harness(tmp_path, ad_block=True, playlist_filter=engine)
        source = h.sources[0]

        async def scenario():
            await h.session.load(source.source, source.id, TITLE, 0)
            h.session.play_episode(1)
            for _ in range(10):
                await asyncio.sleep(0)

        asyncio.run(scenario())
        episodes = h.session.state.episodes
        assert episodes[1].url == "/cache/ep2.m3u8"
        assert not episodes[0].url.startswith("/cache/")
        assert engine.create_discontinuity_filtered_playlist.await_count == 1

    def test_no_filter_job_without_ad_block(self, tmp_path):
        """Ad-block off means no background work."""
        engine = Mock()
        engine.create_discontinuity_filtered_playlist = AsyncMock(return_value="/cache/x.m3u8")
        h = Harness(tmp_path, ad_block=False, playlist_filter=engine)
        source = h.sources[0]

        async def scenario():
            await h.session.load(source.source, source.id, TITLE, 0)
            await asyncio.sleep(0)

        asyncio.run(scenario())
        engine.create_discontinuity_filtered_playlist.assert_not_awaited()


class TestSubscriptionAndReset:
    """Observer registration and teardown."""

    def test_subscribe_and_unsubscribe(self, tmp_path):
        """Listeners receive snapshots until they unsubscribe."""
        h = Harness(tmp_path)
        seen = []
        unsubscribe = h.session.subscribe(seen.append)
        h.load()
        assert seen and all(isinstance(s, SessionState) for s in seen)
        count = len(seen)
        unsubscribe()
        h.session.play_episode(1)
        assert len(seen) == count

    def test_reset_is_idempotent(self, tmp_path):
        """Reset clears state and timers from any phase."""
        h = Harness(tmp_path)
        h.load()
        h.session.handle_status(_playing(5_000))
        h.session.seek(1_000)
        h.session.reset()
        h.session.reset()
        state = h.session.state
        assert state.phase == PlaybackPhase.IDLE
        assert state.episodes == ()
        assert state.current_episode is None
        assert state.playback_rate == 1.0
        assert not h.timers.timers["record-save"].armed
        assert not h.timers.timers["seek-overlay"].armed
