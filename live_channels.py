"""Live TV navigation: sources, cached channel lists, groups and channel stepping."""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from candidates import get_ad_filtered_vod_url
from live_player import LiveFallbackController
from options import ClientSettings
from providers import LiveChannel, LiveSource, ProviderError
from storage import FavoritesStore, StorageError, favorite_key
from timers import TimerFactory, default_timer_factory

LOG = logging.getLogger(__name__)

TITLE_DISPLAY_SECONDS = 3.0
DEFAULT_GROUP = "Other"


def group_channels(channels: List[LiveChannel]) -> Dict[str, List[LiveChannel]]:
    """Group channels preserving first-seen group order."""
    groups: Dict[str, List[LiveChannel]] = {}
    for channel in channels:
        groups.setdefault(channel.group or DEFAULT_GROUP, []).append(channel)
    return groups


def live_stream_urls(
    url: Optional[str],
    settings: ClientSettings,
    source_key: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """``(stream_url, fallback_url)``: proxy route first with the direct URL as fallback."""
    if not url:
        return None, None
    if not settings.live_ad_block_enabled:
        return url, None
    proxied = get_ad_filtered_vod_url(
        url, settings.api_base_url, source_key, settings.proxy_token or None
    )
    if not proxied or proxied == url:
        return url, None
    return proxied, url


class ChannelNavigator:
    def __init__(
        self,
        catalog,
        settings: ClientSettings,
        favorites: Optional[FavoritesStore] = None,
        controller: Optional[LiveFallbackController] = None,
        timer_factory: TimerFactory = default_timer_factory,
    ) -> None:
        self.catalog = catalog
        self.settings = settings
        self.favorites = favorites
        self.controller = controller
        self._title_timer = timer_factory("channel-title")
        self.sources: List[LiveSource] = []
        self.selected_source_key = ""
        self.channel_cache: Dict[str, List[LiveChannel]] = {}
        self.channels: List[LiveChannel] = []
        self.groups: Dict[str, List[LiveChannel]] = {}
        self.selected_group = ""
        self.current_index = 0
        self.channel_title: Optional[str] = None
        self.is_loading = False

    # Sources and channels
    async def load_sources(self) -> List[LiveSource]:
        self.is_loading = True
        try:
            try:
                sources = await asyncio.to_thread(self.catalog.list_sources)
            except ProviderError as e:
                LOG.warning("Failed to load live sources: %s", e)
                sources = []
            self.sources = list(sources)
            if not self.sources:
                self.selected_source_key = ""
                self._apply_channels([])
                return self.sources
            keys = [s.key for s in self.sources]
            key = self.selected_source_key if self.selected_source_key in keys else keys[0]
            await self.select_source(key)
            return self.sources
        finally:
            self.is_loading = False

    async def select_source(self, source_key: str) -> List[LiveChannel]:
        self.selected_source_key = source_key
        cached = self.channel_cache.get(source_key)
        if cached is not None:
            self._apply_channels(cached)
            return cached
        try:
            channels = await asyncio.to_thread(self.catalog.list_channels, source_key)
        except ProviderError as e:
            LOG.warning("Failed to load channels for %s: %s", source_key, e)
            self._apply_channels([])
            return []
        if self.selected_source_key != source_key:
            # Another source was selected while this one loaded.
            return channels
        self.channel_cache[source_key] = list(channels)
        LOG.info("Loaded %d channels for live source %s", len(channels), source_key)
        self._apply_channels(self.channel_cache[source_key])
        return channels

    def _apply_channels(self, channels: List[LiveChannel]) -> None:
        self.channels = list(channels)
        self.groups = group_channels(self.channels)
        self.selected_group = next(iter(self.groups), "")
        self.current_index = 0
        if self.channels:
            self._show_title(self.channels[0].name)
        else:
            self._title_timer.cancel()
            self.channel_title = None
        self._push_stream()

    # Navigation
    @property
    def current_channel(self) -> Optional[LiveChannel]:
        if 0 <= self.current_index < len(self.channels):
            return self.channels[self.current_index]
        return None

    def change_channel(self, direction: str) -> Optional[LiveChannel]:
        if not self.channels:
            return None
        count = len(self.channels)
        step = 1 if direction == "next" else -1
        self.current_index = (self.current_index + step) % count
        channel = self.channels[self.current_index]
        self._show_title(channel.name)
        self._push_stream()
        return channel

    def next_channel(self) -> Optional[LiveChannel]:
        return self.change_channel("next")

    def previous_channel(self) -> Optional[LiveChannel]:
        return self.change_channel("prev")

    def select_channel(self, channel_id: str) -> bool:
        for index, channel in enumerate(self.channels):
            if channel.id == channel_id:
                self.current_index = index
                self._show_title(channel.name)
                self._push_stream()
                return True
        return False

    def select_group(self, group: str) -> List[LiveChannel]:
        if group in self.groups:
            self.selected_group = group
        return self.groups.get(self.selected_group, [])

    def _show_title(self, title: str) -> None:
        self.channel_title = title
        self._title_timer.start(TITLE_DISPLAY_SECONDS, self._clear_title)

    def _clear_title(self) -> None:
        self.channel_title = None

    # Streams
    def stream_urls(self) -> Tuple[Optional[str], Optional[str]]:
        channel = self.current_channel
        return live_stream_urls(channel.url if channel else None, self.settings, self.selected_source_key)

    def _push_stream(self) -> None:
        if self.controller is None:
            return
        stream_url, fallback_url = self.stream_urls()
        self.controller.set_stream(stream_url, fallback_url)

    # Favorites
    def _favorite_key(self, channel: LiveChannel) -> str:
        return favorite_key(self.selected_source_key, channel.id, channel.tvg_id or None)

    def is_favorite(self, channel: Optional[LiveChannel] = None) -> bool:
        channel = channel or self.current_channel
        if channel is None or self.favorites is None:
            return False
        try:
            return self.favorites.is_favorite(self._favorite_key(channel))
        except StorageError as e:
            LOG.warning("Failed to read favorites: %s", e)
            return False

    def toggle_favorite(self, channel: Optional[LiveChannel] = None) -> Optional[bool]:
        channel = channel or self.current_channel
        if channel is None or self.favorites is None:
            return None
        try:
            return self.favorites.toggle(self._favorite_key(channel))
        except StorageError as e:
            LOG.warning("Failed to update favorites: %s", e)
            return None

    def close(self) -> None:
        self._title_timer.cancel()
        if self.controller is not None:
            self.controller.stop()
