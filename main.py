import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from candidates import get_playback_url_candidates
from hls_filter import PlaylistFilter, PlaylistFilterError, count_ad_markers, fetch_playlist
from live_channels import ChannelNavigator
from live_player import LiveFallbackController
from options import (
    ClientSettings,
    configure_logging,
    get_cache_dir,
    get_storage_path,
    load_config,
)
from playback_session import PlaybackPhase, PlaybackSession, SessionState
from playlist import M3UChannelCatalog
from providers import AuthSession, CatalogClient, DetailRegistry
from storage import FavoritesStore, JsonStateStore, PlayerSettingsStore, PlayRecordStore

LOG = logging.getLogger(__name__)

STOP_PHASES = {PlaybackPhase.LOAD_FAILED, PlaybackPhase.PLAYBACK_FAILED}


def _print_notification(level: str, text: str, detail: Optional[str] = None) -> None:
    line = f"[{level}] {text}"
    if detail:
        line += f": {detail}"
    print(line)


def _render_engine(args):
    # Imported lazily so non-playback commands work without libVLC.
    from internal_player import VlcRenderEngine

    return VlcRenderEngine(video_visible=not args.no_video)


async def cmd_filter(args, cfg, settings: ClientSettings) -> int:
    engine = PlaylistFilter(get_cache_dir(cfg), timeout=settings.playlist_fetch_timeout)
    path = await engine.create_discontinuity_filtered_playlist(args.url)
    if not path:
        print("No filtered playlist could be produced.")
        return 1
    try:
        original, _final = await asyncio.to_thread(fetch_playlist, args.url, settings.playlist_fetch_timeout)
        print(f"Ad markers in source playlist: {count_ad_markers(original)}")
    except PlaylistFilterError as e:
        LOG.debug("Marker count skipped: %s", e)
    print(path)
    return 0


async def cmd_candidates(args, cfg, settings: ClientSettings) -> int:
    ad_block = settings.vod_ad_block_enabled if args.ad_block is None else args.ad_block
    for url in get_playback_url_candidates(
        args.url, settings.api_base_url, args.source, ad_block, settings.proxy_token or None
    ):
        print(url)
    return 0


async def _ensure_session(client: CatalogClient, settings: ClientSettings, store: JsonStateStore) -> bool:
    auth = AuthSession(client, settings.username, settings.password, state=store)
    await auth.check_login_status()
    if auth.needs_login:
        print("Catalog login required: set username and password in the config.")
        return False
    return True


async def _run_until(predicate, poll: float = 0.5) -> None:
    while not predicate():
        await asyncio.sleep(poll)


async def cmd_live(args, cfg, settings: ClientSettings) -> int:
    store = JsonStateStore(get_storage_path(cfg))
    if args.m3u:
        catalog = M3UChannelCatalog({"m3u": args.m3u})
    else:
        catalog = CatalogClient(settings.api_base_url)
        if not await _ensure_session(catalog, settings, store):
            return 1
    controller = None
    if args.play:
        controller = LiveFallbackController(_render_engine(args), timeout=settings.live_playback_timeout)

        def _on_live_state(state) -> None:
            if state.overlay_text:
                print(state.overlay_text)

        controller.subscribe(_on_live_state)
    navigator = ChannelNavigator(catalog, settings, favorites=FavoritesStore(store), controller=controller)
    if args.source:
        navigator.selected_source_key = args.source
    sources = await navigator.load_sources()
    if not sources:
        print("No live sources available.")
        return 1
    if not args.play:
        for group, channels in navigator.groups.items():
            print(f"{group}:")
            for channel in channels:
                star = "*" if navigator.is_favorite(channel) else " "
                print(f"  {star} {channel.name}  [{channel.id}]")
        return 0
    if args.play != "first" and not navigator.select_channel(args.play):
        print(f"Channel {args.play} not found.")
        return 1
    try:
        await _run_until(lambda: controller.state.is_timeout)
    finally:
        navigator.close()
    return 1


async def cmd_vod(args, cfg, settings: ClientSettings) -> int:
    store = JsonStateStore(get_storage_path(cfg))
    client = CatalogClient(settings.api_base_url)
    if not await _ensure_session(client, settings, store):
        return 1
    registry = DetailRegistry(client)
    session = PlaybackSession(
        registry,
        PlayRecordStore(store),
        PlayerSettingsStore(store),
        settings,
        render=_render_engine(args),
        playlist_filter=PlaylistFilter(get_cache_dir(cfg), timeout=settings.playlist_fetch_timeout),
        notifier=_print_notification,
    )

    last_phase: List[PlaybackPhase] = [PlaybackPhase.IDLE]

    def _on_state(state: SessionState) -> None:
        if state.phase != last_phase[0]:
            last_phase[0] = state.phase
            episode = state.current_episode
            print(f"{state.phase.value}: {episode.title if episode else '-'}")

    session.subscribe(_on_state)
    if not await session.load(args.source, args.id, args.title, max(args.episode - 1, 0)):
        return 1
    try:
        await _run_until(lambda: session.state.phase in STOP_PHASES)
    finally:
        session.reset()
        if session.render is not None:
            session.render.stop()
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="playerclient")
    parser.add_argument("--config", help="path to playerclient.conf")
    parser.add_argument("--debug", action="store_true", help="verbose logging to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("filter", help="write an ad-filtered local copy of an HLS playlist")
    p.add_argument("url")
    p.set_defaults(func=cmd_filter)

    p = sub.add_parser("candidates", help="list playback URL candidates for a stream")
    p.add_argument("url")
    p.add_argument("--source", default="")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--ad-block", dest="ad_block", action="store_true", default=None)
    group.add_argument("--no-ad-block", dest="ad_block", action="store_false")
    p.set_defaults(func=cmd_candidates, ad_block=None)

    p = sub.add_parser("live", help="list or play live channels")
    p.add_argument("--source", help="live source key")
    p.add_argument("--m3u", help="use a plain M3U playlist instead of the catalog")
    p.add_argument("--play", metavar="CHANNEL_ID", help="channel id to play, or 'first'")
    p.add_argument("--no-video", action="store_true")
    p.set_defaults(func=cmd_live)

    p = sub.add_parser("vod", help="play a catalog title with source fallback")
    p.add_argument("title")
    p.add_argument("--source", required=True)
    p.add_argument("--id", required=True)
    p.add_argument("--episode", type=int, default=1, help="1-based episode number")
    p.add_argument("--no-video", action="store_true")
    p.set_defaults(func=cmd_vod)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(debug=True if args.debug else None)
    cfg = load_config(args.config)
    settings = ClientSettings.from_config(cfg)
    try:
        return asyncio.run(args.func(args, cfg, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
