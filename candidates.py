import logging
import urllib.parse
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from hls_filter import is_http_url, is_m3u8_url

LOG = logging.getLogger(__name__)

MODERN_PROXY_PATH = "/api/proxy-m3u8"
LEGACY_PROXY_PATH = "/api/proxy/m3u8"


@dataclass(frozen=True)
class Episode:
    """A playable unit: one logical episode or channel and its equivalent URLs."""

    url: str
    raw_url: str
    title: str
    url_candidates: Tuple[str, ...]
    current_candidate_index: int = 0

    @property
    def has_next_candidate(self) -> bool:
        return self.current_candidate_index + 1 < len(self.url_candidates)


def episode_title(index: int) -> str:
    return f"Episode {index + 1}"


def dedupe_preserve_order(urls: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    result: List[str] = []
    for url in urls:
        if not url or url in seen:
            continue
        seen.add(url)
        result.append(url)
    return result


def _proxy_url(api_base_url: str, path: str, url: str, source_key: str, proxy_token: Optional[str]) -> str:
    params = {"url": url, "source": source_key}
    if proxy_token:
        params["token"] = proxy_token
    return f"{api_base_url.rstrip('/')}{path}?{urllib.parse.urlencode(params)}"


def build_proxy_candidates(
    url: Optional[str],
    api_base_url: Optional[str],
    source_key: Optional[str],
    proxy_token: Optional[str] = None,
) -> List[str]:
    """Backend ad-filtering proxy forms of ``url``, legacy path first."""
    if not url or not api_base_url or not source_key:
        return []
    if not is_http_url(url) or not is_m3u8_url(url):
        return []
    return [
        _proxy_url(api_base_url, LEGACY_PROXY_PATH, url, source_key, proxy_token),
        _proxy_url(api_base_url, MODERN_PROXY_PATH, url, source_key, proxy_token),
    ]


def get_playback_url_candidates(
    url: Optional[str],
    api_base_url: Optional[str],
    source_key: Optional[str],
    ad_block_enabled: bool,
    proxy_token: Optional[str] = None,
) -> List[str]:
    if not url:
        return []
    proxies = build_proxy_candidates(url, api_base_url, source_key, proxy_token)
    if ad_block_enabled:
        ordered = [*proxies, url]
    else:
        ordered = [url, *proxies]
    return dedupe_preserve_order(ordered)


def get_ad_filtered_vod_url(
    original_url: Optional[str],
    api_base_url: Optional[str],
    source_key: Optional[str],
    proxy_token: Optional[str] = None,
    vod_proxy_enabled: bool = True,
) -> Optional[str]:
    """Single modern-path proxy URL, or the original when proxying does not apply."""
    if not original_url or not api_base_url or not source_key or not vod_proxy_enabled:
        return original_url
    if not is_http_url(original_url) or not is_m3u8_url(original_url):
        return original_url
    return _proxy_url(api_base_url, MODERN_PROXY_PATH, original_url, source_key, proxy_token)


def map_episodes_for_playback(
    episode_urls: Sequence[str],
    api_base_url: Optional[str],
    source_key: Optional[str],
    ad_block_enabled: bool,
    proxy_token: Optional[str] = None,
) -> Tuple[Episode, ...]:
    episodes: List[Episode] = []
    for index, episode_url in enumerate(episode_urls):
        candidates = get_playback_url_candidates(
            episode_url, api_base_url, source_key, ad_block_enabled, proxy_token
        )
        unique = tuple(dedupe_preserve_order([*candidates, episode_url])) or (episode_url,)
        episodes.append(Episode(
            url=unique[0],
            raw_url=episode_url,
            title=episode_title(index),
            url_candidates=unique,
            current_candidate_index=0,
        ))
    return tuple(episodes)


def prepend_candidate(
    episode: Optional[Episode],
    candidate_url: Optional[str],
    original_url: Optional[str] = None,
) -> Optional[Episode]:
    """Return ``episode`` with ``candidate_url`` made active at index 0.

    ``None`` means the injection does not apply: the unit changed identity
    since ``original_url`` was computed, or the candidate is already active.
    """
    if not candidate_url or episode is None:
        return None
    if original_url and episode.raw_url and episode.raw_url != original_url:
        return None
    if episode.url_candidates and episode.url_candidates[0] == candidate_url and episode.url == candidate_url:
        return None
    rest = tuple(url for url in episode.url_candidates if url != candidate_url)
    return replace(
        episode,
        url=candidate_url,
        url_candidates=(candidate_url, *rest),
        current_candidate_index=0,
    )


def advance_candidate(episode: Optional[Episode], failed_url: Optional[str]) -> Optional[Episode]:
    """Return ``episode`` pointing at its next candidate.

    ``None`` when ``failed_url`` is not the active candidate (stale report) or
    when the candidate list is exhausted.
    """
    if episode is None or not failed_url or episode.url != failed_url:
        return None
    next_index = episode.current_candidate_index + 1
    if next_index >= len(episode.url_candidates):
        return None
    return replace(
        episode,
        url=episode.url_candidates[next_index],
        current_candidate_index=next_index,
    )
