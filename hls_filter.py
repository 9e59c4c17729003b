"""Ad-marker stripping for HLS media playlists.

A remote playlist is fetched (resolving master playlists to the best media
variant that actually lists segments), every ad-signalling tag is dropped,
relative URIs are made absolute, and the result is written to a local cache
file the render engine can open directly. Everything here is best-effort:
the public entry point returns ``None`` instead of raising.
"""
import asyncio
import hashlib
import http.client
import logging
import os
import re
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable, Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)

PLAYLIST_HEADER = "#EXTM3U"
DEFAULT_FETCH_TIMEOUT = 12.0
MAX_PLAYLIST_BYTES = 4_000_000

AD_MARKER_TAGS = frozenset({
    "#EXT-X-DISCONTINUITY",
    "#EXT-X-CUE-OUT",
    "#EXT-X-CUE-OUT-CONT",
    "#EXT-X-CUE-IN",
    "#EXT-X-CUE",
    "#EXT-OATCLS-SCTE35",
    "#EXT-X-SCTE35",
    "#EXT-X-SPLICEPOINT-SCTE35",
})

# Tags whose URI attribute points at a resource the player fetches itself.
_URI_TAGS = frozenset({"#EXT-X-KEY", "#EXT-X-SESSION-KEY", "#EXT-X-MAP"})

_HLS_ATTR_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
_URI_ATTR_RE = re.compile(r'URI="([^"]*)"')
_M3U8_PATH_RE = re.compile(r"\.m3u8($|\?)", re.IGNORECASE)

_DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/118.0.0.0 Safari/537.36"
    ),
    "Accept": "application/x-mpegURL,application/vnd.apple.mpegurl,text/plain,*/*",
}

Fetcher = Callable[[str, float], Tuple[str, str]]


class PlaylistFilterError(RuntimeError):
    """Raised internally when a playlist cannot be fetched or produces no segments."""


def is_http_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return url.lower().startswith(("http://", "https://"))


def is_m3u8_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return bool(_M3U8_PATH_RE.search(url))


def _tag_name(line: str) -> str:
    return line.split(":", 1)[0].strip().upper()


def is_ad_marker(line: str) -> bool:
    stripped = line.strip()
    if not stripped.startswith("#"):
        return False
    tag = _tag_name(stripped)
    if tag in AD_MARKER_TAGS:
        return True
    if tag == "#EXT-X-DATERANGE" and "SCTE35-" in stripped.upper():
        return True
    return False


def count_ad_markers(text: str) -> int:
    return sum(1 for line in (text or "").splitlines() if is_ad_marker(line))


def has_segments(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(line.strip().startswith("#EXTINF") for line in text.splitlines())


def is_master_playlist(text: Optional[str]) -> bool:
    return bool(text) and "#EXT-X-STREAM-INF" in text


def parse_hls_variants(manifest_text: str, base_url: str) -> List[dict]:
    variants: List[dict] = []
    if not manifest_text:
        return variants
    lines = manifest_text.splitlines()
    total = len(lines)
    idx = 0
    while idx < total:
        line = lines[idx].strip()
        if line.startswith("#EXT-X-STREAM-INF"):
            attrs = {k: v.strip('"') for k, v in _HLS_ATTR_RE.findall(line)}
            bandwidth_val = attrs.get("BANDWIDTH") or attrs.get("AVERAGE-BANDWIDTH")
            bandwidth: Optional[int] = None
            if bandwidth_val:
                try:
                    bandwidth = max(int(float(bandwidth_val)), 0)
                except ValueError:
                    bandwidth = None
            uri = ""
            look_ahead = idx + 1
            while look_ahead < total:
                next_line = lines[look_ahead].strip()
                if not next_line:
                    look_ahead += 1
                    continue
                if next_line.startswith("#"):
                    if next_line.startswith("#EXT-X-STREAM-INF"):
                        break
                    look_ahead += 1
                    continue
                uri = next_line
                break
            if uri:
                variants.append({
                    "url": urllib.parse.urljoin(base_url, uri),
                    "bandwidth": bandwidth,
                })
            idx = look_ahead
            continue
        idx += 1
    return variants


def rank_variants(variants: List[dict]) -> List[dict]:
    """Highest declared bandwidth first; variants without one go last, in source order."""
    return sorted(variants, key=lambda v: -(v.get("bandwidth") or -1))


def _absolute(uri: str, base_url: str) -> str:
    if not base_url:
        return uri
    return urllib.parse.urljoin(base_url, uri)


def _rewrite_uri_attribute(line: str, base_url: str) -> str:
    return _URI_ATTR_RE.sub(lambda m: f'URI="{_absolute(m.group(1), base_url)}"', line)


def filter_and_normalize_media_playlist(text: str, base_url: str) -> str:
    out: List[str] = [PLAYLIST_HEADER]
    for raw in (text or "").splitlines():
        line = raw.strip().lstrip("\ufeff")
        if not line:
            continue
        if line.startswith("#"):
            tag = _tag_name(line)
            if tag == PLAYLIST_HEADER:
                continue
            if is_ad_marker(line):
                continue
            if tag in _URI_TAGS:
                line = _rewrite_uri_attribute(line, base_url)
            out.append(line)
            continue
        out.append(_absolute(line, base_url))
    return "\n".join(out) + "\n"


def fetch_playlist(url: str, timeout: float = DEFAULT_FETCH_TIMEOUT) -> Tuple[str, str]:
    """Blocking fetch returning ``(text, final_url)`` after redirects."""
    req = urllib.request.Request(url, headers=dict(_DEFAULT_HEADERS))
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = resp.read(MAX_PLAYLIST_BYTES)
            final_url = resp.geturl() or url
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as err:
        raise PlaylistFilterError(f"Failed to fetch playlist {url}: {err}") from err
    return data.decode("utf-8", errors="ignore"), final_url


def cache_key_for_url(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()


class PlaylistFilter:
    """Produces and caches ad-filtered local copies of remote media playlists."""

    def __init__(
        self,
        cache_dir: str,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        fetcher: Optional[Fetcher] = None,
    ) -> None:
        self.cache_dir = cache_dir
        self.timeout = timeout
        self._fetcher: Fetcher = fetcher or fetch_playlist
        self._paths: Dict[str, str] = {}

    def cache_path_for(self, original_url: str) -> str:
        return os.path.join(self.cache_dir, f"{cache_key_for_url(original_url)}.m3u8")

    def cached_path(self, original_url: str) -> Optional[str]:
        path = self._paths.get(original_url)
        if path and os.path.isfile(path):
            return path
        if path:
            self._paths.pop(original_url, None)
        # The file on disk is authoritative; the map only saves a stat on the hot path.
        path = self.cache_path_for(original_url)
        if os.path.isfile(path):
            self._paths[original_url] = path
            return path
        return None

    async def _fetch(self, url: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self._fetcher, url, self.timeout)

    async def resolve_to_media_playlist(self, url: str) -> Tuple[str, str]:
        text, final_url = await self._fetch(url)
        if not is_master_playlist(text):
            return text, final_url
        variants = rank_variants(parse_hls_variants(text, final_url))
        LOG.debug("Master playlist %s lists %d variants", url, len(variants))
        for variant in variants:
            try:
                variant_text, variant_final = await self._fetch(variant["url"])
            except PlaylistFilterError as err:
                LOG.debug("Variant probe failed: %s", err)
                continue
            if has_segments(variant_text):
                return variant_text, variant_final
        return text, final_url

    def _write_cache_file(self, path: str, content: str) -> None:
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, exist_ok=True)
        # Unique temp name per writer; same-hash writers produce identical content.
        fd, tmp_path = tempfile.mkstemp(prefix=".filtered-", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)

    async def create_discontinuity_filtered_playlist(
        self,
        original_url: str,
        is_superseded: Optional[Callable[[], bool]] = None,
    ) -> Optional[str]:
        """Return a local path to the filtered playlist, or ``None``."""
        if not is_http_url(original_url) or not is_m3u8_url(original_url):
            return None
        cached = self.cached_path(original_url)
        if cached:
            return cached
        superseded = is_superseded or (lambda: False)
        try:
            text, final_url = await self.resolve_to_media_playlist(original_url)
            if superseded():
                return None
            filtered = filter_and_normalize_media_playlist(text, final_url)
            if not has_segments(filtered):
                raise PlaylistFilterError(f"No segments left in {original_url}")
            path = self.cache_path_for(original_url)
            await asyncio.to_thread(self._write_cache_file, path, filtered)
        except (PlaylistFilterError, OSError, ValueError) as err:
            LOG.debug("Filtered playlist unavailable: %s", err)
            return None
        self._paths[original_url] = path
        LOG.info("Filtered playlist written for %s -> %s", original_url, path)
        if superseded():
            return None
        return path
