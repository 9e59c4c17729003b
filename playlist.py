import logging
import re
import urllib.error
import urllib.request
from typing import Dict, List, Optional

from providers import DEFAULT_UA, LiveChannel, LiveSource

LOG = logging.getLogger(__name__)

_M3U_ATTR_RE = re.compile(r'([A-Za-z0-9_\-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^",\s]+))')


def _parse_extinf(line: str) -> Dict[str, str]:
    comma_idx = line.rfind(',')
    info_part = line if comma_idx == -1 else line[:comma_idx]
    name = line[comma_idx + 1:].strip() if comma_idx != -1 else line[len("#EXTINF:"):].strip()

    attrs: Dict[str, str] = {}
    colon_idx = info_part.find(':')
    attr_segment = info_part[colon_idx + 1:] if colon_idx != -1 else ""
    for match in _M3U_ATTR_RE.finditer(attr_segment):
        key = match.group(1).lower()
        value = match.group(2) or match.group(3) or match.group(4) or ""
        if key not in attrs:
            attrs[key] = value.strip()
    return {
        "name": name,
        "group": attrs.get("group-title", ""),
        "tvg_id": attrs.get("tvg-id", ""),
        "logo": attrs.get("tvg-logo") or attrs.get("logo") or "",
    }


def parse_m3u(text: str) -> List[LiveChannel]:
    """Channel list from an ``#EXTM3U`` document. The stream URL doubles as channel id."""
    channels: List[LiveChannel] = []
    current: Optional[Dict[str, str]] = None
    for raw_line in (text or "").splitlines():
        s = raw_line.strip()
        if not s:
            continue
        if s.upper().startswith("#EXTINF:"):
            current = _parse_extinf(s)
            continue
        if current is None or s.startswith("#") or "://" not in s:
            continue
        channels.append(LiveChannel(
            id=s,
            name=current.get("name") or "Unknown",
            url=s,
            group=current.get("group") or "Default",
            tvg_id=current.get("tvg_id", ""),
            logo=current.get("logo", ""),
        ))
        current = None
    return channels


def fetch_m3u_text(url: str, timeout: int = 60) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": DEFAULT_UA})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1", "ignore")


def fetch_and_parse_m3u(url: str, timeout: int = 60) -> List[LiveChannel]:
    try:
        return parse_m3u(fetch_m3u_text(url, timeout=timeout))
    except (urllib.error.URLError, OSError, ValueError) as e:
        LOG.info("Error fetching or parsing M3U %s: %s", url, e)
        return []


class M3UChannelCatalog:
    """Live catalog backed by plain M3U playlists, one per source key."""

    def __init__(self, playlists: Dict[str, str], timeout: int = 60):
        self.playlists = dict(playlists)
        self.timeout = timeout

    def list_sources(self) -> List[LiveSource]:
        return [LiveSource(key=key, name=key, url=url) for key, url in self.playlists.items()]

    def list_channels(self, source_key: str) -> List[LiveChannel]:
        url = self.playlists.get(source_key)
        if not url:
            return []
        return fetch_and_parse_m3u(url, timeout=self.timeout)
