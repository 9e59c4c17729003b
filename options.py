import os
import sys
import json
import logging
import logging.handlers
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

CONFIG_FILE = "playerclient.conf"
APP_DIR_NAME = "PlayerClient"

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "api_base_url": "",
    "proxy_token": "",
    "username": "",
    "password": "",
    "vod_ad_block_enabled": True,
    "live_ad_block_enabled": True,
    "playlist_fetch_timeout": 12.0,
    "live_playback_timeout": 15.0,
    "record_save_interval": 10.0,
    "cache_dir": "",
    "storage_path": "",
}

_active_config_path: Optional[str] = None


def _report(message: str) -> None:
    # Config is read before configure_logging() runs.
    if logging.getLogger().handlers:
        LOG.error(message)
    else:
        sys.stderr.write(message + "\n")


def _dir_accepts_writes(directory: str) -> bool:
    if not os.path.isdir(directory):
        return False
    probe = os.path.join(directory, ".playerclient_probe.tmp")
    try:
        with open(probe, "w", encoding="utf-8") as f:
            f.write("ok")
        os.remove(probe)
    except OSError:
        return False
    return True


def get_app_dir() -> str:
    if getattr(sys, "frozen", False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.abspath(__file__))


def get_user_config_dir() -> str:
    """Per-user config directory, created on demand."""
    if sys.platform == "win32":
        root = os.getenv("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        root = os.path.expanduser("~/Library/Application Support")
    else:
        root = os.getenv("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    path = os.path.join(root, APP_DIR_NAME)
    try:
        os.makedirs(path, exist_ok=True)
    except OSError:
        return tempfile.gettempdir()
    return path


def _config_dirs() -> List[str]:
    """App dir, then working dir (portable override), then the per-user dir."""
    dirs = [get_app_dir()]
    try:
        dirs.append(os.getcwd())
    except OSError:
        pass
    dirs.append(get_user_config_dir())
    return list(dict.fromkeys(d for d in dirs if d))


def get_config_read_candidates() -> List[str]:
    return [os.path.join(d, CONFIG_FILE) for d in _config_dirs()]


def get_config_write_target() -> str:
    if _active_config_path and _dir_accepts_writes(os.path.dirname(_active_config_path) or "."):
        return _active_config_path
    for directory in _config_dirs():
        if _dir_accepts_writes(directory):
            return os.path.join(directory, CONFIG_FILE)
    return os.path.join(get_user_config_dir(), CONFIG_FILE)


def load_config(path: Optional[str] = None) -> Dict:
    """First readable config among the candidates, with defaults filled in."""
    global _active_config_path
    for candidate in ([path] if path else get_config_read_candidates()):
        if not os.path.exists(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            _report(f"Failed to load config from {candidate}: {e}")
            continue
        if isinstance(data, dict):
            _active_config_path = candidate
            return {**DEFAULT_CONFIG, **data}
    if path:
        _active_config_path = path
    return dict(DEFAULT_CONFIG)


def save_config(cfg: Dict, path: Optional[str] = None) -> None:
    global _active_config_path
    target = path or get_config_write_target()
    tmp_path = target + ".tmp"
    try:
        os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except OSError as e:
        _report(f"Failed to save config to {target}: {e}")
        return
    _active_config_path = target


def get_loaded_config_path() -> str:
    return _active_config_path or ""


def get_cache_dir(cfg: Optional[Dict] = None) -> str:
    configured = (cfg or {}).get("cache_dir") or ""
    cache_dir = configured or os.path.join(tempfile.gettempdir(), "playerclient_playlists")
    os.makedirs(cache_dir, exist_ok=True)
    return cache_dir


def get_storage_path(cfg: Optional[Dict] = None) -> str:
    configured = (cfg or {}).get("storage_path") or ""
    return configured or os.path.join(get_user_config_dir(), "playback_state.json")


@dataclass
class ClientSettings:
    """Settings the playback core reads on every decision."""

    api_base_url: str = ""
    proxy_token: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    vod_ad_block_enabled: bool = True
    live_ad_block_enabled: bool = True
    playlist_fetch_timeout: float = 12.0
    live_playback_timeout: float = 15.0
    record_save_interval: float = 10.0

    @classmethod
    def from_config(cls, cfg: Dict) -> "ClientSettings":
        def _float(key: str) -> float:
            try:
                return float(cfg.get(key, DEFAULT_CONFIG[key]))
            except (TypeError, ValueError):
                return float(DEFAULT_CONFIG[key])

        return cls(
            api_base_url=str(cfg.get("api_base_url") or "").rstrip("/"),
            proxy_token=str(cfg.get("proxy_token") or ""),
            username=str(cfg.get("username") or ""),
            password=str(cfg.get("password") or ""),
            vod_ad_block_enabled=bool(cfg.get("vod_ad_block_enabled", True)),
            live_ad_block_enabled=bool(cfg.get("live_ad_block_enabled", True)),
            playlist_fetch_timeout=_float("playlist_fetch_timeout"),
            live_playback_timeout=_float("live_playback_timeout"),
            record_save_interval=_float("record_save_interval"),
        )


# =========================
# Debug logging (rotating file)
# =========================

DEBUG = os.getenv("PLAYER_DEBUG", "0").strip() not in {"0", "false", "False", ""}
LOG_PATH = os.path.join(tempfile.gettempdir(), "playerclient_debug.log")


def configure_logging(debug: Optional[bool] = None, log_path: Optional[str] = None) -> logging.Logger:
    """Attach a rotating file handler (and stderr while debugging) to the root logger."""
    debug = DEBUG if debug is None else debug
    log_path = log_path or LOG_PATH
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if getattr(root, "_playerclient_configured", False):
        return root
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        fh = logging.handlers.RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        # If file logging fails, keep going with stderr only.
        sys.stderr.write(f"Could not initialize log file at {log_path}: {e}\n")
    if debug:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)
    root._playerclient_configured = True  # type: ignore[attr-defined]
    root.debug("Logging initialized. File: %s", log_path)
    return root
