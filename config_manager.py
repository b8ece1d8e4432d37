"""Config management for SerrebiStream.

Settings come from ``config.json`` in the app data directory, with environment
variables layered on top. They are read once at process start.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

from app_paths import get_config_path, get_default_download_dir

log = logging.getLogger(__name__)

BACKEND_EMBEDDED = "embedded"
BACKEND_TRANSMISSION = "transmission"
BACKENDS = (BACKEND_EMBEDDED, BACKEND_TRANSMISSION)


def _read_json(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: str, data: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=4)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


DEFAULT_SETTINGS: Dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 3000,
    "download_dir": "",  # empty = ./downloads
    "backend": BACKEND_EMBEDDED,
    "log_level": "INFO",
    # Ingestion
    "metadata_timeout": 0,  # seconds to wait for magnet metadata, 0 = no limit
    "lookup_retries": 10,
    "lookup_interval": 0.5,
    # Transmission daemon
    "transmission_url": "http://localhost:9091",
    "transmission_user": "",
    "transmission_password": "",
    "transmission_download_dir": "",  # daemon-side path of download_dir, if mounted elsewhere
    "transmission_timeout": 30,
    # Embedded libtorrent session
    "listen_port": 6881,
    "enable_dht": True,
    "enable_lsd": True,
    "enable_upnp": True,
    "enable_natpmp": True,
    "dl_limit": 0,  # 0 = unlimited (bytes/s)
    "ul_limit": 0,  # 0 = unlimited (bytes/s)
    "max_connections": -1,  # -1 = unlimited
}

ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "HOST": ("host", str),
    "PORT": ("port", int),
    "DOWNLOAD_DIR": ("download_dir", str),
    "TORRENT_BACKEND": ("backend", str),
    "LOG_LEVEL": ("log_level", str),
    "METADATA_TIMEOUT": ("metadata_timeout", float),
    "LOOKUP_RETRIES": ("lookup_retries", int),
    "LOOKUP_INTERVAL": ("lookup_interval", float),
    "TRANSMISSION_URL": ("transmission_url", str),
    "TRANSMISSION_USER": ("transmission_user", str),
    "TRANSMISSION_PASSWORD": ("transmission_password", str),
    "TRANSMISSION_DOWNLOAD_DIR": ("transmission_download_dir", str),
    "LISTEN_PORT": ("listen_port", int),
    "ENABLE_DHT": ("enable_dht", _parse_bool),
}


class ConfigManager:
    def __init__(self, path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> None:
        self.path = path or get_config_path()
        self.environ = os.environ if environ is None else environ
        self.config: Dict[str, Any] = self.load_config()

    def _normalize(self, cfg: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(cfg, dict):
            cfg = {}
        for k, v in DEFAULT_SETTINGS.items():
            cfg.setdefault(k, v)
        return cfg

    def load_config(self) -> Dict[str, Any]:
        if os.path.exists(self.path):
            try:
                return self._normalize(_read_json(self.path))
            except (OSError, ValueError) as e:
                log.warning("Ignoring unreadable config %s: %s", self.path, e)
                return dict(DEFAULT_SETTINGS)

        # First run: write the defaults so there is something to edit.
        cfg = dict(DEFAULT_SETTINGS)
        try:
            _write_json(self.path, cfg)
        except OSError as e:
            log.debug("Could not write default config to %s: %s", self.path, e)
        return cfg

    def _apply_env(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        for var, (key, convert) in ENV_OVERRIDES.items():
            raw = self.environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                settings[key] = convert(raw)
            except ValueError:
                log.warning("Ignoring invalid %s=%r", var, raw)
        return settings

    def get_settings(self) -> Dict[str, Any]:
        settings = self._apply_env(dict(self.config))
        settings["backend"] = str(settings.get("backend") or BACKEND_EMBEDDED).strip().lower()
        if settings["backend"] not in BACKENDS:
            raise ValueError(f"Unknown torrent backend: {settings['backend']}")
        settings["download_dir"] = os.path.abspath(settings.get("download_dir") or get_default_download_dir())
        return settings


SESSION_PREFERENCE_KEYS = (
    "listen_port", "enable_dht", "enable_lsd", "enable_upnp", "enable_natpmp",
    "dl_limit", "ul_limit", "max_connections",
)


def session_preferences(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Subset of the settings the libtorrent session is configured from."""
    return {k: settings[k] for k in SESSION_PREFERENCE_KEYS if k in settings}
