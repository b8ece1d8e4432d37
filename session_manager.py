"""In-process libtorrent session and the registry of torrents it tracks.

The registry maps info-hash -> tracked entry and is guarded by ``self.lock``;
every add/remove goes through it so two adds of the same swarm always end up
on one libtorrent handle.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from torrent_parsing import looks_like_torrent, normalize_info_hash, parse_magnet_infohash

try:
    import libtorrent as lt
except ImportError:
    lt = None

log = logging.getLogger(__name__)


class TorrentFailed(RuntimeError):
    """libtorrent reported an error for a torrent before its metadata arrived."""


@dataclass
class _Tracked:
    handle: Any
    metadata: threading.Event = field(default_factory=threading.Event)
    error: Optional[str] = None


class SessionManager:
    def __init__(self, download_dir: str, prefs: Optional[Dict[str, Any]] = None, run_alert_loop: bool = True):
        if not lt:
            raise RuntimeError("libtorrent not available")

        self.download_dir = download_dir
        self.lock = threading.RLock()
        self._torrents: Dict[str, _Tracked] = {}

        self.ses = lt.session()
        self.apply_preferences(prefs or {})

        self.running = True
        self.alert_thread = None
        if run_alert_loop:
            self.alert_thread = threading.Thread(target=self._alert_loop, name='lt-alerts', daemon=True)
            self.alert_thread.start()

    def _info_hash_key(self, info_hashes) -> str:
        if info_hashes is None:
            return ''
        try:
            if hasattr(info_hashes, 'has_v1') and info_hashes.has_v1():
                return normalize_info_hash(str(info_hashes.v1)) or ''
        except RuntimeError:
            pass
        return normalize_info_hash(str(info_hashes)) or ''

    def _handle_hash_key(self, handle) -> str:
        if hasattr(handle, 'info_hashes'):
            key = self._info_hash_key(handle.info_hashes())
            if key:
                return key
        return self._info_hash_key(handle.info_hash())

    def apply_preferences(self, prefs: Dict[str, Any]) -> None:
        port = int(prefs.get('listen_port', 6881))
        settings = {
            'listen_interfaces': f'0.0.0.0:{port},[::]:{port}',
            'enable_dht': prefs.get('enable_dht', True),
            'enable_lsd': prefs.get('enable_lsd', True),
            'enable_upnp': prefs.get('enable_upnp', True),
            'enable_natpmp': prefs.get('enable_natpmp', True),
            'alert_mask': lt.alert.category_t.status_notification
            | lt.alert.category_t.storage_notification
            | lt.alert.category_t.error_notification,
            'connections_limit': prefs.get('max_connections', -1),
            'download_rate_limit': prefs.get('dl_limit', 0),
            'upload_rate_limit': prefs.get('ul_limit', 0),
        }
        self.ses.apply_settings(settings)

    def _alert_loop(self) -> None:
        while self.running:
            try:
                if not self.ses.wait_for_alert(1000):
                    continue
                for alert in self.ses.pop_alerts():
                    self._handle_alert(alert)
            except Exception:
                # Keep the loop alive; a dead alert thread would hang every pending add.
                log.exception("libtorrent alert loop error")
                time.sleep(1)

    def _entry_for_alert(self, alert) -> Tuple[str, Optional[_Tracked]]:
        handle = getattr(alert, 'handle', None)
        if handle is None:
            return '', None
        ih = self._handle_hash_key(handle)
        with self.lock:
            return ih, self._torrents.get(ih)

    def _handle_alert(self, alert) -> None:
        kind = type(alert).__name__
        if kind not in ('metadata_received_alert', 'metadata_failed_alert',
                        'torrent_error_alert', 'torrent_finished_alert'):
            return
        ih, entry = self._entry_for_alert(alert)
        if entry is None:
            return
        if kind == 'metadata_received_alert':
            log.info("Metadata received for %s", ih)
            entry.metadata.set()
        elif kind == 'torrent_finished_alert':
            log.info("Torrent %s finished downloading", ih)
        else:
            entry.error = alert.message()
            log.error("Torrent %s failed: %s", ih, entry.error)
            entry.metadata.set()

    def _add_params(self, ih: str, params) -> str:
        with self.lock:
            if ih in self._torrents:
                log.debug("Torrent %s already tracked", ih)
                return ih
            handle = self.ses.add_torrent(params)
            entry = _Tracked(handle=handle)
            if self._has_metadata(handle):
                entry.metadata.set()
            self._torrents[ih] = entry
        log.info("Added torrent %s", ih)
        return ih

    def add_magnet(self, url: str) -> str:
        ih = parse_magnet_infohash(url)
        if not ih:
            raise ValueError("Magnet link has no usable info-hash")
        with self.lock:
            if ih in self._torrents:
                return ih
            try:
                params = lt.parse_magnet_uri(url)
            except RuntimeError as e:
                raise ValueError(f"Invalid magnet link: {e}") from e
            params.save_path = self.download_dir
            return self._add_params(ih, params)

    def add_torrent_file(self, file_content: bytes) -> str:
        if not looks_like_torrent(file_content):
            raise ValueError("Not a bencoded torrent file")
        decoded = lt.bdecode(file_content)
        if decoded is None:
            raise ValueError("Not a bencoded torrent file")
        try:
            info = lt.torrent_info(decoded)
        except RuntimeError as e:
            raise ValueError(f"Invalid torrent file: {e}") from e
        ih = ''
        if hasattr(info, 'info_hashes'):
            ih = self._info_hash_key(info.info_hashes())
        if not ih:
            ih = self._info_hash_key(info.info_hash())
        if not ih:
            raise ValueError("Torrent file has no v1 info-hash")
        return self._add_params(ih, {'ti': info, 'save_path': self.download_dir})

    def _has_metadata(self, handle) -> bool:
        try:
            return bool(handle.status().has_metadata)
        except RuntimeError:
            return False

    def wait_for_metadata(self, info_hash: str, timeout: Optional[float] = None) -> bool:
        """Block until the torrent has metadata.

        ``timeout`` of None or 0 waits without limit. Returns False when the
        timeout expires first, raises ``TorrentFailed`` on a libtorrent error and
        ``KeyError`` if the torrent is removed while waiting.
        """
        with self.lock:
            entry = self._torrents[info_hash]
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            if entry.error:
                raise TorrentFailed(entry.error)
            with self.lock:
                if self._torrents.get(info_hash) is not entry:
                    raise KeyError(info_hash)
            if entry.metadata.is_set() or self._has_metadata(entry.handle):
                return True
            step = 1.0
            if deadline is not None:
                step = min(step, deadline - time.monotonic())
                if step <= 0:
                    return False
            entry.metadata.wait(step)

    def find_handle(self, info_hash: str):
        with self.lock:
            entry = self._torrents.get(info_hash)
        return entry.handle if entry else None

    def tracked(self) -> List[Tuple[str, Any]]:
        with self.lock:
            return [(ih, entry.handle) for ih, entry in self._torrents.items()]

    def remove_torrent(self, info_hash: str, delete_files: bool = False) -> bool:
        with self.lock:
            entry = self._torrents.pop(info_hash, None)
        if entry is None:
            return False
        flags = 0
        if delete_files:
            flags = 1
            if hasattr(lt, 'remove_flags_t') and hasattr(lt.remove_flags_t, 'delete_files'):
                flags = int(lt.remove_flags_t.delete_files)
            elif hasattr(lt, 'options_t') and hasattr(lt.options_t, 'delete_files'):
                flags = int(lt.options_t.delete_files)
        self.ses.remove_torrent(entry.handle, flags)
        # Wake anyone still waiting on metadata for this torrent.
        entry.metadata.set()
        log.info("Removed torrent %s (delete_files=%s)", info_hash, delete_files)
        return True

    def shutdown(self) -> None:
        self.running = False
        if self.alert_thread and self.alert_thread.is_alive():
            self.alert_thread.join(timeout=2)
        with self.lock:
            self._torrents.clear()
        self.ses.pause()
