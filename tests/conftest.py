import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import web_server
from backends import BaseBackend, MagnetSource
from errors import NotFound
from ingestion import Ingestor
from torrent_parsing import normalize_info_hash, parse_magnet_infohash
from torrent_view import FileEntry, TorrentHandle

HASH = "0123456789abcdef0123456789abcdef01234567"
OTHER_HASH = "89abcdef0123456789abcdef0123456789abcdef"
UPLOAD_HASH = "fedcba9876543210fedcba9876543210fedcba98"
MAGNET = f"magnet:?xt=urn:btih:{HASH}&dn=Movie"
TORRENT_BYTES = b"d8:announce3:url4:infod4:name5:movieee"


class FakeBackend(BaseBackend):
    """In-memory backend; tests seed it with ``put``."""

    name = "fake"

    def __init__(self, download_dir=None):
        super().__init__()
        self.download_dir = download_dir
        self.handles = {}
        self.added = []
        self.removed = []
        self.add_error = None

    def put(self, handle):
        self.handles[handle.info_hash] = handle
        return handle

    def add(self, source):
        self._check_source(source)
        if self.add_error is not None:
            raise self.add_error
        self.added.append(source)
        if isinstance(source, MagnetSource):
            ih = parse_magnet_infohash(source.uri)
        else:
            ih = UPLOAD_HASH
        if ih not in self.handles:
            self.put(TorrentHandle(id=ih, info_hash=ih, download_dir=self.download_dir))
        return self.handles[ih]

    def list(self):
        return [self._latch_ready(h) for h in self.handles.values()]

    def get(self, info_hash):
        h = self.handles.get(normalize_info_hash(info_hash))
        if h is None:
            raise NotFound()
        return self._latch_ready(h)

    def remove(self, info_hash, delete_files=False):
        ih = normalize_info_hash(info_hash)
        if ih not in self.handles:
            raise NotFound()
        del self.handles[ih]
        self.removed.append((ih, delete_files))
        self._forget_ready(ih)


def make_handle(download_dir, files, info_hash=HASH, name="Movie", ready=True):
    """Build a handle whose ``files`` are ``(relative_path, content)`` pairs written to disk."""
    entries = []
    total = 0
    for i, (rel, content) in enumerate(files):
        if content is not None:
            path = os.path.join(str(download_dir), *rel.split("/"))
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(content)
            length = len(content)
        else:
            length = 100
        entries.append(FileEntry.build(i, rel, length))
        total += length
    return TorrentHandle(
        id=info_hash,
        info_hash=info_hash,
        name=name,
        total_size=total,
        downloaded_bytes=total if ready else total // 2,
        download_rate_bps=1024,
        upload_rate_bps=512,
        peer_count=3,
        files=tuple(entries),
        ready=ready,
        download_dir=str(download_dir),
    )


@pytest.fixture
def download_dir(tmp_path):
    d = tmp_path / "downloads"
    d.mkdir()
    return d


@pytest.fixture
def backend(download_dir):
    return FakeBackend(str(download_dir))


@pytest.fixture
def client(backend, tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    saved = dict(web_server.WEB_CONFIG)
    web_server.WEB_CONFIG.update({
        "backend": backend,
        "ingestor": Ingestor(backend, str(state_dir), lookup_retries=0, lookup_interval=0),
    })
    web_server.app.config['TESTING'] = True
    with web_server.app.test_client() as client:
        yield client
    web_server.WEB_CONFIG.clear()
    web_server.WEB_CONFIG.update(saved)
