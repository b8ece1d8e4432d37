"""Helpers for validating torrent sources and extracting their info-hashes."""

from __future__ import annotations

import base64
import binascii
import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

try:
    import libtorrent as lt
except ImportError:
    lt = None


_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_BASE32_RE = re.compile(r"^[A-Z2-7]+=*$", re.IGNORECASE)


def normalize_info_hash(value: Optional[str]) -> Optional[str]:
    """Lower-case 40-hex form of a v1 info-hash, or None."""
    if not value:
        return None
    val = value.strip()
    if len(val) == 40 and _HEX_RE.match(val):
        return val.lower()
    return None


def _normalize_base32(value: str) -> Optional[str]:
    val = value.strip().upper()
    if not val or not _BASE32_RE.match(val):
        return None
    padding = "=" * ((8 - (len(val) % 8)) % 8)
    try:
        raw = base64.b32decode(val + padding, casefold=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 20:
        return None
    return binascii.hexlify(raw).decode("ascii")


def is_magnet(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower().startswith("magnet:?")


def parse_magnet_infohash(url: str) -> Optional[str]:
    """Return a lowercase hex infohash from a magnet link, if present."""
    if not is_magnet(url):
        return None

    parsed = urlparse(url.strip())
    qs = parse_qs(parsed.query)
    xts = []
    for key, values in qs.items():
        if key.lower() == "xt":
            xts.extend(values)
    for xt in xts:
        if not xt.lower().startswith("urn:btih:"):
            continue
        value = xt[len("urn:btih:"):]
        as_hex = normalize_info_hash(value)
        if as_hex:
            return as_hex
        as_b32 = _normalize_base32(value)
        if as_b32:
            return as_b32
    return None


def looks_like_torrent(data: Optional[bytes]) -> bool:
    """Cheap check that ``data`` is a bencoded dictionary with an info section."""
    if not data:
        return False
    return data[:1] == b"d" and data[-1:] == b"e" and b"4:info" in data


def safe_torrent_info_hash(data: bytes) -> Optional[str]:
    """Return the info hash for torrent bytes, or None when parsing fails."""
    if not lt or not looks_like_torrent(data):
        return None
    try:
        decoded = lt.bdecode(data)
        if decoded is None:
            return None
        info = lt.torrent_info(decoded)
        return normalize_info_hash(str(info.info_hash()))
    except RuntimeError:
        return None
