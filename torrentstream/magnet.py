# torrentstream/magnet.py
from __future__ import annotations

import re
from typing import NamedTuple
from urllib.parse import parse_qsl, quote

from .errors import InvalidDescriptorError

# Appended to every magnet so retries announce to the same trackers in the same order.
TRACKERS: tuple[str, ...] = (
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://open.tracker.cl:1337/announce",
    "udp://tracker.openbittorrent.com:6969/announce",
    "udp://open.demonii.com:1337/announce",
    "udp://exodus.desync.com:6969/announce",
    "udp://tracker.torrent.eu.org:451/announce",
    "udp://tracker.moeking.me:6969/announce",
    "udp://explodie.org:6969/announce",
    "udp://tracker.theoks.net:6969/announce",
    "udp://tracker1.bt.moack.co.kr:80/announce",
    "http://tracker.openbittorrent.com:80/announce",
    "http://tracker.files.fm:6969/announce",
)

_BTIH_RE = re.compile(r"btih:([0-9a-f]{40})(?![0-9a-z])", re.IGNORECASE)


class Resolved(NamedTuple):
    info_hash: str
    magnet: str


def info_hash_of(descriptor: str) -> str:
    m = _BTIH_RE.search(descriptor or "")
    if not m:
        raise InvalidDescriptorError("Invalid magnet link")
    return m.group(1).lower()


def _present_trackers(descriptor: str) -> set[str]:
    query = descriptor.split("?", 1)[1] if "?" in descriptor else ""
    return {v.strip() for k, v in parse_qsl(query, keep_blank_values=True) if k == "tr"}


def normalize(descriptor: str) -> str:
    """Append the fixed tracker list, skipping trackers already present (encoded or not)."""
    present = _present_trackers(descriptor)
    out = descriptor
    for tr in TRACKERS:
        if tr in present:
            continue
        out += f"&tr={quote(tr, safe='')}"
        present.add(tr)
    return out


def resolve(descriptor: str) -> Resolved:
    descriptor = (descriptor or "").strip()
    return Resolved(info_hash_of(descriptor), normalize(descriptor))
