# torrentstream/media.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional


class ExtRule(NamedTuple):
    media: bool             # listed as playable content
    needs_conversion: bool  # browsers cannot play the container directly


# extension -> rule; anything missing is (not media, direct)
EXTENSIONS: dict[str, ExtRule] = {
    ".mp4": ExtRule(True, False),
    ".m4v": ExtRule(True, False),
    ".webm": ExtRule(True, False),
    ".mov": ExtRule(True, False),
    ".mkv": ExtRule(True, True),
    ".avi": ExtRule(True, True),
    ".wmv": ExtRule(False, True),
}
_DEFAULT_RULE = ExtRule(False, False)


def rule_for(name: str) -> ExtRule:
    ext = os.path.splitext(name or "")[1].lower()
    return EXTENSIONS.get(ext, _DEFAULT_RULE)


def is_media(name: str) -> bool:
    return rule_for(name).media


def needs_conversion(name: str) -> bool:
    return rule_for(name).needs_conversion


def format_size(num: float) -> str:
    units = ["B", "KB", "MB", "GB"]
    i = 0
    while num >= 1024 and i < len(units) - 1:
        num /= 1024
        i += 1
    return f"{num:.2f} {units[i]}"


@dataclass(frozen=True)
class FileEntry:
    index: int
    name: str
    path: str
    size: int

    @property
    def is_media(self) -> bool:
        return is_media(self.name)

    @property
    def needs_conversion(self) -> bool:
        return needs_conversion(self.name)

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)


def pick_primary(files: Iterable[FileEntry]) -> Optional[int]:
    """Index of the largest media file, or None when there is none."""
    best: Optional[FileEntry] = None
    for f in files:
        if f.is_media and (best is None or f.size > best.size):
            best = f
    return best.index if best else None
