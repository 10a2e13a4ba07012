from __future__ import annotations

import sys
from typing import Optional

import anyio
import pytest

from torrentstream.controller import DeliveryController
from torrentstream.engine import TrafficStats
from torrentstream.errors import EngineStoppedError, TorrentFileNotFoundError
from torrentstream.media import FileEntry
from torrentstream.sessions import SessionRegistry

INFO_HASH = "c7c6fc39b7cca0cae1f65f166179f10c4fdc7347"
MAGNET = f"magnet:?xt=urn:btih:{INFO_HASH.upper()}&dn=Some+Movie"

DEFAULT_FILES = [("a.mp4", 100), ("b.mkv", 200)]

# Stand-ins for ffmpeg: a pass-through filter and one that fails immediately.
CAT_CMD = [
    sys.executable,
    "-c",
    "import sys\n"
    "while True:\n"
    "    b = sys.stdin.buffer.read1(65536)\n"
    "    if not b:\n"
    "        break\n"
    "    sys.stdout.buffer.write(b)\n"
    "    sys.stdout.buffer.flush()\n",
]
FAIL_CMD = [
    sys.executable,
    "-c",
    "import sys; sys.stderr.write('Error: invalid data found\\n'); sys.exit(3)",
]


def payload(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


class FakeReader:
    def __init__(self, data: bytes, chunk: int = 64, endless: bool = False, fail_after: Optional[int] = None):
        self.data = data
        self.chunk = chunk
        self.endless = endless
        self.fail_after = fail_after
        self.pos = 0
        self.chunks = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        await anyio.sleep(0)
        if self.closed:
            raise StopAsyncIteration
        if self.fail_after is not None and self.chunks >= self.fail_after:
            raise EngineStoppedError("Torrent was removed")
        if self.endless:
            self.chunks += 1
            return b"x" * self.chunk
        if self.pos >= len(self.data):
            raise StopAsyncIteration
        out = self.data[self.pos:self.pos + self.chunk]
        self.pos += len(out)
        self.chunks += 1
        return out

    async def aclose(self) -> None:
        self.closed = True


class FakeHandle:
    def __init__(self, name: str = "Some Movie", files=None):
        self.name = name
        self._files = [
            FileEntry(i, n, f"{name}/{n}", size) for i, (n, size) in enumerate(files or DEFAULT_FILES)
        ]
        self.selected: set[int] = set()
        self.readers: list[FakeReader] = []
        self.stop_calls = 0
        self.stopped = False
        self.traffic = TrafficStats()

    def list_files(self):
        return list(self._files)

    def select_file(self, index: int) -> None:
        self.selected.add(index)

    async def open_reader(self, index: int, start: int = 0, length: Optional[int] = None):
        if self.stopped:
            raise EngineStoppedError("Torrent was removed")
        if index < 0 or index >= len(self._files):
            raise TorrentFileNotFoundError("File not found")
        data = payload(self._files[index].size)
        end = len(data) if length is None else start + length
        reader = FakeReader(data[start:end])
        self.readers.append(reader)
        return reader

    def stats(self) -> TrafficStats:
        return self.traffic

    async def stop(self) -> None:
        self.stop_calls += 1
        self.stopped = True


class FakeEngine:
    def __init__(self, files=None, delay: float = 0.0, fail: Optional[Exception] = None):
        self.files = files
        self.delay = delay
        self.fail = fail
        self.starts = 0
        self.magnets: list[str] = []
        self.handles: list[FakeHandle] = []
        self.closed = False

    async def start(self, magnet: str, storage_root=None) -> FakeHandle:
        self.starts += 1
        self.magnets.append(magnet)
        await anyio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        handle = FakeHandle(files=self.files)
        self.handles.append(handle)
        return handle

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def controller(registry, engine, tmp_path):
    return DeliveryController(registry, engine, storage_root=tmp_path, transcode_command=CAT_CMD)
