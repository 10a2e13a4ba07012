# torrentstream/engine.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import libtorrent as lt
from anyio import to_thread

from . import __version__
from .errors import (
    EngineStartError,
    EngineStoppedError,
    StartFailure,
    TorrentFileNotFoundError,
)
from .media import FileEntry

log = logging.getLogger("engine")

# libtorrent file priorities
PRIORITY_SKIP = 0
PRIORITY_DEFAULT = 4

DEADLINE_STEP_MS = 250   # spacing of piece deadlines across the read-ahead window
ALERT_POLL_SECONDS = 1.0


@dataclass
class TrafficStats:
    downloaded_bytes: int = 0
    uploaded_bytes: int = 0
    download_rate: int = 0
    upload_rate: int = 0
    peers: int = 0
    progress: float = 0.0


# ──────────────────────────────────────────────────────────────────────────────
# Engine: owns the libtorrent session
# ──────────────────────────────────────────────────────────────────────────────
class TorrentEngine:
    """Starts torrents on a shared libtorrent session and hands out per-torrent handles."""

    def __init__(
        self,
        storage_root: str | Path,
        *,
        metadata_timeout: float = 60.0,
        listen_interfaces: str = "0.0.0.0:6881",
        enable_dht: bool = True,
        delete_files: bool = False,
        poll_interval: float = 0.2,
        readahead: int = 8,
        chunk_size: int = 256 * 1024,
        session: Optional["lt.session"] = None,
    ) -> None:
        self.storage_root = Path(storage_root)
        self.metadata_timeout = metadata_timeout
        self.listen_interfaces = listen_interfaces
        self.enable_dht = enable_dht
        self.delete_files = delete_files
        self.poll_interval = poll_interval
        self.readahead = readahead
        self.chunk_size = chunk_size
        self._session = session
        self._alert_task: Optional[asyncio.Task] = None

    def _get_session(self) -> "lt.session":
        if self._session is None:
            self._session = lt.session({
                "listen_interfaces": self.listen_interfaces,
                "enable_dht": self.enable_dht,
                "alert_mask": lt.alert.category_t.error_notification
                | lt.alert.category_t.status_notification,
                "user_agent": f"torrentstream/{__version__}",
            })
            log.info("libtorrent session listening on %s (dht=%s)", self.listen_interfaces, self.enable_dht)
        if self._alert_task is None or self._alert_task.done():
            self._alert_task = asyncio.get_running_loop().create_task(self._alert_loop())
        return self._session

    async def _alert_loop(self) -> None:
        while True:
            ses = self._session
            if ses is not None:
                try:
                    for alert in ses.pop_alerts():
                        if alert.category() & lt.alert.category_t.error_notification:
                            log.warning("libtorrent: %s", alert.message())
                        else:
                            log.debug("libtorrent: %s", alert.message())
                except Exception as e:
                    log.debug("alert pump error: %s", e)
            await asyncio.sleep(ALERT_POLL_SECONDS)

    async def start(self, magnet: str, storage_root: str | Path | None = None) -> "TorrentHandle":
        root = Path(storage_root or self.storage_root)
        try:
            params = lt.parse_magnet_uri(magnet)
        except RuntimeError as e:
            raise EngineStartError(StartFailure.invalid_descriptor, f"Invalid magnet link: {e}") from e
        params.save_path = str(root)

        ses = self._get_session()
        try:
            handle = ses.add_torrent(params)
        except RuntimeError as e:
            raise EngineStartError(StartFailure.transport_failure, f"Could not add torrent: {e}") from e

        log.info("torrent added, waiting up to %.0fs for metadata", self.metadata_timeout)
        try:
            await asyncio.wait_for(self._wait_for_metadata(handle), self.metadata_timeout)
        except asyncio.TimeoutError:
            self._remove(handle)
            raise EngineStartError(StartFailure.timeout, "Timeout waiting for metadata") from None
        except BaseException:
            self._remove(handle)
            raise

        info = handle.torrent_file()
        # nothing downloads until a file is selected for streaming
        handle.prioritize_files([PRIORITY_SKIP] * info.num_files())
        th = TorrentHandle(
            handle,
            info,
            root,
            remover=self._remove,
            poll_interval=self.poll_interval,
            readahead=self.readahead,
            chunk_size=self.chunk_size,
        )
        log.info("metadata ready: %s (%d files)", th.name, len(th.list_files()))
        return th

    async def _wait_for_metadata(self, handle) -> None:
        while True:
            st = handle.status()
            errc = getattr(st, "errc", None)
            if errc is not None and errc.value() != 0:
                raise EngineStartError(StartFailure.transport_failure, errc.message())
            if st.has_metadata:
                return
            await asyncio.sleep(self.poll_interval)

    def _remove(self, handle) -> None:
        ses = self._session
        if ses is None:
            return
        try:
            if self.delete_files:
                ses.remove_torrent(handle, lt.options_t.delete_files)
            else:
                ses.remove_torrent(handle)
        except RuntimeError as e:
            log.debug("remove_torrent: %s", e)

    async def close(self) -> None:
        task, self._alert_task = self._alert_task, None
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        ses, self._session = self._session, None
        if ses is not None:
            ses.pause()
            log.info("libtorrent session closed")


# ──────────────────────────────────────────────────────────────────────────────
# Per-torrent handle
# ──────────────────────────────────────────────────────────────────────────────
class TorrentHandle:
    def __init__(
        self,
        handle,
        info,
        save_path: Path,
        *,
        remover: Callable[[object], None],
        poll_interval: float = 0.2,
        readahead: int = 8,
        chunk_size: int = 256 * 1024,
    ) -> None:
        self._handle = handle
        self._info = info
        self._save_path = Path(save_path)
        self._remover = remover
        self.poll_interval = poll_interval
        self.readahead = max(1, readahead)
        self.chunk_size = chunk_size
        fs = info.files()
        self._files = [
            FileEntry(i, fs.file_name(i), fs.file_path(i), fs.file_size(i))
            for i in range(fs.num_files())
        ]
        self._readers: set[PieceReader] = set()
        self._lock = asyncio.Lock()
        self._stopped = False

    @property
    def name(self) -> str:
        return self._info.name()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def list_files(self) -> list[FileEntry]:
        return list(self._files)

    def _entry(self, index: int) -> FileEntry:
        if index < 0 or index >= len(self._files):
            raise TorrentFileNotFoundError("File not found")
        return self._files[index]

    def file_path(self, entry: FileEntry) -> Path:
        return self._save_path / entry.path

    def select_file(self, index: int) -> None:
        self._entry(index)
        if self._stopped:
            raise EngineStoppedError("Torrent was removed")
        self._handle.file_priority(index, PRIORITY_DEFAULT)

    async def open_reader(self, index: int, start: int = 0, length: Optional[int] = None) -> "PieceReader":
        async with self._lock:
            if self._stopped:
                raise EngineStoppedError("Torrent was removed")
            entry = self._entry(index)
            start = min(max(0, start), entry.size)
            end = entry.size if length is None else min(entry.size, start + max(0, length))
            reader = PieceReader(self, entry, start, end)
            self._readers.add(reader)
            return reader

    def stats(self) -> TrafficStats:
        if self._stopped:
            return TrafficStats()
        st = self._handle.status()
        return TrafficStats(
            downloaded_bytes=int(st.total_payload_download),
            uploaded_bytes=int(st.total_payload_upload),
            download_rate=int(st.download_rate),
            upload_rate=int(st.upload_rate),
            peers=int(st.num_peers),
            progress=float(st.progress),
        )

    async def stop(self) -> None:
        async with self._lock:
            if self._stopped:
                return
            self._stopped = True
            for reader in list(self._readers):
                await reader.aclose()
            self._remover(self._handle)
        log.info("stopped torrent %s", self.name)

    # piece helpers
    def _locate(self, entry: FileEntry, offset: int) -> tuple[int, int]:
        """Piece covering ``offset`` and the bytes left in it from there."""
        req = self._info.map_file(entry.index, offset, 1)
        return req.piece, self._info.piece_size(req.piece) - req.start

    def _prioritize(self, piece: int, last_piece: int) -> None:
        for i, p in enumerate(range(piece, min(piece + self.readahead, last_piece + 1))):
            self._handle.set_piece_deadline(p, i * DEADLINE_STEP_MS)

    async def _wait_for_piece(self, piece: int, reader: "PieceReader") -> None:
        while not self._handle.have_piece(piece):
            if self._stopped:
                raise EngineStoppedError("Torrent was removed")
            if reader.closed:
                raise StopAsyncIteration
            await asyncio.sleep(self.poll_interval)


class PieceReader:
    """Async byte iterator over one torrent file, paced by piece availability."""

    def __init__(self, owner: TorrentHandle, entry: FileEntry, start: int, end: int) -> None:
        self._owner = owner
        self.entry = entry
        self.position = start
        self.end = end
        self.closed = False
        self._fh = None
        self._fh_lock = threading.Lock()  # _fh is touched from worker threads
        self._deadline_piece = -1
        self._last_piece = owner._locate(entry, entry.size - 1)[0] if entry.size else -1

    def __aiter__(self) -> "PieceReader":
        return self

    async def __anext__(self) -> bytes:
        owner = self._owner
        while True:
            if owner.stopped:
                raise EngineStoppedError("Torrent was removed")
            if self.closed or self.position >= self.end:
                raise StopAsyncIteration
            piece, left_in_piece = owner._locate(self.entry, self.position)
            if piece != self._deadline_piece:
                owner._prioritize(piece, self._last_piece)
                self._deadline_piece = piece
            await owner._wait_for_piece(piece, self)
            n = min(owner.chunk_size, left_in_piece, self.end - self.position)
            data = await to_thread.run_sync(self._read, self.position, n)
            if data:
                self.position += len(data)
                return data
            # piece is verified but not visible on disk yet
            await asyncio.sleep(owner.poll_interval)

    def _read(self, offset: int, n: int) -> bytes:
        with self._fh_lock:
            if self.closed:
                return b""
            if self._fh is None:
                path = self._owner.file_path(self.entry)
                if not path.exists():
                    return b""
                self._fh = open(path, "rb")
            self._fh.seek(offset)
            return self._fh.read(n)

    def _close_fh(self) -> None:
        with self._fh_lock:
            fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._owner._readers.discard(self)
        await to_thread.run_sync(self._close_fh)
