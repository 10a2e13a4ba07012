# torrentstream/controller.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import magnet
from .engine import TorrentEngine, TrafficStats
from .errors import EngineStartError
from .media import FileEntry, needs_conversion, pick_primary
from .pipeline import PipelineResponse, parse_range
from .sessions import Session, SessionRegistry

log = logging.getLogger("controller")


@dataclass
class AddResult:
    id: str
    name: str
    files: List[FileEntry]
    status: str  # "created" | "already_active"
    primary_index: Optional[int] = None


class DeliveryController:
    """Add / list / stream / status / remove, composed from the registry, engine and pipeline."""

    def __init__(
        self,
        registry: SessionRegistry,
        engine: TorrentEngine,
        *,
        storage_root: str | Path,
        large_file_threshold: int = 50 * 1024 * 1024,
        transcode_command: Optional[list[str]] = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.storage_root = Path(storage_root)
        self.large_file_threshold = large_file_threshold
        self.transcode_command = transcode_command

    def _listed(self, files: List[FileEntry]) -> List[FileEntry]:
        return [f for f in files if f.is_media or f.size > self.large_file_threshold]

    async def add(self, descriptor: str) -> AddResult:
        info_hash, uri = magnet.resolve(descriptor)
        log.info("adding torrent %s", info_hash)
        try:
            session, created = await self.registry.get_or_create(
                info_hash, lambda: self.engine.start(uri, self.storage_root)
            )
        except EngineStartError as e:
            log.error("engine start failed for %s (%s): %s", info_hash, e.reason.value, e)
            raise
        files = self._listed(session.files)
        log.info("torrent %s %s: %d of %d files listed", info_hash,
                 "ready" if created else "already active", len(files), len(session.files))
        return AddResult(
            id=session.id,
            name=session.name,
            files=files,
            status="created" if created else "already_active",
            primary_index=pick_primary(files),
        )

    def sessions(self) -> List[Session]:
        return self.registry.list()

    def status(self, session_id: str) -> TrafficStats:
        return self.registry.lookup(session_id.lower()).refresh()

    async def stream(
        self,
        session_id: str,
        file_index: int,
        wants_transcode: bool = False,
        range_header: Optional[str] = None,
    ) -> PipelineResponse:
        session = self.registry.lookup(session_id.lower())
        entry = session.file(file_index)
        convert = wants_transcode or needs_conversion(entry.name)

        session.handle.select_file(entry.index)
        if convert:
            # output is a rewritten container; byte offsets of the source do not apply
            start, end, partial = 0, entry.size - 1, False
        else:
            start, end, partial = parse_range(range_header, entry.size)
        reader = await session.handle.open_reader(entry.index, start, max(0, end - start + 1))

        def on_close() -> None:
            session.active_streams = max(0, session.active_streams - 1)

        try:
            resp = PipelineResponse(
                reader,
                convert=convert,
                filename=entry.name,
                size=entry.size,
                start=start,
                end=end,
                partial=partial,
                command=self.transcode_command,
                on_close=on_close,
                label=f"{session.id[:8]}/{entry.index}",
            )
        except BaseException:
            await reader.aclose()
            raise
        session.active_streams += 1

        log.info("streaming %s [%s] %s", entry.name, "transcode" if convert else "direct",
                 f"bytes {start}-{end}" if partial else entry.size_formatted)
        return resp

    async def remove(self, session_id: str) -> bool:
        return await self.registry.remove(session_id.lower())

    async def close(self) -> None:
        await self.registry.close()
        await self.engine.close()
