# torrentstream/pipeline.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import AsyncIterator, Callable, Optional, Tuple
from urllib.parse import quote

import anyio
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from .config import settings
from .errors import DeliveryError, RangeNotSatisfiableError, StreamError

log = logging.getLogger("pipeline")

CONTENT_TYPE = "video/mp4"


# -----------------------------------------------------------------------------
# Executable discovery
# -----------------------------------------------------------------------------
def _first_nonempty(*vals: Optional[str]) -> str:
    for v in vals:
        if v:
            return v
    return ""


def ffmpeg_exe() -> str:
    return _first_nonempty(
        os.getenv("FFMPEG_BIN"),
        getattr(settings, "FFMPEG_PATH", None),
    ) or "ffmpeg"


def transcode_command() -> list[str]:
    """ffmpeg reading the torrent bytes on stdin and writing fragmented mp4 to stdout."""
    return [
        ffmpeg_exe(),
        "-hide_banner",
        "-loglevel",
        "warning",
        "-fflags",
        "+genpts",
        "-i",
        "pipe:0",
        "-map",
        "0:v:0?",
        "-map",
        "0:a:0?",
        "-c:v",
        settings.FFMPEG_VIDEO_CODEC,
        "-c:a",
        "aac",
        "-b:a",
        settings.FFMPEG_AUDIO_BITRATE,
        "-movflags",
        "frag_keyframe+empty_moov+default_base_moof",
        "-max_muxing_queue_size",
        "1024",
        "-f",
        "mp4",
        "pipe:1",
    ]


# -----------------------------------------------------------------------------
# Range helper
# -----------------------------------------------------------------------------
def parse_range(range_header: Optional[str], size: int) -> Tuple[int, int, bool]:
    """Return (start, end inclusive, partial). Multi-range requests use the first range."""
    if not range_header or not range_header.startswith("bytes=") or size <= 0:
        return 0, size - 1, False
    first = range_header.split("=", 1)[1].split(",", 1)[0].strip()
    if "-" not in first:
        return 0, size - 1, False
    start_s, end_s = first.split("-", 1)
    try:
        if start_s == "":
            length = int(end_s)
            if length <= 0:
                raise RangeNotSatisfiableError("Invalid suffix bytes", size)
            length = min(length, size)
            return size - length, size - 1, True
        start = int(start_s)
        end = size - 1 if end_s == "" else int(end_s)
    except ValueError:
        raise RangeNotSatisfiableError("Malformed range", size) from None
    if start >= size:
        raise RangeNotSatisfiableError("Range start outside file", size)
    if end < start:
        raise RangeNotSatisfiableError("Invalid range span", size)
    return start, min(end, size - 1), True


# -----------------------------------------------------------------------------
# Subprocess helpers
# -----------------------------------------------------------------------------
async def _monitor_stderr(proc: asyncio.subprocess.Process, label: str) -> None:
    assert proc.stderr is not None
    while True:
        line = await proc.stderr.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="ignore").rstrip()
        if "error" in text.lower():
            log.warning("[ffmpeg %s] %s", label, text)
        else:
            log.debug("[ffmpeg %s] %s", label, text)


async def _wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


# -----------------------------------------------------------------------------
# Response
# -----------------------------------------------------------------------------
class PipelineResponse(Response):
    """
    Streams a torrent reader to the client, directly or through ffmpeg.

    Direct copies declare the size and honour byte ranges. Converted streams
    are chunked and unseekable. The first output chunk is awaited before the
    headers go out, so failures up to that point become a JSON error; later
    failures only close the connection.

    Client disconnect cancels the transfer. Cleanup then runs shielded: the
    subprocess gets SIGKILL (bounded wait), helper tasks are cancelled and
    the reader is closed.
    """

    media_type = CONTENT_TYPE

    def __init__(
        self,
        reader,
        *,
        convert: bool,
        filename: str,
        size: Optional[int] = None,
        start: int = 0,
        end: Optional[int] = None,
        partial: bool = False,
        command: Optional[list[str]] = None,
        chunk_size: Optional[int] = None,
        kill_grace: Optional[float] = None,
        on_close: Optional[Callable[[], None]] = None,
        label: str = "",
    ) -> None:
        self._reader = reader
        self.convert = convert
        self.command = list(command) if command else transcode_command()
        self.chunk_size = chunk_size or settings.STREAM_CHUNK
        self.kill_grace = settings.TRANSCODE_KILL_GRACE if kill_grace is None else kill_grace
        self.on_close = on_close
        self.label = label or filename
        self.background = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.headers_sent = False
        self.disconnected = False
        self.bytes_sent = 0
        self._tasks: list[asyncio.Task] = []
        self._chunks: Optional[AsyncIterator[bytes]] = None
        self._feed_error: Optional[BaseException] = None

        headers = {
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(filename)}",
            "Cache-Control": "no-store",
        }
        if convert:
            self.status_code = 200
            headers["Transfer-Encoding"] = "chunked"
            headers["Accept-Ranges"] = "none"
        else:
            total = size or 0
            last = total - 1 if end is None else end
            self.status_code = 206 if partial else 200
            headers["Accept-Ranges"] = "bytes"
            headers["Content-Length"] = str(max(0, last - start + 1))
            if partial:
                headers["Content-Range"] = f"bytes {start}-{last}/{total}"
        self.init_headers(headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async with anyio.create_task_group() as tg:

            async def watch_disconnect() -> None:
                await _wait_for_disconnect(receive)
                self.disconnected = True
                tg.cancel_scope.cancel()

            tg.start_soon(watch_disconnect)
            try:
                await self._respond(scope, receive, send)
            finally:
                tg.cancel_scope.cancel()
                with anyio.CancelScope(shield=True):
                    await self._cleanup()

        if self.disconnected:
            log.info("client disconnected from %s after %d bytes", self.label, self.bytes_sent)
        if self.background is not None:
            await self.background()

    async def _respond(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            if self.convert:
                await self._spawn()
                self._chunks = self._process_output()
            else:
                self._chunks = self._reader
            first = await _next_chunk(self._chunks)
        except StreamError as exc:
            log.warning("stream %s failed before headers: %s", self.label, exc)
            await JSONResponse({"error": str(exc)}, status_code=exc.status_code)(scope, receive, send)
            return
        except Exception as exc:
            log.exception("stream %s failed before headers", self.label)
            err = DeliveryError(str(exc) or exc.__class__.__name__)
            await JSONResponse({"error": str(err)}, status_code=err.status_code)(scope, receive, send)
            return

        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        self.headers_sent = True

        chunk = first
        try:
            while chunk is not None:
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.bytes_sent += len(chunk)
                chunk = await _next_chunk(self._chunks)
        except Exception as exc:
            # headers are out; the client has to re-request
            log.warning("stream %s aborted after %d bytes: %s", self.label, self.bytes_sent, exc)
            return
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _spawn(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            log.error("transcoder not runnable: %s (%s)", self.command[0], e)
            raise DeliveryError(f"Transcoder not available: {self.command[0]}") from e
        self.process = proc
        log.info("transcoding %s (pid %s)", self.label, proc.pid)
        self._tasks = [
            asyncio.create_task(self._feed(proc)),
            asyncio.create_task(_monitor_stderr(proc, self.label)),
        ]

    async def _feed(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdin is not None
        try:
            async for chunk in self._reader:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            log.debug("transcoder closed its input for %s", self.label)
        except StreamError as e:
            log.info("source for %s ended early: %s", self.label, e)
            self._feed_error = e
        except Exception as e:
            log.warning("feeding transcoder for %s failed: %s", self.label, e)
            self._feed_error = e
        finally:
            with contextlib.suppress(Exception):
                proc.stdin.close()

    async def _process_output(self) -> AsyncIterator[bytes]:
        proc = self.process
        assert proc is not None and proc.stdout is not None
        while True:
            data = await proc.stdout.read(self.chunk_size)
            if not data:
                break
            yield data
        code = await proc.wait()
        if code != 0:
            raise DeliveryError(f"Transcoder exited with code {code}")
        # a cut-short input means truncated output despite the clean exit
        err = self._feed_error
        if isinstance(err, StreamError):
            raise err
        if err is not None:
            raise DeliveryError(f"Source read failed: {err}") from err

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace)
        except asyncio.TimeoutError:
            log.error("transcoder pid %s still alive %.1fs after kill", proc.pid, self.kill_grace)

    async def _cleanup(self) -> None:
        if self.process is not None:
            await self._terminate(self.process)
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        chunks = self._chunks
        if chunks is not None and chunks is not self._reader:
            with contextlib.suppress(Exception):
                await chunks.aclose()
        await self._reader.aclose()
        if self.on_close is not None:
            self.on_close()
