from __future__ import annotations

import anyio
import pytest

from torrentstream.errors import EngineStartError, NotFoundError, StartFailure, TorrentFileNotFoundError
from torrentstream.sessions import SessionRegistry

from .conftest import INFO_HASH, FakeEngine

pytestmark = pytest.mark.anyio


async def test_concurrent_get_or_create_starts_one_engine(registry: SessionRegistry) -> None:
    engine = FakeEngine(delay=0.05)
    results = []

    async def add() -> None:
        results.append(await registry.get_or_create(INFO_HASH, lambda: engine.start("m")))

    async with anyio.create_task_group() as tg:
        for _ in range(10):
            tg.start_soon(add)

    assert engine.starts == 1
    sessions = {id(s) for s, _ in results}
    assert len(sessions) == 1
    assert sorted(created for _, created in results) == [False] * 9 + [True]


async def test_failure_reaches_every_waiter_and_slot_is_cleared(registry: SessionRegistry) -> None:
    engine = FakeEngine(delay=0.05, fail=EngineStartError(StartFailure.timeout, "Timeout waiting for metadata"))
    errors = []

    async def add() -> None:
        try:
            await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))
        except EngineStartError as e:
            errors.append(e)

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(add)

    assert engine.starts == 1
    assert len(errors) == 5
    assert all(e.reason is StartFailure.timeout for e in errors)
    assert INFO_HASH not in registry

    engine.fail = None
    session, created = await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))
    assert created and engine.starts == 2
    assert session.name == "Some Movie"


async def test_lookup_unknown_raises(registry: SessionRegistry) -> None:
    with pytest.raises(NotFoundError):
        registry.lookup(INFO_HASH)


async def test_remove_stops_handle_and_tolerates_absent(registry: SessionRegistry) -> None:
    engine = FakeEngine()
    session, _ = await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))

    assert await registry.remove(INFO_HASH) is True
    assert session.handle.stop_calls == 1
    assert await registry.remove(INFO_HASH) is False
    with pytest.raises(NotFoundError):
        registry.lookup(INFO_HASH)


async def test_removed_id_can_be_created_again(registry: SessionRegistry) -> None:
    engine = FakeEngine()
    first, _ = await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))
    await registry.remove(INFO_HASH)
    second, created = await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))
    assert created and first is not second
    assert engine.starts == 2


async def test_close_stops_every_session(registry: SessionRegistry) -> None:
    engine = FakeEngine()
    await registry.get_or_create("a" * 40, lambda: engine.start("m1"))
    await registry.get_or_create("b" * 40, lambda: engine.start("m2"))
    await registry.close()
    assert len(registry) == 0
    assert [h.stop_calls for h in engine.handles] == [1, 1]


async def test_session_file_and_refresh(registry: SessionRegistry) -> None:
    engine = FakeEngine()
    session, _ = await registry.get_or_create(INFO_HASH, lambda: engine.start("m"))
    assert session.file(1).name == "b.mkv"
    with pytest.raises(TorrentFileNotFoundError):
        session.file(2)
    stats = session.refresh()
    assert (stats.download_rate, stats.upload_rate, stats.peers) == (0, 0, 0)
