"""Tests for FileSystem: directory semantics, rm/mv, caching and recovery."""

from __future__ import annotations

import anyio
import pytest

from treechat.data_runtime.cache import LIST, Cache, query_key
from treechat.data_runtime.commands import CommandEvent
from treechat.data_runtime.errors import (
    ConflictError,
    DataTimeoutError,
    DataValidationError,
    NotFoundError,
    PartialFailureError,
    TransactionFailedError,
    TransientStoreError,
)
from treechat.data_runtime.filesystem import FileSystem
from treechat.data_runtime.models.api import BatchOperation
from treechat.data_runtime.models.session import SessionContext
from treechat.data_runtime.sync import Pending, RolledBack, SyncTracker

from .conftest import FaultyStore


async def _fill(fs: FileSystem, session: SessionContext, prefix: str, count: int) -> None:
    for i in range(count):
        await fs.write(session, f"{prefix}/item{i:02d}", {"n": i})


# -- Scenario ----------------------------------------------------------------------


async def test_session_tree_scenario(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/sessions/42/name", "Q3 planning")
    await fs.write(session, "/sessions/42/pages/1/title", "Intro")
    await fs.write(session, "/sessions/42/pages/2/title", "Goals")

    assert await fs.read_tree(session, "/sessions/42") == {
        "/sessions/42/name": "Q3 planning",
        "/sessions/42/pages/1/title": "Intro",
        "/sessions/42/pages/2/title": "Goals",
    }
    assert await fs.ls(session, "/sessions/42") == ["name", "pages"]
    assert await fs.ls(session, "/sessions") == ["42"]
    assert await fs.ls(session, "/") == ["sessions"]
    assert await fs.exists(session, "/sessions/42/pages")
    assert await fs.read(session, "/sessions/42/pages") is None


# -- exists / ls / mkdir -----------------------------------------------------------


async def test_exists(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a/b", 1)
    assert await fs.exists(session, "/")
    assert await fs.exists(session, "/a")
    assert await fs.exists(session, "/a/b")
    assert not await fs.exists(session, "/ab")
    assert not await fs.exists(session, "/a/b/c")


async def test_tombstone_counts_for_exists_not_ls(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/dir/gone", None)
    await fs.write(session, "/dir/kept", 1)
    assert await fs.exists(session, "/dir/gone")
    assert await fs.ls(session, "/dir") == ["kept"]
    assert (await fs.read_with_default(session, "/dir/gone", "fallback")).value == "fallback"


async def test_ls_missing_path_is_empty(fs: FileSystem, session: SessionContext) -> None:
    assert await fs.ls(session, "/nothing/here") == []


async def test_ls_on_value_is_conflict(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/file", "text")
    with pytest.raises(ConflictError):
        await fs.ls(session, "/file")


async def test_mkdir(fs: FileSystem, session: SessionContext) -> None:
    assert await fs.mkdir(session, "/projects/new") is True
    assert await fs.mkdir(session, "/projects/new") is False
    assert await fs.exists(session, "/projects/new")
    assert await fs.ls(session, "/projects") == ["new"]
    assert await fs.ls(session, "/projects/new") == []
    assert await fs.read(session, "/projects/new") is None
    assert await fs.read_tree(session, "/projects") == {}


async def test_mkdir_over_value_is_conflict(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/file", 1)
    with pytest.raises(ConflictError):
        await fs.mkdir(session, "/file")


async def test_root_is_not_a_write_target(fs: FileSystem, session: SessionContext) -> None:
    with pytest.raises(DataValidationError):
        await fs.write(session, "/", 1)
    with pytest.raises(DataValidationError):
        await fs.rm(session, "/")


# -- rm ----------------------------------------------------------------------------


async def test_rm_recursive(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await fs.write(session, "/a", "self")
    await fs.write(session, "/a/b/c", 1)
    await fs.mkdir(session, "/a/d")
    await fs.write(session, "/ab", "sibling")

    removed = await fs.rm(session, "/a")

    assert removed == ["/a/b/c", "/a/d", "/a"]
    assert not await fs.exists(session, "/a")
    assert await fs.read(session, "/ab") == "sibling"
    assert store.calls["transact_write"] == 1


async def test_rm_missing(fs: FileSystem, session: SessionContext) -> None:
    with pytest.raises(NotFoundError):
        await fs.rm(session, "/missing")


async def test_rm_non_recursive(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/dir/child", 1)
    with pytest.raises(ConflictError, match="not empty"):
        await fs.rm(session, "/dir", recursive=False)
    assert await fs.rm(session, "/dir/child", recursive=False) == ["/dir/child"]


async def test_rm_more_than_one_transaction(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await _fill(fs, session, "/big", 30)
    store.calls.clear()

    removed = await fs.rm(session, "/big")

    assert len(removed) == 30
    assert store.calls["transact_write"] == 2
    assert not await fs.exists(session, "/big")
    assert len(store) == 0


async def test_rm_partial_failure(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await _fill(fs, session, "/big", 30)
    assert await fs.exists(session, "/big")  # cached
    store.fail("transact_write", None, TransactionFailedError("cancelled"))

    with pytest.raises(PartialFailureError) as exc_info:
        await fs.rm(session, "/big")

    details = exc_info.value.details
    assert len(details["removed"]) == 25
    assert len(details["remaining"]) == 5
    assert len(store) == 5
    # Cache reflects the partial state, not the pre-rm one.
    assert sorted(await fs.ls(session, "/big")) == sorted(p.rsplit("/", 1)[1] for p in details["remaining"])


# -- mv ----------------------------------------------------------------------------


async def test_mv_small_tree_is_one_transaction(
    fs: FileSystem, session: SessionContext, store: FaultyStore
) -> None:
    await fs.write(session, "/a", "root")
    await fs.write(session, "/a/x", 1)
    store.calls.clear()

    moved = await fs.mv(session, "/a", "/b")

    assert moved == {"/a": "/b", "/a/x": "/b/x"}
    assert store.calls["transact_write"] == 1
    assert not await fs.exists(session, "/a")
    assert await fs.read_tree(session, "/b") == {"/b": "root", "/b/x": 1}


async def test_mv_many_descendants(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await _fill(fs, session, "/a", 30)
    store.calls.clear()

    moved = await fs.mv(session, "/a", "/archive/a")

    assert len(moved) == 30
    assert store.calls["transact_write"] == 4
    assert not await fs.exists(session, "/a")
    assert await fs.exists(session, "/archive/a")
    tree = await fs.read_tree(session, "/archive/a")
    assert len(tree) == 30
    assert tree["/archive/a/item07"] == {"n": 7}


async def test_mv_carries_metadata(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a/x", 1)
    bob = SessionContext(actor_id="bob", workspace_id="ws1")
    await fs.mv(bob, "/a", "/b")

    doc = await fs.client.read_document("ws1", "/b/x", bob)
    assert doc is not None
    assert doc.created_by == "alice"
    assert doc.updated_by == "bob"


async def test_mv_errors(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a/x", 1)
    await fs.write(session, "/taken", 2)

    with pytest.raises(NotFoundError):
        await fs.mv(session, "/missing", "/z")
    with pytest.raises(ConflictError):
        await fs.mv(session, "/a", "/taken")
    with pytest.raises(DataValidationError):
        await fs.mv(session, "/a", "/a/inner")
    with pytest.raises(DataValidationError):
        await fs.mv(session, "/a", "/a")
    assert await fs.read(session, "/a/x") == 1


async def test_mv_rejects_target_paths_that_would_be_too_deep(
    fs: FileSystem, session: SessionContext, store: FaultyStore
) -> None:
    deep = "/a/" + "/".join(["s"] * 18)  # 19 segments, one below the limit
    await fs.write(session, deep, 1)
    before = store.snapshot()

    with pytest.raises(DataValidationError):
        await fs.mv(session, "/a", "/x/y/z")

    assert store.snapshot().keys() == before.keys()
    assert not await fs.exists(session, "/x")
    assert await fs.read(session, deep) == 1


async def test_mv_copy_failure_rolls_back(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await _fill(fs, session, "/a", 30)
    before = store.snapshot()
    store.fail("transact_write", None, TransactionFailedError("cancelled"))

    with pytest.raises(TransactionFailedError):
        await fs.mv(session, "/a", "/b")

    assert store.snapshot().keys() == before.keys()
    assert not await fs.exists(session, "/b")


async def test_mv_delete_phase_partial_failure(
    fs: FileSystem, session: SessionContext, store: FaultyStore
) -> None:
    await _fill(fs, session, "/a", 30)
    store.fail("transact_write", None, None, None, TransactionFailedError("cancelled"))

    with pytest.raises(PartialFailureError) as exc_info:
        await fs.mv(session, "/a", "/b")

    assert len(exc_info.value.details["remaining"]) == 5
    assert len(await fs.read_tree(session, "/b")) == 30


async def test_mv_invalidates_both_sides(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a/x", 1)
    assert await fs.read(session, "/a/x") == 1
    assert await fs.exists(session, "/b") is False

    await fs.mv(session, "/a", "/b")

    assert await fs.read(session, "/a/x") is None
    assert await fs.exists(session, "/b") is True
    assert await fs.read(session, "/b/x") == 1


# -- Caching -----------------------------------------------------------------------


async def test_query_suffix_cannot_shadow_a_listing(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a/x", 1)
    assert await fs.ls(session, "/a") == ["x"]

    with pytest.raises(DataValidationError):
        await fs.write(session, "/a?ls", "boom")
    with pytest.raises(DataValidationError):
        await fs.read(session, "/a?ls")

    assert await fs.ls(session, "/a") == ["x"]
    assert await fs.read(session, "/a/x") == 1



async def test_reads_are_cached(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    await fs.write(session, "/a", {"v": 1})
    store.calls.clear()

    first = await fs.read(session, "/a")
    second = await fs.read(session, "/a")

    assert first == second == {"v": 1}
    assert store.calls["get"] == 1
    first["v"] = 99
    assert await fs.read(session, "/a") == {"v": 1}


async def test_write_invalidates_parent_listing(fs: FileSystem, session: SessionContext, cache: Cache) -> None:
    await fs.write(session, "/dir/a", 1)
    assert await fs.ls(session, "/dir") == ["a"]
    assert cache.get("ws1", query_key("/dir", LIST)) is not None

    await fs.write(session, "/dir/b", 2)
    assert await fs.ls(session, "/dir") == ["a", "b"]


async def test_nested_write_invalidates_ancestor_tree(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/t/a", 1)
    assert await fs.read_tree(session, "/t") == {"/t/a": 1}
    await fs.write(session, "/t/deep/b", 2)
    assert await fs.read_tree(session, "/t") == {"/t/a": 1, "/t/deep/b": 2}


async def test_batch_invalidates_written_paths(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a", 1)
    assert await fs.read(session, "/a") == 1

    results = await fs.batch(session, [BatchOperation.write("/a", 2), BatchOperation.read("/a")])

    assert results[1].value == 1
    assert await fs.read(session, "/a") == 2


async def test_in_flight_read_cannot_repopulate_stale_value(
    fs: FileSystem, session: SessionContext, store: FaultyStore
) -> None:
    await fs.write(session, "/x", "old")
    store.fail("get", 0.2)  # the next read stalls at the store
    seen: list[object] = []

    async def slow_read() -> None:
        seen.append(await fs.read(session, "/x"))

    async with anyio.create_task_group() as tg:
        tg.start_soon(slow_read)
        await anyio.sleep(0.05)
        await fs.write(session, "/x", "new")

    assert seen == ["old"]
    assert await fs.read(session, "/x") == "new"


async def test_concurrent_writes_last_commit_wins(fs: FileSystem, session: SessionContext) -> None:
    async with anyio.create_task_group() as tg:
        for i in range(5):
            tg.start_soon(fs.write, session, "/counter", i)
    value = await fs.read(session, "/counter")
    doc = await fs.client.read_document("ws1", "/counter", session)
    assert doc is not None
    assert value == doc.data


# -- Optimistic writes ------------------------------------------------------------


async def test_optimistic_write_masks_until_commit(
    fs: FileSystem, session: SessionContext, store: FaultyStore, tracker: SyncTracker
) -> None:
    await fs.write(session, "/title", "old")
    store.fail("put", 0.2)
    during: list[object] = []

    async def write() -> None:
        await fs.write(session, "/title", "new", optimistic=True)

    async with anyio.create_task_group() as tg:
        tg.start_soon(write)
        await anyio.sleep(0.05)
        during.append(await fs.read(session, "/title"))
        assert isinstance(tracker.view("ws1", "/title"), Pending)

    assert during == ["new"]
    assert await fs.read(session, "/title") == "new"
    assert tracker.pending() == []


async def test_optimistic_write_rolls_back_on_failure(
    fs: FileSystem, session: SessionContext, store: FaultyStore, tracker: SyncTracker
) -> None:
    await fs.write(session, "/title", "old")
    assert await fs.read(session, "/title") == "old"
    store.fail("put", *[TransientStoreError("throttled")] * 3)

    with pytest.raises(DataTimeoutError):
        await fs.write(session, "/title", "new", optimistic=True)

    state = tracker.view("ws1", "/title")
    assert isinstance(state, RolledBack)
    assert state.value == "old"
    assert state.retryable
    assert await fs.read(session, "/title") == "old"


# -- Cancellation, watch, retry ---------------------------------------------------


async def test_cancelled_read_returns_none_and_skips_cache(
    fs: FileSystem, session: SessionContext, store: FaultyStore, cache: Cache
) -> None:
    await fs.write(session, "/slow", "value")
    store.fail("get", 0.3)
    request = fs.open_read(session, "/slow")
    results: list[object] = []

    async def consume() -> None:
        results.append(await request.result())

    async with anyio.create_task_group() as tg:
        tg.start_soon(consume)
        await anyio.sleep(0.05)
        request.cancel()

    assert results == [None]
    assert request.cancelled
    assert not request.done
    assert ("ws1", "/slow") not in cache


async def test_read_request_completes(fs: FileSystem, session: SessionContext) -> None:
    await fs.write(session, "/a", 1)
    request = fs.open_read(session, "/a")
    assert await request.result() == 1
    assert request.done

    cancelled_early = fs.open_read(session, "/a")
    cancelled_early.cancel()
    assert await cancelled_early.result() is None


async def test_watch(fs: FileSystem, session: SessionContext) -> None:
    events: list[CommandEvent] = []
    stop = fs.watch("/sessions/**", events.append)

    await fs.write(session, "/sessions/1/name", "a")
    await fs.write(session, "/elsewhere", "b")
    stop()
    await fs.write(session, "/sessions/2/name", "c")

    assert [e.command.path for e in events] == ["/sessions/1/name"]


async def test_retry_reissues_failed_command(fs: FileSystem, session: SessionContext, store: FaultyStore) -> None:
    store.fail("put", *[TransientStoreError("throttled")] * 3)
    with pytest.raises(DataTimeoutError):
        await fs.write(session, "/note", "hello")

    result = await fs.retry(session, "/note")

    assert result.success
    assert await fs.read(session, "/note") == "hello"
    with pytest.raises(NotFoundError):
        await fs.retry(session, "/note")


async def test_sessions_are_isolated(fs: FileSystem, session: SessionContext, other_session: SessionContext) -> None:
    await fs.write(session, "/shared", "ws1 value")
    assert await fs.read(other_session, "/shared") is None
    assert await fs.ls(other_session, "/") == []


# -- Sync state after later commands ----------------------------------------------


async def test_rollback_after_plain_write_restores_stored_value(
    fs: FileSystem, session: SessionContext, store: FaultyStore, tracker: SyncTracker
) -> None:
    await fs.write(session, "/x", 1, optimistic=True)
    await fs.write(session, "/x", 2)
    assert tracker.view("ws1", "/x") is None

    store.fail("put", *[TransientStoreError("throttled")] * 3)
    with pytest.raises(DataTimeoutError):
        await fs.write(session, "/x", 3, optimistic=True)

    state = tracker.view("ws1", "/x")
    assert isinstance(state, RolledBack)
    assert state.value == 2
    assert await fs.read(session, "/x") == 2


async def test_rm_forgets_confirmed_state_and_failures(
    fs: FileSystem, session: SessionContext, store: FaultyStore, tracker: SyncTracker
) -> None:
    await fs.write(session, "/d/x", 1, optimistic=True)
    assert tracker.view("ws1", "/d/x") is not None
    store.fail("put", *[TransientStoreError("throttled")] * 3)
    with pytest.raises(DataTimeoutError):
        await fs.write(session, "/d/y", 2)

    await fs.rm(session, "/d")

    assert tracker.view("ws1", "/d/x") is None
    assert fs.commands.last_failure("ws1", "/d/y") is None
    with pytest.raises(NotFoundError):
        await fs.retry(session, "/d/y")
