"""Shared fixtures for data-runtime tests.

Everything runs against ``InMemoryDocumentStore``; no network or Docker.
``FaultyStore`` injects store failures and stalls on chosen calls.
"""

from __future__ import annotations

from collections import Counter, defaultdict

import anyio
import pytest

from treechat.data_runtime.cache import Cache
from treechat.data_runtime.client import DataClient, RetryPolicy
from treechat.data_runtime.commands import CommandExecutor
from treechat.data_runtime.filesystem import FileSystem
from treechat.data_runtime.models.document import Document
from treechat.data_runtime.models.session import SessionContext
from treechat.data_runtime.store.base import Mutation
from treechat.data_runtime.store.memory import InMemoryDocumentStore
from treechat.data_runtime.sync import SyncTracker

# Retry quickly in tests; the timeout still bounds stalled calls.
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, attempt_timeout=0.5, jitter=False)


class FaultyStore(InMemoryDocumentStore):
    """In-memory store whose calls can be made to fail or stall.

    ``fail("get", exc)`` raises *exc* on the next ``get``; a number stalls the
    call for that many seconds; ``None`` lets one call through unchanged.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: Counter[str] = Counter()
        self._faults: dict[str, list[Exception | float | None]] = defaultdict(list)

    def fail(self, method: str, *faults: Exception | float | None) -> None:
        self._faults[method].extend(faults)

    async def _inject(self, method: str) -> None:
        self.calls[method] += 1
        if not self._faults[method]:
            return
        fault = self._faults[method].pop(0)
        if fault is None:
            return
        if isinstance(fault, int | float):
            await anyio.sleep(fault)
            return
        raise fault

    async def get(self, key: str) -> Document | None:
        # Faults apply to the response, so a stalled get returns what it read.
        document = await super().get(key)
        await self._inject("get")
        return document

    async def query_by_prefix(self, prefix: str, *, limit: int | None = None) -> list[Document]:
        await self._inject("query_by_prefix")
        return await super().query_by_prefix(prefix, limit=limit)

    async def put(self, document: Document, *, expected_version: int | None = None) -> None:
        await self._inject("put")
        await super().put(document, expected_version=expected_version)

    async def delete(self, key: str) -> None:
        await self._inject("delete")
        await super().delete(key)

    async def transact_write(self, mutations: list[Mutation]) -> None:
        await self._inject("transact_write")
        await super().transact_write(mutations)


@pytest.fixture
def store() -> FaultyStore:
    return FaultyStore()


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(actor_id="alice", workspace_id="ws1")


@pytest.fixture
def other_session() -> SessionContext:
    return SessionContext(actor_id="bob", workspace_id="ws2")


@pytest.fixture
def client(store: FaultyStore) -> DataClient:
    return DataClient(store, retry=FAST_RETRY)


@pytest.fixture
def cache() -> Cache:
    return Cache(ttl=300.0)


@pytest.fixture
def tracker(cache: Cache) -> SyncTracker:
    return SyncTracker(cache)


@pytest.fixture
def executor(cache: Cache, tracker: SyncTracker) -> CommandExecutor:
    return CommandExecutor(cache, tracker)


@pytest.fixture
def fs(client: DataClient, cache: Cache, executor: CommandExecutor, tracker: SyncTracker) -> FileSystem:
    return FileSystem(client, cache, executor, tracker)
