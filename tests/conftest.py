"""Test fixtures for the sync engine.

Provides:
- InMemoryDirectory: a RemoteDirectory fake with HubSpot-like semantics
  (email uniqueness, 409 on duplicate contacts, case-insensitive search)
  that records every call and can run hooks or inject failures per operation
- RecordingWriter: a RemoteIdWriter that records every write-back
- A SyncReconciler wired to both, with race-window sleeps stubbed out
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.hubsync.config import SyncConfig
from src.hubsync.sync.directory import RemoteDirectory
from src.hubsync.sync.errors import RemoteConflictError
from src.hubsync.sync.reconciler import SyncReconciler
from src.hubsync.sync.schemas import ObjectKind, RemoteRecord, SearchFilter, SearchOperator


class InMemoryDirectory(RemoteDirectory):
    """Dict-backed remote directory."""

    def __init__(self) -> None:
        self.records: dict[ObjectKind, dict[str, dict[str, Any]]] = {
            ObjectKind.CONTACT: {},
            ObjectKind.COMPANY: {},
        }
        self.associations: set[tuple[str, str, str, str, int]] = set()
        self.calls: list[tuple[Any, ...]] = []
        self._hooks: dict[str, list[Callable[[InMemoryDirectory], None]]] = {}
        self._failures: dict[str, list[BaseException]] = {}
        self._next_id = 1000

    # ── Test helpers ──

    def add(self, kind: ObjectKind, remote_id: str, **properties: Any) -> RemoteRecord:
        self.records[kind][remote_id] = dict(properties)
        return RemoteRecord(id=remote_id, properties=dict(properties))

    def remove(self, kind: ObjectKind, remote_id: str) -> None:
        self.records[kind].pop(remote_id, None)

    def before(self, operation: str, hook: Callable[[InMemoryDirectory], None]) -> None:
        """Run hook once, right before the next call to operation."""
        self._hooks.setdefault(operation, []).append(hook)

    def fail_next(self, operation: str, exc: BaseException) -> None:
        """Raise exc from the next call to operation."""
        self._failures.setdefault(operation, []).append(exc)

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == operation]

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        hooks = self._hooks.get(operation)
        if hooks:
            hooks.pop(0)(self)
        failures = self._failures.get(operation)
        if failures:
            raise failures.pop(0)

    def _record(self, kind: ObjectKind, remote_id: str) -> RemoteRecord:
        return RemoteRecord(id=remote_id, properties=dict(self.records[kind][remote_id]))

    # ── RemoteDirectory ──

    async def get_by_id(self, kind, remote_id):
        self._enter("get_by_id", kind, remote_id)
        if remote_id not in self.records[kind]:
            return None
        return self._record(kind, remote_id)

    async def get_by_natural_key(self, kind, key, value):
        self._enter("get_by_natural_key", kind, key, value)
        for remote_id, properties in self.records[kind].items():
            if str(properties.get(key, "")).lower() == value.lower():
                return self._record(kind, remote_id)
        return None

    async def create(self, kind, properties):
        self._enter("create", kind, dict(properties))
        email = properties.get("email")
        if kind is ObjectKind.CONTACT and email:
            for remote_id, existing in self.records[kind].items():
                if str(existing.get("email", "")).lower() == email.lower():
                    raise RemoteConflictError(
                        f"Contact already exists. Existing ID: {remote_id}",
                        existing_id=remote_id,
                    )
        self._next_id += 1
        remote_id = str(self._next_id)
        self.records[kind][remote_id] = dict(properties)
        return self._record(kind, remote_id)

    async def update(self, kind, remote_id, properties):
        self._enter("update", kind, remote_id, dict(properties))
        if remote_id not in self.records[kind]:
            return None
        self.records[kind][remote_id].update(properties)
        return self._record(kind, remote_id)

    async def search(self, kind, search_filter: SearchFilter):
        self._enter("search", kind, search_filter.operator, search_filter.value)
        wanted = search_filter.value.lower()
        results = []
        for remote_id, properties in self.records[kind].items():
            current = str(properties.get(search_filter.property_name, "")).lower()
            if search_filter.operator is SearchOperator.EQ:
                matched = current == wanted
            else:
                tokens = re.findall(r"\w+", current)
                matched = all(token in tokens for token in re.findall(r"\w+", wanted))
            if matched:
                results.append(self._record(kind, remote_id))
        return results[: search_filter.limit]

    async def associate(self, from_kind, from_id, to_kind, to_id, association_type):
        self._enter("associate", from_kind, from_id, to_kind, to_id, association_type)
        if from_id not in self.records[from_kind] or to_id not in self.records[to_kind]:
            return False
        self.associations.add((from_kind.value, from_id, to_kind.value, to_id, association_type))
        return True


class RecordingWriter:
    """RemoteIdWriter that keeps every persisted id in order."""

    def __init__(self) -> None:
        self.writes: list[tuple[Any, str, str | None]] = []

    async def persist_remote_id(self, local_id, local_kind, remote_id) -> None:
        self.writes.append((local_id, local_kind, remote_id))


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(company_kinds={"member": "organisation"})


@pytest.fixture
def sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep so race windows cost nothing."""
    return AsyncMock()


@pytest.fixture
def reconciler(directory, writer, sync_config, sleep) -> SyncReconciler:
    return SyncReconciler(directory, writer, sync_config, sleep=sleep)
