"""Remote directory abstract base class -- the remote CRM surface the reconciler needs.

Every remote backend (HubSpot over HTTP, in-memory fakes in tests) implements
this ABC. The SyncReconciler only ever talks to the remote system through it.

Contract:
- "Not found" is a return value (None / False), never an exception.
- RateLimitedError may be raised by any operation and must be left to
  propagate to the job layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol

from src.hubsync.sync.schemas import ObjectKind, RemoteRecord, SearchFilter


class RemoteDirectory(ABC):
    """Abstract interface for remote CRM record operations.

    Methods:
        get_by_id: Fetch a record by remote id.
        get_by_natural_key: Fetch a record by a unique property (e.g. email).
        create: Create a record; raises RemoteConflictError on duplicates.
        update: Update a record; returns None if the id no longer exists.
        search: Filter records on one property (exact or token match).
        associate: Link two records; returns False if either end is missing.
    """

    @abstractmethod
    async def get_by_id(self, kind: ObjectKind, remote_id: str) -> RemoteRecord | None:
        """Fetch a record by remote id, or None if it does not exist."""
        ...

    @abstractmethod
    async def get_by_natural_key(
        self, kind: ObjectKind, key: str, value: str
    ) -> RemoteRecord | None:
        """Fetch a record by a unique property value, or None."""
        ...

    @abstractmethod
    async def create(self, kind: ObjectKind, properties: dict[str, str]) -> RemoteRecord:
        """Create a record.

        Raises:
            RemoteConflictError: A record with the same natural key exists.
            RemoteValidationError: The payload was rejected.
        """
        ...

    @abstractmethod
    async def update(
        self, kind: ObjectKind, remote_id: str, properties: dict[str, str]
    ) -> RemoteRecord | None:
        """Update a record's properties; None when remote_id is stale.

        Raises:
            RemoteValidationError: The payload was rejected.
        """
        ...

    @abstractmethod
    async def search(self, kind: ObjectKind, search_filter: SearchFilter) -> list[RemoteRecord]:
        """Return records matching a single-property filter."""
        ...

    @abstractmethod
    async def associate(
        self,
        from_kind: ObjectKind,
        from_id: str,
        to_kind: ObjectKind,
        to_id: str,
        association_type: int,
    ) -> bool:
        """Associate two records. Idempotent; False if either record is missing."""
        ...


class RemoteIdWriter(Protocol):
    """Write-back contract: persist the remote id resolved for a local record.

    remote_id=None clears a stored id that proved invalid.
    """

    async def persist_remote_id(
        self, local_id: str | int | None, local_kind: str, remote_id: str | None
    ) -> None: ...
