"""Create-or-update reconciliation of local records against the remote CRM.

One reconcile call runs a bounded, strictly sequential chain of remote calls:

    resolve existing (stored id -> natural key) -> update | create
    -> (contacts) associate company

Everything resolvable locally is resolved here: stale stored ids, duplicate
creation races (409), and association targets that vanished. Only the residual
failure needed for the retry policy propagates:
- SyncValidationError / UnconvertibleValueError / InvalidPropertyTypeError: fatal.
- TransientSyncError / RateLimitedError / RemoteUnavailableError: retry later.

Natural-key resolution runs before every create so a retried attempt after an
unacknowledged write finds the record instead of duplicating it. The re-check
after a conflict is best effort; only a remote idempotency key would make it a
guarantee.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.hubsync.config import SyncConfig
from src.hubsync.sync.converter import convert_value
from src.hubsync.sync.directory import RemoteDirectory, RemoteIdWriter
from src.hubsync.sync.errors import (
    RemoteConflictError,
    RemoteValidationError,
    SyncValidationError,
    TransientSyncError,
)
from src.hubsync.sync.mapper import build_properties, resolve_path, select_property_map
from src.hubsync.sync.matching import CompanyMatcher
from src.hubsync.sync.schemas import (
    CompanyRelation,
    ObjectKind,
    RecordSnapshot,
    RemoteRecord,
    SyncOperation,
    SyncOutcome,
)

logger = structlog.get_logger(__name__)

# Remote property used as the natural key, and its default local path
NATURAL_KEYS: dict[ObjectKind, str] = {
    ObjectKind.CONTACT: "email",
    ObjectKind.COMPANY: "name",
}

DEFAULT_COMPANY_PROPERTY_MAP: dict[str, str] = {
    "name": "name",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
}


class SyncReconciler:
    """Reconciles contacts and companies with the remote directory.

    Args:
        directory: Remote CRM surface.
        writer: Persists resolved remote ids back onto local records.
        config: Engine configuration.
        matcher: Company name resolver. Defaults to a CompanyMatcher over directory.
        sleep: Awaitable sleep used for race re-checks (injectable for tests).
    """

    def __init__(
        self,
        directory: RemoteDirectory,
        writer: RemoteIdWriter,
        config: SyncConfig | None = None,
        matcher: CompanyMatcher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._directory = directory
        self._writer = writer
        self._config = config or SyncConfig()
        self._matcher = matcher or CompanyMatcher(directory, self._config.company_match_threshold)
        self._sleep = sleep

    async def reconcile(self, kind: ObjectKind, snapshot: RecordSnapshot) -> SyncOutcome:
        """Reconcile one record of the given kind."""
        if kind is ObjectKind.CONTACT:
            return await self.reconcile_contact(snapshot)
        return await self.reconcile_company(snapshot)

    async def reconcile_company(self, snapshot: RecordSnapshot) -> SyncOutcome:
        """Create or update a company, resolved by stored id then by name."""
        return await self._reconcile(ObjectKind.COMPANY, snapshot)

    async def reconcile_contact(self, snapshot: RecordSnapshot) -> SyncOutcome:
        """Create or update a contact and associate its company.

        A related company without a remote id is reconciled before the contact.
        One with neither a remote id nor a name is skipped.
        """
        relation = snapshot.company_relation
        company_id: str | None = None

        if relation is not None and relation.remote_id is None:
            company_id = await self._reconcile_relation(snapshot, relation)

        outcome = await self._reconcile(ObjectKind.CONTACT, snapshot)

        if relation is not None and (relation.remote_id is not None or company_id is not None):
            company_id = await self._associate_company(
                outcome.remote_id, snapshot, relation, company_id
            )

        return outcome.model_copy(update={"company_remote_id": company_id})

    # ── Resolution ──

    async def _reconcile(self, kind: ObjectKind, snapshot: RecordSnapshot) -> SyncOutcome:
        natural_value = self._natural_key_value(kind, snapshot)
        existing = await self._resolve_existing(kind, snapshot, natural_value)

        if existing is not None:
            return await self._update_existing(
                kind, snapshot, existing.id, natural_value, SyncOperation.UPDATED
            )
        return await self._create(kind, snapshot, natural_value)

    def _natural_key_value(self, kind: ObjectKind, snapshot: RecordSnapshot) -> str | None:
        path = snapshot.natural_key or NATURAL_KEYS[kind]
        value = convert_value(resolve_path(snapshot.attributes, path), NATURAL_KEYS[kind])
        if value is None:
            return None
        return value.strip() or None

    async def _lookup_natural_key(self, kind: ObjectKind, value: str) -> RemoteRecord | None:
        if kind is ObjectKind.COMPANY:
            return await self._matcher.find_by_name(value)
        return await self._directory.get_by_natural_key(kind, NATURAL_KEYS[kind], value)

    async def _resolve_existing(
        self, kind: ObjectKind, snapshot: RecordSnapshot, natural_value: str | None
    ) -> RemoteRecord | None:
        if snapshot.remote_id:
            record = await self._directory.get_by_id(kind, snapshot.remote_id)
            if record is not None:
                return record
            # Keep the stale id until the natural key says otherwise
            logger.warning(
                "sync.stale_remote_id",
                kind=kind.value,
                local_id=snapshot.local_id,
                remote_id=snapshot.remote_id,
            )

        if not natural_value:
            return None

        record = await self._lookup_natural_key(kind, natural_value)
        if record is None:
            return None

        if record.id != snapshot.remote_id:
            await self._write_back(kind, snapshot, record.id)
        return record

    # ── Update / create ──

    async def _update_existing(
        self,
        kind: ObjectKind,
        snapshot: RecordSnapshot,
        remote_id: str,
        natural_value: str | None,
        operation: SyncOperation,
        allow_create: bool = True,
    ) -> SyncOutcome:
        map_name, property_map = select_property_map(snapshot, for_update=True)
        properties = build_properties(snapshot, property_map)

        record = await self._update(kind, snapshot, remote_id, properties, property_map, map_name)

        if record is None:
            logger.warning(
                "sync.update_target_missing",
                kind=kind.value,
                local_id=snapshot.local_id,
                remote_id=remote_id,
            )
            found = await self._lookup_natural_key(kind, natural_value) if natural_value else None
            if found is not None and found.id != remote_id:
                await self._write_back(kind, snapshot, found.id)
                record = await self._update(
                    kind, snapshot, found.id, properties, property_map, map_name
                )

        if record is None:
            if not allow_create:
                raise TransientSyncError("update_target_missing", self._config.conflict_delay)
            return await self._create(kind, snapshot, natural_value, recheck=False)

        logger.info(
            "sync.updated",
            kind=kind.value,
            local_id=snapshot.local_id,
            remote_id=record.id,
            operation=operation.value,
            property_map=map_name,
        )
        return SyncOutcome(
            kind=kind,
            local_id=snapshot.local_id,
            remote_id=record.id,
            operation=operation,
            properties=record.properties or properties,
        )

    async def _update(
        self,
        kind: ObjectKind,
        snapshot: RecordSnapshot,
        remote_id: str,
        properties: dict[str, str],
        property_map: dict[str, str],
        map_name: str,
    ) -> RemoteRecord | None:
        try:
            return await self._directory.update(kind, remote_id, properties)
        except RemoteValidationError as exc:
            raise self._validation_failure(
                kind, snapshot, exc, properties, property_map, map_name
            ) from exc

    async def _create(
        self,
        kind: ObjectKind,
        snapshot: RecordSnapshot,
        natural_value: str | None,
        recheck: bool = True,
    ) -> SyncOutcome:
        map_name, property_map = select_property_map(snapshot, for_update=False)
        properties = build_properties(snapshot, property_map)

        # Company search is eventually consistent; look again after a short pause
        if recheck and kind is ObjectKind.COMPANY and natural_value:
            await self._sleep(self._config.race_recheck_delay)
            found = await self._lookup_natural_key(kind, natural_value)
            if found is not None:
                logger.info(
                    "sync.created_concurrently",
                    kind=kind.value,
                    local_id=snapshot.local_id,
                    remote_id=found.id,
                )
                await self._write_back(kind, snapshot, found.id)
                return await self._update_existing(
                    kind, snapshot, found.id, natural_value, SyncOperation.MATCHED_EXISTING
                )

        try:
            record = await self._directory.create(kind, properties)
        except RemoteConflictError as exc:
            return await self._resolve_conflict(kind, snapshot, natural_value, exc)
        except RemoteValidationError as exc:
            raise self._validation_failure(
                kind, snapshot, exc, properties, property_map, map_name
            ) from exc

        await self._write_back(kind, snapshot, record.id)
        logger.info(
            "sync.created",
            kind=kind.value,
            local_id=snapshot.local_id,
            remote_id=record.id,
        )
        return SyncOutcome(
            kind=kind,
            local_id=snapshot.local_id,
            remote_id=record.id,
            operation=SyncOperation.CREATED,
            properties=record.properties or properties,
        )

    async def _resolve_conflict(
        self,
        kind: ObjectKind,
        snapshot: RecordSnapshot,
        natural_value: str | None,
        exc: RemoteConflictError,
    ) -> SyncOutcome:
        logger.info(
            "sync.create_conflict",
            kind=kind.value,
            local_id=snapshot.local_id,
            natural_key=natural_value,
            existing_id=exc.existing_id,
        )
        await self._sleep(self._config.conflict_recheck_delay)

        found: RemoteRecord | None = None
        if exc.existing_id:
            found = await self._directory.get_by_id(kind, exc.existing_id)
        if found is None and natural_value:
            found = await self._lookup_natural_key(kind, natural_value)

        if found is None:
            raise TransientSyncError("conflict_unresolved", self._config.conflict_delay) from exc

        await self._write_back(kind, snapshot, found.id)
        return await self._update_existing(
            kind,
            snapshot,
            found.id,
            natural_value,
            SyncOperation.MATCHED_EXISTING,
            allow_create=False,
        )

    # ── Company association ──

    def _company_snapshot(self, contact: RecordSnapshot, relation: CompanyRelation) -> RecordSnapshot:
        attributes = dict(relation.attributes)
        if relation.name is not None:
            attributes["name"] = relation.name
        return RecordSnapshot(
            local_id=relation.local_id,
            local_kind=relation.local_kind or self._config.company_kind_for(contact.local_kind),
            remote_id=relation.remote_id,
            attributes=attributes,
            property_map=relation.property_map or DEFAULT_COMPANY_PROPERTY_MAP,
        )

    async def _reconcile_relation(
        self, contact: RecordSnapshot, relation: CompanyRelation
    ) -> str | None:
        company = self._company_snapshot(contact, relation)
        # A nameless company is never created
        if self._natural_key_value(ObjectKind.COMPANY, company) is None:
            logger.warning(
                "sync.company_relation_unresolvable",
                company_local_id=relation.local_id,
                contact_local_id=contact.local_id,
            )
            return None
        outcome = await self.reconcile_company(company)
        return outcome.remote_id

    async def _link(self, contact_id: str, company_id: str) -> bool:
        return await self._directory.associate(
            ObjectKind.CONTACT,
            contact_id,
            ObjectKind.COMPANY,
            company_id,
            self._config.contact_company_association_type,
        )

    async def _heal_company(
        self, contact: RecordSnapshot, relation: CompanyRelation, invalid_id: str | None
    ) -> str | None:
        company = self._company_snapshot(contact, relation)
        logger.warning(
            "sync.company_id_invalid",
            company_local_id=relation.local_id,
            invalid_remote_id=invalid_id,
            contact_local_id=contact.local_id,
        )
        if relation.local_id is not None:
            await self._writer.persist_remote_id(relation.local_id, company.local_kind, None)
        return await self._reconcile_relation(contact, relation.model_copy(update={"remote_id": None}))

    async def _associate_company(
        self,
        contact_id: str,
        contact: RecordSnapshot,
        relation: CompanyRelation,
        company_id: str | None,
    ) -> str | None:
        healed = False

        if company_id is None:
            company_id = relation.remote_id
            if await self._directory.get_by_id(ObjectKind.COMPANY, company_id) is None:
                company_id = await self._heal_company(contact, relation, company_id)
                if company_id is None:
                    return None
                healed = True

        if await self._link(contact_id, company_id):
            logger.info("sync.company_associated", contact_id=contact_id, company_id=company_id)
            return company_id

        if not healed:
            company_id = await self._heal_company(contact, relation, company_id)
            if company_id is None:
                return None
            if await self._link(contact_id, company_id):
                logger.info("sync.company_associated", contact_id=contact_id, company_id=company_id)
                return company_id

        raise TransientSyncError("association_target_missing", self._config.conflict_delay)

    # ── Helpers ──

    async def _write_back(self, kind: ObjectKind, snapshot: RecordSnapshot, remote_id: str) -> None:
        if snapshot.local_id is None:
            return
        await self._writer.persist_remote_id(snapshot.local_id, snapshot.local_kind, remote_id)
        logger.debug(
            "sync.remote_id_persisted",
            kind=kind.value,
            local_id=snapshot.local_id,
            remote_id=remote_id,
        )

    def _validation_failure(
        self,
        kind: ObjectKind,
        snapshot: RecordSnapshot,
        exc: RemoteValidationError,
        properties: dict[str, str],
        property_map: dict[str, str],
        map_name: str,
    ) -> SyncValidationError:
        logger.error(
            "sync.validation_failed",
            kind=kind.value,
            local_id=snapshot.local_id,
            remote_id=snapshot.remote_id,
            error=exc.message,
            properties_sent=properties,
            property_map=property_map,
            map_name=map_name,
        )
        return SyncValidationError(
            kind=kind.value,
            local_id=snapshot.local_id,
            message=exc.message,
            properties=properties,
            property_map=property_map,
            map_name=map_name,
        )
