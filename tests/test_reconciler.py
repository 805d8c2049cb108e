"""Tests for create-or-update reconciliation.

Runs SyncReconciler against the InMemoryDirectory fake from conftest and
asserts on the remote calls made and the ids written back.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.hubsync.sync.errors import (
    RateLimitedError,
    RemoteConflictError,
    RemoteValidationError,
    SyncValidationError,
    TransientSyncError,
    UnconvertibleValueError,
)
from src.hubsync.sync.schemas import (
    CompanyRelation,
    ObjectKind,
    RecordSnapshot,
    SyncOperation,
)

CONTACT = ObjectKind.CONTACT
COMPANY = ObjectKind.COMPANY


# ── Helpers ────────────────────────────────────────────────────────────────


def _contact(**overrides) -> RecordSnapshot:
    """Contact snapshot with the canonical email/firstname map."""
    defaults = {
        "local_id": 1,
        "local_kind": "member",
        "attributes": {"first_name": "Ann", "email": "a@x.com"},
        "property_map": {"email": "email", "firstname": "first_name"},
    }
    defaults.update(overrides)
    return RecordSnapshot(**defaults)


def _company(**overrides) -> RecordSnapshot:
    defaults = {
        "local_id": 5,
        "local_kind": "organisation",
        "attributes": {"name": "Acme Inc", "city": "Oslo"},
        "property_map": {"name": "name", "city": "city"},
    }
    defaults.update(overrides)
    return RecordSnapshot(**defaults)


class Opaque:
    pass


# ── Contact Create / Update ────────────────────────────────────────────────


class TestContactCreateOrUpdate:
    """Natural-key resolution decides between create and update."""

    async def test_creates_when_remote_has_no_match(self, reconciler, directory, writer):
        outcome = await reconciler.reconcile(CONTACT, _contact())

        assert directory.calls_to("create") == [
            ("create", CONTACT, {"email": "a@x.com", "firstname": "Ann"})
        ]
        assert outcome.operation is SyncOperation.CREATED
        assert outcome.remote_id == "1001"
        assert outcome.properties == {"email": "a@x.com", "firstname": "Ann"}
        assert writer.writes == [(1, "member", "1001")]

    async def test_updates_record_found_by_email(self, reconciler, directory, writer):
        directory.add(CONTACT, "42", email="a@x.com")

        outcome = await reconciler.reconcile(CONTACT, _contact())

        assert directory.calls_to("create") == []
        assert directory.calls_to("update") == [
            ("update", CONTACT, "42", {"email": "a@x.com", "firstname": "Ann"})
        ]
        assert outcome.operation is SyncOperation.UPDATED
        assert outcome.remote_id == "42"
        assert writer.writes == [(1, "member", "42")]

    async def test_stored_id_is_used_without_lookup(self, reconciler, directory, writer):
        directory.add(CONTACT, "42", email="a@x.com")

        outcome = await reconciler.reconcile(CONTACT, _contact(remote_id=42))

        assert outcome.remote_id == "42"
        assert directory.calls_to("get_by_natural_key") == []
        assert writer.writes == []

    async def test_update_uses_update_map(self, reconciler, directory):
        directory.add(CONTACT, "42", email="a@x.com")
        snapshot = _contact(remote_id="42", update_property_map={"firstname": "first_name"})

        await reconciler.reconcile(CONTACT, snapshot)

        assert directory.calls_to("update") == [("update", CONTACT, "42", {"firstname": "Ann"})]

    async def test_reconcile_twice_is_idempotent(self, reconciler, directory):
        first = await reconciler.reconcile(CONTACT, _contact())
        second = await reconciler.reconcile(CONTACT, _contact())
        third = await reconciler.reconcile(CONTACT, _contact(remote_id=first.remote_id))

        assert first.remote_id == second.remote_id == third.remote_id
        assert len(directory.calls_to("create")) == 1
        assert second.operation is SyncOperation.UPDATED
        assert third.operation is SyncOperation.UPDATED

    async def test_contact_without_email_is_created(self, reconciler, directory):
        snapshot = _contact(attributes={"first_name": "Ann"})

        outcome = await reconciler.reconcile(CONTACT, snapshot)

        assert outcome.operation is SyncOperation.CREATED
        assert directory.calls_to("get_by_natural_key") == []

    async def test_custom_natural_key_path(self, reconciler, directory):
        directory.add(CONTACT, "42", email="a@x.com")
        snapshot = _contact(
            attributes={"profile": {"mail": "a@x.com"}},
            property_map={"email": "profile.mail"},
            natural_key="profile.mail",
        )

        outcome = await reconciler.reconcile(CONTACT, snapshot)

        assert outcome.remote_id == "42"
        assert directory.calls_to("get_by_natural_key")[0] == (
            "get_by_natural_key",
            CONTACT,
            "email",
            "a@x.com",
        )


# ── Stale Ids ──────────────────────────────────────────────────────────────


class TestStaleIdRepair:
    """A stored id that no longer exists is repaired via the natural key."""

    async def test_stale_id_resolved_by_email(self, reconciler, directory, writer):
        directory.add(CONTACT, "55", email="a@x.com")

        outcome = await reconciler.reconcile(CONTACT, _contact(remote_id="9"))

        assert writer.writes == [(1, "member", "55")]
        assert directory.calls_to("update")[0][2] == "55"
        assert directory.calls_to("create") == []
        assert outcome.remote_id == "55"
        assert outcome.operation is SyncOperation.UPDATED

    async def test_stale_id_without_match_creates(self, reconciler, directory, writer):
        outcome = await reconciler.reconcile(CONTACT, _contact(remote_id="9"))

        assert outcome.operation is SyncOperation.CREATED
        assert writer.writes == [(1, "member", "1001")]

    async def test_update_target_deleted_mid_flight_falls_back_to_create(
        self, reconciler, directory, writer
    ):
        directory.add(CONTACT, "42", email="a@x.com")
        directory.before("update", lambda d: d.remove(CONTACT, "42"))

        outcome = await reconciler.reconcile(CONTACT, _contact(remote_id="42"))

        assert outcome.operation is SyncOperation.CREATED
        assert outcome.remote_id == "1001"
        assert writer.writes == [(1, "member", "1001")]


# ── Conflicts ──────────────────────────────────────────────────────────────


class TestConflictResolution:
    """A 409 on create means someone else created the record first."""

    async def test_conflict_adopts_existing_id(self, reconciler, directory, writer, sleep):
        directory.before("create", lambda d: d.add(CONTACT, "77", email="a@x.com"))

        outcome = await reconciler.reconcile(CONTACT, _contact())

        assert outcome.remote_id == "77"
        assert outcome.operation is SyncOperation.MATCHED_EXISTING
        assert writer.writes == [(1, "member", "77")]
        assert directory.calls_to("update")[0][2] == "77"
        sleep.assert_awaited_with(0.2)

    async def test_conflict_without_id_resolved_by_email(self, reconciler, directory):
        directory.before("create", lambda d: d.add(CONTACT, "77", email="a@x.com"))
        directory.fail_next("create", RemoteConflictError("Contact already exists"))

        outcome = await reconciler.reconcile(CONTACT, _contact())

        assert outcome.remote_id == "77"
        assert directory.calls_to("get_by_id") == []

    async def test_unresolved_conflict_is_transient(self, reconciler, directory):
        directory.fail_next("create", RemoteConflictError("Contact already exists"))

        with pytest.raises(TransientSyncError) as exc_info:
            await reconciler.reconcile(CONTACT, _contact())

        assert exc_info.value.reason == "conflict_unresolved"
        assert exc_info.value.suggested_delay == 5.0


# ── Failures ───────────────────────────────────────────────────────────────


class TestFailures:
    """Deterministic failures surface; rate limits propagate untouched."""

    async def test_create_validation_error_carries_context(self, reconciler, directory):
        directory.fail_next("create", RemoteValidationError("Property values were not valid"))

        with pytest.raises(SyncValidationError) as exc_info:
            await reconciler.reconcile(CONTACT, _contact())

        error = exc_info.value
        assert error.local_id == 1
        assert error.map_name == "property_map"
        assert error.properties == {"email": "a@x.com", "firstname": "Ann"}
        assert error.property_map == {"email": "email", "firstname": "first_name"}

    async def test_update_validation_error_names_update_map(self, reconciler, directory):
        directory.add(CONTACT, "42", email="a@x.com")
        directory.fail_next("update", RemoteValidationError("bad"))
        snapshot = _contact(remote_id="42", update_property_map={"firstname": "first_name"})

        with pytest.raises(SyncValidationError) as exc_info:
            await reconciler.reconcile(CONTACT, snapshot)

        assert exc_info.value.map_name == "update_property_map"
        assert exc_info.value.properties == {"firstname": "Ann"}

    async def test_rate_limit_propagates(self, reconciler, directory):
        directory.fail_next("get_by_natural_key", RateLimitedError("slow down", retry_after=10))

        with pytest.raises(RateLimitedError):
            await reconciler.reconcile(CONTACT, _contact())

    async def test_unconvertible_value_never_reaches_remote(self, reconciler, directory):
        snapshot = _contact(
            attributes={"email": "a@x.com", "thing": Opaque()},
            property_map={"email": "email", "thing": "thing"},
        )

        with pytest.raises(UnconvertibleValueError):
            await reconciler.reconcile(CONTACT, snapshot)

        assert directory.calls_to("create") == []
        assert directory.calls_to("update") == []


# ── Companies ──────────────────────────────────────────────────────────────


class TestCompanyReconciliation:
    """Companies resolve by name with a delayed re-check before create."""

    async def test_creates_company_after_recheck(self, reconciler, directory, writer, sleep):
        outcome = await reconciler.reconcile(COMPANY, _company())

        assert outcome.operation is SyncOperation.CREATED
        assert directory.calls_to("create") == [
            ("create", COMPANY, {"name": "Acme Inc", "city": "Oslo"})
        ]
        assert writer.writes == [(5, "organisation", "1001")]
        sleep.assert_awaited_once_with(0.1)

    async def test_updates_company_found_by_name(self, reconciler, directory):
        directory.add(COMPANY, "300", name="ACME, Inc.")

        outcome = await reconciler.reconcile(COMPANY, _company())

        assert outcome.remote_id == "300"
        assert outcome.operation is SyncOperation.UPDATED
        assert directory.calls_to("create") == []

    async def test_company_created_during_recheck_window(
        self, reconciler, directory, writer, sleep
    ):
        sleep.side_effect = lambda delay: directory.add(COMPANY, "301", name="Acme Inc")

        outcome = await reconciler.reconcile(COMPANY, _company())

        assert outcome.remote_id == "301"
        assert outcome.operation is SyncOperation.MATCHED_EXISTING
        assert directory.calls_to("create") == []
        assert writer.writes == [(5, "organisation", "301")]


# ── Company Association ────────────────────────────────────────────────────


class TestCompanyAssociation:
    """Contacts are linked to their company, healing a stale company id once."""

    async def test_unresolved_company_reconciled_before_contact(self, reconciler, directory, writer):
        relation = CompanyRelation(local_id=5, name="Acme Inc", attributes={"city": "Oslo"})

        outcome = await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        creates = directory.calls_to("create")
        assert [c[1] for c in creates] == [COMPANY, CONTACT]
        assert creates[0][2] == {"name": "Acme Inc", "city": "Oslo"}
        assert outcome.company_remote_id == "1001"
        assert ("contacts", "1002", "companies", "1001", 1) in directory.associations
        assert writer.writes == [(5, "organisation", "1001"), (1, "member", "1002")]

    async def test_stored_company_id_is_verified_and_linked(self, reconciler, directory, writer):
        directory.add(COMPANY, "300", name="Acme Inc")
        relation = CompanyRelation(local_id=5, remote_id="300", name="Acme Inc")

        outcome = await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert outcome.company_remote_id == "300"
        assert [c[1] for c in directory.calls_to("create")] == [CONTACT]
        assert ("contacts", "1001", "companies", "300", 1) in directory.associations

    async def test_missing_company_is_recreated(self, reconciler, directory, writer):
        relation = CompanyRelation(local_id=5, remote_id="300", name="Acme Inc")

        outcome = await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert outcome.company_remote_id == "1002"
        assert writer.writes == [
            (1, "member", "1001"),
            (5, "organisation", None),
            (5, "organisation", "1002"),
        ]
        assert len(directory.calls_to("associate")) == 1

    async def test_company_deleted_before_association_heals_once(self, reconciler, directory):
        directory.add(COMPANY, "300", name="Acme Inc")
        directory.before("associate", lambda d: d.remove(COMPANY, "300"))
        relation = CompanyRelation(local_id=5, remote_id="300", name="Acme Inc")

        outcome = await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert outcome.company_remote_id == "1002"
        assert len(directory.calls_to("associate")) == 2

    async def test_association_failing_after_heal_is_transient(self, reconciler, directory):
        directory.associate = AsyncMock(return_value=False)
        relation = CompanyRelation(local_id=5, name="Acme Inc")

        with pytest.raises(TransientSyncError) as exc_info:
            await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert exc_info.value.reason == "association_target_missing"
        assert directory.associate.await_count == 2

    async def test_nameless_company_is_never_created(self, reconciler, directory):
        relation = CompanyRelation(attributes={"city": "Oslo"})
        contact = _contact(company_relation=relation)

        first = await reconciler.reconcile(CONTACT, contact)
        second = await reconciler.reconcile(CONTACT, contact)

        assert directory.records[COMPANY] == {}
        assert [c[1] for c in directory.calls_to("create")] == [CONTACT]
        assert directory.calls_to("associate") == []
        assert first.company_remote_id is None
        assert second.company_remote_id is None
        assert second.remote_id == first.remote_id == "1001"

    async def test_missing_nameless_company_is_not_recreated(self, reconciler, directory, writer):
        relation = CompanyRelation(local_id=5, remote_id="300")

        outcome = await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert outcome.company_remote_id is None
        assert directory.records[COMPANY] == {}
        assert directory.calls_to("associate") == []
        assert writer.writes == [(1, "member", "1001"), (5, "organisation", None)]

    async def test_explicit_company_kind_and_translatable_name(self, reconciler, directory, writer):
        relation = CompanyRelation(
            local_id=5,
            local_kind="business",
            name={"en": "Acme", "fr": "Acmé"},
        )

        await reconciler.reconcile(CONTACT, _contact(company_relation=relation))

        assert directory.calls_to("create")[0] == ("create", COMPANY, {"name": "Acme"})
        assert writer.writes[0] == (5, "business", "1001")

    async def test_unmapped_contact_kind_uses_default_company_kind(self, reconciler, writer):
        relation = CompanyRelation(local_id=5, name="Acme Inc")

        await reconciler.reconcile(
            CONTACT, _contact(local_kind="lead", company_relation=relation)
        )

        assert writer.writes[0] == (5, "company", "1001")
