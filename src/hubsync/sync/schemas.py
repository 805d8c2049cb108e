"""Pydantic schemas for CRM sync -- snapshots, remote records, outcomes, jobs.

Defines all structured types that cross the engine boundary:
- Enums: ObjectKind, SyncOperation, SearchOperator, JobDisposition
- Input: CompanyRelation, RecordSnapshot (serialized local record + maps)
- Remote: RemoteRecord, SearchFilter
- Output: SyncOutcome, RetryDecision (Retry | Fatal), JobResult, BatchSyncSummary
- Tooling: PropertyDiagnostic, PropertyReport, PropertySchemaReport
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field

from src.hubsync.sync.errors import FailureCategory


# ── Enums ───────────────────────────────────────────────────────────────────


class ObjectKind(str, Enum):
    """Remote object types the engine reconciles (HubSpot object type names)."""

    CONTACT = "contacts"
    COMPANY = "companies"


class SyncOperation(str, Enum):
    """What a reconciliation actually did remotely."""

    CREATED = "created"
    UPDATED = "updated"
    MATCHED_EXISTING = "matched_existing"


class SearchOperator(str, Enum):
    """Filter operators supported by RemoteDirectory.search."""

    EQ = "EQ"
    CONTAINS_TOKEN = "CONTAINS_TOKEN"


class JobDisposition(str, Enum):
    """What the external queue should do with a job after one attempt."""

    COMPLETED = "completed"
    RELEASED = "released"
    FAILED = "failed"
    SKIPPED = "skipped"


def _coerce_remote_id(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return str(value)
    return value


def _check_property_map(value: dict[str, str]) -> dict[str, str]:
    for remote_name, path in value.items():
        if not isinstance(path, str) or not path.strip():
            raise ValueError(f"property map entry {remote_name!r} must name a non-empty path")
    return value


RemoteId = Annotated[Union[str, None], BeforeValidator(_coerce_remote_id)]
PropertyMap = Annotated[dict[str, str], AfterValidator(_check_property_map)]


# ── Input Snapshots ─────────────────────────────────────────────────────────


class CompanyRelation(BaseModel):
    """Company a contact belongs to, as captured in the contact's snapshot.

    property_map is optional; when empty the company is created with name plus
    any of address/city/state/zip found in attributes.
    """

    local_id: str | int | None = None
    local_kind: str | None = None
    remote_id: RemoteId = None
    name: Any = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    property_map: PropertyMap = Field(default_factory=dict)


class RecordSnapshot(BaseModel):
    """Serialized local record handed to the engine by the owning application.

    attributes holds locally-typed values (str, numbers, bools, datetimes,
    nested dicts/lists, arbitrary objects). Paths in the property maps are
    resolved against it with dot notation.
    """

    local_id: str | int | None = None
    local_kind: str = "contact"
    remote_id: RemoteId = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    property_map: PropertyMap = Field(default_factory=dict)
    update_property_map: PropertyMap = Field(default_factory=dict)
    dynamic_properties: dict[str, Any] = Field(default_factory=dict)
    company_relation: CompanyRelation | None = None
    natural_key: str | None = None  # attribute path; defaults per object kind


# ── Remote Records ──────────────────────────────────────────────────────────


class RemoteRecord(BaseModel):
    """A record as returned by the remote API."""

    id: Annotated[str, BeforeValidator(_coerce_remote_id)]
    properties: dict[str, Any] = Field(default_factory=dict)


class SearchFilter(BaseModel):
    """Single-property search filter."""

    property_name: str
    operator: SearchOperator = SearchOperator.EQ
    value: str
    limit: int = Field(default=10, ge=1, le=100)


# ── Outcomes ────────────────────────────────────────────────────────────────


class SyncOutcome(BaseModel):
    """Result of one successful reconciliation."""

    kind: ObjectKind
    local_id: str | int | None = None
    remote_id: str
    operation: SyncOperation
    properties: dict[str, Any] = Field(default_factory=dict)
    company_remote_id: str | None = None


class Retry(BaseModel):
    """Retry the job after delay_seconds."""

    action: Literal["retry"] = "retry"
    delay_seconds: float
    reason: str


class Fatal(BaseModel):
    """Drop the job; the failure will not clear by retrying."""

    action: Literal["fatal"] = "fatal"
    reason: str
    category: FailureCategory


RetryDecision = Annotated[Union[Retry, Fatal], Field(discriminator="action")]


class SyncJob(BaseModel):
    """Queue payload for one reconciliation."""

    kind: ObjectKind
    snapshot: RecordSnapshot
    attempt: int = Field(default=1, ge=1)


class JobResult(BaseModel):
    """Disposition of a single job attempt, for the external queue."""

    disposition: JobDisposition
    outcome: SyncOutcome | None = None
    decision: RetryDecision | None = None


class BatchSyncSummary(BaseModel):
    """Totals for a bulk sync run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


# ── Diagnostics ─────────────────────────────────────────────────────────────


class PropertyDiagnostic(BaseModel):
    """How one mapped property resolves and converts."""

    remote_name: str
    path: str
    raw: str
    converted: str | None = None
    omitted: bool = False
    error: str | None = None


class PropertyReport(BaseModel):
    """Everything an operator needs to debug what a record would send."""

    local_id: str | int | None = None
    map_name: str
    properties: list[PropertyDiagnostic] = Field(default_factory=list)
    dynamic: dict[str, str] = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)

    @property
    def payload(self) -> dict[str, str]:
        """Properties that would actually be sent."""
        sent = {
            p.remote_name: p.converted
            for p in self.properties
            if p.converted is not None
        }
        for name, value in self.dynamic.items():
            sent.setdefault(name, value)
        return sent


class PropertySchemaReport(BaseModel):
    """Result of provisioning remote property definitions."""

    kind: ObjectKind
    group_created: bool = False
    existing: list[str] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
