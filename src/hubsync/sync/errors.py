"""Exception taxonomy for the sync engine.

Three families:
- Data shape defects raised while converting local values (never retried).
- Remote failures raised by a RemoteDirectory implementation.
- Engine outcomes surfaced to the job layer (validation, transient, fatal).

"Not found" is deliberately absent: directory lookups return None instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class HubsyncError(Exception):
    """Base class for every error raised by the sync engine."""


# ── Data shape ───────────────────────────────────────────────────────────


class UnconvertibleValueError(HubsyncError):
    """A local value has no string form the remote API can accept.

    Attributes:
        property_name: Remote property the value was mapped to.
        value_type: Qualified type name of the offending value.
    """

    def __init__(self, property_name: str, value_type: str) -> None:
        self.property_name = property_name
        self.value_type = value_type
        super().__init__(
            f"Cannot convert object of type {value_type} to string for property: "
            f"{property_name}. Objects must define __str__ or a to-mapping method "
            "(model_dump, to_dict, dataclass) to be converted automatically."
        )


class InvalidPropertyTypeError(HubsyncError):
    """Converted properties still contain non-string values.

    Attributes:
        invalid: Offending key -> {"type": runtime kind, "class": qualified
            class name for structured values, else None}.
    """

    def __init__(self, invalid: dict[str, dict[str, str | None]]) -> None:
        self.invalid = invalid
        keys = ", ".join(sorted(invalid))
        super().__init__(
            f"Remote properties must be strings after conversion. Invalid properties: {keys}"
        )


# ── Remote failures ──────────────────────────────────────────────────────


class RemoteError(HubsyncError):
    """Unexpected response from the remote API.

    Attributes:
        status_code: HTTP status, or None for transport-level failures.
        message: Message reported by the remote API.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        prefix = f"[{status_code}] " if status_code is not None else ""
        super().__init__(f"{prefix}{message}")


class RemoteValidationError(RemoteError):
    """The remote API rejected the property payload (HTTP 400)."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message, status_code=400)


class RemoteConflictError(RemoteError):
    """A record with the same natural key already exists (HTTP 409).

    Attributes:
        existing_id: Remote id of the conflicting record when the API reports it.
    """

    def __init__(self, message: str, existing_id: str | None = None) -> None:
        self.existing_id = existing_id
        super().__init__(message, status_code=409)


class RateLimitedError(RemoteError):
    """The remote API throttled the request (HTTP 429).

    Attributes:
        retry_after: Seconds the API asked us to wait, when provided.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class RemoteUnavailableError(RemoteError):
    """Timeout, transport failure, or 5xx. The write may or may not have landed."""


# ── Engine outcomes ──────────────────────────────────────────────────────


class FailureCategory(str, Enum):
    """Why a sync attempt was abandoned."""

    VALIDATION = "validation"
    DATA = "data"
    EXHAUSTED = "exhausted"
    UNEXPECTED = "unexpected"


class SyncValidationError(HubsyncError):
    """The remote API rejected a record's properties during create or update.

    Carries what was attempted so operators can fix the map or the source data.
    """

    def __init__(
        self,
        kind: str,
        local_id: Any,
        message: str,
        properties: dict[str, str],
        property_map: dict[str, str],
        map_name: str,
    ) -> None:
        self.kind = kind
        self.local_id = local_id
        self.properties = properties
        self.property_map = property_map
        self.map_name = map_name
        super().__init__(f"Remote validation error for {kind} {local_id}: {message}")


class TransientSyncError(HubsyncError):
    """A failure expected to clear on its own; the caller should retry.

    Attributes:
        reason: Short machine-friendly description.
        suggested_delay: Seconds to wait before the next attempt.
    """

    def __init__(self, reason: str, suggested_delay: float) -> None:
        self.reason = reason
        self.suggested_delay = suggested_delay
        super().__init__(f"Transient sync failure ({reason}); retry in {suggested_delay}s")


class FatalSyncError(HubsyncError):
    """A sync job failed permanently and must not be retried."""

    def __init__(self, reason: str, category: FailureCategory) -> None:
        self.reason = reason
        self.category = category
        super().__init__(f"Sync failed permanently [{category.value}]: {reason}")
