"""CRM sync engine -- keeps local contacts and companies mirrored in HubSpot.

Provides:
- convert_value / convert_properties: local values to string-only wire properties
- build_properties: property maps (full/update, dotted paths, dynamic extras)
- RemoteDirectory: abstract remote surface; HubspotDirectory is the REST backend
- SyncReconciler: idempotent create-or-update with stale-id and conflict repair
- RetryClassifier / SyncJobRunner: failure classification for an external queue

Architecture: the owning application hands over serialized RecordSnapshots and
a RemoteIdWriter; the engine never touches local storage directly.
"""

from src.hubsync.sync.converter import convert_properties, convert_value
from src.hubsync.sync.diagnostics import inspect_snapshot
from src.hubsync.sync.directory import RemoteDirectory, RemoteIdWriter
from src.hubsync.sync.hubspot import HubspotDirectory
from src.hubsync.sync.jobs import RetryClassifier, SyncJobRunner, sync_batch
from src.hubsync.sync.mapper import build_properties, has_relevant_changes, should_sync
from src.hubsync.sync.property_schema import ensure_property_schema
from src.hubsync.sync.reconciler import SyncReconciler

__all__ = [
    "RemoteDirectory",
    "RemoteIdWriter",
    "HubspotDirectory",
    "SyncReconciler",
    "RetryClassifier",
    "SyncJobRunner",
    "convert_value",
    "convert_properties",
    "build_properties",
    "has_relevant_changes",
    "should_sync",
    "inspect_snapshot",
    "ensure_property_schema",
    "sync_batch",
]
