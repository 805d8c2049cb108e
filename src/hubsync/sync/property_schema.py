"""Provisioning of remote property definitions.

Custom properties must exist remotely before records carrying them can be
written. ensure_property_schema() creates the property group (an existing group
is fine) and then only the property definitions that are missing, as plain
single-line text properties.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.hubsync.sync.errors import RemoteError
from src.hubsync.sync.hubspot import HubspotDirectory
from src.hubsync.sync.schemas import ObjectKind, PropertySchemaReport

logger = structlog.get_logger(__name__)


def text_property_definition(name: str, group: str) -> dict[str, Any]:
    """HubSpot definition for a string/text property."""
    return {
        "name": name,
        "label": name.replace("_", " ").title(),
        "type": "string",
        "fieldType": "text",
        "groupName": group,
    }


async def ensure_property_schema(
    client: HubspotDirectory,
    kind: ObjectKind,
    names: Iterable[str],
    group: str,
    label: str,
) -> PropertySchemaReport:
    """Make sure every property in names exists remotely for kind."""
    report = PropertySchemaReport(kind=kind)
    wanted = list(dict.fromkeys(names))

    try:
        report.group_created = await client.create_property_group(kind, group, label)
    except RemoteError as exc:
        report.errors.append(f"group {group}: {exc}")
        logger.warning("schema.group_failed", kind=kind.value, group=group, error=str(exc))

    existing = await client.list_property_names(kind)
    report.existing = [name for name in wanted if name in existing]
    missing = [name for name in wanted if name not in existing]

    if missing:
        try:
            report.created = await client.create_properties(
                kind, [text_property_definition(name, group) for name in missing]
            )
        except RemoteError as exc:
            report.errors.append(f"properties {', '.join(missing)}: {exc}")
            logger.warning("schema.create_failed", kind=kind.value, missing=missing, error=str(exc))

    logger.info(
        "schema.ensured",
        kind=kind.value,
        existing=len(report.existing),
        created=len(report.created),
        errors=len(report.errors),
    )
    return report
