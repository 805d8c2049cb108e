"""HubSpot CRM REST implementation of RemoteDirectory.

Talks to the CRM v3 object/property endpoints and the v4 association endpoint
through an httpx.AsyncClient. Connection-establishment failures are retried
(tenacity, 3 attempts, exponential backoff 1-10s) because no request reached
the server. Everything else maps onto the sync error taxonomy:

    404        -> None / False (never raised)
    400        -> RemoteValidationError
    409        -> RemoteConflictError (existing id parsed from the message)
    429        -> RateLimitedError (Retry-After honoured)
    5xx        -> RemoteUnavailableError
    timeouts   -> RemoteUnavailableError
"""

from __future__ import annotations

import re
import time
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.hubsync.config import Settings
from src.hubsync.sync.directory import RemoteDirectory
from src.hubsync.sync.errors import (
    RateLimitedError,
    RemoteConflictError,
    RemoteError,
    RemoteUnavailableError,
    RemoteValidationError,
)
from src.hubsync.sync.schemas import ObjectKind, RemoteRecord, SearchFilter

logger = structlog.get_logger(__name__)

_EXISTING_ID = re.compile(r"Existing ID:\s*(\d+)")

_connect_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.RemoteProtocolError)),
    reraise=True,
)


def _error_message(response: httpx.Response) -> tuple[str, dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, {}
    if not isinstance(body, dict):
        return str(body), {}
    return str(body.get("message") or response.reason_phrase), body


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def raise_for_remote_status(response: httpx.Response) -> None:
    """Translate a non-success HubSpot response into a RemoteError subclass."""
    if response.is_success:
        return

    status = response.status_code
    message, body = _error_message(response)

    if status == 400:
        raise RemoteValidationError(message, errors=body.get("errors"))
    if status == 409:
        match = _EXISTING_ID.search(message)
        raise RemoteConflictError(message, existing_id=match.group(1) if match else None)
    if status == 429:
        raise RateLimitedError(message, retry_after=_retry_after(response))
    if status >= 500:
        raise RemoteUnavailableError(message, status_code=status)
    raise RemoteError(message, status_code=status)


def _record(data: dict[str, Any]) -> RemoteRecord:
    return RemoteRecord(id=data["id"], properties=data.get("properties") or {})


class HubspotDirectory(RemoteDirectory):
    """RemoteDirectory backed by the HubSpot CRM REST API.

    Args:
        token: Private app access token.
        base_url: API root (default https://api.hubapi.com).
        timeout: Per-request timeout in seconds.
        log_requests: Log every request/response pair at info level.
        fetch_properties: Properties to request on reads, per object kind.
        client: Pre-built AsyncClient (tests inject one with a MockTransport).
    """

    def __init__(
        self,
        token: str = "",
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        log_requests: bool = False,
        fetch_properties: dict[ObjectKind, list[str]] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._log_requests = log_requests
        self._fetch_properties = fetch_properties or {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> HubspotDirectory:
        """Build a directory from application Settings."""
        return cls(
            token=settings.HUBSPOT_TOKEN,
            base_url=settings.HUBSPOT_BASE_URL,
            timeout=settings.HUBSPOT_HTTP_TIMEOUT,
            log_requests=settings.HUBSPOT_LOG_REQUESTS,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HubspotDirectory:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Transport ──

    @_connect_retry
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        started = time.monotonic()
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("hubspot.timeout", method=method, path=path)
            raise RemoteUnavailableError(f"Request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("hubspot.transport_error", method=method, path=path, error=str(exc))
            raise RemoteUnavailableError(f"Transport error: {exc}") from exc

        if self._log_requests:
            logger.info(
                "hubspot.request",
                method=method,
                path=path,
                status=response.status_code,
                elapsed_ms=round((time.monotonic() - started) * 1000, 1),
            )
        if response.status_code == 429:
            logger.warning("hubspot.rate_limited", method=method, path=path)
        return response

    def _read_params(self, kind: ObjectKind) -> dict[str, str]:
        names = self._fetch_properties.get(kind)
        return {"properties": ",".join(names)} if names else {}

    # ── Records ──

    async def get_by_id(self, kind: ObjectKind, remote_id: str) -> RemoteRecord | None:
        response = await self._request(
            "GET",
            f"/crm/v3/objects/{kind.value}/{quote(str(remote_id), safe='')}",
            params=self._read_params(kind),
        )
        if response.status_code == 404:
            return None
        raise_for_remote_status(response)
        return _record(response.json())

    async def get_by_natural_key(
        self, kind: ObjectKind, key: str, value: str
    ) -> RemoteRecord | None:
        params = {"idProperty": key, **self._read_params(kind)}
        response = await self._request(
            "GET",
            f"/crm/v3/objects/{kind.value}/{quote(value, safe='')}",
            params=params,
        )
        if response.status_code == 404:
            return None
        raise_for_remote_status(response)
        return _record(response.json())

    async def create(self, kind: ObjectKind, properties: dict[str, str]) -> RemoteRecord:
        response = await self._request(
            "POST", f"/crm/v3/objects/{kind.value}", json={"properties": properties}
        )
        raise_for_remote_status(response)
        record = _record(response.json())
        logger.info("hubspot.record_created", kind=kind.value, remote_id=record.id)
        return record

    async def update(
        self, kind: ObjectKind, remote_id: str, properties: dict[str, str]
    ) -> RemoteRecord | None:
        response = await self._request(
            "PATCH",
            f"/crm/v3/objects/{kind.value}/{quote(str(remote_id), safe='')}",
            json={"properties": properties},
        )
        if response.status_code == 404:
            return None
        raise_for_remote_status(response)
        return _record(response.json())

    async def search(self, kind: ObjectKind, search_filter: SearchFilter) -> list[RemoteRecord]:
        properties = list(dict.fromkeys([search_filter.property_name, *self._fetch_properties.get(kind, [])]))
        payload = {
            "filterGroups": [
                {
                    "filters": [
                        {
                            "propertyName": search_filter.property_name,
                            "operator": search_filter.operator.value,
                            "value": search_filter.value,
                        }
                    ]
                }
            ],
            "properties": properties,
            "limit": search_filter.limit,
        }
        response = await self._request("POST", f"/crm/v3/objects/{kind.value}/search", json=payload)
        raise_for_remote_status(response)
        return [_record(item) for item in response.json().get("results", [])]

    async def associate(
        self,
        from_kind: ObjectKind,
        from_id: str,
        to_kind: ObjectKind,
        to_id: str,
        association_type: int,
    ) -> bool:
        response = await self._request(
            "PUT",
            (
                f"/crm/v4/objects/{from_kind.value}/{quote(str(from_id), safe='')}"
                f"/associations/{to_kind.value}/{quote(str(to_id), safe='')}"
            ),
            json=[
                {
                    "associationCategory": "HUBSPOT_DEFINED",
                    "associationTypeId": association_type,
                }
            ],
        )
        if response.status_code == 404:
            logger.info(
                "hubspot.association_target_missing",
                from_kind=from_kind.value,
                from_id=from_id,
                to_kind=to_kind.value,
                to_id=to_id,
            )
            return False
        raise_for_remote_status(response)
        return True

    # ── Property schema ──

    async def list_property_names(self, kind: ObjectKind) -> set[str]:
        """Names of all property definitions that exist for an object kind."""
        response = await self._request("GET", f"/crm/v3/properties/{kind.value}")
        raise_for_remote_status(response)
        return {item["name"] for item in response.json().get("results", [])}

    async def create_property_group(self, kind: ObjectKind, name: str, label: str) -> bool:
        """Create a property group. Returns False when it already exists."""
        response = await self._request(
            "POST",
            f"/crm/v3/properties/{kind.value}/groups",
            json={"name": name, "label": label, "displayOrder": -1},
        )
        try:
            raise_for_remote_status(response)
        except RemoteConflictError:
            return False
        except RemoteValidationError as exc:
            if "already exists" in exc.message.lower():
                return False
            raise
        logger.info("hubspot.property_group_created", kind=kind.value, group=name)
        return True

    async def create_properties(
        self, kind: ObjectKind, definitions: list[dict[str, Any]]
    ) -> list[str]:
        """Batch-create property definitions; returns the names created."""
        if not definitions:
            return []
        response = await self._request(
            "POST",
            f"/crm/v3/properties/{kind.value}/batch/create",
            json={"inputs": definitions},
        )
        raise_for_remote_status(response)
        created = [item["name"] for item in response.json().get("results", [])]
        logger.info("hubspot.properties_created", kind=kind.value, count=len(created))
        return created
