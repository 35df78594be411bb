"""Remote store contract and its HTTP implementation.

The engine never talks to a database directly. It consumes any object that
satisfies :class:`RemoteStore`; :class:`HttpRemoteStore` is the production
implementation, speaking JSON to a ``/settlements`` REST resource.

Failures are mapped onto the package error taxonomy:

* timeouts, connection problems and 5xx responses -> :class:`RemoteTransientError`
* 4xx responses -> :class:`RemoteAuthoritativeError`

Retrying is not this module's job; the write pipeline owns the retry queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from . import log
from .errors import RemoteAuthoritativeError, RemoteStoreError, RemoteTransientError


RESOURCE = "/settlements"
DEFAULT_HTTP_TIMEOUT = 30.0


@dataclass(frozen=True)
class RemoteReceipt:
    """Identifiers assigned by the store to a newly inserted record."""

    remote_id: str
    created_at: datetime


@dataclass(frozen=True)
class RemoteRow:
    """A stored document as returned by :meth:`RemoteStore.list_all`."""

    remote_id: str
    created_at: Optional[datetime]
    data: Mapping[str, Any]


class RemoteStore(Protocol):
    """Operations the engine needs from the remote data store."""

    async def insert(self, payload: Mapping[str, Any]) -> RemoteReceipt: ...

    async def update(self, remote_id: str, payload: Mapping[str, Any]) -> None: ...

    async def delete(self, remote_id: str) -> None: ...

    async def list_all(self) -> List[RemoteRow]: ...


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class HttpRemoteStore:
    """:class:`RemoteStore` backed by a JSON REST API.

    Documents are exchanged as ``{"id", "created_at", "data"}`` envelopes.
    Inserts also carry the ``localId`` correlation key at the top level so
    the server can refuse duplicates produced by retries.

    The underlying :class:`httpx.AsyncClient` is created lazily and must be
    released with :meth:`aclose` (or by using the store as an async context
    manager).
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        tenant: Optional[str] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Remote store base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._tenant = tenant
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "commission-settlement/1.0",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._tenant:
            headers["X-Tenant"] = self._tenant
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, *, json: Any = None) -> httpx.Response:
        """Send a request and translate failures into :class:`RemoteStoreError`.

        Args:
            method (str): HTTP verb.
            path (str): Path relative to the base URL.
            json (Any): Optional JSON body.

        Returns:
            httpx.Response: Successful (2xx) response.

        Raises:
            RemoteTransientError: On timeouts, transport errors and 5xx.
            RemoteAuthoritativeError: On 4xx responses.
        """

        try:
            response = await self.client.request(method, path, json=json)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            log.warning("Remote store %s %s timed out", method, path)
            raise RemoteTransientError(f"{method} {path} timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            log.warning("Remote store %s %s answered %d", method, path, status)
            if 400 <= status < 500:
                raise RemoteAuthoritativeError(f"{method} {path} rejected with {status}") from exc
            raise RemoteTransientError(f"{method} {path} failed with {status}") from exc
        except httpx.HTTPError as exc:
            log.warning("Remote store %s %s failed: %s", method, path, exc)
            raise RemoteTransientError(f"{method} {path} failed: {exc}") from exc
        return response

    async def insert(self, payload: Mapping[str, Any]) -> RemoteReceipt:
        body = {"localId": payload.get("localId"), "data": dict(payload)}
        response = await self._request("POST", RESOURCE, json=body)
        document = response.json()
        remote_id = document.get("id")
        if remote_id in (None, ""):
            raise RemoteTransientError("Remote store returned no id for the inserted sale")
        created_at = parse_timestamp(document.get("created_at"))
        if created_at is None:
            created_at = parse_timestamp(payload.get("createdAt"))
        return RemoteReceipt(remote_id=str(remote_id), created_at=created_at)

    async def update(self, remote_id: str, payload: Mapping[str, Any]) -> None:
        await self._request("PATCH", f"{RESOURCE}/{remote_id}", json={"data": dict(payload)})

    async def delete(self, remote_id: str) -> None:
        await self._request("DELETE", f"{RESOURCE}/{remote_id}")

    async def list_all(self) -> List[RemoteRow]:
        response = await self._request("GET", RESOURCE)
        rows: List[RemoteRow] = []
        for document in response.json():
            rows.append(
                RemoteRow(
                    remote_id=str(document["id"]),
                    created_at=parse_timestamp(document.get("created_at")),
                    data=document.get("data") or {},
                )
            )
        log.info("Fetched %d settlement documents from the remote store", len(rows))
        return rows


__all__ = [
    "RemoteStore",
    "RemoteReceipt",
    "RemoteRow",
    "HttpRemoteStore",
    "RemoteStoreError",
    "RemoteTransientError",
    "RemoteAuthoritativeError",
]
