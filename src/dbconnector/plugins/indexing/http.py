# src/dbconnector/plugins/indexing/http.py
"""HTTP indexing service client.

Talks to a REST index with three calls per item:
    PUT    {base_url}/items/{item_id}   body: DocumentRecord.to_dict()
    DELETE {base_url}/items/{item_id}
    GET    {base_url}/items/{item_id}

Status mapping:
- 2xx: success
- 404 on DELETE / GET: item unknown (not an error)
- 429, 5xx, timeouts, connection errors: TransientIndexingError (retried)
- other 4xx: IndexingError (permanent)
"""

from __future__ import annotations

from urllib.parse import quote

import httpx
import structlog

from dbconnector.contracts import DocumentRecord, IndexingError, TransientIndexingError

logger = structlog.get_logger(__name__)

_TRANSIENT_STATUS = frozenset({408, 429})


class HttpIndexingService:
    """IndexingService implementation over httpx.

    Example:
        index = HttpIndexingService("https://index.example.com/v1", api_key="...")
        index.upsert(document)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Index API root, e.g. https://index.example.com/v1
            api_key: Sent as a bearer token when set
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        # httpx.Client is thread-safe; both traversal threads share the pool
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @staticmethod
    def _item_path(item_id: str) -> str:
        return f"items/{quote(item_id, safe='/')}"

    def _send(self, method: str, item_id: str, json: dict[str, object] | None = None) -> httpx.Response:
        try:
            response = self._client.request(method, self._item_path(item_id), json=json)
        except httpx.TransportError as e:
            raise TransientIndexingError(f"{method} {item_id} failed: {type(e).__name__}: {e}") from e

        status = response.status_code
        if status in _TRANSIENT_STATUS or status >= 500:
            raise TransientIndexingError(f"{method} {item_id} returned HTTP {status}")
        if status == 404 and method in ("DELETE", "GET"):
            return response
        if status >= 400:
            raise IndexingError(f"{method} {item_id} rejected with HTTP {status}: {response.text[:200]}")
        return response

    def upsert(self, document: DocumentRecord) -> None:
        self._send("PUT", document.item_id, json=document.to_dict())
        logger.debug("item_upserted", item_id=document.item_id)

    def delete(self, item_id: str) -> None:
        response = self._send("DELETE", item_id)
        if response.status_code == 404:
            logger.debug("item_delete_unknown", item_id=item_id)
        else:
            logger.debug("item_deleted", item_id=item_id)

    def get(self, item_id: str) -> DocumentRecord | None:
        response = self._send("GET", item_id)
        if response.status_code == 404:
            return None
        try:
            return DocumentRecord.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise IndexingError(f"GET {item_id} returned a malformed document: {e}") from e

    def close(self) -> None:
        self._client.close()
