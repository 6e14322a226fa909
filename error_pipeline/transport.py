"""HTTP client for the remote collector."""

import logging

import httpx

from error_pipeline.errors import RejectedPayloadError, TransportError
from error_pipeline.models import QueueEntry

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
REJECTED = "rejected"
RETRY = "retry"


class CollectorClient:
    """Posts ``{"reports": [...]}`` batches and returns a status per entry id.

    Response body: ``{"results": [{"id": ..., "status": "accepted"|"rejected"|"retry"}]}``.
    Ids missing from the results are reported as ``retry``.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config) -> "CollectorClient":
        return cls(config.collector_url, timeout=config.request_timeout)

    def send(self, entries: list[QueueEntry]) -> dict[str, str]:
        payload = {"reports": [entry.to_wire() for entry in entries]}
        try:
            response = self._client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"collector unreachable: {exc}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransportError(f"collector busy: HTTP {status}", status_code=status)
        if status >= 400:
            raise RejectedPayloadError(
                f"collector rejected batch: HTTP {status} {response.text[:200]}",
                status_code=status,
            )

        try:
            body = response.json()
            results = body["results"]
            statuses = {str(r["id"]): str(r.get("status", RETRY)) for r in results}
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError(f"malformed collector response: {exc}", status_code=status) from exc

        return {entry.id: statuses.get(entry.id, RETRY) for entry in entries}

    def close(self):
        if self._owns_client:
            self._client.close()
