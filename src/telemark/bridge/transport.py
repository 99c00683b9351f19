"""HTTP transport for serialized payloads.

``SIMPLE`` payloads are posted as one body with ``Content-Length``.
``CHUNKED`` payloads are posted as an iterator of fixed-size chunks, which
httpx sends with ``Transfer-Encoding: chunked``.

Every HTTP-level failure (non-2xx, timeout, connection error) is caught
here and returned as a failed ``DeliveryResult``.
"""

from __future__ import annotations

import httpx
import structlog

from telemark.bridge.buffers import DEFAULT_CHUNK_SIZE, SerializedPayload
from telemark.contracts.enums import TransportStrategy
from telemark.contracts.results import DeliveryResult

logger = structlog.get_logger(__name__)

_MAX_ERROR_BODY = 500


class HttpTransport:
    """POSTs serialized payloads to a collector.

    Args:
        timeout: Per-request timeout in seconds
        headers: Extra headers sent on every request
        api_key: Sent as ``Authorization: Bearer <api_key>``
        chunk_size: Chunk size for chunked transfer
        client: Pre-built httpx.Client (tests inject one with a MockTransport)
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        api_key: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: httpx.Client | None = None,
    ) -> None:
        self._chunk_size = chunk_size
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        # httpx.Client is thread-safe; the internal pool handles concurrency
        self._client = client if client is not None else httpx.Client(timeout=timeout, follow_redirects=False)
        self._timeout = timeout

    def post(self, url: str, payload: SerializedPayload) -> DeliveryResult:
        """Send one payload. Never raises for HTTP-level failures."""
        try:
            match payload.strategy:
                case TransportStrategy.SIMPLE:
                    response = self._client.post(url, content=payload.body(), headers=self._headers, timeout=self._timeout)
                case TransportStrategy.CHUNKED:
                    response = self._client.post(
                        url,
                        content=payload.iter_chunks(self._chunk_size),
                        headers=self._headers,
                        timeout=self._timeout,
                    )
        except httpx.TimeoutException as e:
            return DeliveryResult.failed(
                f"timeout after {self._timeout}s posting to {url}: {type(e).__name__}",
                strategy=payload.strategy,
                bytes_sent=payload.size,
            )
        except httpx.HTTPError as e:
            return DeliveryResult.failed(
                f"transport error posting to {url}: {type(e).__name__}: {e}",
                strategy=payload.strategy,
                bytes_sent=payload.size,
            )

        if response.is_success:
            logger.debug(
                "Payload delivered",
                url=url,
                status_code=response.status_code,
                strategy=payload.strategy.value,
                size=payload.size,
            )
            return DeliveryResult.ok(status_code=response.status_code, strategy=payload.strategy, bytes_sent=payload.size)

        return DeliveryResult.failed(
            f"HTTP {response.status_code} from {url}: {response.text[:_MAX_ERROR_BODY]}",
            status_code=response.status_code,
            strategy=payload.strategy,
            bytes_sent=payload.size,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
