"""Single-attempt HTTP transport.

Performs exactly one outbound request per call with a finite timeout and a
bounded read of the response body. Retry policy belongs to the callers.
"""

import asyncio

import httpx
import structlog

from outbound.transport.models import DEFAULT_RESPONSE_EXCERPT_BYTES, DeliveryOutcome

logger = structlog.get_logger(__name__)

# Default timeout for one delivery attempt, in seconds
DEFAULT_TIMEOUT_SECONDS = 10.0


class HttpTransport:
    """Outbound HTTP delivery over plain or TLS connections.

    The scheme of the destination URL selects plaintext or TLS; httpx
    handles both through the same client. One client is shared for the
    lifetime of the transport so connections are pooled.

    Example:
        transport = HttpTransport()
        outcome = await transport.deliver(url, headers=headers, body=body)
        await transport.aclose()
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_response_bytes: int = DEFAULT_RESPONSE_EXCERPT_BYTES,
    ) -> None:
        """Initialize the transport.

        Args:
            client: Pre-configured httpx client (a private one is created
                if not provided).
            default_timeout: Timeout in seconds when a call passes none.
            max_response_bytes: Bytes of response body to keep.
        """
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")

        self._client = client or httpx.AsyncClient(follow_redirects=False)
        self._owns_client = client is None
        self._default_timeout = default_timeout
        self._max_response_bytes = max_response_bytes
        self._logger = logger.bind(component="http_transport")

    async def deliver(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        timeout: float | None = None,
    ) -> DeliveryOutcome:
        """Make a single delivery attempt.

        Args:
            url: Destination URL (http or https).
            method: HTTP method.
            headers: Request headers.
            body: Exact request body bytes.
            timeout: Deadline in seconds for the whole attempt, from connect
                through the last byte read.

        Returns:
            DeliveryOutcome describing the attempt. Never raises for
            network-level failures.
        """
        effective_timeout = timeout if timeout and timeout > 0 else self._default_timeout

        # httpx timeouts apply per read; the outer deadline bounds slow drips
        try:
            async with asyncio.timeout(effective_timeout):
                async with self._client.stream(
                    method,
                    url,
                    headers=headers,
                    content=body,
                    timeout=effective_timeout,
                ) as response:
                    excerpt = await self._read_excerpt(response)
                    outcome = DeliveryOutcome.from_status(response.status_code, excerpt)

        except (httpx.TimeoutException, TimeoutError):
            outcome = DeliveryOutcome.from_error("Request timeout")
            self._logger.warning(
                "delivery_timeout",
                url=url,
                timeout=effective_timeout,
            )
            return outcome

        except httpx.ConnectError as e:
            outcome = DeliveryOutcome.from_error(f"Connection error: {e}")
            self._logger.warning(
                "delivery_connection_error",
                url=url,
                error=str(e),
            )
            return outcome

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            message = str(e) or e.__class__.__name__
            outcome = DeliveryOutcome.from_error(message)
            self._logger.warning(
                "delivery_transport_error",
                url=url,
                error_type=e.__class__.__name__,
                error=message,
            )
            return outcome

        self._logger.debug(
            "delivery_attempted",
            url=url,
            status_code=outcome.status_code,
            success=outcome.success,
        )
        return outcome

    async def _read_excerpt(self, response: httpx.Response) -> str:
        """Read at most max_response_bytes of the body and decode them."""
        if self._max_response_bytes <= 0:
            return ""

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= self._max_response_bytes:
                break

        return bytes(buffer[: self._max_response_bytes]).decode("utf-8", errors="replace")

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
