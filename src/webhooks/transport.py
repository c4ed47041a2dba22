"""Outbound HTTP for webhook deliveries and probes."""

import asyncio
import time
from dataclasses import dataclass, field

import httpx
import structlog

from src.webhooks.errors import TransientDeliveryError

logger = structlog.get_logger(__name__)

USER_AGENT = "WebhookRelay/1.0"


@dataclass
class WebhookResponse:
    """Response captured from a webhook endpoint.

    Attributes:
        status_code: HTTP status code.
        reason: HTTP reason phrase.
        headers: Response headers.
        body: Response body truncated to the capture limit.
        time_ms: Round-trip time in milliseconds.
    """

    status_code: int
    reason: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    time_ms: int = 0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def error_message(self) -> str:
        if not self.reason:
            return f"HTTP {self.status_code}"
        return f"HTTP {self.status_code}: {self.reason}"

    def raise_for_delivery(self) -> None:
        """Raise TransientDeliveryError for any non-2xx status.

        Raises:
            TransientDeliveryError: With code HTTP_<status>.
        """
        if self.is_success:
            return
        raise TransientDeliveryError(
            self.error_message,
            code=f"HTTP_{self.status_code}",
            status_code=self.status_code,
            response_headers=self.headers,
            response_body=self.body,
            response_time_ms=self.time_ms,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def post_webhook(
    url: str,
    body: str,
    headers: dict[str, str],
    *,
    timeout_seconds: float,
    body_limit: int = 10240,
) -> WebhookResponse:
    """POST a signed body to a webhook endpoint.

    The whole exchange is cancelled once timeout_seconds elapse. Any HTTP
    response, including non-2xx, is returned; callers decide what counts
    as success.

    Args:
        url: Endpoint URL.
        body: Exact body bytes (as text) that were signed.
        headers: Request headers including the signature.
        timeout_seconds: Overall timeout.
        body_limit: Max characters of response body to keep.

    Returns:
        Captured response.

    Raises:
        TransientDeliveryError: TIMEOUT when the request timed out, NETWORK_ERROR
            for any other failure before a response arrived.
    """
    request_headers = {"User-Agent": USER_AGENT, **headers}
    start = time.monotonic()

    async def _send() -> WebhookResponse:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.post(
                url,
                content=body.encode("utf-8"),
                headers=request_headers,
            )
            text = response.text or ""
            return WebhookResponse(
                status_code=response.status_code,
                reason=response.reason_phrase or "",
                headers=dict(response.headers),
                body=text[:body_limit],
                time_ms=_elapsed_ms(start),
            )

    try:
        return await asyncio.wait_for(_send(), timeout=timeout_seconds)
    except (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException) as e:
        logger.debug("webhook_request_timeout", url=url, timeout=timeout_seconds)
        raise TransientDeliveryError(
            f"Request timed out after {timeout_seconds}s",
            code="TIMEOUT",
            response_time_ms=_elapsed_ms(start),
        ) from e
    except httpx.HTTPError as e:
        logger.debug("webhook_request_error", url=url, error=str(e))
        raise TransientDeliveryError(
            str(e) or e.__class__.__name__,
            code="NETWORK_ERROR",
            response_time_ms=_elapsed_ms(start),
        ) from e
    except Exception as e:
        # httpx rejects some requests before sending (bad header encoding, invalid URL)
        logger.warning("webhook_request_unexpected_error", url=url, error=str(e))
        raise TransientDeliveryError(
            str(e) or e.__class__.__name__,
            code="NETWORK_ERROR",
            response_time_ms=_elapsed_ms(start),
        ) from e
