"""
Forward extracted article text to the content-automation webhook.
"""

from datetime import datetime, timezone

import httpx
from loguru import logger

from medchat.config import Settings, get_settings
from medchat.core.errors import ConfigurationError, ForwardingError


async def forward_text(
    extracted_text: str,
    original_url: str,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> int:
    """POST the text to the webhook and return the response status code."""
    settings = settings or get_settings()
    if not settings.forward_webhook_url or not settings.forward_webhook_secret:
        raise ConfigurationError("Forwarding webhook configuration is missing")

    payload = {
        "extracted_text": extracted_text,
        "originalUrl": original_url,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "extractedTextLength": len(extracted_text),
    }
    headers = {"x-webhook-secret": settings.forward_webhook_secret}

    logger.info(
        "[forward] forwarding {} chars from {}", len(extracted_text), original_url
    )
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.forward_timeout_seconds) as owned:
                resp = await owned.post(settings.forward_webhook_url, json=payload, headers=headers)
        else:
            resp = await client.post(
                settings.forward_webhook_url,
                json=payload,
                headers=headers,
                timeout=settings.forward_timeout_seconds,
            )
    except httpx.HTTPError as e:
        logger.error("[forward] webhook unreachable: {}", e)
        raise ForwardingError(f"Failed to forward data: {e}") from e

    if not resp.is_success:
        logger.error("[forward] webhook returned {}: {}", resp.status_code, resp.text[:200])
        raise ForwardingError(f"Webhook request failed with status {resp.status_code}")

    logger.info("[forward] delivered, status {}", resp.status_code)
    return resp.status_code
