"""Outbound email via the Resend API.

Each send carries an Idempotency-Key so a retried delivery cannot produce a
second email at the provider.
"""

from __future__ import annotations

import logging

import httpx

from marketdesk.core.config import settings
from marketdesk.services.http_service import HTTPX_TIMEOUT, request_with_retries

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3


async def send_email(
    *,
    to: str,
    subject: str,
    text: str,
    html: str | None = None,
    headers: dict[str, str] | None = None,
    idempotency_key: str | None = None,
    from_address: str | None = None,
) -> dict:
    """
    Send one email.

    Returns:
        {"success": bool, "message_id": str | None, "error": str | None}
    """
    if not settings.RESEND_API_KEY:
        logger.info("[DRY RUN] Email send skipped (idempotency_key=%s)", idempotency_key)
        return {"success": True, "message_id": f"dry-run-{idempotency_key or 'email'}", "error": None}

    payload: dict[str, object] = {
        "from": from_address or settings.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "text": text,
    }
    if html:
        payload["html"] = html
    if headers:
        payload["headers"] = headers

    request_headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        request_headers["Idempotency-Key"] = idempotency_key

    try:
        async with httpx.AsyncClient(timeout=HTTPX_TIMEOUT) as client:
            response = await request_with_retries(
                lambda: client.post(RESEND_SEND_URL, json=payload, headers=request_headers),
                max_attempts=RESEND_MAX_ATTEMPTS,
            )
    except httpx.RequestError as e:
        logger.warning("Resend request failed: %s", type(e).__name__)
        return {"success": False, "message_id": None, "error": f"Request error: {type(e).__name__}"}

    if response.status_code >= 400:
        try:
            detail = response.json().get("message") or response.text
        except ValueError:
            detail = response.text
        return {
            "success": False,
            "message_id": None,
            "error": f"Resend API error {response.status_code}: {detail}"[:500],
        }

    message_id = response.json().get("id")
    logger.info("Email sent via Resend (message_id=%s)", message_id)
    return {"success": True, "message_id": message_id, "error": None}
