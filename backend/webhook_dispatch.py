# webhook_dispatch.py — Outgoing webhook delivery and incoming webhook checks
import base64
import binascii
import hmac
import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AuthorizationError, DataFormatError
from events import bus
from models import Webhook

logger = logging.getLogger("mbee.webhooks")

WEBHOOK_TIMEOUT_SECONDS = 30


def encode_webhook_id(webhook_id: str) -> str:
    return base64.urlsafe_b64encode(webhook_id.encode("utf-8")).decode("ascii")


def decode_webhook_id(encoded: str) -> str:
    try:
        return base64.b64decode(encoded.encode("ascii"), altchars=b"-_", validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        raise DataFormatError("Invalid base64 webhook id.", "warn")


async def send_request(webhook_id: str, response: Dict[str, Any], data: Any = None) -> Optional[int]:
    """Deliver one outgoing webhook request. Errors are logged and swallowed."""
    method = response.get("method", "POST")
    headers = dict(response.get("headers") or {"Content-Type": "application/json"})
    if response.get("token"):
        headers.setdefault("Authorization", f"Bearer {response['token']}")
    payload = response.get("data", data)

    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, verify=response.get("ca") or True) as client:
            resp = await client.request(
                method, response["url"], headers=headers,
                json=payload if payload is not None and method != "GET" else None,
            )
        logger.info("Webhook %s -> %s %s [%d]", webhook_id, method, response["url"], resp.status_code)
        return resp.status_code
    except (httpx.HTTPError, OSError) as e:
        logger.warning("Webhook %s request error: %s", webhook_id, e)
        return None


async def emit_event(
    db: AsyncSession,
    background_tasks: Optional[BackgroundTasks],
    event: str,
    data: Any,
) -> int:
    """Emit an event in-process and queue every outgoing webhook listening for it.

    Returns the number of webhook requests that were scheduled.
    """
    await bus.emit(event, data)

    stmt = select(Webhook).where(Webhook.type == "Outgoing", Webhook.archived == False)  # noqa: E712
    result = await db.execute(stmt)
    scheduled = 0
    for webhook in result.scalars().all():
        if event not in (webhook.triggers or []) or not webhook.response:
            continue
        if background_tasks is not None:
            background_tasks.add_task(send_request, webhook.id, webhook.response, data)
        else:
            await send_request(webhook.id, webhook.response, data)
        scheduled += 1
    return scheduled


def extract_token(token_location: str, body: Any, headers: Dict[str, str]) -> Optional[str]:
    """Find the token at a dot-delimited location.

    'headers.x-token' reads a request header; anything else walks the JSON
    body (a leading 'body.' segment is optional).
    """
    parts = [p for p in (token_location or "").split(".") if p]
    if not parts:
        return None
    if parts[0] == "headers" and len(parts) == 2:
        return headers.get(parts[1].lower())
    if parts[0] == "body":
        parts = parts[1:]

    value = body
    for part in parts:
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value if isinstance(value, str) else None


def verify_authority(webhook: Webhook, value: Optional[str]) -> None:
    if not (
        webhook.type == "Incoming"
        and webhook.token is not None
        and isinstance(value, str)
        and hmac.compare_digest(webhook.token.encode(), value.encode())
    ):
        raise AuthorizationError("Token received from request does not match stored token.", "warn")
