"""
SMS delivery through the HTTP SMS gateway.
"""

import logging
from typing import Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


async def send_sms(
    to_number: str,
    body: str,
    client_id: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> bool:
    """
    Send one SMS.

    Args:
        to_number: Recipient phone number
        body: Message text
        client_id: Client the message is billed to
        transport: Optional httpx transport (tests)

    Returns:
        True if the gateway accepted the message, False otherwise
    """
    if not settings.SMS_GATEWAY_URL:
        logger.error("SMS gateway not configured. Cannot send SMS.")
        logger.info(f"Would have sent SMS to {to_number}: {body}")
        return False

    headers = {}
    if settings.SMS_GATEWAY_TOKEN:
        headers["Authorization"] = f"Bearer {settings.SMS_GATEWAY_TOKEN}"

    try:
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.post(
                settings.SMS_GATEWAY_URL,
                json={"client_id": client_id, "to": to_number, "body": body},
                headers=headers
            )
            response.raise_for_status()
        logger.info(f"SMS sent successfully to {to_number}")
        return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to send SMS to {to_number}: {e}")
        return False
