import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


def verify_subscription(
    verify_token: Optional[str],
    challenge: Optional[str],
    expected_token: Optional[str],
) -> Optional[str]:
    """Return the challenge to echo back, or ``None`` when the handshake fails.

    ``hub.mode`` is not checked: a matching token plus a challenge is enough.
    """
    if not expected_token or verify_token != expected_token:
        return None
    if challenge is None:
        return None
    return challenge


class MetaMessengerClient:
    """Thin wrapper around the Messenger Platform Send API."""

    def __init__(
        self,
        page_access_token: Optional[str],
        api_version: str = "v19.0",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.page_access_token = page_access_token
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport
        self.base_url = f"{GRAPH_API_BASE}/{api_version}/me/messages"

    @property
    def enabled(self) -> bool:
        return bool(self.page_access_token)

    async def _post(self, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            logger.info("[dry-run] %s", payload)
            return False

        params = {"access_token": self.page_access_token}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.base_url, params=params, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Messenger send failed - %s", exc)
            return False

        if response.is_error:
            logger.error(
                "Messenger send failed - %s %s", response.status_code, response.text
            )
            return False
        logger.info("Message sent to %s", payload["recipient"]["id"])
        return True

    async def send_text(self, recipient_id: str, text: str) -> bool:
        return await self._post(
            {
                "recipient": {"id": recipient_id},
                "message": {"text": text},
            }
        )
