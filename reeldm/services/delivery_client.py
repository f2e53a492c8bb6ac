"""Instagram Graph API client for sending direct messages."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx

from ..config import InstagramConfig

logger = logging.getLogger(__name__)


@dataclass
class InstagramCredentials:
    """Credentials needed for one send."""

    access_token: str
    account_id: str
    expires_at: Optional[datetime] = None


@dataclass
class DeliveryResult:
    """Outcome of a send. Failures carry the platform's error message."""

    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class DeliveryClient(Protocol):
    """Anything that can deliver a DM and report failure without raising."""

    async def send(
        self, recipient_id: str, text: str, credentials: InstagramCredentials
    ) -> DeliveryResult:
        ...


class ConfigCredentialsProvider:
    """Serves credentials from the ``instagram`` config section."""

    def __init__(self, config: Optional[InstagramConfig]):
        self.config = config

    def get_credentials(self) -> Optional[InstagramCredentials]:
        """Return credentials, or None when Instagram is not configured."""
        if self.config is None:
            return None
        return InstagramCredentials(
            access_token=self.config.access_token.get_secret_value(),
            account_id=self.config.account_id,
            expires_at=self.config.token_expires_at,
        )


class InstagramDeliveryClient:
    """Sends DMs through ``POST /me/messages``."""

    def __init__(
        self,
        api_base_url: str = "https://graph.instagram.com",
        api_version: str = "v24.0",
        timeout: float = 15.0,
    ):
        """
        Initialize the delivery client.

        Args:
            api_base_url: Graph API host.
            api_version: Graph API version segment, e.g. "v24.0".
            timeout: Per-request timeout in seconds.
        """
        self.url = f"{api_base_url.rstrip('/')}/{api_version}/me/messages"
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Optional[InstagramConfig]) -> "InstagramDeliveryClient":
        """Build a client from config, falling back to defaults when unset."""
        if config is None:
            return cls()
        return cls(
            api_base_url=config.api_base_url,
            api_version=config.api_version,
            timeout=config.request_timeout,
        )

    async def send(
        self, recipient_id: str, text: str, credentials: InstagramCredentials
    ) -> DeliveryResult:
        """
        Send a text DM.

        Args:
            recipient_id: Instagram-scoped user ID of the recipient.
            text: Message body, already within the character cap.
            credentials: Access token to send with.

        Returns:
            DeliveryResult; network and API errors are reported, not raised.
        """
        payload = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "access_token": credentials.access_token,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.url, json=payload)
            except httpx.HTTPError as e:
                logger.error("DM request to %s failed: %s", recipient_id, e)
                return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = (data.get("error") or {}).get("message") if isinstance(data, dict) else None
            logger.warning(
                "Instagram API rejected DM to %s (HTTP %d): %s",
                recipient_id,
                response.status_code,
                error,
            )
            return DeliveryResult(success=False, error=error or "Unknown error")

        message_id = data.get("message_id") if isinstance(data, dict) else None
        logger.debug("Sent DM to %s (message_id=%s)", recipient_id, message_id)
        return DeliveryResult(success=True, message_id=message_id)
