"""
Outbound gateway to the WhatsApp Cloud API.

The ingestion and outbound-send paths only rely on ``OutboundGateway``:
``send_text`` and ``mark_read`` return True/False and never raise. The
credentials travel with every call, so one gateway instance is never tied
to a tenant and nothing is cached between requests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from crm.config import get_settings
from crm.errors import ErrorKind
from crm.metrics import record_gateway_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayCredentials:
    access_token: str
    phone_number_id: str

    @classmethod
    def from_settings(cls, settings_row) -> Optional["GatewayCredentials"]:
        """Credentials from a tenant's WhatsappSettings, or None when not configured."""
        if settings_row is None or not settings_row.access_token or not settings_row.phone_number_id:
            return None
        return cls(access_token=settings_row.access_token, phone_number_id=settings_row.phone_number_id)


class OutboundGateway(ABC):
    @abstractmethod
    async def send_text(self, credentials: GatewayCredentials, to: str, text: str) -> bool: ...

    @abstractmethod
    async def mark_read(self, credentials: GatewayCredentials, message_id: str) -> bool: ...


class WhatsAppCloudGateway(OutboundGateway):
    """
    Graph API client. Each call opens its own ``httpx.AsyncClient`` and is
    bounded by ``timeout`` seconds end to end.
    """

    def __init__(
        self,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v18.0",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    async def send_text(self, credentials: GatewayCredentials, to: str, text: str) -> bool:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),  # WhatsApp expects without +
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        return await self._post(credentials, payload, operation="send")

    async def mark_read(self, credentials: GatewayCredentials, message_id: str) -> bool:
        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        }
        return await self._post(credentials, payload, operation="mark_read")

    async def _post(self, credentials: GatewayCredentials, payload: Dict[str, Any], operation: str) -> bool:
        url = f"/{self.api_version}/{credentials.phone_number_id}/messages"
        failure = {"kind": ErrorKind.UPSTREAM_UNAVAILABLE.value, "operation": operation}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {credentials.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await asyncio.wait_for(client.post(url, json=payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"WhatsApp {operation} timed out after {self.timeout}s", extra=failure)
            record_gateway_call(operation, "failure")
            return False
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp {operation} failed: {e}", extra=failure)
            record_gateway_call(operation, "failure")
            return False

        if not response.is_success:
            logger.error(
                f"WhatsApp {operation} rejected with status {response.status_code}: {response.text[:500]}",
                extra=failure,
            )
            record_gateway_call(operation, "failure")
            return False

        logger.info(f"WhatsApp {operation} accepted", extra={"operation": operation})
        record_gateway_call(operation, "success")
        return True


def get_gateway() -> OutboundGateway:
    """Dependency building a gateway for the current request."""
    settings = get_settings()
    return WhatsAppCloudGateway(
        base_url=settings.WHATSAPP_API_BASE_URL,
        api_version=settings.WHATSAPP_API_VERSION,
        timeout=settings.WHATSAPP_GATEWAY_TIMEOUT_SECONDS,
    )
