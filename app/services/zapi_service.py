"""Z-API gateway client used to relay agent and AI replies to WhatsApp."""

from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.admin_config_service import AISettings, ConfigMissingError

logger = get_logger("zapi_service")


class GatewayRelayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


def build_send_text_url(config: AISettings) -> str:
    """Explicit ``zapiBaseUrl`` wins when it already targets send-text."""
    if config.zapi_base_url and config.zapi_base_url.endswith("/send-text"):
        return config.zapi_base_url
    if not (config.zapi_instance_id and config.zapi_api_key):
        raise ConfigMissingError("Z-API credentials not configured")
    base = settings.zapi_api_base.rstrip("/")
    return f"{base}/instances/{config.zapi_instance_id}/token/{config.zapi_api_key}/send-text"


def _headers(config: AISettings) -> dict:
    headers = {"Content-Type": "application/json"}
    if config.zapi_client_token:
        headers["Client-Token"] = config.zapi_client_token
    return headers


async def send_text(
    config: AISettings,
    contact_id: str,
    text: str,
    *,
    reply_to_provider_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> SendResult:
    """Relay a text message through the gateway.

    Raises ConfigMissingError when credentials are absent and GatewayRelayError
    when the gateway rejects the request or cannot be reached.
    """
    url = build_send_text_url(config)
    payload = {"phone": contact_id, "message": text}
    if reply_to_provider_id:
        payload["messageId"] = reply_to_provider_id

    try:
        async with httpx.AsyncClient(timeout=timeout or settings.http_timeout_seconds) as client:
            response = await client.post(url, headers=_headers(config), json=payload)
    except httpx.HTTPError as e:
        raise GatewayRelayError(f"Z-API request failed: {e}") from e

    logger.info(
        "Z-API send-text response",
        extra={"context": {"contact_id": contact_id, "status": response.status_code, "body": response.text[:200]}},
    )
    if response.status_code >= 400:
        raise GatewayRelayError(
            f"Z-API error: {response.status_code} - {response.text[:200]}",
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError:
        data = {}
    provider_id = None
    if isinstance(data, dict):
        provider_id = data.get("messageId") or data.get("id")
    if not provider_id:
        logger.warning("Z-API response without messageId", extra={"context": {"contact_id": contact_id}})
    return SendResult(success=True, provider_message_id=provider_id)
