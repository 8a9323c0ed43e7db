"""WhatsApp Cloud API gateway.

Sends text, template and interactive CTA messages. Transient failures
(HTTP 429 and 5xx) are retried with exponential backoff; every other failure
returns ``False`` straight away.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from kahani.config import Settings, settings as default_settings
from kahani.logging_config import get_logger
from kahani.services.alert_service import alert_async, alert_critical
from kahani.services.localization import template_language_code
from kahani.services.message_log_service import MessageLog

logger = get_logger("whatsapp_service")

E164_PATTERN = re.compile(r"^\d{10,15}$")
MEDIA_DOWNLOAD_TIMEOUT_SECONDS = 30.0


def normalize_phone_number(phone: str) -> str:
    """Digits only; bare 10-digit numbers are Indian mobiles and get the 91 prefix."""
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        return "91" + cleaned
    return cleaned


def validate_e164(phone: str) -> bool:
    return bool(phone) and bool(E164_PATTERN.match(phone))


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


@dataclass
class MediaInfo:
    url: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    file_size: Optional[int] = None


class WhatsAppGateway:
    def __init__(
        self,
        config: Settings = default_settings,
        *,
        message_log: Optional[MessageLog] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.message_log = message_log or MessageLog()
        self._transport = transport
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self.config.whatsapp_phone_number_id and self.config.whatsapp_access_token)

    @property
    def messages_url(self) -> str:
        c = self.config
        return f"{c.whatsapp_base_url}/{c.whatsapp_api_version}/{c.whatsapp_phone_number_id}/messages"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.whatsapp_access_token}",
            "Content-Type": "application/json",
        }

    async def send_text(self, to: str, body: str, *, order_id: Optional[str] = None) -> bool:
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"preview_url": True, "body": body},
        }
        return await self._send(payload, message_type="text", order_id=order_id)

    async def send_template(
        self,
        to: str,
        name: str,
        params: tuple[str, ...] | list[str] = (),
        *,
        button_url_param: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> bool:
        template: dict[str, Any] = {"name": name, "language": {"code": template_language_code(name)}}
        components = []
        if params:
            components.append(
                {"type": "body", "parameters": [{"type": "text", "text": str(value)} for value in params]}
            )
        if button_url_param:
            components.append(
                {
                    "type": "button",
                    "sub_type": "url",
                    "index": "0",
                    "parameters": [{"type": "text", "text": button_url_param}],
                }
            )
        if components:
            template["components"] = components

        payload = {"messaging_product": "whatsapp", "to": to, "type": "template", "template": template}
        return await self._send(payload, message_type="template", template_name=name, order_id=order_id)

    async def send_cta(
        self,
        to: str,
        body: str,
        button_label: str,
        url: str,
        *,
        order_id: Optional[str] = None,
    ) -> bool:
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "cta_url",
                "body": {"text": body},
                "action": {"name": "cta_url", "parameters": {"display_text": button_label, "url": url}},
            },
        }
        return await self._send(payload, message_type="interactive", order_id=order_id)

    async def _post_with_retry(self, payload: dict[str, Any]) -> httpx.Response:
        attempts = max(1, self.config.whatsapp_max_attempts)
        delay = self.config.whatsapp_initial_backoff_seconds
        async with self._client(self.config.whatsapp_timeout_seconds) as client:
            for attempt in range(1, attempts + 1):
                response = await client.post(self.messages_url, json=payload, headers=self._headers())
                if response.is_success:
                    return response
                if is_retryable_status(response.status_code) and attempt < attempts:
                    logger.warning(
                        "WhatsApp send retrying",
                        extra={
                            "context": {
                                "status": response.status_code,
                                "attempt": attempt,
                                "delay_seconds": delay,
                            }
                        },
                    )
                    await self._sleep(delay)
                    delay *= 2
                    continue
                response.raise_for_status()
        raise RuntimeError("unreachable")

    async def _send(
        self,
        payload: dict[str, Any],
        *,
        message_type: str,
        template_name: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> bool:
        to = payload["to"]
        if not self.is_configured:
            logger.error("WhatsApp credentials missing (WHATSAPP_PHONE_NUMBER_ID / WHATSAPP_ACCESS_TOKEN)")
            await alert_async(
                alert_critical, "WhatsApp send failed", {"to": to, "error": "missing_whatsapp_credentials"}
            )
            return False
        if not validate_e164(to):
            logger.error(f"Invalid E.164 phone number: {to}")
            return False

        log_id = self.message_log.log_outgoing(
            to_number=to,
            from_number=self.config.whatsapp_business_number_e164,
            message_type=message_type,
            payload=payload,
            template_name=template_name,
            order_id=order_id,
        )
        try:
            response = await self._post_with_retry(payload)
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:500]
            logger.error(
                "WhatsApp send failed",
                extra={
                    "context": {
                        "to": to,
                        "type": message_type,
                        "template": template_name,
                        "status": e.response.status_code,
                        "body": detail,
                    }
                },
            )
            self.message_log.mark_failed(log_id, f"{e.response.status_code}: {detail}")
            return False
        except httpx.HTTPError as e:
            logger.error(
                "WhatsApp send failed",
                extra={"context": {"to": to, "type": message_type, "template": template_name, "error": str(e)}},
            )
            self.message_log.mark_failed(log_id, str(e))
            return False

        data = response.json() if response.content else {}
        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id")
        self.message_log.mark_sent(log_id, message_id)
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"to": to, "type": message_type, "template": template_name, "message_id": message_id}},
        )
        return True

    async def get_media_info(self, media_id: str) -> Optional[MediaInfo]:
        if not self.is_configured:
            logger.error("WhatsApp credentials missing, cannot fetch media info")
            return None
        c = self.config
        url = f"{c.whatsapp_base_url}/{c.whatsapp_api_version}/{media_id}"
        try:
            async with self._client(c.whatsapp_timeout_seconds) as client:
                response = await client.get(url, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to get media info", extra={"context": {"media_id": media_id, "error": str(e)}})
            return None
        if not data.get("url"):
            logger.error("Media info without url", extra={"context": {"media_id": media_id}})
            return None
        return MediaInfo(
            url=data["url"],
            mime_type=data.get("mime_type"),
            sha256=data.get("sha256"),
            file_size=data.get("file_size"),
        )

    async def download_media(self, url: str) -> Optional[bytes]:
        try:
            async with self._client(MEDIA_DOWNLOAD_TIMEOUT_SECONDS) as client:
                response = await client.get(
                    url, headers={"Authorization": f"Bearer {self.config.whatsapp_access_token}"}
                )
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.error("Failed to download media file", extra={"context": {"url": url, "error": str(e)}})
            return None
