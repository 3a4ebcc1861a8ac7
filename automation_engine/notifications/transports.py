"""Transportes de notificación (todos HTTP vía requests, con timeout explícito).

- webhook: payload estilo n8n (request.to_payload())
- telegram: Bot API sendMessage
- email: webhook de email con asunto/destinatario
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, Optional

import requests

from common.config import Settings

from ..core.domain.notification import NotificationRequest
from ..errors import NotificationConfigError, TransportError, TransportTimeout

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
DEFAULT_TIMEOUT_SECONDS = 10.0

# Reservados en MarkdownV2: fuera de entidades van siempre con "\"
_MARKDOWN_V2_RESERVED = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown(text: str) -> str:
    return _MARKDOWN_V2_RESERVED.sub(r"\\\1", str(text))


class NotificationTransport(ABC):
    """Mecanismo de entrega. `name` es el valor de targetChannel que lo elige."""

    name: str = ""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout = timeout

    @abstractmethod
    def send(self, request: NotificationRequest) -> None:
        """Entrega la notificación.

        Raises:
            NotificationConfigError: transporte sin configuración (no reintentable)
            TransportTimeout / TransportError: fallo de red o respuesta de error
        """

    def _post(self, url: str, payload: dict, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        try:
            response = requests.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", **(headers or {})},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransportTimeout(f"{self.name}: timeout after {self.timeout:.1f}s") from e
        except requests.RequestException as e:
            raise TransportError(f"{self.name}: {e}") from e

        if response.status_code in (408, 429) or response.status_code >= 500:
            raise TransportError(f"{self.name}: HTTP {response.status_code}")
        if response.status_code >= 400:
            # Token o URL mal configurados: reintentar no ayuda
            raise NotificationConfigError(f"{self.name}: HTTP {response.status_code} {response.text[:200]}")
        return response


def _bearer(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


class WebhookTransport(NotificationTransport):
    name = "webhook"

    def __init__(self, url: Optional[str], token: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self.url = url
        self.token = token

    def send(self, request: NotificationRequest) -> None:
        if not self.url:
            raise NotificationConfigError("webhook: WEBHOOK_URL not configured")
        self._post(self.url, request.to_payload(), _bearer(self.token))


class TelegramTransport(NotificationTransport):
    name = "telegram"

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(timeout)
        self.bot_token = bot_token
        self.chat_id = chat_id

    @staticmethod
    def format_text(request: NotificationRequest) -> str:
        """Texto MarkdownV2: título en negrita, pie en cursiva, todo escapado."""
        lines = []
        if request.title:
            lines.append(f"*{escape_markdown(request.title)}*")
            lines.append("")
        lines.append(escape_markdown(request.message))
        lines.append("")
        footer = (
            f"canal: {request.channel} | targetChannel: {request.target_channel} | "
            f"priority: {request.priority} | usuario: {request.usuario}"
        )
        lines.append(f"_{escape_markdown(footer)}_")
        return "\n".join(lines)

    def send(self, request: NotificationRequest) -> None:
        if not self.bot_token or not self.chat_id:
            raise NotificationConfigError("telegram: TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID not configured")
        response = self._post(
            TELEGRAM_API_URL.format(token=self.bot_token),
            {
                "chat_id": self.chat_id,
                "text": self.format_text(request),
                "parse_mode": "MarkdownV2",
            },
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if body.get("ok") is False:
            raise TransportError(f"telegram: {body.get('description', 'sendMessage failed')}")


class EmailTransport(NotificationTransport):
    name = "email"

    def __init__(
        self,
        url: Optional[str],
        recipient: Optional[str],
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(timeout)
        self.url = url
        self.recipient = recipient
        self.token = token

    def send(self, request: NotificationRequest) -> None:
        if not self.url or not self.recipient:
            raise NotificationConfigError("email: EMAIL_WEBHOOK_URL/EMAIL_RECIPIENT not configured")
        payload = {
            "usuario": request.usuario,
            "canal": request.channel,
            "targetChannel": request.target_channel,
            "asunto": request.title or f"Alerta IoT ({request.priority})",
            "mensaje": request.message,
            "destinatario": self.recipient,
            "priority": request.priority,
            "timestamp": request.created_at.isoformat(),
        }
        self._post(self.url, payload, _bearer(self.token))


def build_transports(settings: Settings) -> Dict[str, NotificationTransport]:
    """Transportes registrados según configuración."""
    timeout = settings.notify_timeout_seconds
    transports = [
        WebhookTransport(settings.webhook_url, settings.webhook_token, timeout),
        TelegramTransport(settings.telegram_bot_token, settings.telegram_chat_id, timeout),
        EmailTransport(settings.email_webhook_url, settings.email_recipient, settings.webhook_token, timeout),
    ]
    return {t.name: t for t in transports}
