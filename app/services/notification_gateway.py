"""Outbound e-mail delivery through an HTTP mail provider."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog

from app.config import Settings

logger = structlog.get_logger(__name__)

# Provider answers that are worth retrying; every other 4xx means the request
# itself is bad (unknown template, rejected recipient, bad credentials).
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class DeliveryStatus(str, Enum):
    """Classification of a single send attempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one call to a notification gateway."""

    status: DeliveryStatus
    detail: str | None = None
    message_id: str | None = None

    @classmethod
    def success(cls, message_id: str | None = None) -> "DeliveryResult":
        return cls(DeliveryStatus.SUCCESS, message_id=message_id)

    @classmethod
    def transient(cls, detail: str) -> "DeliveryResult":
        return cls(DeliveryStatus.TRANSIENT_FAILURE, detail=detail)

    @classmethod
    def fatal(cls, detail: str) -> "DeliveryResult":
        return cls(DeliveryStatus.FATAL_FAILURE, detail=detail)


class FatalDeliveryError(Exception):
    """Raised by gateways that signal unrecoverable failures with exceptions."""


class NotificationGateway(Protocol):
    """Sends one outbound message. Stateless; callers impose the timeout."""

    async def send(
        self,
        template_id: str,
        recipient: str,
        payload: dict[str, Any],
    ) -> DeliveryResult: ...


class EmailGateway:
    """Templated e-mail over a JSON mail API (Resend/Postmark style)."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.api_url = api_url
        self.from_address = from_address
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def send(
        self,
        template_id: str,
        recipient: str,
        payload: dict[str, Any],
    ) -> DeliveryResult:
        """
        Send a templated e-mail.

        Args:
            template_id: Provider-side template identifier
            recipient: Destination e-mail address
            payload: Template variables

        Returns:
            Delivery result; network errors and 5xx/429 are transient
        """
        body = {
            "from": self.from_address,
            "to": [recipient],
            "template_id": template_id,
            "data": payload,
        }

        try:
            response = await self._client.post(self.api_url, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.warning("mail_provider_timeout", template_id=template_id, error=str(e))
            return DeliveryResult.transient(f"mail provider timed out: {e}")
        except httpx.TransportError as e:
            logger.warning("mail_provider_unreachable", template_id=template_id, error=str(e))
            return DeliveryResult.transient(f"mail provider unreachable: {e}")

        return self._classify(response, template_id)

    def _classify(self, response: httpx.Response, template_id: str) -> DeliveryResult:
        if response.is_success:
            message_id = None
            if response.headers.get("content-type", "").startswith("application/json"):
                # already accepted; the id is optional
                try:
                    data = response.json()
                except ValueError:
                    logger.warning("email_sent_unreadable_response", template_id=template_id)
                    data = None
                if isinstance(data, dict):
                    message_id = data.get("id")
            logger.info("email_sent", template_id=template_id, message_id=message_id)
            return DeliveryResult.success(message_id)

        detail = f"mail provider returned {response.status_code}: {response.text[:200]}"
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            logger.warning("email_send_retryable", template_id=template_id, detail=detail)
            return DeliveryResult.transient(detail)

        logger.error("email_send_rejected", template_id=template_id, detail=detail)
        return DeliveryResult.fatal(detail)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LogOnlyGateway:
    """Development stand-in used when no mail provider is configured."""

    async def send(
        self,
        template_id: str,
        recipient: str,
        payload: dict[str, Any],
    ) -> DeliveryResult:
        logger.info(
            "email_not_sent_no_provider",
            template_id=template_id,
            recipient=recipient,
            payload=payload,
        )
        return DeliveryResult.success()

    async def aclose(self) -> None:
        return None


def build_gateway(app_settings: Settings) -> EmailGateway | LogOnlyGateway:
    """Create the gateway for the configured environment."""
    if not app_settings.mail_api_url:
        if app_settings.is_production:
            raise RuntimeError("MAIL_API_URL must be set in production")
        logger.warning("mail_provider_not_configured", note="Set MAIL_API_URL to send e-mail")
        return LogOnlyGateway()

    return EmailGateway(
        api_url=app_settings.mail_api_url,
        api_key=app_settings.mail_api_key,
        from_address=app_settings.mail_from_address,
        timeout=app_settings.notification_timeout_seconds,
    )
