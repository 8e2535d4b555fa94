"""One-time code delivery over email and SMS gateways."""

from typing import Optional, Protocol

import httpx

from ..config.security_config import MFA_DELIVERY_WEBHOOK_URL
from ..core.logging import get_logger

logger = get_logger(__name__)


class DeliveryChannel(Protocol):
    """Anything that can hand a code to a subject; failure is a boolean."""

    def send(self, channel: str, destination: str, code: str, action_context: Optional[str] = None) -> bool:
        ...


class HttpDeliveryGateway:
    """Posts codes to an outbound notification webhook (email/SMS provider bridge)."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url or MFA_DELIVERY_WEBHOOK_URL
        self.timeout = timeout
        self.client = client

    def send(self, channel: str, destination: str, code: str, action_context: Optional[str] = None) -> bool:
        if not self.webhook_url:
            logger.error("No delivery webhook configured", {"channel": channel})
            return False

        payload = {
            "channel": channel,
            "destination": destination,
            "code": code,
            "action_context": action_context,
        }
        try:
            if self.client is not None:
                response = self.client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                f"Code delivery failed: {type(e).__name__}",
                {"channel": channel, "action_context": action_context},
            )
            return False

        logger.info("Code dispatched", {"channel": channel, "action_context": action_context})
        return True


class LoggingDeliveryChannel:
    """Development channel: records the dispatch, never the code itself."""

    def send(self, channel: str, destination: str, code: str, action_context: Optional[str] = None) -> bool:
        logger.info(
            "Code delivery simulated",
            {"channel": channel, "destination": destination, "action_context": action_context},
        )
        return True


def get_delivery_channel(timeout: float = 5.0) -> DeliveryChannel:
    """Webhook gateway when configured, logging channel otherwise."""
    if MFA_DELIVERY_WEBHOOK_URL:
        return HttpDeliveryGateway(MFA_DELIVERY_WEBHOOK_URL, timeout=timeout)
    return LoggingDeliveryChannel()
