"""
Resend e-mail delivery channel

Sends subscription reminders through the Resend HTTP API (POST /emails).

EXTERNAL DEPENDENCY ISOLATION
- Every provider call is wrapped: HTTP errors, non-2xx responses and
  malformed bodies become DeliveryOutcome.failure(...)
- send() never raises for provider problems; the scheduler records a
  failed notification log entry and moves on
- No retries: a retried POST after a lost response could deliver twice

Configuration: API key / URL / sender resolved via config.py only.
"""
import logging
from typing import Optional

import httpx

import config
from app.services.notifications.channels import DeliveryChannel, build_reminder_message
from app.services.notifications.models import DeliveryOutcome, ReminderTier, User

logger = logging.getLogger(__name__)


class ResendEmailChannel(DeliveryChannel):
    """Reminder channel backed by the Resend API."""

    name = "email"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        email_from: Optional[str] = None,
        frontend_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else config.RESEND_API_KEY
        self.api_url = (api_url or config.RESEND_API_URL).rstrip("/")
        self.email_from = email_from or config.EMAIL_FROM
        self.frontend_url = frontend_url if frontend_url is not None else config.FRONTEND_URL
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else config.EMAIL_TIMEOUT_SECONDS)
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    def is_enabled(self) -> bool:
        if not self.api_key:
            logger.warning("RESEND_DISABLED_NO_API_KEY")
            return False
        return True

    def _get_auth_headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, user: User, tier: ReminderTier, remaining_days: int) -> DeliveryOutcome:
        """
        Send one reminder e-mail.

        Returns:
            DeliveryOutcome.delivered(<resend id>) on 2xx with an id,
            DeliveryOutcome.failure(<reason>) otherwise
        """
        if not self.is_enabled():
            return DeliveryOutcome.failure("RESEND_API_KEY is not configured")
        if not user.email:
            return DeliveryOutcome.failure("user has no email address")

        message = build_reminder_message(tier, remaining_days, name=user.name, frontend_url=self.frontend_url)
        request_body = {
            "from": self.email_from,
            "to": [user.email],
            "subject": message.subject,
            "text": message.text,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/emails",
                    headers=self._get_auth_headers(),
                    json=request_body,
                )
        except httpx.HTTPError as e:
            logger.error(f"Resend request failed: user={user.id} tier={tier.value} error={type(e).__name__}: {str(e)[:100]}")
            return DeliveryOutcome.failure(f"{type(e).__name__}: {str(e)[:200]}")

        if response.status_code >= 400:
            error_msg = _extract_error_message(response)
            logger.error(f"Resend API error: user={user.id} tier={tier.value} status={response.status_code} error={error_msg}")
            return DeliveryOutcome.failure(f"status={response.status_code}: {error_msg}")

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Resend API returned non-JSON body: user={user.id} status={response.status_code}")
            return DeliveryOutcome.failure("invalid response from Resend API")

        message_id = data.get("id") if isinstance(data, dict) else None
        if not message_id:
            logger.error(f"Resend API response missing id: user={user.id} tier={tier.value}")
            return DeliveryOutcome.failure("invalid response from Resend API: missing id")

        logger.info(f"Reminder email sent: user={user.id} tier={tier.value} message_id={message_id}")
        logger.debug(f"Reminder email recipient: user={user.id} email={user.email}")
        return DeliveryOutcome.delivered(message_id)


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("name") or data)[:200]
    return str(data)[:200]
