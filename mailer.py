#!/usr/bin/env python3
"""
Transactional email through the Resend API, plus the failed-run admin alert.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger, mask_secret
from errors import TransportError
from renderer import render_failure_notification
from telemetry import trace_span

logger = get_logger("mailer")

RESEND_EMAILS_URL = "https://api.resend.com/emails"
ERROR_BODY_LIMIT = 300


@dataclass
class FailureNotification:
    run_id: int
    config_id: int
    config_name: str
    started_at: str
    failed_at: str
    error_message: str
    error_stack: Optional[str] = None

    @property
    def subject(self) -> str:
        return f"NewsBot Run Failed: {self.config_name}"


class ResendMailer:
    """Sends one message per call and returns the provider's message id."""

    def __init__(self, api_key: str, sender: str, session: Optional[ClientSession] = None):
        self.api_key = api_key
        self.sender = sender
        self._session = session

    @trace_span(
        "mail.send",
        tracer_name="mailer",
        attr_from_args=lambda self, to, subject, html, text=None: {
            "mail.recipients": len(to),
            "mail.subject": subject,
        },
    )
    async def send(self, to: List[str], subject: str, html: str, text: Optional[str] = None) -> str:
        """Send an email.

        Raises:
            TransportError: On a non-2xx response, a network failure or a response without an id.
        """
        payload: Dict[str, Any] = {"from": self.sender, "to": list(to), "subject": subject, "html": html}
        if text and text.strip():
            payload["text"] = text
        try:
            if self._session is not None:
                data = await self._post(self._session, payload)
            else:
                async with ClientSession() as session:
                    data = await self._post(session, payload)
        except TimeoutError as e:
            raise TransportError(f"Resend API timed out after {config.MAIL_HTTP_TIMEOUT}s") from e
        except ClientError as e:
            raise TransportError(f"Resend API request failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"Resend API returned an unreadable response: {e}") from e
        email_id = data.get("id") if isinstance(data, dict) else None
        if not email_id:
            logger.error(f"Resend API response missing email id: {data}")
            raise TransportError("Resend API missing email id")
        logger.info(f"Sent '{subject}' to {len(to)} recipient(s) (id={email_id})")
        return str(email_id)

    async def _post(self, session: ClientSession, payload: Dict[str, Any]) -> Any:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = ClientTimeout(total=config.MAIL_HTTP_TIMEOUT)
        async with session.post(RESEND_EMAILS_URL, json=payload, headers=headers, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                error_body = await response.text()
                logger.error(f"Resend API failed ({response.status}) with key {mask_secret(self.api_key)}: {error_body}")
                suffix = f" - {error_body[:ERROR_BODY_LIMIT]}" if error_body else ""
                raise TransportError(
                    f"Resend API failed (HTTP {response.status} {response.reason}){suffix}",
                    details={"status": response.status},
                )
            return await response.json(content_type=None)


async def send_failure_notification(settings: Any, notification: FailureNotification,
                                    mailer: Optional[ResendMailer] = None) -> Optional[str]:
    """Email the admin about a failed run.

    Does nothing unless the admin address, email API key and sender are all set.
    Errors propagate; the caller decides whether to swallow them.
    """
    if settings is None:
        return None
    admin_email = (settings.admin_email or "").strip()
    api_key = (settings.resend_api_key or "").strip()
    sender = (settings.default_sender or "").strip()
    if not (admin_email and api_key and sender):
        logger.debug("Failure notification skipped: admin email, API key or sender not configured")
        return None
    rendered = render_failure_notification(notification)
    mailer = mailer or ResendMailer(api_key, sender)
    return await mailer.send([admin_email], notification.subject, rendered.html, rendered.text)
