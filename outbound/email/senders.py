"""Email senders used by the email dispatcher.

A sender makes exactly one attempt per call and reports it as a
DeliveryOutcome; retries are driven by the dispatcher's tick loop.
"""

import asyncio
import json
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib
import structlog

from outbound.email.models import OutboundMessage
from outbound.transport import DeliveryOutcome, HttpTransport

logger = structlog.get_logger(__name__)


class EmailSender(Protocol):
    """Single-attempt email delivery."""

    async def send(self, message: OutboundMessage) -> DeliveryOutcome:
        """Attempt to deliver one message."""
        ...


def build_mime_message(message: OutboundMessage, from_address: str) -> EmailMessage:
    """Build an HTML MIME message for a queued email."""
    mime = EmailMessage()
    mime["From"] = from_address
    mime["To"] = message.recipient
    mime["Subject"] = message.subject
    mime.set_content(message.body, subtype="html")
    return mime


class SmtpEmailSender:
    """Sends queued messages through an SMTP server with aiosmtplib."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        username: str | None = None,
        password: str | None = None,
        start_tls: bool = False,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the sender.

        Args:
            host: SMTP server host.
            port: SMTP server port.
            from_address: Envelope and header sender.
            username: Optional login username.
            password: Optional login password.
            start_tls: Upgrade the connection with STARTTLS.
            timeout: Timeout in seconds for the whole exchange.
        """
        self._host = host
        self._port = port
        self._from_address = from_address
        self._username = username
        self._password = password
        self._start_tls = start_tls
        self._timeout = timeout
        self._logger = logger.bind(component="smtp_sender")

    async def send(self, message: OutboundMessage) -> DeliveryOutcome:
        mime = build_mime_message(message, self._from_address)

        # aiosmtplib applies its timeout per command; bound the whole exchange
        try:
            async with asyncio.timeout(self._timeout):
                _, response = await aiosmtplib.send(
                    mime,
                    hostname=self._host,
                    port=self._port,
                    username=self._username,
                    password=self._password,
                    start_tls=self._start_tls,
                    timeout=self._timeout,
                )
        except aiosmtplib.SMTPResponseException as e:
            self._logger.warning(
                "smtp_rejected",
                message_id=message.id,
                smtp_code=e.code,
            )
            return DeliveryOutcome(success=False, error=f"SMTP {e.code}: {e.message}")
        except TimeoutError:
            self._logger.warning(
                "smtp_send_timeout",
                message_id=message.id,
                timeout=self._timeout,
            )
            return DeliveryOutcome.from_error("Send timeout")
        except (aiosmtplib.SMTPException, OSError) as e:
            self._logger.warning(
                "smtp_send_failed",
                message_id=message.id,
                error_type=e.__class__.__name__,
                error=str(e),
            )
            return DeliveryOutcome.from_error(str(e) or e.__class__.__name__)

        self._logger.info("email_sent", message_id=message.id)
        return DeliveryOutcome(success=True, response_excerpt=str(response)[:500])


class HttpRelayEmailSender:
    """Posts queued messages to an HTTP mail relay through the transport.

    The relay receives {"from", "to", "subject", "html"} as JSON.
    """

    def __init__(
        self,
        transport: HttpTransport,
        *,
        relay_url: str,
        from_address: str,
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._transport = transport
        self._relay_url = relay_url
        self._from_address = from_address
        self._api_key = api_key
        self._timeout = timeout

    async def send(self, message: OutboundMessage) -> DeliveryOutcome:
        body = json.dumps(
            {
                "from": self._from_address,
                "to": message.recipient,
                "subject": message.subject,
                "html": message.body,
            },
            separators=(",", ":"),
        ).encode("utf-8")

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        return await self._transport.deliver(
            self._relay_url,
            headers=headers,
            body=body,
            timeout=self._timeout,
        )
