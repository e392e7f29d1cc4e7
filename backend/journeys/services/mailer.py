import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Protocol

from journeys.config import Settings
from journeys.errors import MailerError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to: str, subject: str, html_body: str, metadata: Dict[str, Any]) -> str:
        """Enqueue one message and return its delivery id. Raises MailerError on failure."""
        ...


class SMTPMailer:
    """
    Sends through an SMTP relay. Delivery retries belong to the relay; a
    failure here is reported once as MailerError.
    """

    def __init__(self, settings: Settings):
        self.host = settings.SMTP_HOST
        self.port = settings.SMTP_PORT
        self.username = settings.SMTP_USERNAME
        self.password = settings.SMTP_PASSWORD
        self.use_tls = settings.SMTP_USE_TLS
        self.timeout = settings.SMTP_TIMEOUT_SECONDS
        self.sender = settings.MAIL_FROM or settings.SMTP_USERNAME

    async def send(self, to: str, subject: str, html_body: str, metadata: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self._send, to, subject, html_body, metadata)

    def _build_message(self, to: str, subject: str, html_body: str, metadata: Dict[str, Any], delivery_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg["Message-ID"] = delivery_id
        msg["Reply-To"] = self.sender
        msg["MIME-Version"] = "1.0"
        msg["List-Unsubscribe"] = f"<mailto:{self.sender}?subject=unsubscribe>"
        msg["Precedence"] = "bulk"
        for key in ("journey_id", "campaign_id", "step_id"):
            if metadata.get(key):
                msg[f"X-{key.replace('_', '-').title()}"] = str(metadata[key])
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send(self, to: str, subject: str, html_body: str, metadata: Dict[str, Any]) -> str:
        if not self.sender:
            logger.error("[MAILER] Neither MAIL_FROM nor SMTP_USERNAME is configured")
            raise MailerError("Missing sender address")

        delivery_id = make_msgid(domain=self.sender.split("@")[-1])
        msg = self._build_message(to, subject, html_body, metadata, delivery_id)
        journey_id = metadata.get("journey_id")

        try:
            logger.debug(f"[MAILER] Connecting to {self.host}:{self.port}")
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[MAILER] SMTP authentication failed for journey {journey_id}: {e}")
            raise MailerError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"[MAILER] Recipient {to} refused for journey {journey_id}: {e}")
            raise MailerError(f"Recipient refused: {to}") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[MAILER] Failed to send to {to} for journey {journey_id}: {e}")
            raise MailerError(f"SMTP send failed: {e}") from e

        logger.info(f"[MAILER] Sent {delivery_id} to {to} (journey {journey_id})")
        return delivery_id
