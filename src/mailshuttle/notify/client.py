# =============================================================================
# Operator Alerts
# =============================================================================
# Sends a short plain-text mail whenever a message is quarantined.
#
# Alerts are fire-and-forget from the pipeline's point of view: a failed
# alert is logged by the caller and never stops a message from being
# relocated.
#
# Uses aiosmtplib for async operations. Each alert opens its own SMTP
# connection; quarantines are rare enough that pooling isn't worth it.
# =============================================================================

import logging
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Protocol

import aiosmtplib
import keyring

from mailshuttle.config import NotifyConfig

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Accepts operator-visible alerts."""

    async def send(self, subject: str, body: str) -> None:
        """
        Deliver one alert.

        Raises:
            NotifyError: If the alert could not be delivered.
        """
        ...


class LogNotifier:
    """Notifier used when alerts are disabled: writes them to the log only."""

    async def send(self, subject: str, body: str) -> None:
        logger.warning(f"ALERT {subject}: {body}")


class SMTPNotifier:
    """
    Sends alerts over SMTP.

    Usage:
        >>> notifier = SMTPNotifier(config.notify)
        >>> await notifier.send("Moving message to quarantine", "too big")
    """

    # Timeout for SMTP operations (seconds)
    TIMEOUT = 30

    def __init__(self, config: NotifyConfig) -> None:
        self.config = config

    async def send(self, subject: str, body: str) -> None:
        """
        Connect, authenticate if configured, send one alert and quit.

        Raises:
            NotifyError: On any SMTP or network failure.
        """
        message = self._build_message(subject, body)

        client = aiosmtplib.SMTP(
            hostname=self.config.smtp_host,
            port=self.config.smtp_port,
            use_tls=self.config.smtp_security == "ssl",
            start_tls=self.config.smtp_security == "starttls",
            timeout=self.TIMEOUT,
        )

        try:
            await client.connect()
            if self.config.user:
                await client.login(self.config.user, self._password())
            await client.send_message(message)
            logger.info(f"Alert sent to {', '.join(self.config.recipients)}: {subject}")
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotifyError(f"Failed to send alert: {e}") from e
        finally:
            if client.is_connected:
                try:
                    await client.quit()
                except aiosmtplib.SMTPException as e:
                    logger.debug(f"Error during SMTP quit: {e}")

    def _password(self) -> str:
        password = self.config.password or keyring.get_password(
            self.config.keyring_service,
            self.config.user,
        )
        if not password:
            raise NotifyError(
                f"No password configured for SMTP user {self.config.user}. "
                f"Set it with: keyring set {self.config.keyring_service} {self.config.user}"
            )
        return password

    def _build_message(self, subject: str, body: str) -> MIMEText:
        sender = self.config.sender or self.config.user
        msg = MIMEText(body, "plain", "utf-8")
        msg["From"] = sender
        msg["To"] = ", ".join(self.config.recipients)
        msg["Subject"] = f"{self.config.subject_prefix}{subject}"
        msg["Date"] = formatdate(localtime=True)
        domain = sender.split("@")[1] if "@" in sender else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["X-Mailer"] = "mailshuttle"
        return msg


def make_notifier(config: NotifyConfig) -> Notifier:
    """Pick the notifier matching config.enabled."""
    if config.enabled:
        return SMTPNotifier(config)
    return LogNotifier()


# =============================================================================
# Exceptions
# =============================================================================

class NotifyError(Exception):
    """Raised when an alert could not be delivered."""
    pass
