"""
High-mileage maintenance alert e-mail, sent over SMTP.
"""
import smtplib
import uuid
from email.message import EmailMessage
from typing import Optional

import structlog

from ..config import settings
from .errors import DependencyError


logger = structlog.get_logger(__name__)


class MaintenanceAlertMailer:

    def __init__(self, threshold: Optional[int] = None):
        self.threshold = threshold if threshold is not None else settings.mileage_alert_threshold

    def should_alert(self, mileage: Optional[int]) -> bool:
        return mileage is not None and mileage > self.threshold

    def _build(self, asset_name: str, mileage: int, recipient_email: str, first_name: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = "Asset Mileage Alert"
        msg["From"] = settings.mail_from
        msg["To"] = recipient_email
        greeting = first_name or "there"
        msg.set_content(
            f"Hello {greeting},\n\n"
            f"Your asset {asset_name} has exceeded {self.threshold:,} miles.\n"
            f"Current mileage: {mileage:,} miles.\n\n"
            "Please schedule maintenance for this asset.\n"
        )
        msg.add_alternative(
            "<h2>Asset Mileage Alert</h2>"
            f"<p>Hello {greeting},</p>"
            f"<p>Your asset <strong>{asset_name}</strong> has exceeded {self.threshold:,} miles.</p>"
            f"<p><strong>Current mileage:</strong> {mileage:,} miles</p>"
            "<p>Please schedule maintenance for this asset.</p>",
            subtype="html",
        )
        return msg

    def send(
        self,
        asset_id: uuid.UUID,
        asset_name: str,
        mileage: Optional[int],
        recipient_email: Optional[str],
        first_name: Optional[str] = None,
    ) -> bool:
        """
        Mail the alert when mileage is over the threshold.

        Returns:
            True if a message was handed to the SMTP server

        Raises:
            DependencyError: the SMTP exchange failed
        """
        if not self.should_alert(mileage):
            return False
        if not settings.enable_email or not settings.smtp_host or not settings.mail_from:
            logger.info("mileage_alert_mail_disabled", asset_id=str(asset_id))
            return False
        if not recipient_email:
            logger.warning("mileage_alert_no_recipient", asset_id=str(asset_id))
            return False

        msg = self._build(asset_name, mileage, recipient_email, first_name)
        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds) as s:
                if settings.smtp_tls:
                    s.starttls()
                if settings.smtp_username and settings.smtp_password:
                    s.login(settings.smtp_username, settings.smtp_password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DependencyError(f"Mileage alert mail failed: {e}") from e

        logger.info("mileage_alert_sent", asset_id=str(asset_id), mileage=mileage)
        return True
