"""Notification helpers for users (chat outbox) and operators (email)."""
from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Any, Callable

from mealgate.core.logging import get_logger
from mealgate.core.settings import Settings, get_settings

logger = get_logger(__name__)

UserTransport = Callable[[str, str, dict[str, Any]], None]

TEMPLATES: dict[str, str] = {
    "renewal_reminder": "Your {plan} subscription renews in {days_left} days.",
    "payment_failed": "We could not process your payment. Access is kept until {grace_until}.",
    "subscription_canceled": "Your subscription was canceled. You are now on the free plan.",
    "referral_rewarded": "Your referral was accepted: {points} points and {credit:.2f} credit added.",
    "referral_welcome": "Welcome! You received {days} days of {plan} from a friend.",
    "grant_expired": "Your {plan} trial has ended.",
}


class Notifier:
    """Routes user messages to the chat transport and operator alerts to email."""

    def __init__(self, settings: Settings | None = None, transport: UserTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    def notify_user(self, user_id: str, template: str, **context: Any) -> None:
        body = TEMPLATES[template].format(**context)
        if self._transport is None:
            logger.info("user_notification_logged", user_id=user_id, template=template)
            return
        self._transport(user_id, body, {"template": template, **context})
        logger.info("user_notification_sent", user_id=user_id, template=template)

    def notify_operator(self, subject: str, body: str) -> None:
        settings = self.settings
        recipient = settings.operator_email
        if not settings.smtp_host or not recipient:
            logger.warning("operator_alert_logged", subject=subject, body=body)
            return

        email = EmailMessage()
        email["Subject"] = subject
        email["From"] = settings.smtp_from
        email["To"] = recipient
        email.set_content(body)

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port or 25, timeout=10) as smtp:
                if settings.smtp_username and settings.smtp_password:
                    smtp.starttls()
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(email)
            logger.info("operator_alert_sent", recipient=recipient, subject=subject)
        except (OSError, smtplib.SMTPException) as exc:  # pragma: no cover - network I/O
            logger.error("operator_alert_failed", recipient=recipient, error=str(exc))


__all__ = ["Notifier", "TEMPLATES"]
