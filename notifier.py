"""
Notification dispatch for materialized recurring expenses.

The scheduler calls notify() after each clone has been committed. Any
failure surfaces as NotificationFailure, which the scheduler logs and
otherwise ignores.
"""

import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

from config import Settings
from database import Expense, User
from errors import NotificationFailure
from logs import get_logger

logger = get_logger(__name__)


def recipient_for(user: User) -> str:
    return user.email or user.username


class Notifier(ABC):
    @abstractmethod
    def notify(self, user: User, expense: Expense) -> None:
        """Tell `user` that `expense` was created from a recurring template."""


class LogNotifier(Notifier):
    """Used when no mail server is configured."""

    def notify(self, user: User, expense: Expense) -> None:
        logger.info(
            "recurring_expense_notification",
            to=recipient_for(user),
            expense_id=expense.id,
            title=expense.title,
        )


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def build_message(self, user: User, expense: Expense) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient_for(user)
        message["Subject"] = "Recurring Expense Created"
        message.set_content(
            f"A new recurring expense has been created: {expense.title}"
        )
        return message

    def notify(self, user: User, expense: Expense) -> None:
        message = self.build_message(user, expense)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationFailure(str(exc)) from exc


def notifier_from_settings(settings: Settings) -> Notifier:
    if not settings.smtp_host:
        return LogNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.mail_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        timeout=settings.notification_timeout_seconds,
    )
