# mailer.py — Outbound email
# SMTP delivery through smtplib in a worker thread. Without SMTP_HOST the
# service logs messages instead of sending them.

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Optional

from config import Settings, get_settings

logger = logging.getLogger("bugboard.mailer")


class MailDeliveryError(Exception):
    pass


@dataclass
class OutgoingMail:
    to: str
    subject: str
    body: str


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        from_addr: str = "bugboard@localhost",
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = True,
    ):
        self.host = host
        self.port = port
        self.from_addr = from_addr
        self.username = username
        self.password = password
        self.starttls = starttls

    async def send(self, to: str, subject: str, body: str) -> None:
        def _send_sync() -> None:
            m = EmailMessage()
            m["Subject"] = subject
            m["From"] = self.from_addr
            m["To"] = to
            m.set_content(body)
            with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
                s.ehlo()
                if self.starttls:
                    s.starttls()
                    s.ehlo()
                if self.username and self.password:
                    s.login(self.username, self.password)
                s.send_message(m)

        try:
            await asyncio.to_thread(_send_sync)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery to {to} failed: {exc}") from exc


class LogMailer:
    """Fallback when no SMTP relay is configured"""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Mail to {to} not sent (SMTP disabled): {subject}")


async def send_best_effort(mailer, to: str, subject: str, body: str) -> bool:
    """Send, logging failure instead of raising. Returns whether it was sent."""
    try:
        await mailer.send(to, subject, body)
        return True
    except MailDeliveryError as exc:
        logger.warning(f"Mail delivery failed, continuing: {exc}")
        return False


def build_mailer(settings: Settings):
    if not settings.smtp_enabled:
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_addr=settings.smtp_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        starttls=settings.smtp_starttls,
    )


@lru_cache
def get_mailer():
    return build_mailer(get_settings())


# --- Message templates ---

def welcome_mail(first_name: str, email: str, password: str) -> OutgoingMail:
    return OutgoingMail(
        to=email,
        subject="Your BugBoard account",
        body=(
            f"Hello {first_name},\n\n"
            "An account has been created for you on BugBoard.\n\n"
            f"Email: {email}\n"
            f"Password: {password}\n\n"
            "Please change your password after the first login.\n"
        ),
    )


def recovery_mail(first_name: str, email: str, temporary_password: str) -> OutgoingMail:
    return OutgoingMail(
        to=email,
        subject="BugBoard password recovery",
        body=(
            f"Hello {first_name},\n\n"
            "A temporary password has been generated for your account:\n\n"
            f"{temporary_password}\n\n"
            "Log in with it and change it right away.\n"
        ),
    )
