"""
Password Reset Email.

:class:`EmailNotificationService` is the SMTP implementation of the
``PasswordResetNotifier`` collaborator.  It never raises: a missing mail
setting, a rejected login or an unreachable server all come back as a
failed ``ServiceResult`` for the account service to log.
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage

from account_directory.config import AppConfig
from account_directory.logger import StructuredLogger
from account_directory.models.enums import AuditAction
from account_directory.models.service_models import PasswordResetEvent, ServiceResult
from account_directory.services.base_service import BaseService

__all__ = ["EmailNotificationService", "compose_password_reset"]

RESET_SUBJECT: str = "Reset Password Notification"

_RESET_BODY: str = """\
Hello {name},

You are receiving this email because we received a password reset request for your account.

Reset your password here: {url}

This link expires at {expires:%Y-%m-%d %H:%M} UTC.

If you did not request a password reset, no further action is required.
"""


def compose_password_reset(event: PasswordResetEvent, sender: str) -> EmailMessage:
    """Build the reset email for *event*."""
    msg = EmailMessage()
    msg["Subject"] = RESET_SUBJECT
    msg["From"] = sender
    msg["To"] = event.email
    msg.set_content(_RESET_BODY.format(
        name=event.display_name, url=event.reset_url, expires=event.expires_at,
    ))
    return msg


class EmailNotificationService(BaseService):
    """Sends password reset links over SMTP with STARTTLS.

    The mail settings are checked on the first send rather than at
    construction, so a service without mail can still be built.
    """

    def __init__(self, config: AppConfig, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._config = config
        self._config_checked: bool = False

    @property
    def sender(self) -> str:
        return self._config.MAIL_FROM_ADDRESS or self._config.MAIL_USERNAME

    def send_password_reset(self, event: PasswordResetEvent) -> ServiceResult:
        if not self._config_checked:
            try:
                self._config.validate_email_config()
            except ValueError as exc:
                self._logger.error("Password reset email not sent: %s", exc)
                return ServiceResult(
                    success=False, error=f"Email configuration error: {exc}", status_code=500,
                )
            self._config_checked = True

        msg = compose_password_reset(event, self.sender)
        self._audit(
            AuditAction.EMAIL_SEND_ATTEMPT, "User", event.user_id,
            details={"to": event.email, "subject": RESET_SUBJECT},
        )
        result = self._deliver(msg)
        if result.success:
            self._audit(AuditAction.EMAIL_SENT, "User", event.user_id, details={"to": event.email})
        return result

    def _deliver(self, msg: EmailMessage) -> ServiceResult:
        cfg = self._config
        try:
            with smtplib.SMTP(cfg.MAIL_SERVER, cfg.MAIL_PORT, timeout=cfg.MAIL_TIMEOUT_S) as smtp:
                smtp.starttls()
                smtp.login(cfg.MAIL_USERNAME, cfg.MAIL_PASSWORD.get_secret_value())
                smtp.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            self._logger.error("SMTP login rejected for %s: %s", cfg.MAIL_USERNAME, exc)
            error = f"SMTP authentication failed: {exc}"
        except smtplib.SMTPException as exc:
            self._logger.error("SMTP error sending to %s: %s", msg["To"], exc)
            error = f"SMTP error: {exc}"
        except OSError as exc:
            self._logger.error(
                "Cannot reach %s:%d: %s", cfg.MAIL_SERVER, cfg.MAIL_PORT, exc,
            )
            error = f"Network error: {exc}"
        else:
            self._logger.info("Password reset email sent to %s", msg["To"])
            return ServiceResult(success=True)
        return ServiceResult(success=False, error=error, status_code=500)
