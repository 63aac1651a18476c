from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from qcauth.logging import get_logger, mask_email

logger = get_logger(__name__)


class EmailService:
    """Delivers password reset links.

    Without an SMTP host the message is logged instead of sent, which is the
    expected setup for local development and tests.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Control de Calidad",
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/auth/reset-password?token={token}"

    def _send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        url = self.reset_url(token)
        subject = "Recuperación de contraseña"
        text_body = (
            "Recibimos una solicitud para restablecer tu contraseña.\n\n"
            f"Abre este enlace para elegir una nueva: {url}\n\n"
            f"El enlace vence en {ttl_minutes} minutos y solo puede usarse una vez. "
            "Si no solicitaste el cambio, ignora este mensaje."
        )
        html_body = (
            "<p>Recibimos una solicitud para restablecer tu contraseña.</p>"
            f'<p><a href="{url}">Elegir una nueva contraseña</a></p>'
            f"<p>El enlace vence en {ttl_minutes} minutos y solo puede usarse una vez.</p>"
        )
        return self._send(to_email, subject, text_body, html_body)
