from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from constructor_auth.config import Settings
from constructor_auth.logging import get_logger
from constructor_auth.storage.models import CodeType

logger = get_logger(__name__)

CODE_SUBJECTS = {
    CodeType.SIGNUP: "Verification Code for Sign Up",
    CodeType.RECOVERY: "Password Recovery Code",
}
DEFAULT_CODE_SUBJECT = "Verification Code"

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; background: #f5f5f5; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; background: #ffffff; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer">
            <p>This is an automated message, please do not reply.</p>
            <p>{app_name}</p>
        </div>
    </div>
</body>
</html>
"""


def _paragraphs(*lines: str) -> str:
    return "\n        ".join(f"<p>{html.escape(line)}</p>" for line in lines)


class EmailService:
    """Transactional email over SMTP.

    Without SMTP_HOST the message is logged instead of sent, which is what
    local development and tests rely on. Send methods return ``False`` when
    delivery failed; they do not raise for transport errors.
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
        from_name: str = "ConstructorMini",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self, title: str, *lines: str, highlight: Optional[str] = None
    ) -> tuple[str, str]:
        """HTML and plain-text bodies; lines are escaped for the HTML part only.

        ``highlight`` is shown after the first line, styled as a code in HTML.
        """
        content = _paragraphs(*lines)
        text_lines = list(lines)
        if highlight is not None:
            span = f'<p><span class="code">{html.escape(highlight)}</span></p>'
            content = "\n        ".join(
                filter(None, [_paragraphs(*lines[:1]), span, _paragraphs(*lines[1:])])
            )
            text_lines.insert(min(1, len(text_lines)), highlight)
        html_body = _LAYOUT.format(
            title=html.escape(title),
            content=content,
            app_name=html.escape(self.from_name),
        )
        text_body = "\n\n".join([title, *text_lines, "---", self.from_name])
        return html_body, text_body

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
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

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True
        try:
            self._deliver(to_email, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_code(
        self, to_email: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> bool:
        subject = CODE_SUBJECTS.get(CodeType(code_type), DEFAULT_CODE_SUBJECT)
        intro = (
            "Use this code to finish creating your account:"
            if code_type == CodeType.SIGNUP
            else "Use this code to reset your password:"
        )
        expires = f"The code expires at {expiration_date:%Y-%m-%d %H:%M} UTC."
        ignore = "If you didn't request this, you can safely ignore this email."
        html_body, text_body = self._render(subject, intro, expires, ignore, highlight=code)
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool:
        subject = f"Welcome to {self.from_name} - Registration Successful"
        greeting = f"Hello, {first_name}!" if first_name else "Hello!"
        html_body, text_body = self._render(
            f"Welcome to {self.from_name}",
            greeting,
            "Your account has been created and you are signed in.",
            f"Get started at {self.base_url}",
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str, first_name: Optional[str] = None) -> bool:
        subject = f"{self.from_name} - Password Successfully Changed"
        greeting = f"Hello, {first_name}!" if first_name else "Hello!"
        html_body, text_body = self._render(
            "Your password was changed",
            greeting,
            "The password for your account has been changed successfully.",
            "If you didn't make this change, contact support immediately and reset your password.",
        )
        return self._send_email(to_email, subject, html_body, text_body)
