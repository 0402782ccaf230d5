"""Email service with template rendering and provider abstraction."""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape
from jinja2.exceptions import TemplateError
import httpx

from outbox.config import get_settings
from outbox.errors import EmailDeliveryError

logger = logging.getLogger(__name__)


def _redact_email(email: str) -> str:
    """Redact email address for safe logging (e.g., u***@example.com)."""
    try:
        local, domain = email.split("@")
        return f"{local[0]}***@{domain}" if local else f"***@{domain}"
    except (ValueError, IndexError):
        return "***"


# Template setup - load from backend/outbox/templates/emails/
TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "emails"


class TemplateRenderer:
    """Jinja2 template renderer for email templates."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        self.template_dir = template_dir
        self._env: Optional[Environment] = None

    def _get_env(self) -> Environment:
        """Lazy load the Jinja2 environment."""
        if self._env is None:
            if not self.template_dir.exists():
                logger.warning(f"Email template directory not found: {self.template_dir}")
            self._env = Environment(
                loader=FileSystemLoader(str(self.template_dir)),
                autoescape=select_autoescape(['html', 'xml']),
                undefined=StrictUndefined,
            )
        return self._env

    def render(self, template_name: str, **context: Any) -> str:
        """Render a template; any template error is raised as EmailDeliveryError."""
        try:
            template = self._get_env().get_template(template_name)
            return template.render(**context)
        except TemplateError as e:
            logger.error(f"Failed to render template {template_name}: {e}")
            raise EmailDeliveryError(f"Failed to render email template {template_name}: {e}") from e


template_renderer = TemplateRenderer()


class EmailProvider(ABC):
    """Delivers one rendered message. Returns False when the provider refuses it."""

    @abstractmethod
    async def send(self, to: str, subject: str, html: str, text: str) -> bool:
        ...

    @staticmethod
    def sender() -> str:
        settings = get_settings()
        return f"{settings.email_from_name} <{settings.email_from_address}>"


class SMTPProvider(EmailProvider):
    """SMTP delivery through aiosmtplib."""

    def build_message(self, to: str, subject: str, html: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender()
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))
        return msg

    async def send(self, to: str, subject: str, html: str, text: str) -> bool:
        settings = get_settings()
        redacted = _redact_email(to)
        try:
            await aiosmtplib.send(
                self.build_message(to, subject, html, text),
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_user or None,
                password=settings.smtp_password or None,
                start_tls=settings.smtp_use_tls,
            )
        except aiosmtplib.SMTPConnectError as e:
            logger.error("SMTP connect to %s:%s failed for %s: %s", settings.smtp_host, settings.smtp_port, redacted, e)
            return False
        except aiosmtplib.SMTPResponseException as e:
            logger.error("SMTP server refused mail to %s: code=%s message=%s", redacted, e.code, e.message)
            return False
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("SMTP delivery to %s failed: %s: %s", redacted, type(e).__name__, e)
            return False
        logger.info("SMTP: sent '%s' to %s", subject, redacted)
        return True


class ResendProvider(EmailProvider):
    """Delivery through the Resend API."""

    async def send(self, to: str, subject: str, html: str, text: str) -> bool:
        import resend
        from resend.exceptions import ResendError

        redacted = _redact_email(to)
        resend.api_key = get_settings().resend_api_key
        try:
            resend.Emails.send({
                "from": self.sender(),
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
            })
        except (ResendError, httpx.HTTPError) as e:
            logger.error("Resend delivery to %s failed: %s: %s", redacted, type(e).__name__, e)
            return False
        logger.info("Resend: sent '%s' to %s", subject, redacted)
        return True


class EmailService:
    """Renders and sends the transactional emails outbox handlers produce."""

    def __init__(self):
        self._provider: Optional[EmailProvider] = None

    @property
    def enabled(self) -> bool:
        return get_settings().email_enabled

    def _get_provider(self) -> Optional[EmailProvider]:
        """Lazy load the email provider based on settings."""
        if self._provider is None:
            settings = get_settings()
            if settings.email_provider == "smtp":
                self._provider = SMTPProvider()
            elif settings.email_provider == "resend":
                self._provider = ResendProvider()
            else:
                logger.warning(f"Unknown email provider: {settings.email_provider}")
        return self._provider

    def build_link(self, path: str, **params: str) -> str:
        """Build a frontend URL with query parameters."""
        base_url = get_settings().frontend_url.rstrip("/")
        link = f"{base_url}/{path.lstrip('/')}"
        if params:
            link += "?" + str(httpx.QueryParams(params))
        return link

    async def send_templated(self, to: str, subject: str, template: str, **context: Any) -> None:
        """Render ``template``.html/.txt and send them.

        Raises EmailDeliveryError when no provider is configured or the
        provider rejects the message.
        """
        provider = self._get_provider()
        if not provider:
            raise EmailDeliveryError("No email provider configured")

        context.setdefault("app_name", get_settings().email_from_name)
        html = template_renderer.render(f"{template}.html", **context)
        text = template_renderer.render(f"{template}.txt", **context)

        sent = await provider.send(to=to, subject=subject, html=html, text=text)
        if not sent:
            raise EmailDeliveryError(f"Email provider rejected message to {_redact_email(to)}")


# Singleton
email_service = EmailService()
