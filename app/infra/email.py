import logging
import smtplib
from email.message import EmailMessage

import anyio
import httpx

from app.settings import settings

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None, mode: str | None = None) -> None:
        self.http_client = http_client
        self.mode = mode or settings.email_mode

    async def send_email(self, recipient: str, subject: str, body: str) -> bool:
        if self.mode == "off":
            logger.info("email_skipped", extra={"extra": {"reason": "email_mode_off", "subject": subject}})
            return False
        if self.mode == "sendgrid":
            await self._send_via_sendgrid(to_email=recipient, subject=subject, body=body)
            return True
        if self.mode == "smtp":
            await self._send_via_smtp(to_email=recipient, subject=subject, body=body)
            return True
        raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(self, to_email: str, subject: str, body: str) -> None:
        api_key = settings.sendgrid_api_key
        from_email = settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if settings.email_from_name:
            payload["from"]["name"] = settings.email_from_name
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                SENDGRID_SEND_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
                timeout=10,
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(self, to_email: str, subject: str, body: str) -> None:
        host = settings.smtp_host
        port = settings.smtp_port or 587
        username = settings.smtp_username
        password = settings.smtp_password
        from_email = settings.email_sender
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = from_email
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)

        def _send_blocking() -> None:
            if settings.smtp_use_tls:
                with smtplib.SMTP(host, port) as smtp:
                    smtp.starttls()
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)
            else:
                with smtplib.SMTP_SSL(host, port) as smtp:
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def resolve_email_adapter(app_settings) -> EmailAdapter:
    return EmailAdapter(mode=app_settings.email_mode)
