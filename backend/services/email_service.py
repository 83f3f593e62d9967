from postmarker.core import PostmarkClient
import asyncio
import html
import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Email sender configuration
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "notifications@example.com")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound").strip() or "outbound"


class EmailService:
    """Outbound mail port: send(to, subject, html).

    Without POSTMARK_SERVER_TOKEN the service runs in dev mode and only logs.
    Send failures raise; callers decide whether to retry.
    """

    def __init__(self, server_token: Optional[str] = None, sender: str = DEFAULT_SENDER):
        postmark_token = server_token if server_token is not None else os.getenv("POSTMARK_SERVER_TOKEN")
        self.sender = sender
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        """Send one email. Returns the provider message id (None in dev mode)."""
        if not self.client:
            logger.info(f"[DEV MODE] Email to {to}: {subject}")
            return None

        # postmarker is synchronous; keep the event loop free
        response = await asyncio.to_thread(
            self.client.emails.send,
            From=self.sender,
            To=to,
            Subject=subject,
            HtmlBody=html,
            MessageStream=POSTMARK_MESSAGE_STREAM,
        )
        message_id = response.get("MessageID") if isinstance(response, dict) else None
        logger.info(f"Email sent to {to}: {subject} ({message_id})")
        return message_id


def render_notification_email(title: str, message: str, link_url: Optional[str] = None,
                              base_url: Optional[str] = None) -> str:
    """Minimal HTML body for notification mail. Text and link are escaped."""
    base = base_url if base_url is not None else os.getenv("APP_BASE_URL", "")
    link_html = ""
    if link_url:
        link_html = f'<p><a href="{html.escape(base + link_url)}">Open in portal</a></p>'
    return f"<h2>{html.escape(title or '')}</h2><p>{html.escape(message or '')}</p>{link_html}"
