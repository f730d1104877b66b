"""
Notification Sender — Resend transactional email.

Two messages per order lifecycle at most: "video ready" on completion and
"needs attention" on failure.  Email is never allowed to affect the order:
send errors are logged and swallowed by `notify_order_status`.
"""

import html
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from luxlife_worker.config import DEFAULT_DASHBOARD_URL, DEFAULT_FROM_EMAIL
from .errors import ProviderError
from .models import CreditStatus, Order, OrderStatus

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

COMPLETE_SUBJECT = "🎬 Your LuxLife video is ready"
FALLBACK_SUBJECT_SUFFIX = " (delivered with fallback)"
FAILED_SUBJECT = "LuxLife update: your video needs attention"

# Nothing is said about credits while a debit is still outstanding.
CREDIT_LINES = {
    CreditStatus.REFUNDED: "Your credit has been refunded automatically.",
    CreditStatus.NONE: "No credit was used for this order.",
}

STRATEGY_TEXT = {
    "animation_only": "We delivered the animated portrait while the background generator was unavailable.",
}


class EmailMessage(BaseModel):
    to: str
    subject: str
    text: str
    html: str


class ResendEmailSender:
    def __init__(
        self,
        api_key: str,
        from_email: str = DEFAULT_FROM_EMAIL,
        url: str = RESEND_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.url = url
        self._transport = transport

    async def send(self, message: EmailMessage) -> Optional[str]:
        """Send one email; returns the Resend id, or None when email is not configured."""
        if not self.api_key:
            logger.warning(f"RESEND_API_KEY not set — skipping email to {message.to}")
            return None

        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
            resp = await client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )

        if not resp.is_success:
            raise ProviderError("Resend", resp.status_code, resp.text)

        email_id = resp.json().get("id")
        logger.info(f"Email sent to {message.to}: id={email_id}")
        return email_id


# ── Message building ─────────────────────────────────────────────────────────

def _paragraphs(lines: list[str]) -> str:
    return "".join(f"<p>{line}</p>" for line in lines)


def build_completion_email(order: Order, dashboard_url: str = DEFAULT_DASHBOARD_URL) -> EmailMessage:
    fallback = order.pipeline.generation.fallback
    video_url = order.video_url or ""

    subject = COMPLETE_SUBJECT + (FALLBACK_SUBJECT_SUFFIX if fallback.used else "")

    lines = [f"Your LuxLife order {order.id} is complete!"]
    if fallback.used:
        strategy = fallback.strategy.value if fallback.strategy else ""
        lines.append(STRATEGY_TEXT.get(strategy, "We delivered your video with a fallback."))
        if fallback.reason:
            lines.append(f"Reason: {fallback.reason}")
    lines.append(f"Download your video here: {video_url}")
    lines.append(f"You can also view all of your orders at {dashboard_url}.")
    lines.append("")
    lines.append("Enjoy your cinematic moment ✨")

    html_lines = [f"Your LuxLife order <strong>{html.escape(order.id)}</strong> is complete!"]
    if fallback.used:
        html_lines.extend(html.escape(line) for line in lines[1:-4])
    html_lines.append(f'<a href="{html.escape(video_url)}">Download your video</a>')
    html_lines.append(
        f'You can also view all of your orders on your <a href="{html.escape(dashboard_url)}">dashboard</a>.'
    )
    html_lines.append("Enjoy your cinematic moment ✨")

    return EmailMessage(to=order.email or "", subject=subject, text="\n".join(lines), html=_paragraphs(html_lines))


def build_failure_email(
    order: Order,
    dashboard_url: str = DEFAULT_DASHBOARD_URL,
    details: Optional[str] = None,
) -> EmailMessage:
    details = details or order.error_message
    details = (
        f"Details: {details}"
        if details
        else "No additional error details were provided."
    )
    credit_line = CREDIT_LINES.get(order.credit_status)
    lines = [
        f"We couldn't finish LuxLife order {order.id}.",
        details,
        credit_line,
        f"When you're ready, visit {dashboard_url} to try again.",
    ]
    html_lines = [
        f"We couldn't finish LuxLife order <strong>{html.escape(order.id)}</strong>.",
        html.escape(details),
        credit_line,
        f'When you\'re ready, visit your <a href="{html.escape(dashboard_url)}">dashboard</a> to try again.',
    ]
    lines = [line for line in lines if line]
    html_lines = [line for line in html_lines if line]
    return EmailMessage(
        to=order.email or "",
        subject=FAILED_SUBJECT,
        text="\n".join(lines),
        html=_paragraphs(html_lines),
    )


async def notify_order_status(
    sender: ResendEmailSender,
    order: Order,
    dashboard_url: str = DEFAULT_DASHBOARD_URL,
    details: Optional[str] = None,
) -> bool:
    """
    Email the owner about a terminal order. Returns True if an email went out.

    `details` replaces the stored error message in the failure email when the
    customer should see something friendlier than the internal reason.
    """
    if not order.email:
        logger.info(f"[{order.id}] No email on order; skipping notification")
        return False

    if order.status == OrderStatus.COMPLETE:
        message = build_completion_email(order, dashboard_url)
    elif order.status == OrderStatus.FAILED:
        message = build_failure_email(order, dashboard_url, details)
    else:
        logger.warning(f"[{order.id}] Not notifying for non-terminal status {order.status.value}")
        return False

    try:
        return await sender.send(message) is not None
    except Exception as e:
        logger.error(f"[{order.id}] Failed to send {order.status.value} email: {e}", exc_info=True)
        return False
