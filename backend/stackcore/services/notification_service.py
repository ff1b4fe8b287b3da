"""
Billing Notification Service.

WHAT:
    Emails workspace admins when the workspace plan changes:
    - Upgrade: new plan is active immediately
    - Downgrade: new plan takes effect at the end of the paid period

WHY:
    Every admin should know when another admin changed what the workspace
    pays for. Delivery is best effort: this runs after the change has been
    committed, so a failed email never fails or rolls back the change.

DESIGN:
    - Resend when RESEND_API_KEY is configured
    - Without a key the rendered message is logged instead (local dev, tests)
    - Never raises; failures come back as NotificationResult(success=False)

REFERENCES:
    - stackcore/services/subscription_service.py: schedules these after commit
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import List, Optional, Tuple

import resend

from stackcore.models import BillingCycleEnum, ProductEnum

logger = logging.getLogger(__name__)

PlanLabel = Tuple[ProductEnum, Optional[BillingCycleEnum]]


def format_plan(plan: PlanLabel) -> str:
    """Human readable plan name, e.g. "Pro (yearly)"."""
    product, billing_cycle = plan
    name = product.value.title()
    if billing_cycle is None:
        return name
    return f"{name} ({billing_cycle.value.lower()})"


def _build_email(workspace_name: str, headline: str, body: str, dashboard_url: str) -> Tuple[str, str]:
    """Return (html, text) bodies for a plan change email."""
    html = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; max-width: 560px; margin: 0 auto; padding: 24px;">
        <h2 style="color: #111827; font-size: 20px; margin: 0 0 12px 0;">{escape(headline)}</h2>
        <p style="color: #374151; font-size: 14px; line-height: 1.6;">{escape(body)}</p>
        <a href="{escape(dashboard_url)}" style="display: inline-block; margin-top: 16px; padding: 10px 16px; background: #111827; color: #ffffff; border-radius: 6px; text-decoration: none; font-size: 14px;">
            Open {escape(workspace_name)}
        </a>
    </div>
    """
    text = f"{headline}\n\n{body}\n\n{dashboard_url}\n"
    return html, text


@dataclass
class NotificationResult:
    """
    Result of sending a notification.

    Attributes:
        success: Whether notification was sent (or logged when Resend is off)
        message_id: Provider message ID if sent via Resend
        error: Error message if failed
        recipients: List of recipients
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipients: Optional[List[str]] = None


class BillingNotifier:
    """
    Sends plan change emails to workspace admins.

    Usage:
        notifier = BillingNotifier(resend_api_key=settings.RESEND_API_KEY)
        notifier.notify_upgraded(emails, "Acme", (BASIC, MONTHLY), (PRO, MONTHLY))
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        sender: str = "Stackcore <billing@stackcore.dev>",
        dashboard_url: str = "http://localhost:3000",
    ):
        self.resend_api_key = resend_api_key
        self.sender = sender
        self.dashboard_url = dashboard_url.rstrip("/")

    def notify_upgraded(
        self,
        emails: List[str],
        workspace_name: str,
        old: PlanLabel,
        new: PlanLabel,
    ) -> NotificationResult:
        headline = f"{workspace_name} is now on {format_plan(new)}"
        body = (
            f"The subscription for {workspace_name} was upgraded from "
            f"{format_plan(old)} to {format_plan(new)}. The new plan is active "
            f"now and a new billing period started today."
        )
        html, text = _build_email(workspace_name, headline, body, f"{self.dashboard_url}/settings/billing")
        return self._send_email(emails, f"[{workspace_name}] Subscription upgraded", html, text)

    def notify_downgraded(
        self,
        emails: List[str],
        workspace_name: str,
        old: PlanLabel,
        new: PlanLabel,
        effective_date: Optional[datetime],
    ) -> NotificationResult:
        when = effective_date.strftime("%B %d, %Y") if effective_date else "the end of the current billing period"
        headline = f"{workspace_name} will move to {format_plan(new)}"
        body = (
            f"The subscription for {workspace_name} is scheduled to change from "
            f"{format_plan(old)} to {format_plan(new)} on {when}. "
            f"The current plan stays active until then."
        )
        html, text = _build_email(workspace_name, headline, body, f"{self.dashboard_url}/settings/billing")
        return self._send_email(emails, f"[{workspace_name}] Subscription downgrade scheduled", html, text)

    def _send_email(self, to: List[str], subject: str, html: str, text: str) -> NotificationResult:
        if not to:
            logger.info(f"[NOTIFY] No recipients for: {subject}")
            return NotificationResult(success=True, recipients=[])

        if not self.resend_api_key:
            logger.info(f"[NOTIFY] Resend not configured, would send: {subject} to {to}\n{text}")
            return NotificationResult(success=True, recipients=to)

        try:
            resend.api_key = self.resend_api_key
            response = resend.Emails.send({
                "from": self.sender,
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
            })

            message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
            logger.info(f"[NOTIFY] Email sent: {subject} to {to}, id={message_id}")
            return NotificationResult(success=True, message_id=message_id, recipients=to)

        except Exception as e:
            logger.exception(f"[NOTIFY] Failed to send email: {e}")
            return NotificationResult(success=False, error=str(e), recipients=to)
