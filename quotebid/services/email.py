from __future__ import annotations

import asyncio
from dataclasses import dataclass
from string import Template
from typing import Any, Dict, Optional

import aiohttp

from quotebid.core.config import settings
from quotebid.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: Template

    def render(self, variables: Dict[str, Any]) -> str:
        return self.body.safe_substitute({k: "" if v is None else v for k, v in variables.items()})


TEMPLATES: Dict[str, EmailTemplate] = {
    "new-opportunity-alert": EmailTemplate(
        subject="New Opportunity Alert! 🔥",
        body=Template(
            "<p>Hi $user_first_name,</p>"
            "<p>$publication_type is looking for an expert: <strong>$title</strong> ($request_type).</p>"
            "<p>Bidding closes: $bid_deadline</p>"
            '<p><a href="$frontend_url/opportunities/$opportunity_id">View the opportunity</a></p>'
        ),
    ),
    "draft-reminder": EmailTemplate(
        subject="⏰ Complete Your Draft - Don't Miss Out!",
        body=Template(
            "<p>Hi $user_first_name,</p>"
            "<p>Your pitch for <strong>$opportunity_title</strong> at $publication_name is still a draft.</p>"
            "<p>$opportunity_description</p>"
            "<p>Current price: $current_price. Time left: $time_left.</p>"
            '<p><a href="$frontend_url/opportunities/$opportunity_id">Finish your pitch</a></p>'
        ),
    ),
    "saved-opportunity-alert": EmailTemplate(
        subject="Don't Miss Out - Submit Your Pitch! ⏰",
        body=Template(
            "<p>Hi $user_first_name,</p>"
            "<p>You saved <strong>$opportunity_title</strong> at $publication_name but have not pitched yet.</p>"
            "<p>Current price: $current_price. Bidding closes: $bid_deadline.</p>"
            '<p><a href="$frontend_url/opportunities/$opportunity_id">Submit your pitch</a></p>'
        ),
    ),
    "billing-confirmation": EmailTemplate(
        subject="Payment Confirmation - QuoteBid 💳",
        body=Template(
            "<p>Hi $user_first_name,</p>"
            "<p>Your placement in $publication_name has been billed.</p>"
            '<p>Article: <a href="$article_url">$article_title</a></p>'
            "<p>Receipt: $receipt_number<br>Billed on: $billing_date<br>Total: $total_amount</p>"
        ),
    ),
}


class EmailClient:
    """Send one templated email to one recipient.

    ``send`` never raises for delivery problems; they come back as
    ``SendResult(success=False, error=...)``.
    """

    def __init__(
        self,
        *,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
        frontend_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.provider = provider or settings.email_provider
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.sender = sender or settings.email_from
        self.frontend_url = frontend_url or settings.frontend_url
        self.timeout = timeout or settings.email_timeout_seconds

    async def send(self, to: str, template: str, variables: Dict[str, Any]) -> SendResult:
        email_template = TEMPLATES.get(template)
        if email_template is None:
            logger.error("email.unknown_template", template=template, to=to)
            return SendResult(success=False, error=f"Unknown template: {template}")

        html = email_template.render({"frontend_url": self.frontend_url, **variables})

        if self.provider == "console":
            logger.info("email.console_send", to=to, template=template, subject=email_template.subject)
            return SendResult(success=True, id=f"console-{template}")

        result = await self._send_via_resend(to, email_template.subject, html)
        if result.success:
            logger.info("email.sent", to=to, template=template, message_id=result.id)
        else:
            logger.warning("email.send_failed", to=to, template=template, error=result.error)
        return result

    async def _send_via_resend(self, to: str, subject: str, html: str) -> SendResult:
        if not self.api_key:
            return SendResult(success=False, error="Email service not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": "QuoteBid-Mailer/1.0",
        }
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.api_url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    status = response.status
                    if 200 <= status < 300:
                        body = await response.json(content_type=None)
                        return SendResult(success=True, id=(body or {}).get("id"))
                    error_text = await response.text()
                    return SendResult(success=False, error=f"HTTP {status}: {error_text[:200]}")
        except asyncio.TimeoutError:
            return SendResult(success=False, error="Request timeout")
        except aiohttp.ClientError as e:
            return SendResult(success=False, error=f"Client error: {str(e)[:200]}")
        except ValueError as e:
            return SendResult(success=False, error=f"Invalid response: {str(e)[:200]}")
