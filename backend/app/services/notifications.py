"""
Email notifications through the Resend HTTP API.

``send`` renders one message per recipient from ``template_data`` and
reports a DeliveryResult per recipient. Delivery failures are returned, not
raised; one bad address never blocks the rest.
"""
import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import EMAIL_FROM, HTTP_TIMEOUTS, RESEND_API_KEY, RESEND_API_URL

logger = logging.getLogger("buildunion-email")

ROLE_LABELS = {
    "owner": "Owner",
    "foreman": "Foreman",
    "worker": "Worker",
    "inspector": "Inspector",
    "subcontractor": "Subcontractor",
    "member": "Team Member",
}


@dataclass
class DeliveryResult:
    recipient: str
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def _e(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))


def render(template_data: Dict[str, Any]) -> Tuple[str, str]:
    """(subject, html) for the template named in ``template_data['template']``."""
    template = template_data.get("template", "generic")
    project = _e(template_data.get("project_name", "your project"))

    if template == "invitation":
        role = _e(ROLE_LABELS.get(template_data.get("role", "member"), "Team Member"))
        inviter = _e(template_data.get("inviter_name", "A BuildUnion user"))
        link = _e(template_data.get("accept_url", ""))
        subject = f'You\'re Invited to Join "{project}" on BuildUnion'
        body = (
            f"<p>{inviter} invited you to join <strong>{project}</strong> as a {role.lower()}.</p>"
            f'<p><a href="{link}">Accept invitation</a></p>'
        )
    elif template == "pending_change":
        item = _e(template_data.get("item_name", "an item"))
        subject = f"Modification request on {project}: {item}"
        body = (
            f"<p>{_e(template_data.get('requested_by_name', 'A foreman'))} requested a change to "
            f"<strong>{item}</strong>: {_e(template_data.get('original_quantity'))} → "
            f"{_e(template_data.get('new_quantity'))}.</p>"
            f"<p>Reason: {_e(template_data.get('change_reason') or 'not given')}</p>"
        )
    elif template == "change_decision":
        item = _e(template_data.get("item_name", "an item"))
        decision = _e(template_data.get("decision", "reviewed"))
        subject = f"Your modification request for {item} was {decision}"
        body = (
            f"<p>The owner of <strong>{project}</strong> {decision} your request for {item}.</p>"
            f"<p>Notes: {_e(template_data.get('review_notes') or 'none')}</p>"
        )
    else:
        subject = _e(template_data.get("subject", f"Update on {project}"))
        body = f"<p>{_e(template_data.get('message', ''))}</p>"

    return subject, f"<!DOCTYPE html><html><body>{body}<p>— BuildUnion</p></body></html>"


class EmailNotifier:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else RESEND_API_KEY
        self.api_url = api_url or RESEND_API_URL
        self.sender = sender or EMAIL_FROM
        self.transport = transport

    async def _send_one(self, client: httpx.AsyncClient, recipient: str, subject: str, body: str) -> DeliveryResult:
        try:
            r = await client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.sender, "to": [recipient], "subject": subject, "html": body},
            )
            r.raise_for_status()
            return DeliveryResult(recipient=recipient, delivered=True, message_id=r.json().get("id"))
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Email to {recipient} failed: {e}")
            return DeliveryResult(recipient=recipient, delivered=False, error=str(e))

    async def send(self, recipients: List[str], template_data: Dict[str, Any]) -> List[DeliveryResult]:
        recipients = [r for r in dict.fromkeys(recipients) if r]
        if not recipients:
            return []
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured — emails not sent")
            return [DeliveryResult(recipient=r, delivered=False, error="email not configured") for r in recipients]

        subject, body = render(template_data)
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUTS["email"], transport=self.transport) as client:
            results = await asyncio.gather(*(self._send_one(client, r, subject, body) for r in recipients))
        sent = sum(1 for r in results if r.delivered)
        logger.info(f"Email '{template_data.get('template', 'generic')}' delivered {sent}/{len(results)}")
        return list(results)
