"""
Notification Service

Donation receipts and payout emails via SendGrid.

Fire-and-forget: routers schedule these with FastAPI BackgroundTasks after
the ledger change has committed. A failed email is logged, never raised,
and never affects balances.

Configure via env:
- SENDGRID_API_KEY
- FROM_EMAIL, FROM_NAME: sender identity
"""

import os
import logging
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_FROM_EMAIL = os.getenv("FROM_EMAIL", "no-reply@example.com")
DEFAULT_FROM_NAME = os.getenv("FROM_NAME", "FundRaise")


def send_email(
    *,
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Send an email via SendGrid.

    Returns (provider, provider_msg_id) or (None, error_message) on failure.
    """
    api_key = os.getenv("SENDGRID_API_KEY", "").strip()
    if not api_key:
        return None, "SENDGRID_API_KEY not set"

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        html = body_html if body_html else f"<pre>{body_text}</pre>"
        message = Mail(
            from_email=Email(DEFAULT_FROM_EMAIL, DEFAULT_FROM_NAME),
            to_emails=To(to_email),
            subject=subject,
            plain_text_content=Content("text/plain", body_text),
            html_content=Content("text/html", html),
        )

        response = SendGridAPIClient(api_key).send(message)

        msg_id = None
        if response.headers:
            msg_id = response.headers.get("X-Message-Id")
        return "sendgrid", msg_id or str(response.status_code)
    except Exception as e:
        return None, str(e)


def _deliver(kind: str, to_email: Optional[str], subject: str, body_text: str) -> bool:
    if not to_email:
        logger.info(f"Skipping {kind} email: no recipient")
        return False

    provider, result = send_email(to_email=to_email, subject=subject, body_text=body_text)
    if provider is None:
        logger.error(f"Failed to send {kind} email to {to_email}: {result}")
        return False

    logger.info(f"Sent {kind} email to {to_email} ({provider} {result})")
    return True


def send_donation_receipt(donation: Dict) -> bool:
    """
    Email a receipt to the donor.

    Args:
        donation: donor_email, donor_name, amount, currency, campaign_title, donation_id
    """
    name = donation.get("donor_name") or "friend"
    body = (
        f"Hi {name},\n\n"
        f"Thank you for your donation of {donation['amount']} {donation['currency']} "
        f"to {donation.get('campaign_title', 'our campaign')}.\n\n"
        f"Receipt reference: {donation['donation_id']}\n"
    )
    return _deliver("donation receipt", donation.get("donor_email"), "Thank you for your donation", body)


def send_payout_confirmation(payout: Dict) -> bool:
    """
    Email the campaign owner about a payout.

    Args:
        payout: owner_email, payout_id, status, amount, net_amount, currency,
            campaign_title, failure_reason (optional)
    """
    status = payout["status"]
    if status == "failed":
        subject = "Your payout could not be completed"
        detail = (
            f"Reason: {payout.get('failure_reason') or 'unknown'}\n"
            f"The full amount of {payout['amount']} {payout['currency']} is back in your available balance.\n"
        )
    else:
        subject = f"Your payout is {status}"
        detail = f"Net amount: {payout['net_amount']} {payout['currency']}\n"

    body = (
        f"Payout #{payout['payout_id']} for {payout.get('campaign_title', 'your campaign')} "
        f"is now {status}.\n\n{detail}"
    )
    return _deliver("payout", payout.get("owner_email"), subject, body)
