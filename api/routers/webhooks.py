"""
Webhook Handlers for Stripe

Stripe calls these endpoints when payment or transfer status changes.
The Stripe-Signature header is verified before any ledger code runs, and
each event id is processed once (Stripe retries deliveries).

Handled events:
- payment_intent.succeeded: complete and credit the donation, email the receipt
- payment_intent.payment_failed / payment_intent.canceled: fail the donation
- transfer.paid: complete the payout (paid_out += net); flagged for
  reconciliation when the payout had already failed
- transfer.failed / transfer.reversed: fail the payout (balance restored)
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session
import logging
from datetime import datetime

from api.deps import get_donation_service, get_payment_processor, get_payout_orchestrator
from api.routers.donations import donation_receipt
from api.routers.payouts import payout_notification
from database.db import atomic, get_db
from database.models import WebhookEvent
from services.donation_service import DonationService
from services.exceptions import LedgerError, PersistenceError
from services.notification_service import send_donation_receipt, send_payout_confirmation
from services.payout_service import PayoutOrchestrator, TRANSFER_FAILURE_EVENTS

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)

DONATION_FAILURE_EVENTS = ("payment_intent.payment_failed", "payment_intent.canceled")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    processor=Depends(get_payment_processor),
    donations: DonationService = Depends(get_donation_service),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """
    Handle Stripe webhook events.

    Answers 400 for a bad signature, 503 when the database is unavailable
    (Stripe retries), 200 otherwise. Events that fail business checks are
    logged and acknowledged so Stripe stops retrying them.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    event = processor.construct_webhook_event(payload, signature)
    event_id = event.get("id")
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    if event_id and db.get(WebhookEvent, event_id) is not None:
        logger.info(f"Stripe webhook {event_id} ({event_type}) already processed")
        return {"received": True, "duplicate": True}

    logger.info(f"Stripe webhook received: {event_type} ({event_id})")
    outcome = "ignored"

    try:
        if event_type == "payment_intent.succeeded":
            completed = donations.handle_payment_succeeded(obj)
            if completed is not None:
                outcome = "processed"
                donation, result = completed
                if not result.duplicate:
                    background_tasks.add_task(send_donation_receipt, donation_receipt(donation))

        elif event_type in DONATION_FAILURE_EVENTS:
            reason = (obj.get("last_payment_error") or {}).get("message") or event_type
            if donations.fail_donation(obj.get("id"), reason=reason) is not None:
                outcome = "processed"

        elif event_type == "transfer.paid" or event_type in TRANSFER_FAILURE_EVENTS:
            payout = orchestrator.handle_transfer_event(event_type, obj)
            if payout is not None and payout.needs_reconciliation:
                outcome = "needs_reconciliation"
            elif payout is not None:
                outcome = "processed"
                background_tasks.add_task(send_payout_confirmation, payout_notification(payout))

        else:
            logger.info(f"Unhandled Stripe event type: {event_type}")

    except PersistenceError:
        raise
    except LedgerError as e:
        logger.error(f"Stripe webhook {event_id} ({event_type}) rejected: {e.message}")
        outcome = "rejected"

    if event_id:
        with atomic(db):
            db.add(WebhookEvent(
                event_id=event_id,
                type=event_type,
                payload=event,
                created_at=datetime.utcnow(),
            ))

    return {"received": True, "status": outcome}


@router.get("/health")
def webhook_health():
    """Health check for webhook endpoints."""
    return {
        "status": "ok",
        "webhooks": {
            "stripe": "/webhooks/stripe"
        }
    }
