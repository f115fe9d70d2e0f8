"""
Admin Payout Review Router

Super admins review manual payouts and resolve stuck ones.

Endpoints:
- GET /admin/payouts/pending - Payouts awaiting review
- POST /admin/payouts/{id}/approve - pending -> approved
- POST /admin/payouts/{id}/reject - pending -> failed (balance restored)
- POST /admin/payouts/{id}/process - approved -> processing (Stripe transfer or external reference)
- POST /admin/payouts/{id}/reconcile - processing -> completed | failed
- GET /admin/payouts/reconciliation - Failed payouts later reported paid
- POST /admin/payouts/{id}/resolve - Clear the reconciliation flag
"""

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
import logging

from api.deps import get_payout_orchestrator, require_admin
from api.routers.payouts import PayoutResponse, payout_notification
from database.models import User
from services.notification_service import send_payout_confirmation
from services.payout_service import PayoutOrchestrator, payout_to_dict

router = APIRouter(prefix="/admin/payouts", tags=["Admin Payouts"])
logger = logging.getLogger(__name__)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ProcessRequest(BaseModel):
    # Bank transfer id, PayPal transaction id or check number (manual methods)
    reference: Optional[str] = Field(None, max_length=100)


class ReconcileRequest(BaseModel):
    outcome: str = Field(..., pattern=r'^(completed|failed)$')
    reference: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


@router.get("/pending", response_model=List[PayoutResponse])
def list_pending_payouts(
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Oldest first."""
    return [payout_to_dict(p) for p in orchestrator.list_pending()]


@router.post("/{payout_id}/approve", response_model=PayoutResponse)
def approve_payout(
    payout_id: int,
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    return payout_to_dict(orchestrator.approve(payout_id, admin))


@router.post("/{payout_id}/reject", response_model=PayoutResponse)
def reject_payout(
    payout_id: int,
    request: RejectRequest,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Reject a pending payout. The reserved amount returns to the campaign."""
    payout = orchestrator.reject(payout_id, admin, request.reason)
    background_tasks.add_task(send_payout_confirmation, payout_notification(payout))
    return payout_to_dict(payout)


@router.post("/{payout_id}/process", response_model=PayoutResponse)
def process_payout(
    payout_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[ProcessRequest] = None,
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """
    Send an approved payout.

    Stripe Connect payouts get a transfer; manual payouts need the
    reference of the payment made outside the platform.
    """
    payout = orchestrator.process(payout_id, admin, reference=request.reference if request else None)
    background_tasks.add_task(send_payout_confirmation, payout_notification(payout))
    return payout_to_dict(payout)


@router.post("/{payout_id}/reconcile", response_model=PayoutResponse)
def reconcile_payout(
    payout_id: int,
    request: ReconcileRequest,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Resolve a processing payout whose webhook never arrived."""
    payout = orchestrator.reconcile(
        payout_id, admin, request.outcome, reference=request.reference, reason=request.reason
    )
    background_tasks.add_task(send_payout_confirmation, payout_notification(payout))
    return payout_to_dict(payout)


class ResolveRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=500)


@router.get("/reconciliation", response_model=List[PayoutResponse])
def list_reconciliation_queue(
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    """Failed payouts whose transfer was later reported paid."""
    return [payout_to_dict(p) for p in orchestrator.list_needs_reconciliation()]


@router.post("/{payout_id}/resolve", response_model=PayoutResponse)
def resolve_reconciliation(
    payout_id: int,
    request: ResolveRequest,
    admin: User = Depends(require_admin),
    orchestrator: PayoutOrchestrator = Depends(get_payout_orchestrator)
):
    return payout_to_dict(orchestrator.resolve_reconciliation(payout_id, admin, request.note))
