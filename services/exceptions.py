"""
Ledger Error Taxonomy

Every error the ledger, payout and donation services raise derives from
LedgerError. Each class carries the HTTP status the API answers with, so
routers can let these propagate and main.py renders them in one place.

Groups:
- 400: bad input (ValidationError, InvalidAmount, InvalidFeeSchedule)
- 401/403: identity and ownership
- 404: missing records
- 409: payout state machine violations
- 422: business rules (balance, minimum payout, destination)
- 502: external processor rejected the call
- 503: database unavailable
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all user-facing ledger errors."""

    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationError(LedgerError):
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class InvalidFeeSchedule(ValidationError):
    code = "invalid_fee_schedule"


class Unauthenticated(LedgerError):
    status_code = 401
    code = "unauthenticated"


class NotOwner(LedgerError):
    status_code = 403
    code = "not_owner"


class AdminRequired(LedgerError):
    status_code = 403
    code = "admin_required"


class CampaignNotFound(LedgerError):
    status_code = 404
    code = "campaign_not_found"

    def __init__(self, campaign_id: Any):
        super().__init__(f"Campaign {campaign_id} not found", campaign_id=campaign_id)


class PayoutNotFound(LedgerError):
    status_code = 404
    code = "payout_not_found"

    def __init__(self, payout_id: Any):
        super().__init__(f"Payout {payout_id} not found", payout_id=payout_id)


class DonationNotFound(LedgerError):
    status_code = 404
    code = "donation_not_found"

    def __init__(self, donation_id: Any):
        super().__init__(f"Donation {donation_id} not found", donation_id=donation_id)


class InvalidPayoutState(LedgerError):
    status_code = 409
    code = "invalid_payout_state"


class InsufficientBalance(LedgerError):
    status_code = 422
    code = "insufficient_balance"


class BelowMinimumPayout(LedgerError):
    status_code = 422
    code = "below_minimum_payout"


class TransferDestinationMissing(LedgerError):
    status_code = 422
    code = "transfer_destination_missing"


class TransferError(LedgerError):
    """External transfer processor rejected the call."""

    status_code = 502
    code = "transfer_error"


class PaymentProcessorError(LedgerError):
    """Payment processor call failed (payment intent create/retrieve)."""

    status_code = 502
    code = "payment_processor_error"


class UnknownOutcome(LedgerError):
    """
    Network timeout talking to the transfer processor.

    Never surfaced to API callers: the payout stays 'processing' until a
    webhook or an admin reconciles it.
    """

    status_code = 202
    code = "unknown_outcome"


class PersistenceError(LedgerError):
    status_code = 503
    code = "persistence_error"


class WebhookSignatureError(LedgerError):
    code = "invalid_webhook_signature"


class ConfigurationError(Exception):
    """Missing or invalid fee-schedule configuration. Fatal at startup."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key
