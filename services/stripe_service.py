"""
Stripe Payment Integration Service

Card payments in, Connect transfers out, Connect onboarding for campaign owners.

Stripe Flow (donations):
1. Create PaymentIntent with amount and currency
2. Client confirms payment on frontend (using stripe.js)
3. Client reports completion and/or Stripe sends a webhook
4. Donation is verified against the PaymentIntent and credited

Stripe Flow (payouts):
1. Balance reserved in the ledger
2. Transfer created to the campaign's connected account (acct_...)
3. transfer.paid / transfer.failed webhook settles or reverses it

Errors are translated into the ledger error taxonomy:
- PaymentIntent and Connect account calls: PaymentProcessorError
- Transfers: TransferError when Stripe answered with a rejection,
  UnknownOutcome when the request may or may not have reached Stripe
- Webhooks: WebhookSignatureError
"""

import os
import json
import stripe
from typing import Dict, Optional
import logging

from services.exceptions import (
    PaymentProcessorError, TransferError, UnknownOutcome, WebhookSignatureError
)
from services.fee_calculator import to_cents

logger = logging.getLogger(__name__)

# PaymentIntent statuses that mean the donor's money is secured
PAID_STATUSES = ("succeeded", "requires_capture")


class StripeService:
    """Stripe payment and transfer processor."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """Initialize Stripe service with API key from environment."""
        self.api_key = api_key or os.getenv('STRIPE_SECRET_KEY')
        self.webhook_secret = webhook_secret or os.getenv('STRIPE_WEBHOOK_SECRET')

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("Stripe: Initialized with API key")
        else:
            logger.warning("Stripe: STRIPE_SECRET_KEY not set, processor calls will fail")

    def create_payment_intent(
        self,
        amount,
        currency: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> Dict:
        """
        Create a Stripe PaymentIntent.

        Args:
            amount: Amount in currency units (e.g., Decimal("10.00") for $10)
            currency: Three-letter currency code (USD, EUR, etc.)
            customer_email: Optional receipt email
            metadata: Optional metadata to attach to payment

        Returns:
            Dict with PaymentIntent data including client_secret
        """
        try:
            payment_intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=currency.lower(),
                receipt_email=customer_email,
                metadata=metadata or {},
                automatic_payment_methods={'enabled': True}
            )

            logger.info(f"Stripe: PaymentIntent created - {payment_intent.id}")

            return {
                'id': payment_intent.id,
                'amount': payment_intent.amount,
                'currency': payment_intent.currency,
                'status': payment_intent.status,
                'client_secret': payment_intent.client_secret,
                'metadata': dict(payment_intent.metadata or {})
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe: PaymentIntent creation failed: {str(e)}")
            raise PaymentProcessorError(f"Failed to create Stripe payment: {e.user_message or str(e)}")

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict:
        """
        Retrieve a PaymentIntent by ID.

        Returns:
            Dict with id, status, amount (cents), currency and metadata
        """
        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)

            return {
                'id': payment_intent.id,
                'status': payment_intent.status,
                'amount': payment_intent.amount,
                'currency': payment_intent.currency,
                'metadata': dict(payment_intent.metadata or {})
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe: Retrieval failed for {payment_intent_id}: {str(e)}")
            raise PaymentProcessorError(f"Failed to retrieve Stripe payment: {e.user_message or str(e)}")

    def get_payment_status(self, payment_intent_id: str) -> str:
        return self.retrieve_payment_intent(payment_intent_id)['status']

    def create_transfer(
        self,
        amount,
        currency: str,
        destination: str,
        metadata: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Dict:
        """
        Create a Stripe Transfer to a Connect account.

        The idempotency key makes a retried call (e.g. after a timeout)
        return the original transfer instead of paying twice.

        Args:
            amount: Amount in currency units
            currency: Three-letter currency code
            destination: Connected Stripe account ID (starts with 'acct_')
            metadata: payout_id / campaign_id, echoed back on webhooks
            idempotency_key: e.g. "payout-42"
            description: Transfer description

        Returns:
            Dict with Transfer data

        Raises:
            UnknownOutcome: network failure or Stripe 5xx, the transfer may exist
            TransferError: Stripe rejected the transfer (4xx)
        """
        try:
            transfer = stripe.Transfer.create(
                amount=to_cents(amount),
                currency=currency.lower(),
                destination=destination,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key
            )

            logger.info(f"Stripe: Transfer created - {transfer.id}")

            return {
                'id': transfer.id,
                'amount': transfer.amount,
                'currency': transfer.currency,
                'destination': transfer.destination,
                'metadata': dict(transfer.metadata or {})
            }

        except (stripe.APIConnectionError, stripe.APIError) as e:
            logger.warning(f"Stripe: Transfer outcome unknown ({idempotency_key}): {str(e)}")
            raise UnknownOutcome(f"Transfer outcome unknown: {str(e)}")
        except stripe.StripeError as e:
            # Any 5xx may have created the transfer on Stripe's side
            if (e.http_status or 0) >= 500:
                logger.warning(f"Stripe: Transfer outcome unknown ({idempotency_key}, HTTP {e.http_status}): {str(e)}")
                raise UnknownOutcome(f"Transfer outcome unknown: {str(e)}")
            logger.error(f"Stripe: Transfer creation failed ({idempotency_key}): {str(e)}")
            raise TransferError(f"Transfer failed: {e.user_message or str(e)}")

    def create_connect_account(self, email: Optional[str], country: str) -> Dict:
        """
        Create an Express connected account that will receive payouts.

        Returns:
            Dict with the account id (acct_...)
        """
        try:
            account = stripe.Account.create(
                type='express',
                country=country,
                email=email,
                capabilities={
                    'card_payments': {'requested': True},
                    'transfers': {'requested': True},
                },
                business_type='individual'
            )
            logger.info(f"Stripe: Connect account created - {account.id}")
            return {'id': account.id}

        except stripe.StripeError as e:
            logger.error(f"Stripe: Connect account creation failed: {str(e)}")
            raise PaymentProcessorError(f"Failed to create Stripe Connect account: {e.user_message or str(e)}")

    def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> Dict:
        """Hosted onboarding link for a connected account."""
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type='account_onboarding'
            )
            return {'url': link.url, 'expires_at': link.expires_at}

        except stripe.StripeError as e:
            logger.error(f"Stripe: Account link failed for {account_id}: {str(e)}")
            raise PaymentProcessorError(f"Failed to create onboarding link: {e.user_message or str(e)}")

    def retrieve_account(self, account_id: str) -> Dict:
        """
        Connected account status.

        Returns:
            Dict with id, country, email, details_submitted, capabilities
            and requirements_due (list of currently due fields)
        """
        try:
            account = stripe.Account.retrieve(account_id)
            requirements = account.get('requirements') or {}
            return {
                'id': account.id,
                'country': account.get('country'),
                'email': account.get('email'),
                'details_submitted': bool(account.get('details_submitted')),
                'capabilities': dict(account.get('capabilities') or {}),
                'requirements_due': list(requirements.get('currently_due') or []),
            }

        except stripe.StripeError as e:
            logger.error(f"Stripe: Account retrieval failed for {account_id}: {str(e)}")
            raise PaymentProcessorError(f"Failed to retrieve Stripe Connect account: {e.user_message or str(e)}")

    def create_login_link(self, account_id: str) -> Dict:
        """Express dashboard login link for a connected account."""
        try:
            link = stripe.Account.create_login_link(account_id)
            return {'url': link.url}

        except stripe.StripeError as e:
            logger.error(f"Stripe: Login link failed for {account_id}: {str(e)}")
            raise PaymentProcessorError(f"Failed to create Stripe dashboard link: {e.user_message or str(e)}")

    def construct_webhook_event(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Dict:
        """
        Verify the Stripe-Signature header and parse the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            Event as a plain dict (id, type, data.object, ...)

        Raises:
            WebhookSignatureError: missing secret/header, bad signature or bad JSON
        """
        if not self.webhook_secret:
            logger.error("Stripe: STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        body = payload.decode('utf-8') if isinstance(payload, bytes) else payload

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe: Invalid webhook signature: {str(e)}")
            raise WebhookSignatureError("Invalid signature")

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.error(f"Stripe: Invalid webhook payload: {str(e)}")
            raise WebhookSignatureError("Invalid payload")

        if not isinstance(event, dict) or 'type' not in event:
            raise WebhookSignatureError("Invalid payload")

        logger.info(f"Stripe: Webhook event verified - {event['type']}")
        return event


# Singleton instance
stripe_service = StripeService()
