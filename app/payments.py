"""
Checkout and payment reconciliation.

A checkout persists a pending transaction and opens a Stripe Checkout Session
whose metadata carries the transaction id and referral fields. Payment is
confirmed either by the checkout.session.completed webhook or by a manual
confirmation from the client; both mark the transaction paid and then derive
the affiliate commission, which is idempotent per transaction.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

import stripe
from sqlalchemy.orm import Session

from app.affiliates import derive_commission, get_commission_for_transaction
from app.errors import ClientInputError, NotFoundError, ProviderError, ServiceError
from app.metadata import build_checkout_metadata, metadata_value
from app.models import PaymentProvider, PaymentTransaction, TransactionStatus
from app.providers import get_stripe_credentials
from app.schemas import CheckoutRequest, ManualCommissionRequest
from app.stripe_service import create_checkout_session, retrieve_checkout_session

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def _with_tx_id(url: str, tx_id: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}txId={tx_id}"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def list_transactions(db: Session, limit: int = 20):
    return (
        db.query(PaymentTransaction)
        .order_by(PaymentTransaction.created_at.desc())
        .limit(limit)
        .all()
    )


# ------- Checkout -------

def create_stripe_checkout(db: Session, request: CheckoutRequest) -> dict:
    if request.provider != PaymentProvider.STRIPE:
        raise ClientInputError("This checkout endpoint only supports Stripe.")

    credentials = get_stripe_credentials(db)

    currency = request.currency.upper()
    amount_minor = to_minor_units(request.amount)
    minimum = credentials.minimum_amount_for(currency)
    if amount_minor < minimum:
        raise ClientInputError(
            f"Amount is below the Stripe minimum for {currency} "
            f"({minimum} in the smallest currency unit)."
        )

    tx = PaymentTransaction(
        user_id=request.user_id,
        item_type=request.item_type.value,
        item_id=request.item_id,
        amount=request.amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        currency=currency,
        provider=PaymentProvider.STRIPE.value,
        status=TransactionStatus.PENDING.value,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)

    try:
        session = create_checkout_session(
            credentials.secret_key,
            currency=currency,
            unit_amount=amount_minor,
            product_name=request.item_id,
            metadata=build_checkout_metadata(tx, request),
            success_url=_with_tx_id(request.success_url, tx.id),
            cancel_url=_with_tx_id(request.cancel_url, tx.id),
        )
    except stripe.StripeError as err:
        message = err.user_message or str(err) or "Failed to create Stripe checkout session."
        tx.status = TransactionStatus.FAILED.value
        tx.merge_payload(checkout_error=message)
        db.commit()
        logger.warning("Stripe checkout failed for tx %s: %s", tx.id, message)
        raise ProviderError(message)

    tx.provider_reference = session.id
    tx.merge_payload(
        checkout_session_id=session.id,
        checkout_session_metadata=dict(session.metadata or {}),
    )
    db.commit()

    logger.info("Checkout session %s created for tx %s (%s %s)", session.id, tx.id, tx.amount, currency)
    return {
        "checkout_url": session.url,
        "transaction_id": tx.id,
        "provider": PaymentProvider.STRIPE.value,
    }


# ------- Webhook -------

def _ignored(reason: str, **extra) -> dict:
    logger.info("Stripe webhook ignored: %s %s", reason, extra or "")
    return {"ignored": True, "reason": reason, **extra}


def handle_stripe_webhook_event(db: Session, event: dict) -> dict:
    """
    Apply a Stripe event. Only checkout.session.completed is acted on;
    everything else returns an "ignored" result instead of an error so
    Stripe does not keep retrying it. Storage failures propagate.
    """
    try:
        event_type = event.get("type")
        if event_type != CHECKOUT_COMPLETED:
            return _ignored("unsupported_event_type", type=event_type)

        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict) or not session:
            return _ignored("missing_session_object")

        metadata = session.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        tx_id = metadata_value(metadata, "transaction_id")
        if not tx_id:
            return _ignored("missing_transaction_id")

        tx = db.get(PaymentTransaction, tx_id)
        if tx is None:
            return _ignored("transaction_not_found", tx_id=tx_id)

        tx.status = TransactionStatus.PAID.value
        # Every delivery is kept, redeliveries included
        deliveries = (tx.raw_payload or {}).get("stripe_webhooks") or []
        tx.merge_payload(stripe_webhooks=[*deliveries, event])
        db.commit()
        logger.info("Transaction %s marked as paid via webhook", tx.id)

        derive_commission(db, tx, metadata)

        return {"processed": True, "tx_id": tx.id, "status": tx.status}
    except Exception:
        logger.exception("Error while processing Stripe webhook")
        raise


# ------- Manual confirmation -------

def recover_checkout_metadata(db: Session, tx: PaymentTransaction) -> dict:
    """
    Checkout metadata for a transaction: the snapshot cached at checkout, or
    else the session fetched back from Stripe (then cached). Best effort;
    any provider failure yields an empty dict.
    """
    raw = tx.raw_payload or {}
    cached = raw.get("checkout_session_metadata")
    if isinstance(cached, dict):
        return cached

    session_id = raw.get("checkout_session_id") or tx.provider_reference
    if tx.provider != PaymentProvider.STRIPE.value or not session_id:
        return {}

    try:
        credentials = get_stripe_credentials(db)
        session = retrieve_checkout_session(credentials.secret_key, session_id)
        metadata = dict(session.metadata or {})
    except (ServiceError, stripe.StripeError) as err:
        logger.warning("Could not recover checkout metadata for tx %s: %s", tx.id, err)
        return {}

    tx.merge_payload(checkout_session_id=session_id, checkout_session_metadata=metadata)
    db.commit()
    return metadata


def confirm_transaction(db: Session, tx_id: str) -> PaymentTransaction:
    """
    Mark a transaction paid without a webhook. Safe to call repeatedly:
    commission derivation is always attempted and is idempotent.
    """
    tx = db.get(PaymentTransaction, tx_id)
    if tx is None:
        raise NotFoundError("Transaction not found for the given txId.")

    if tx.status != TransactionStatus.PAID.value:
        tx.status = TransactionStatus.PAID.value
        tx.merge_payload(manual_confirm=True)
        db.commit()
        logger.info("Transaction %s marked as paid via manual confirmation", tx.id)

    metadata = recover_checkout_metadata(db, tx)
    derive_commission(db, tx, metadata)
    return tx


def create_commission_manually(db: Session, request: ManualCommissionRequest) -> dict:
    """Retroactively attribute a paid transaction to an affiliate."""
    tx = db.get(PaymentTransaction, request.tx_id)
    if tx is None:
        raise NotFoundError("Transaction not found for the given txId.")
    if tx.status != TransactionStatus.PAID.value:
        raise ClientInputError("Commissions can only be created for paid transactions.")

    existing = get_commission_for_transaction(db, tx.id)
    if existing is not None:
        return {"created": False, "commission": existing}

    metadata = dict(recover_checkout_metadata(db, tx))
    metadata.update({
        key: value
        for key, value in {
            "referral_code": request.affiliate_code,
            "referred_user_id": request.referred_user_id,
            "referred_user_name": request.referred_user_name,
            "referred_user_email": request.referred_user_email,
        }.items()
        if value
    })

    commission = derive_commission(db, tx, metadata)
    if commission is not None:
        return {"created": True, "commission": commission}

    existing = get_commission_for_transaction(db, tx.id)
    if existing is None:
        raise ClientInputError("No commission could be derived for this transaction.")
    return {"created": False, "commission": existing}
