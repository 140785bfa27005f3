"""
Affiliate program: commission rate settings, commission derivation for paid
transactions, and the read models behind the affiliate and admin endpoints.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import DEFAULT_COMMISSION_RATE_PERCENT, get_commission_rate_override
from app.errors import ClientInputError, NotFoundError
from app.metadata import metadata_value
from app.models import (
    AffiliateCommission,
    AffiliateSettings,
    CommissionStatus,
    ItemType,
    PaymentTransaction,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _money(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


# ------- Settings -------

def get_settings(db: Session) -> Optional[AffiliateSettings]:
    """The oldest settings row is authoritative."""
    return db.query(AffiliateSettings).order_by(AffiliateSettings.created_at.asc()).first()


def get_or_create_settings(db: Session) -> AffiliateSettings:
    settings = get_settings(db)
    if settings is None:
        settings = AffiliateSettings(commission_rate_percent=DEFAULT_COMMISSION_RATE_PERCENT)
        db.add(settings)
        db.commit()
        db.refresh(settings)
    return settings


def update_settings(db: Session, commission_rate_percent=None) -> AffiliateSettings:
    settings = get_or_create_settings(db)
    if commission_rate_percent is not None:
        rate = _to_decimal(commission_rate_percent)
        if rate is None or rate < 0 or rate > 100:
            raise ClientInputError("commission_rate_percent must be between 0 and 100.")
        settings.commission_rate_percent = rate.quantize(CENT, rounding=ROUND_HALF_UP)
        db.commit()
        db.refresh(settings)
        logger.info("Affiliate commission rate set to %s%%", settings.commission_rate_percent)
    return settings


def resolve_commission_rate(db: Session) -> Decimal:
    """
    Commission rate in percent. Later sources override earlier ones:
    built-in default, stored settings (only when positive), then the
    AFFILIATE_COMMISSION_RATE deployment override.
    """
    rate = DEFAULT_COMMISSION_RATE_PERCENT

    settings = get_settings(db)
    stored = _to_decimal(settings.commission_rate_percent) if settings else None
    if stored is not None and stored > 0:
        rate = stored

    override = get_commission_rate_override()
    if override is not None:
        rate = override

    return rate


# ------- Commission derivation -------

def get_commission_for_transaction(db: Session, transaction_id: str) -> Optional[AffiliateCommission]:
    return db.query(AffiliateCommission).filter_by(transaction_id=transaction_id).first()


def create_commission_if_applicable(
    db: Session,
    tx: PaymentTransaction,
    metadata: dict,
    rate_percent: Decimal,
) -> Optional[AffiliateCommission]:
    """
    Create the pending commission owed for a paid transaction.

    Returns the new commission, or None when nothing was created: no referral
    code, a commission already exists for the transaction, non-positive rate,
    or an unusable transaction amount. Bad data never raises; confirming a
    payment must not fail because of commission bookkeeping.
    """
    referral_code = metadata_value(metadata, "referral_code")
    if not referral_code:
        return None

    if get_commission_for_transaction(db, tx.id):
        return None

    rate = _to_decimal(rate_percent)
    if rate is None or rate <= 0:
        return None

    tx_amount = _to_decimal(tx.amount)
    if tx_amount is None or tx_amount <= 0:
        return None

    value = (tx_amount * rate / 100).quantize(CENT, rounding=ROUND_HALF_UP)

    commission = AffiliateCommission(
        affiliate_code=referral_code,
        referred_user_id=metadata_value(metadata, "referred_user_id"),
        transaction_id=tx.id,
        amount=value,
        currency=tx.currency,
        status=CommissionStatus.PENDING.value,
        meta={
            "item_type": tx.item_type,
            "item_id": tx.item_id,
            "referred_user_name": metadata_value(metadata, "referred_user_name"),
            "referred_user_email": metadata_value(metadata, "referred_user_email"),
        },
    )
    db.add(commission)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Lost a race with a concurrent confirmation for the same transaction
        if db.query(AffiliateCommission).filter_by(transaction_id=tx.id).first():
            logger.info("Commission for transaction %s already created concurrently", tx.id)
            return None
        raise

    db.refresh(commission)
    logger.info(
        "Commission created: tx=%s affiliate=%s amount=%s %s",
        tx.id, referral_code, commission.amount, commission.currency,
    )
    return commission


def derive_commission(db: Session, tx: PaymentTransaction, metadata: dict) -> Optional[AffiliateCommission]:
    return create_commission_if_applicable(db, tx, metadata, resolve_commission_rate(db))


# ------- Affiliate self-service -------

def _referred_user_id(commission: AffiliateCommission) -> Optional[str]:
    return commission.referred_user_id or metadata_value(commission.meta, "referred_user_id")


def commissions_for_affiliate(db: Session, affiliate_code: Optional[str]) -> dict:
    if not affiliate_code:
        return {"commissions": [], "totals": {"pending": 0, "paid": 0}}

    commissions = (
        db.query(AffiliateCommission)
        .filter_by(affiliate_code=affiliate_code)
        .order_by(AffiliateCommission.created_at.desc())
        .all()
    )

    pending = Decimal("0")
    paid = Decimal("0")
    for c in commissions:
        value = _to_decimal(c.amount)
        if not value:
            continue
        if c.status == CommissionStatus.PENDING.value:
            pending += value
        elif c.status == CommissionStatus.PAID.value:
            paid += value

    return {"commissions": commissions, "totals": {"pending": _money(pending), "paid": _money(paid)}}


def referred_users_for_affiliate(db: Session, affiliate_code: Optional[str]) -> dict:
    if not affiliate_code:
        return {"referred_user_ids": [], "referred_users": []}

    commissions = (
        db.query(AffiliateCommission)
        .filter_by(affiliate_code=affiliate_code)
        .order_by(AffiliateCommission.created_at.desc())
        .all()
    )

    by_user = {}
    for c in commissions:
        user_id = _referred_user_id(c)
        if not user_id:
            continue

        seen_at = c.created_at or datetime.now(timezone.utc)
        item_type = metadata_value(c.meta, "item_type")
        item_id = metadata_value(c.meta, "item_id")
        name = metadata_value(c.meta, "referred_user_name")
        email = metadata_value(c.meta, "referred_user_email")

        current = by_user.setdefault(user_id, {
            "referred_user_id": user_id,
            "referred_user_name": name,
            "referred_user_email": email,
            "first_seen_at": seen_at,
            "last_seen_at": seen_at,
            "has_plan": False,
            "purchases": 0,
            "purchased_plans": [],
            "purchased_addons": [],
            "purchased_items": [],
        })

        current["purchases"] += 1
        current["referred_user_name"] = current["referred_user_name"] or name
        current["referred_user_email"] = current["referred_user_email"] or email
        current["first_seen_at"] = min(current["first_seen_at"], seen_at)
        current["last_seen_at"] = max(current["last_seen_at"], seen_at)

        if item_type and item_id:
            item = {"item_type": item_type, "item_id": item_id}
            if item not in current["purchased_items"]:
                current["purchased_items"].append(item)
            if item_type == ItemType.PLAN.value:
                current["has_plan"] = True
                if item_id not in current["purchased_plans"]:
                    current["purchased_plans"].append(item_id)
            elif item_type == ItemType.ADDON.value and item_id not in current["purchased_addons"]:
                current["purchased_addons"].append(item_id)

    referred_users = sorted(by_user.values(), key=lambda u: u["last_seen_at"], reverse=True)
    for user in referred_users:
        user["first_seen_at"] = user["first_seen_at"].isoformat()
        user["last_seen_at"] = user["last_seen_at"].isoformat()

    return {"referred_user_ids": list(by_user), "referred_users": referred_users}


# ------- Admin -------

def list_commissions(db: Session, status: Optional[CommissionStatus] = None):
    query = db.query(AffiliateCommission)
    if status is not None:
        query = query.filter_by(status=CommissionStatus(status).value)
    return query.order_by(AffiliateCommission.created_at.desc()).all()


def commission_summary(db: Session) -> dict:
    """Counts and amounts per (affiliate, item, currency), split by commission status."""
    is_paid = AffiliateCommission.status == CommissionStatus.PAID.value
    # Grouped by label so the JSON path parameters are not re-bound in GROUP BY
    item_type = func.coalesce(AffiliateCommission.meta["item_type"].as_string(), "unknown").label("item_type")
    item_id = func.coalesce(AffiliateCommission.meta["item_id"].as_string(), "").label("item_id")

    rows = (
        db.query(
            AffiliateCommission.affiliate_code,
            item_type,
            item_id,
            AffiliateCommission.currency,
            func.sum(case((is_paid, 0), else_=1)).label("pending_count"),
            func.sum(case((is_paid, 1), else_=0)).label("paid_count"),
            func.sum(case((is_paid, 0), else_=AffiliateCommission.amount)).label("pending_amount"),
            func.sum(case((is_paid, AffiliateCommission.amount), else_=0)).label("paid_amount"),
        )
        .group_by(AffiliateCommission.affiliate_code, item_type, item_id, AffiliateCommission.currency)
        .order_by(AffiliateCommission.affiliate_code, item_type, item_id, AffiliateCommission.currency)
        .all()
    )

    summary = []
    for row in rows:
        pending_amount = _to_decimal(row.pending_amount) or Decimal("0")
        paid_amount = _to_decimal(row.paid_amount) or Decimal("0")
        pending_count = int(row.pending_count or 0)
        paid_count = int(row.paid_count or 0)
        summary.append({
            "affiliate_code": row.affiliate_code,
            "item_type": row.item_type,
            "item_id": row.item_id,
            "product_type": row.item_type if row.item_type in (ItemType.PLAN.value, ItemType.ADDON.value) else "unknown",
            "currency": row.currency,
            "pending_count": pending_count,
            "paid_count": paid_count,
            "total_count": pending_count + paid_count,
            "pending_amount": _money(pending_amount),
            "paid_amount": _money(paid_amount),
            "total_amount": _money(pending_amount + paid_amount),
        })

    return {"summary": summary}


def mark_commission_paid(db: Session, commission_id: str) -> AffiliateCommission:
    commission = db.get(AffiliateCommission, commission_id)
    if commission is None:
        raise NotFoundError("Commission not found.")

    if commission.status != CommissionStatus.PAID.value:
        commission.status = CommissionStatus.PAID.value
        commission.paid_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(commission)
        logger.info("Commission %s marked as paid", commission.id)
    return commission
