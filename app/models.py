import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Boolean, Numeric, DateTime, JSON, ForeignKey, UniqueConstraint
from app.database import Base


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class ItemType(str, enum.Enum):
    PLAN = "plan"
    ADDON = "addon"


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    PAGARME = "pagarme"
    MERCADOPAGO = "mercadopago"
    PAYPAL = "paypal"
    PIX = "pix"
    BOLETO = "boleto"
    CRYPTO = "crypto"
    DEPOSIT = "deposit"


class ProviderKey(str, enum.Enum):
    """Providers that can hold admin-managed credentials."""
    STRIPE = "stripe"
    PAGARME = "pagarme"
    MERCADOPAGO = "mercadopago"
    PAYPAL = "paypal"
    PIX = "pix"
    CRYPTO = "crypto"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    item_type = Column(String(16), nullable=False)        # plan | addon
    item_id = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value)  # pending | paid | failed
    provider_reference = Column(String, nullable=True)    # Stripe Checkout Session ID
    raw_payload = Column(JSON, nullable=True)             # merged, never replaced wholesale
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def merge_payload(self, **entries):
        # Assign a new dict so the JSON column is flagged dirty
        self.raw_payload = {**(self.raw_payload or {}), **entries}


class PaymentProviderConfig(Base):
    __tablename__ = "payment_provider_configs"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(32), unique=True, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, nullable=True)                  # credentials, kept server-side only


class AffiliateSettings(Base):
    __tablename__ = "affiliate_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    commission_rate_percent = Column(Numeric(5, 2), nullable=False, default=20)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class AffiliateCommission(Base):
    __tablename__ = "affiliate_commissions"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_affiliate_commission_transaction_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    affiliate_code = Column(String, nullable=False, index=True)  # opaque referral code, not a user FK
    referred_user_id = Column(String, nullable=True)
    transaction_id = Column(String(36), ForeignKey("payment_transactions.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default=CommissionStatus.PENDING.value)  # pending | paid
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
