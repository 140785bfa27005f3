from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, AliasChoices

from app.models import ItemType, PaymentProvider


class CheckoutRequest(BaseModel):
    user_id: str = Field(min_length=1)
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    item_type: ItemType
    item_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    provider: PaymentProvider = PaymentProvider.STRIPE
    success_url: str
    cancel_url: str
    referral_code: Optional[str] = None
    referred_user_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user-42",
                    "item_type": "plan",
                    "item_id": "Monthly plan",
                    "amount": 100.00,
                    "currency": "BRL",
                    "provider": "stripe",
                    "success_url": "http://localhost:5173/billing/success",
                    "cancel_url": "http://localhost:5173/billing/cancel",
                    "referral_code": "aff_123",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    checkout_url: Optional[str]
    transaction_id: str
    provider: PaymentProvider


class ConfirmRequest(BaseModel):
    tx_id: str = Field(min_length=1, validation_alias=AliasChoices("tx_id", "txId"))


class ManualCommissionRequest(BaseModel):
    tx_id: str = Field(min_length=1, validation_alias=AliasChoices("tx_id", "txId"))
    affiliate_code: str = Field(min_length=1)
    referred_user_id: Optional[str] = None
    referred_user_name: Optional[str] = None
    referred_user_email: Optional[str] = None


class ProviderConfigUpdate(BaseModel):
    is_active: Optional[bool] = None
    config: Optional[Dict[str, Any]] = None


class AffiliateSettingsUpdate(BaseModel):
    commission_rate_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    item_type: str
    item_id: str
    amount: Decimal
    currency: str
    provider: str
    status: str
    provider_reference: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class ProviderConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    is_active: bool
    config: Optional[Dict[str, Any]] = None


class AffiliateSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    commission_rate_percent: Decimal
    created_at: datetime
    updated_at: datetime


class CommissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    affiliate_code: str
    referred_user_id: Optional[str] = None
    transaction_id: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
