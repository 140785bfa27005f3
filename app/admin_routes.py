from typing import Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.affiliates import get_or_create_settings, update_settings
from app.auth import require_admin
from app.database import get_db
from app.models import ProviderKey
from app.providers import list_provider_configs, upsert_provider_config
from app.schemas import (
    AffiliateSettingsOut,
    AffiliateSettingsUpdate,
    ProviderConfigOut,
    ProviderConfigUpdate,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/payment-configs", response_model=Dict[str, Optional[ProviderConfigOut]])
def get_payment_configs(db: Session = Depends(get_db)):
    return list_provider_configs(db)


@router.put("/payment-configs/{provider}", response_model=ProviderConfigOut)
def update_payment_config(provider: ProviderKey, body: ProviderConfigUpdate, db: Session = Depends(get_db)):
    return upsert_provider_config(db, provider, is_active=body.is_active, config=body.config)


@router.get("/affiliate-settings", response_model=AffiliateSettingsOut)
def get_affiliate_settings(db: Session = Depends(get_db)):
    return get_or_create_settings(db)


@router.put("/affiliate-settings", response_model=AffiliateSettingsOut)
def update_affiliate_settings(body: AffiliateSettingsUpdate, db: Session = Depends(get_db)):
    return update_settings(db, commission_rate_percent=body.commission_rate_percent)
