"""
Payment provider configuration store.

Credentials live in an opaque JSON blob per provider key. Checkout code only
touches them through typed accessors such as StripeCredentials, so a missing
field fails loudly instead of surfacing later as an empty API key.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.config import get_minimum_amounts
from app.errors import ClientInputError
from app.models import PaymentProviderConfig, ProviderKey

logger = logging.getLogger(__name__)

# Accepted spellings per credential, first match wins
CREDENTIAL_ALIASES = {
    "secret_key": ("secret_key", "secretKey"),
    "public_key": ("public_key", "publicKey"),
    "minimum_amounts": ("minimum_amounts", "minimumAmounts"),
}


def _lookup(config: dict, name: str):
    for key in CREDENTIAL_ALIASES[name]:
        value = config.get(key)
        if value:
            return value
    return None


@dataclass(frozen=True)
class StripeCredentials:
    secret_key: str
    public_key: str
    minimum_amounts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "StripeCredentials":
        config = config or {}
        secret_key = _lookup(config, "secret_key")
        public_key = _lookup(config, "public_key")
        if not secret_key or not public_key:
            raise ClientInputError("Stripe keys are not configured correctly.")

        minimums = get_minimum_amounts()
        overrides = _lookup(config, "minimum_amounts") or {}
        minimums.update({str(k).upper(): int(v) for k, v in overrides.items()})
        return cls(secret_key=secret_key, public_key=public_key, minimum_amounts=minimums)

    def minimum_amount_for(self, currency: str) -> int:
        return self.minimum_amounts.get(currency.upper(), 0)


def get_provider_config(db: Session, provider: ProviderKey) -> Optional[PaymentProviderConfig]:
    return db.query(PaymentProviderConfig).filter_by(provider=ProviderKey(provider).value).first()


def get_active_provider_config(db: Session, provider: ProviderKey) -> PaymentProviderConfig:
    cfg = get_provider_config(db, provider)
    if not cfg or not cfg.is_active or not cfg.config:
        raise ClientInputError(f"Configuration for provider {ProviderKey(provider).value} not found or inactive.")
    return cfg


def get_stripe_credentials(db: Session) -> StripeCredentials:
    return StripeCredentials.from_config(get_active_provider_config(db, ProviderKey.STRIPE).config)


def list_provider_configs(db: Session) -> Dict[str, Optional[PaymentProviderConfig]]:
    configs = {c.provider: c for c in db.query(PaymentProviderConfig).all()}
    return {key.value: configs.get(key.value) for key in ProviderKey}


def upsert_provider_config(
    db: Session,
    provider: ProviderKey,
    is_active: Optional[bool] = None,
    config: Optional[dict] = None,
) -> PaymentProviderConfig:
    existing = get_provider_config(db, provider)

    if existing is None:
        existing = PaymentProviderConfig(
            provider=ProviderKey(provider).value,
            is_active=is_active if is_active is not None else False,
            config=config,
        )
        db.add(existing)
    else:
        if is_active is not None:
            existing.is_active = is_active
        if config is not None:
            existing.config = config

    db.commit()
    db.refresh(existing)
    logger.info("Provider config saved: provider=%s active=%s", existing.provider, existing.is_active)
    return existing
