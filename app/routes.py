import json
from typing import List

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.auth import verify_token, require_admin
from app.config import get_webhook_secret
from app.database import get_db
from app.payments import (
    confirm_transaction,
    create_commission_manually,
    create_stripe_checkout,
    handle_stripe_webhook_event,
    list_transactions,
)
from app.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CommissionOut,
    ConfirmRequest,
    ManualCommissionRequest,
    TransactionOut,
)
from app.stripe_service import construct_webhook_event

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    auth=Depends(verify_token)
):
    return create_stripe_checkout(db, request)


@router.post("/confirm", response_model=TransactionOut)
def confirm(
    request: ConfirmRequest,
    db: Session = Depends(get_db),
    auth=Depends(verify_token)
):
    return confirm_transaction(db, request.tx_id)


@router.get("/list", response_model=List[TransactionOut])
def list_payments(db: Session = Depends(get_db), auth=Depends(verify_token)):
    return list_transactions(db)


@router.post("/admin/affiliate-commission")
def create_affiliate_commission(
    request: ManualCommissionRequest,
    db: Session = Depends(get_db),
    auth=Depends(require_admin)
):
    result = create_commission_manually(db, request)
    return {"created": result["created"], "commission": CommissionOut.model_validate(result["commission"])}


async def _read_stripe_event(request: Request, stripe_signature: str = None) -> dict:
    payload = await request.body()

    secret = get_webhook_secret()
    if secret:
        if not stripe_signature:
            raise HTTPException(status_code=400, detail="Missing signature")
        try:
            return construct_webhook_event(payload, stripe_signature, secret)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError:
            raise HTTPException(status_code=400, detail="Invalid signature")

    # No secret configured: local/test setups post unsigned events
    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return event


@router.post("/webhook")
@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db)
):
    event = await _read_stripe_event(request, stripe_signature)
    return handle_stripe_webhook_event(db, event)
