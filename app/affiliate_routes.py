from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.affiliates import (
    commission_summary,
    commissions_for_affiliate,
    list_commissions,
    mark_commission_paid,
    referred_users_for_affiliate,
)
from app.auth import require_admin
from app.database import get_db
from app.models import CommissionStatus
from app.schemas import CommissionOut

router = APIRouter(prefix="/affiliates", tags=["affiliates"])


# Affiliate self-service: the code comes from the query string, not a token
@router.get("/me/commissions")
def my_commissions(
    affiliate_code: Optional[str] = Query(None, alias="affiliateCode"),
    db: Session = Depends(get_db)
):
    result = commissions_for_affiliate(db, affiliate_code)
    return {
        "commissions": [CommissionOut.model_validate(c) for c in result["commissions"]],
        "totals": result["totals"],
    }


@router.get("/me/referred-users")
def my_referred_users(
    affiliate_code: Optional[str] = Query(None, alias="affiliateCode"),
    db: Session = Depends(get_db)
):
    return referred_users_for_affiliate(db, affiliate_code)


@router.get("/admin/commissions", response_model=List[CommissionOut])
def all_commissions(
    status: Optional[CommissionStatus] = None,
    db: Session = Depends(get_db),
    auth=Depends(require_admin)
):
    return list_commissions(db, status)


@router.get("/admin/summary")
def summary(db: Session = Depends(get_db), auth=Depends(require_admin)):
    return commission_summary(db)


@router.patch("/admin/commissions/{commission_id}/mark-paid")
def mark_paid(commission_id: str, db: Session = Depends(get_db), auth=Depends(require_admin)):
    commission = mark_commission_paid(db, commission_id)
    return {"ok": True, "commission": CommissionOut.model_validate(commission)}
