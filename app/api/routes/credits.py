from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.services.auth.jwt import Principal, get_current_principal
from app.services.credits.service import CreditLedgerService

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/me")
def my_credits(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return CreditLedgerService(db).credit_status(principal.user_id)
