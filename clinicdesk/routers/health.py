# clinicdesk/routers/health.py
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from .. import schemas
from ..config import get_settings
from ..database import get_db
from ..dependencies import get_current_user_id
from ..services import payment_ledger

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health(db: Session = Depends(get_db)):
    settings = get_settings()
    db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": settings.app_version,
        "time": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ledger-check", response_model=schemas.LedgerReport)
def check_ledger(db: Session = Depends(get_db)):
    """Compare each invoice's paid amount and status with its recorded payments."""
    return payment_ledger.audit_ledger(db)


@router.post("/ledger-fix", response_model=schemas.LedgerReport)
def fix_ledger(db: Session = Depends(get_db), user_id: Optional[str] = Depends(get_current_user_id)):
    """Rewrite drifted invoices from their payments. Returns what was changed."""
    return payment_ledger.audit_ledger(db, fix=True, actor=user_id)
