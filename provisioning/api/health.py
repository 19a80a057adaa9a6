from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from provisioning.db.session import get_db

router = APIRouter(tags=["health"])


@router.get("/health")
def health(db: Session = Depends(get_db)):
    # Imports are useless without the directory store, so ping it
    db.execute(text("SELECT 1"))
    return {"status": "ok", "service": "member-provisioning"}
