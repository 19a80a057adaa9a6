from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from provisioning.db.session import get_db
from provisioning.models.company import Company
from provisioning.models.member import Member


def get_current_member(
    x_user_email: str | None = Header(default=None),
    x_company_code: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Member:
    """
    DEV AUTH: pass X-User-Email header to simulate a logged-in member.
    Emails are unique per company only; add X-Company-Code when the same
    address exists in more than one company.
    Example: X-User-Email: admin@local.test
    """
    if not x_user_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Email header (dev auth)",
        )

    stmt = select(Member).where(Member.email == x_user_email)
    if x_company_code:
        stmt = stmt.join(Company, Company.id == Member.company_id).where(Company.code == x_company_code)
    member = db.execute(stmt.limit(1)).scalar_one_or_none()
    if not member or not member.is_active:
        raise HTTPException(status_code=401, detail="Invalid or inactive user")
    return member
