# seed_dev.py
from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select
from sqlalchemy.orm import Session

from provisioning.db.session import SessionLocal
from provisioning.models.company import Company
from provisioning.models.member import Member
from provisioning.services.hashing import WerkzeugCredentialHasher
from provisioning.core.config import settings


# ---------- helpers ----------

def get_or_create_company(db: Session, code: str, name: str) -> Company:
    c = db.execute(select(Company).where(Company.code == code)).scalar_one_or_none()
    if c:
        return c
    c = Company(code=code, name=name)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def get_or_create_admin(db: Session, company: Company, email: str, name: str, password: str) -> Member:
    m = db.execute(
        select(Member).where(Member.company_id == company.id, Member.email == email)
    ).scalar_one_or_none()
    if m:
        # keep the dev admin usable
        if m.role != "admin" or not m.is_active:
            m.role = "admin"
            m.status = "active"
            db.commit()
            db.refresh(m)
        return m

    hasher = WerkzeugCredentialHasher(settings.PASSWORD_HASH_METHOD)
    m = Member(
        company_id=company.id,
        name=name,
        email=email,
        role="admin",
        person_id="DEV-ADMIN-0001",
        worker_type="office",
        password_hash=hasher.hash(password),
        login_method="email",
    )
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def main():
    db = SessionLocal()
    try:
        company = get_or_create_company(db, "DEMO", "Demo Company")
        admin = get_or_create_admin(db, company, "admin@local.test", "Dev Admin", "ChangeMe!2024")

        print("Seed complete ✅")
        print("\nCompany:")
        print(f"  company_id: {company.id} (code={company.code})")
        print("\nAdmin:")
        print(f"  member_id: {admin.id}")
        print(f"  email:     {admin.email}")

        print("\nNext API steps:")
        print("  POST /imports/preview           (X-User-Email: admin@local.test, file=members.csv)")
        print("  POST /imports/execute           (same, options='{\"auto_fix_credentials\": true}')")
        print("  POST /imports/<entry_id>/rollback")

    finally:
        db.close()


if __name__ == "__main__":
    main()
