from fastapi import APIRouter

router = APIRouter(tags=["root"])

SERVICE_LINKS = {
    "docs": "/docs",
    "health": "/health",
    "imports": "/imports",
}


@router.get("/")
def root():
    """Service banner with links to the import API."""
    return {"name": "Member Provisioning Service", "status": "ok", **SERVICE_LINKS}
