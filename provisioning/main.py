from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from provisioning.api.health import router as health_router
from provisioning.api.imports import router as imports_router
from provisioning.api.root import router as root_router
from provisioning.core.config import settings
from provisioning.core.logging_config import configure_logging

configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="Member Provisioning")

# CORS middleware for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(root_router)
app.include_router(health_router)
app.include_router(imports_router)
