"""Main FastAPI application entry point."""

from typing import Optional
from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from provider_router.api.deps import get_encryption_service
from provider_router.api.providers import router as providers_router
from provider_router.api.routing import router as routing_router
from provider_router.database.database import init_db, get_db
from provider_router.models.provider import Provider
from provider_router.models.audit_log import AuditLog
from provider_router.services.discovery_service import ProviderDiscoveryService

app = FastAPI(
    title="AI Provider Router",
    description="Per-organization AI provider registry, health probing and task routing",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(providers_router)
app.include_router(routing_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    encryption: str
    legacy_fallback: bool
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    providers_count: int
    enabled_providers_count: int
    default_providers_count: int
    deleted_providers_count: int
    audit_events_count: int


@app.on_event("startup")
async def startup_event():
    """Validate encryption and initialize the database."""
    # Exits the process if ENCRYPTION_KEY is missing or invalid
    get_encryption_service()
    init_db()


@app.get("/")
async def root():
    return {"message": "AI Provider Router API", "version": "0.1.0"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Check database connectivity and encryption key validity."""
    encryption_service = get_encryption_service()
    health_status = {
        "status": "healthy",
        "database": "connected",
        "encryption": "valid",
        "legacy_fallback": ProviderDiscoveryService(encryption_service).has_legacy_fallback(),
    }

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)

    if encryption_service.decrypt(encryption_service.encrypt("test")) != "test":
        health_status["encryption"] = "invalid"
        health_status["status"] = "unhealthy"
        health_status["message"] = "Encryption service validation failed"

    return HealthResponse(**health_status)


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(db: Session = Depends(get_db)):
    """Provider and audit counts across all organizations."""
    try:
        live = db.query(Provider).filter(Provider.deleted_at.is_(None))
        return StatsResponse(
            providers_count=live.count(),
            enabled_providers_count=live.filter(Provider.enabled.is_(True)).count(),
            default_providers_count=live.filter(Provider.is_default.is_(True)).count(),
            deleted_providers_count=db.query(Provider).filter(Provider.deleted_at.isnot(None)).count(),
            audit_events_count=db.query(AuditLog).count(),
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")
