"""Provider API endpoints."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from provider_router.api.deps import get_actor_id, get_organization_id, get_prober, get_provider_service
from provider_router.database.database import get_db
from provider_router.services.exceptions import (
    ConcurrentModificationError,
    NotFoundError,
    ProviderDisabledError,
    ValidationError,
)
from provider_router.services.prober_service import ProviderProber
from provider_router.services.provider_service import ENTITY_TYPE, ProviderService
from provider_router.services.provider_types import DEFAULT_MODEL_CATALOG, ProviderType

router = APIRouter(prefix="/api/providers", tags=["providers"])


class ProviderCreate(BaseModel):
    """Provider creation request."""

    name: Optional[str] = None
    type: Optional[str] = None
    api_key: Optional[str] = ""
    base_url: Optional[str] = None
    custom_config: Union[Dict[str, Any], str, None] = None


class ProviderUpdate(BaseModel):
    """Provider update request. Omitted fields are left unchanged."""

    name: Optional[str] = None
    type: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    custom_config: Union[Dict[str, Any], str, None] = None
    enabled: Optional[bool] = None


class ProviderResponse(BaseModel):
    """Provider response. api_key is always masked."""

    id: str
    organization_id: str
    name: str
    type: str
    api_key: str
    base_url: Optional[str] = None
    custom_config: Optional[Dict[str, Any]] = None
    enabled: bool
    is_default: bool
    error_count: int = 0
    last_used_at: Optional[str] = None
    test_status: Optional[str] = None
    test_error: Optional[str] = None
    last_tested_at: Optional[str] = None
    available_models: Optional[List[str]] = None
    request_count: int = 0
    failed_request_count: int = 0
    success_rate: int = 100
    avg_latency_ms: float = 0.0
    created_at: str
    updated_at: str


class DeleteResponse(BaseModel):
    success: bool
    message: str


class SetDefaultResponse(BaseModel):
    success: bool
    message: str
    provider: ProviderResponse


class TestProviderResponse(BaseModel):
    """Provider health check response."""

    ok: bool
    latency_ms: int
    message: str
    models: List[str] = []


class DiscoverModelsResponse(BaseModel):
    """Model discovery response."""

    success: bool
    models: List[str]
    error: Optional[str] = None


class ProviderModelsResponse(BaseModel):
    provider_id: str
    discovered: bool
    models: List[str]


class AuditEntryResponse(BaseModel):
    action: str
    actor_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _to_response(p: dict) -> ProviderResponse:
    return ProviderResponse(
        **{
            **p,
            "last_used_at": _iso(p["last_used_at"]),
            "last_tested_at": _iso(p["last_tested_at"]),
            "created_at": _iso(p["created_at"]),
            "updated_at": _iso(p["updated_at"]),
        }
    )


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (ProviderDisabledError, ConcurrentModificationError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


@router.get("", response_model=List[ProviderResponse])
async def list_providers(
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """List the organization's providers with masked API keys."""
    try:
        return [_to_response(p) for p in service.list_providers(db, organization_id)]
    except Exception as e:
        raise _http_error(e, "list providers")


@router.post("", response_model=ProviderResponse, status_code=201)
async def create_provider(
    provider: ProviderCreate,
    organization_id: str = Depends(get_organization_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Create a provider.

    The API key may be empty only for ollama and openai-compatible providers.
    """
    try:
        created = service.create_provider(
            db,
            organization_id,
            name=provider.name,
            type=provider.type,
            api_key=provider.api_key or "",
            base_url=provider.base_url,
            custom_config=provider.custom_config,
            actor_id=actor_id,
        )
        return _to_response(created)
    except Exception as e:
        raise _http_error(e, "create provider")


@router.get("/{provider_id}", response_model=ProviderResponse)
async def get_provider(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Get provider details by ID."""
    try:
        return _to_response(service.get_provider(db, organization_id, provider_id))
    except Exception as e:
        raise _http_error(e, "get provider")


@router.put("/{provider_id}", response_model=ProviderResponse)
async def update_provider(
    provider_id: str,
    provider_update: ProviderUpdate,
    organization_id: str = Depends(get_organization_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Partially update a provider."""
    try:
        updated = service.update_provider(
            db,
            organization_id,
            provider_id,
            name=provider_update.name,
            type=provider_update.type,
            api_key=provider_update.api_key,
            base_url=provider_update.base_url,
            custom_config=provider_update.custom_config,
            enabled=provider_update.enabled,
            actor_id=actor_id,
        )
        return _to_response(updated)
    except Exception as e:
        raise _http_error(e, "update provider")


@router.delete("/{provider_id}", response_model=DeleteResponse)
async def delete_provider(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Soft-delete a provider."""
    try:
        service.delete_provider(db, organization_id, provider_id, actor_id=actor_id)
        return DeleteResponse(success=True, message="AI provider deleted")
    except Exception as e:
        raise _http_error(e, "delete provider")


@router.post("/{provider_id}/set-default", response_model=SetDefaultResponse)
async def set_default_provider(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Make a provider the default for its type."""
    try:
        updated = service.set_default_provider(db, organization_id, provider_id, actor_id=actor_id)
        return SetDefaultResponse(
            success=True,
            message="Provider set as default",
            provider=_to_response(updated),
        )
    except Exception as e:
        raise _http_error(e, "set default provider")


@router.post("/{provider_id}/test", response_model=TestProviderResponse)
async def test_provider(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    prober: ProviderProber = Depends(get_prober),
):
    """Test provider connectivity with a live list-models call."""
    try:
        result = await prober.test_provider(db, organization_id, provider_id)
        return TestProviderResponse(
            ok=result.ok,
            latency_ms=result.latency_ms,
            message=result.message,
            models=result.models,
        )
    except Exception as e:
        raise _http_error(e, "test provider")


@router.post("/{provider_id}/discover-models", response_model=DiscoverModelsResponse)
async def discover_models(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    prober: ProviderProber = Depends(get_prober),
):
    """Fetch available models from the provider API."""
    try:
        result = await prober.discover_models(db, organization_id, provider_id)
        return DiscoverModelsResponse(success=result.success, models=result.models, error=result.error)
    except Exception as e:
        raise _http_error(e, "discover models")


@router.get("/{provider_id}/models", response_model=ProviderModelsResponse)
async def list_provider_models(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Models known for a provider: discovered ones, else the type's default catalog."""
    try:
        provider = service.get_provider(db, organization_id, provider_id)
        if provider["available_models"]:
            return ProviderModelsResponse(
                provider_id=provider_id, discovered=True, models=provider["available_models"]
            )
        return ProviderModelsResponse(
            provider_id=provider_id,
            discovered=False,
            models=DEFAULT_MODEL_CATALOG[ProviderType(provider["type"])],
        )
    except Exception as e:
        raise _http_error(e, "list provider models")


@router.get("/{provider_id}/history", response_model=List[AuditEntryResponse])
async def get_provider_history(
    provider_id: str,
    organization_id: str = Depends(get_organization_id),
    db: Session = Depends(get_db),
    service: ProviderService = Depends(get_provider_service),
):
    """Audit trail for a provider, newest first."""
    try:
        service.get_provider(db, organization_id, provider_id)
        entries = service.audit_service.get_entity_history(db, ENTITY_TYPE, provider_id)
        return [
            AuditEntryResponse(
                action=e.action,
                actor_id=e.actor_id,
                details=json.loads(e.details) if e.details else None,
                created_at=_iso(e.created_at),
            )
            for e in entries
        ]
    except Exception as e:
        raise _http_error(e, "get provider history")
