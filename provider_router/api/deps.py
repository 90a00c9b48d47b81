"""Shared FastAPI dependencies."""

from functools import lru_cache
from typing import Optional
from fastapi import Depends, Header, HTTPException

from provider_router.config import settings
from provider_router.services.credit_gate import CreditGate, UnlimitedCreditGate
from provider_router.services.discovery_service import ProviderDiscoveryService
from provider_router.services.encryption_service import EncryptionService
from provider_router.services.prober_service import ProviderProber
from provider_router.services.provider_service import ProviderService
from provider_router.services.router_service import TaskRouter


def get_organization_id(x_organization_id: Optional[str] = Header(default=None)) -> str:
    """Organization id placed on the request by the upstream auth middleware."""
    if not x_organization_id:
        raise HTTPException(status_code=401, detail="Missing organization context")
    return x_organization_id


def get_actor_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity for audit rows."""
    return x_user_id


@lru_cache()
def get_encryption_service() -> EncryptionService:
    return EncryptionService()


def get_provider_service(
    encryption_service: EncryptionService = Depends(get_encryption_service),
) -> ProviderService:
    """Get provider service instance."""
    return ProviderService(encryption_service)


def get_prober(service: ProviderService = Depends(get_provider_service)) -> ProviderProber:
    """Get prober instance."""
    return ProviderProber(service)


@lru_cache()
def get_task_router() -> TaskRouter:
    """Process-wide router; its round-robin cursors live as long as the process."""
    encryption_service = get_encryption_service()
    return TaskRouter(
        ProviderDiscoveryService(encryption_service),
        ProviderService(encryption_service),
        strategy=settings.rotation_strategy,
    )


@lru_cache()
def get_credit_gate() -> CreditGate:
    return UnlimitedCreditGate()
