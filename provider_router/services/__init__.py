"""Services package."""

from provider_router.services.audit_service import AuditService
from provider_router.services.credit_gate import CreditGate, StaticCreditGate, UnlimitedCreditGate
from provider_router.services.discovery_service import ProviderDiscoveryService, ProviderHandle
from provider_router.services.encryption_service import EncryptionService
from provider_router.services.prober_service import ProviderProber
from provider_router.services.provider_service import ProviderService
from provider_router.services.router_service import ProviderSelection, TaskRouter

__all__ = [
    "AuditService",
    "CreditGate",
    "StaticCreditGate",
    "UnlimitedCreditGate",
    "ProviderDiscoveryService",
    "ProviderHandle",
    "EncryptionService",
    "ProviderProber",
    "ProviderService",
    "ProviderSelection",
    "TaskRouter",
]
