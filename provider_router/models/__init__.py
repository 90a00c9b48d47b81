"""Database models package."""

from provider_router.models.provider import Provider
from provider_router.models.audit_log import AuditLog

__all__ = [
    "Provider",
    "AuditLog",
]
