"""Discovery of the providers available for routing."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from sqlalchemy.orm import Session

from provider_router.config import Settings, settings as default_settings
from provider_router.models.provider import TEST_STATUS_FAILED, Provider
from provider_router.services.encryption_service import EncryptionService
from provider_router.services.exceptions import ProviderRoutingError
from provider_router.services.provider_types import (
    DEFAULT_BASE_URLS,
    BaseProviderConfig,
    ProviderType,
    TaskType,
    parse_provider_config,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderHandle:
    """An enabled provider with its decrypted credentials, valid for one routing decision."""

    id: str
    organization_id: str
    name: str
    type: ProviderType
    api_key: str = field(repr=False)
    base_url: Optional[str]
    config: BaseProviderConfig = field(compare=False, repr=False)
    is_default: bool = False
    # False once the last live test failed
    healthy: bool = True

    @property
    def weight(self) -> int:
        return self.config.weight

    def supports(self, task_type: TaskType) -> bool:
        return self.config.supports(task_type)

    def model_for(self, task_type: TaskType) -> str:
        return self.config.model_for(task_type)

    @property
    def effective_base_url(self) -> Optional[str]:
        return self.base_url or DEFAULT_BASE_URLS.get(self.type)


@dataclass(frozen=True)
class LegacyProvider:
    """The single statically configured provider used when no dynamic ones exist."""

    api_key: str = field(repr=False)
    base_url: Optional[str]
    models: Dict[TaskType, str]

    def model_for(self, task_type: TaskType) -> str:
        return self.models[task_type]


class ProviderDiscoveryService:
    """Builds the enabled provider set on every call. Nothing is cached."""

    def __init__(self, encryption_service: EncryptionService, settings: Optional[Settings] = None):
        """Initialize discovery service.

        Args:
            encryption_service: Service used to decrypt provider API keys.
            settings: Source of the legacy fallback (defaults to global settings).
        """
        self.encryption_service = encryption_service
        self.settings = settings or default_settings

    def get_enabled_providers(self, db: Session, organization_id: Optional[str] = None) -> List[ProviderHandle]:
        """Get every non-deleted, enabled provider in scope.

        Args:
            db: Database session.
            organization_id: Organization to scope to; None spans all organizations.

        Returns:
            Handles ordered by creation time. An empty list means the legacy
            fallback should be used.
        """
        query = db.query(Provider).filter(
            Provider.deleted_at.is_(None),
            Provider.enabled.is_(True),
        )
        if organization_id is not None:
            query = query.filter(Provider.organization_id == organization_id)

        handles = []
        for provider in query.order_by(Provider.created_at, Provider.id).all():
            try:
                provider_type = ProviderType(provider.type)
                handles.append(
                    ProviderHandle(
                        id=provider.id,
                        organization_id=provider.organization_id,
                        name=provider.name,
                        type=provider_type,
                        api_key=self.encryption_service.decrypt(provider.api_key_encrypted),
                        base_url=provider.base_url,
                        config=parse_provider_config(provider_type, provider.custom_config),
                        is_default=bool(provider.is_default),
                        healthy=provider.test_status != TEST_STATUS_FAILED,
                    )
                )
            except (ProviderRoutingError, ValueError) as e:
                logger.error(f"Skipping AI provider {provider.id}: {e}")

        logger.debug(f"Discovered {len(handles)} enabled providers for org {organization_id or 'all'}")
        return handles

    def has_legacy_fallback(self) -> bool:
        """Whether an operator-level single API key is configured."""
        return bool(self.settings.openai_api_key)

    def get_legacy_provider(self) -> Optional[LegacyProvider]:
        """Get the legacy provider, or None when no legacy key is configured."""
        if not self.has_legacy_fallback():
            return None
        return LegacyProvider(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url or None,
            models={
                TaskType.FAST: self.settings.fast_llm,
                TaskType.SMART: self.settings.smart_llm,
            },
        )
