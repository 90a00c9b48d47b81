"""Provider service for managing per-organization AI providers."""

import json
import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Union
import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from provider_router.models.provider import Provider
from provider_router.services.audit_service import AuditService
from provider_router.services.encryption_service import EncryptionService
from provider_router.services.exceptions import (
    ConcurrentModificationError,
    NotFoundError,
    ProviderDisabledError,
    ValidationError,
)
from provider_router.services.provider_types import (
    KEYLESS_PROVIDER_TYPES,
    ProviderType,
    dump_provider_config,
    parse_provider_config,
    parse_provider_type,
)

logger = logging.getLogger(__name__)

MASKED_API_KEY = "***REDACTED***"
ENTITY_TYPE = "ai_provider"


def mask_api_key(api_key_encrypted: Optional[str]) -> str:
    """Replace a stored key with the placeholder shown on every read path."""
    return MASKED_API_KEY if api_key_encrypted else ""


def success_rate(request_count: Optional[int], failed_request_count: Optional[int]) -> int:
    """Percentage of dispatched requests that succeeded; 100 before any traffic."""
    total = request_count or 0
    if total == 0:
        return 100
    return round((total - (failed_request_count or 0)) / total * 100)


class ProviderService:
    """Registry of AI providers, scoped by organization.

    Reads exclude soft-deleted rows and always mask the API key. Mutations
    touching the default flag are serialized per (organization, type) and
    committed as a single transaction.
    """

    # Entries disappear once no caller holds or waits on the lock
    _locks = weakref.WeakValueDictionary()
    _locks_guard = threading.Lock()

    def __init__(self, encryption_service: EncryptionService, audit_service: Optional[AuditService] = None):
        """Initialize provider service.

        Args:
            encryption_service: Service for encrypting/decrypting API keys.
            audit_service: Sink for audit rows (defaults to a new AuditService).
        """
        self.encryption_service = encryption_service
        self.audit_service = audit_service or AuditService()

    @classmethod
    @contextmanager
    def _type_lock(cls, organization_id: str, provider_type: str):
        key = (organization_id, provider_type)
        with cls._locks_guard:
            lock = cls._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def _query_scoped(self, db: Session, organization_id: str):
        return db.query(Provider).filter(
            Provider.organization_id == organization_id,
            Provider.deleted_at.is_(None),
        )

    def _get_scoped(self, db: Session, organization_id: str, provider_id: str) -> Provider:
        provider = self._query_scoped(db, organization_id).filter(Provider.id == provider_id).first()
        if not provider:
            raise NotFoundError(provider_id)
        return provider

    def to_dict(self, provider: Provider) -> dict:
        """Serialize a provider for responses, with the API key masked."""
        try:
            custom_config = json.loads(provider.custom_config) if provider.custom_config else None
        except json.JSONDecodeError:
            logger.error(f"Stored customConfig for provider {provider.id} is not valid JSON")
            custom_config = None
        try:
            available_models = json.loads(provider.available_models) if provider.available_models else None
        except json.JSONDecodeError:
            available_models = None

        return {
            "id": provider.id,
            "organization_id": provider.organization_id,
            "name": provider.name,
            "type": provider.type,
            "api_key": mask_api_key(provider.api_key_encrypted),
            "base_url": provider.base_url,
            "custom_config": custom_config,
            "enabled": provider.enabled,
            "is_default": provider.is_default,
            "error_count": provider.error_count or 0,
            "last_used_at": provider.last_used_at,
            "test_status": provider.test_status,
            "test_error": provider.test_error,
            "last_tested_at": provider.last_tested_at,
            "available_models": available_models,
            "request_count": provider.request_count or 0,
            "failed_request_count": provider.failed_request_count or 0,
            "success_rate": success_rate(provider.request_count, provider.failed_request_count),
            "avg_latency_ms": round(provider.avg_latency_ms or 0.0, 1),
            "created_at": provider.created_at,
            "updated_at": provider.updated_at,
        }

    @staticmethod
    def _validate_key(provider_type: ProviderType, api_key: Optional[str]) -> None:
        if not api_key and provider_type not in KEYLESS_PROVIDER_TYPES:
            raise ValidationError(f"API key is required for {provider_type.value} providers")

    @staticmethod
    def _validate_base_url(provider_type: ProviderType, base_url: Optional[str]) -> None:
        if provider_type == ProviderType.OPENAI_COMPATIBLE and not base_url:
            raise ValidationError("baseUrl is required for openai-compatible providers")
        if not base_url:
            return
        try:
            url = httpx.URL(base_url)
        except httpx.InvalidURL as e:
            raise ValidationError(f"baseUrl is not a valid URL: {e}")
        if url.scheme not in ("http", "https") or not url.host:
            raise ValidationError("baseUrl must be an absolute http(s) URL")

    def create_provider(
        self,
        db: Session,
        organization_id: str,
        name: Optional[str],
        type: Optional[str],
        api_key: Optional[str] = "",
        base_url: Optional[str] = None,
        custom_config: Union[str, dict, None] = None,
        actor_id: Optional[str] = None,
    ) -> dict:
        """Create a provider for an organization.

        New providers start enabled and not default.

        Returns:
            The created provider with its API key masked.

        Raises:
            ValidationError: If name/type are missing, the type is unknown, the key
                is missing for a key-required type, or custom_config does not fit the type.
        """
        if not name or not name.strip() or not type:
            raise ValidationError("name and type are required")
        provider_type = parse_provider_type(type)
        self._validate_key(provider_type, api_key)
        self._validate_base_url(provider_type, base_url)
        config = parse_provider_config(provider_type, custom_config)

        provider = Provider(
            organization_id=organization_id,
            name=name.strip(),
            type=provider_type.value,
            api_key_encrypted=self.encryption_service.encrypt(api_key or ""),
            base_url=base_url or None,
            custom_config=dump_provider_config(config) if custom_config else None,
            enabled=True,
            is_default=False,
        )

        try:
            db.add(provider)
            db.flush()
            self.audit_service.record(
                db, "create", ENTITY_TYPE, provider.id,
                organization_id=organization_id, actor_id=actor_id,
                details={"name": provider.name, "type": provider.type},
            )
            db.commit()
            db.refresh(provider)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to create AI provider '{name}' for org {organization_id}: {e}")
            raise

        logger.info(f"Created AI provider {provider.id} for org {organization_id}")
        return self.to_dict(provider)

    def list_providers(self, db: Session, organization_id: str) -> List[dict]:
        """List an organization's providers, newest first, with masked keys."""
        providers = (
            self._query_scoped(db, organization_id)
            .order_by(Provider.created_at.desc(), Provider.id)
            .all()
        )
        return [self.to_dict(p) for p in providers]

    def get_provider(self, db: Session, organization_id: str, provider_id: str) -> dict:
        """Get one provider with a masked key.

        Raises:
            NotFoundError: If the provider is unknown, deleted, or owned by another organization.
        """
        return self.to_dict(self._get_scoped(db, organization_id, provider_id))

    def get_provider_internal(self, db: Session, organization_id: str, provider_id: str) -> dict:
        """Get one provider with its decrypted API key, for outbound calls only.

        Raises:
            NotFoundError: If the provider is not in scope.
            EncryptionError: If the stored key cannot be decrypted.
        """
        provider = self._get_scoped(db, organization_id, provider_id)
        result = self.to_dict(provider)
        try:
            result["api_key"] = self.encryption_service.decrypt(provider.api_key_encrypted)
        except Exception as e:
            logger.error(f"Failed to decrypt API key for provider {provider_id}: {e}")
            raise
        return result

    def update_provider(
        self,
        db: Session,
        organization_id: str,
        provider_id: str,
        name: Optional[str] = None,
        type: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        custom_config: Union[str, dict, None] = None,
        enabled: Optional[bool] = None,
        actor_id: Optional[str] = None,
    ) -> dict:
        """Apply a partial update; None leaves a field unchanged.

        Disabling a provider or changing its type clears its default flag.

        Raises:
            NotFoundError: If the provider is not in scope.
            ValidationError: If the patched provider would be invalid.
        """
        provider = self._get_scoped(db, organization_id, provider_id)

        with self._type_lock(organization_id, provider.type):
            db.refresh(provider)
            if provider.deleted_at is not None:
                raise NotFoundError(provider_id)

            if name is not None and not name.strip():
                raise ValidationError("name cannot be empty")

            current_type = ProviderType(provider.type)
            new_type = parse_provider_type(type) if type is not None else current_type

            if api_key is not None:
                self._validate_key(new_type, api_key)
            elif new_type != current_type and not provider.api_key_encrypted:
                self._validate_key(new_type, "")

            new_base_url = provider.base_url if base_url is None else (base_url or None)
            self._validate_base_url(new_type, new_base_url)

            if custom_config is not None:
                config_source = custom_config
            else:
                config_source = provider.custom_config
            config = parse_provider_config(new_type, config_source)

            changed = []
            if name is not None:
                provider.name = name.strip()
                changed.append("name")
            if new_type != current_type:
                provider.type = new_type.value
                changed.append("type")
            if api_key is not None:
                provider.api_key_encrypted = self.encryption_service.encrypt(api_key)
                changed.append("api_key")
            if base_url is not None:
                provider.base_url = new_base_url
                changed.append("base_url")
            if custom_config is not None or "type" in changed:
                provider.custom_config = dump_provider_config(config) if config_source else None
                if custom_config is not None:
                    changed.append("custom_config")
            if enabled is not None and enabled != provider.enabled:
                provider.enabled = enabled
                changed.append("enabled")

            demoted = provider.is_default and (not provider.enabled or "type" in changed)
            if demoted:
                provider.is_default = False

            provider.updated_at = datetime.utcnow()

            try:
                self.audit_service.record(
                    db, "update", ENTITY_TYPE, provider.id,
                    organization_id=organization_id, actor_id=actor_id,
                    details={"fields": changed, "demoted": demoted},
                )
                db.commit()
                db.refresh(provider)
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to update AI provider {provider_id}: {e}")
                raise

        logger.info(f"Updated AI provider {provider_id} ({', '.join(changed) or 'no changes'})")
        return self.to_dict(provider)

    def delete_provider(
        self,
        db: Session,
        organization_id: str,
        provider_id: str,
        actor_id: Optional[str] = None,
    ) -> None:
        """Soft-delete a provider.

        A deleted default leaves its type without a default; nothing is promoted.
        Deleting an already-deleted provider raises NotFoundError.
        """
        provider = self._get_scoped(db, organization_id, provider_id)

        with self._type_lock(organization_id, provider.type):
            db.refresh(provider)
            if provider.deleted_at is not None:
                raise NotFoundError(provider_id)

            was_default = provider.is_default
            provider.deleted_at = datetime.utcnow()
            provider.is_default = False

            try:
                self.audit_service.record(
                    db, "delete", ENTITY_TYPE, provider.id,
                    organization_id=organization_id, actor_id=actor_id,
                    details={"was_default": was_default},
                )
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to delete AI provider {provider_id}: {e}")
                raise

        if was_default:
            logger.warning(
                f"Deleted default AI provider {provider_id}; "
                f"org {organization_id} has no default {provider.type} provider"
            )
        logger.info(f"Deleted AI provider {provider_id}")

    def set_default_provider(
        self,
        db: Session,
        organization_id: str,
        provider_id: str,
        actor_id: Optional[str] = None,
    ) -> dict:
        """Make a provider the default for its type.

        Siblings of the same type are unset and the target is set in one commit.

        Raises:
            NotFoundError: If the provider is not in scope.
            ProviderDisabledError: If the provider is disabled.
        """
        provider = self._get_scoped(db, organization_id, provider_id)

        with self._type_lock(organization_id, provider.type):
            db.refresh(provider)
            if provider.deleted_at is not None:
                raise NotFoundError(provider_id)
            if not provider.enabled:
                raise ProviderDisabledError(provider_id)

            try:
                siblings = (
                    db.query(Provider)
                    .filter(
                        Provider.organization_id == organization_id,
                        Provider.type == provider.type,
                        Provider.is_default.is_(True),
                        Provider.id != provider.id,
                    )
                    .all()
                )
                for sibling in siblings:
                    sibling.is_default = False
                # Siblings must be cleared before the target is set
                db.flush()
                provider.is_default = True
                provider.updated_at = datetime.utcnow()

                self.audit_service.record(
                    db, "set_default", ENTITY_TYPE, provider.id,
                    organization_id=organization_id, actor_id=actor_id,
                    details={"type": provider.type, "demoted": [s.id for s in siblings]},
                )
                db.commit()
                db.refresh(provider)
            except IntegrityError as e:
                db.rollback()
                logger.error(f"Concurrent default change for AI provider {provider_id}: {e}")
                raise ConcurrentModificationError(provider_id)
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to set AI provider {provider_id} as default: {e}")
                raise

        logger.info(f"Set provider {provider_id} as default for type {provider.type}")
        return self.to_dict(provider)

    def record_usage(self, db: Session, provider_id: str, latency_ms: Optional[float] = None) -> None:
        """Count a successful dispatch, stamp last_used_at and fold its latency into the average."""
        provider = db.query(Provider).filter(Provider.id == provider_id).first()
        if not provider:
            return
        provider.request_count = (provider.request_count or 0) + 1
        provider.last_used_at = datetime.utcnow()
        if latency_ms is not None:
            succeeded = provider.request_count - (provider.failed_request_count or 0)
            current = provider.avg_latency_ms or 0.0
            provider.avg_latency_ms = current + (latency_ms - current) / max(succeeded, 1)
        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record usage for provider {provider_id}: {e}")
            raise

    def record_failure(self, db: Session, provider_id: str, message: Optional[str] = None) -> None:
        """Count a failed dispatch and increment error_count."""
        provider = db.query(Provider).filter(Provider.id == provider_id).first()
        if not provider:
            return
        provider.error_count = (provider.error_count or 0) + 1
        provider.request_count = (provider.request_count or 0) + 1
        provider.failed_request_count = (provider.failed_request_count or 0) + 1
        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record failure for provider {provider_id}: {e}")
            raise
        logger.warning(f"Provider {provider_id} failure #{provider.error_count}: {message or 'unknown error'}")
