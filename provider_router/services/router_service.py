"""Task-aware provider selection with strategy-based load distribution."""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union
from sqlalchemy.orm import Session

from provider_router.services.discovery_service import ProviderDiscoveryService, ProviderHandle
from provider_router.services.exceptions import NoProviderAvailable, ProviderUnreachable, ValidationError
from provider_router.services.provider_service import ProviderService
from provider_router.services.provider_types import RotationStrategy, TaskType, parse_rotation_strategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Copilot textarea completions are latency-sensitive; everything else is routed as smart
FAST_REQUEST_TYPES = frozenset({"TextareaCompletion"})


def classify_request(request_type: Optional[str]) -> TaskType:
    """Map an inbound request type onto a routing tier."""
    return TaskType.FAST if request_type in FAST_REQUEST_TYPES else TaskType.SMART


def parse_task_type(value: Union[str, TaskType]) -> TaskType:
    try:
        return TaskType(value)
    except ValueError:
        raise ValidationError(f"Invalid task type: {value}. Valid types: fast, smart")


@dataclass(frozen=True)
class ProviderSelection:
    """What the caller needs to issue one completion request."""

    api_key: str = field(repr=False)
    base_url: Optional[str]
    model: str
    task_type: TaskType
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_type: Optional[str] = None
    is_legacy: bool = False

    def describe(self) -> dict:
        """Selection without the API key, safe to return to clients."""
        return {
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "provider_type": self.provider_type,
            "base_url": self.base_url,
            "model": self.model,
            "task_type": self.task_type.value,
            "is_legacy": self.is_legacy,
        }


class TaskRouter:
    """Picks a provider and model for a task tier.

    Same-tier candidates are chosen by the configured rotation strategy.
    Round-robin (the default) rotates a cursor per (organization, task type);
    cursors live in memory for the lifetime of the router and reset on restart.
    Weighted draws in proportion to each provider's weight, and failover takes
    the heaviest provider whose last live test did not fail.
    A provider's default flag gives it no priority under any strategy.
    """

    def __init__(
        self,
        discovery_service: ProviderDiscoveryService,
        provider_service: Optional[ProviderService] = None,
        strategy: Union[str, RotationStrategy] = RotationStrategy.ROUND_ROBIN,
        rng: Optional[random.Random] = None,
    ):
        """Initialize router.

        Args:
            discovery_service: Source of the enabled provider set.
            provider_service: Registry used to record usage and failures (optional).
            strategy: Rotation strategy name.
            rng: Random source for the random and weighted strategies.

        Raises:
            ValidationError: If the strategy is unknown.
        """
        self.discovery_service = discovery_service
        self.provider_service = provider_service
        self.strategy = parse_rotation_strategy(strategy)
        self._rng = rng or random.Random()
        self._cursors: Dict[Tuple[Optional[str], TaskType], int] = {}
        self._cursor_lock = threading.Lock()

    def _next_index(
        self, organization_id: Optional[str], task_type: TaskType, size: int, advance: bool = True
    ) -> int:
        key = (organization_id, task_type)
        with self._cursor_lock:
            cursor = self._cursors.get(key, 0)
            if advance:
                self._cursors[key] = cursor + 1
        return cursor % size

    def _pick(
        self,
        candidates: List[ProviderHandle],
        organization_id: Optional[str],
        task_type: TaskType,
        advance: bool,
    ) -> ProviderHandle:
        if self.strategy == RotationStrategy.RANDOM:
            return self._rng.choice(candidates)
        if self.strategy == RotationStrategy.WEIGHTED:
            return self._rng.choices(candidates, weights=[p.weight for p in candidates])[0]
        if self.strategy == RotationStrategy.FAILOVER:
            ranked = sorted(candidates, key=lambda p: -p.weight)
            healthy = [p for p in ranked if p.healthy]
            return (healthy or ranked)[0]
        return candidates[self._next_index(organization_id, task_type, len(candidates), advance)]

    def reset(self) -> None:
        """Forget all cursors."""
        with self._cursor_lock:
            self._cursors.clear()

    def eligible_providers(
        self,
        db: Session,
        task_type: Union[str, TaskType],
        organization_id: Optional[str] = None,
    ) -> List[ProviderHandle]:
        """Enabled providers that serve the tier, in rotation order."""
        task_type = parse_task_type(task_type)
        providers = self.discovery_service.get_enabled_providers(db, organization_id)
        return [p for p in providers if p.supports(task_type)]

    def select(
        self,
        db: Session,
        task_type: Union[str, TaskType],
        organization_id: Optional[str] = None,
        exclude: Iterable[str] = (),
        advance: bool = True,
    ) -> ProviderSelection:
        """Choose the provider and model for one request.

        Args:
            db: Database session.
            task_type: fast or smart.
            organization_id: Organization whose providers are considered.
            exclude: Provider ids that already failed for this request.
            advance: False to peek at the round-robin choice without moving the cursor.

        Returns:
            The selected provider tuple, or the legacy provider when the
            organization has no enabled providers.

        Raises:
            NoProviderAvailable: If neither a dynamic nor a legacy provider can serve the task.
        """
        task_type = parse_task_type(task_type)
        excluded = set(exclude)

        enabled = self.discovery_service.get_enabled_providers(db, organization_id)
        candidates = [p for p in enabled if p.supports(task_type) and p.id not in excluded]

        if candidates:
            provider = self._pick(candidates, organization_id, task_type, advance)
            model = provider.model_for(task_type)
            logger.debug(
                f"Selected provider {provider.id} ({provider.type.value}) model {model} "
                f"for {task_type.value} task, org {organization_id}, strategy {self.strategy.value}"
            )
            return ProviderSelection(
                api_key=provider.api_key,
                base_url=provider.effective_base_url,
                model=model,
                task_type=task_type,
                provider_id=provider.id,
                provider_name=provider.name,
                provider_type=provider.type.value,
            )

        # The legacy provider only stands in for an empty dynamic set
        if not enabled:
            legacy = self.discovery_service.get_legacy_provider()
            if legacy is not None:
                logger.info(f"No AI providers configured for org {organization_id}, using legacy configuration")
                return ProviderSelection(
                    api_key=legacy.api_key,
                    base_url=legacy.base_url,
                    model=legacy.model_for(task_type),
                    task_type=task_type,
                    is_legacy=True,
                )

        logger.error(
            f"No available AI provider for {task_type.value} task, org {organization_id} "
            f"({len(enabled)} enabled, {len(excluded)} excluded)"
        )
        raise NoProviderAvailable(task_type.value, organization_id)

    async def run_with_failover(
        self,
        db: Session,
        task_type: Union[str, TaskType],
        organization_id: Optional[str],
        call: Callable[[ProviderSelection], Awaitable[T]],
    ) -> T:
        """Run call against selected providers until one does not raise ProviderUnreachable.

        Each failed provider is excluded from the next selection, so the loop
        is bounded by the size of the eligible set. Outcomes and latency feed
        the provider's request statistics.

        Raises:
            NoProviderAvailable: If every candidate failed or none exist.
        """
        task_type = parse_task_type(task_type)
        failed: List[str] = []
        max_attempts = max(1, len(self.eligible_providers(db, task_type, organization_id)))

        for attempt in range(1, max_attempts + 1):
            selection = self.select(db, task_type, organization_id, exclude=failed)
            started = time.perf_counter()
            try:
                result = await call(selection)
            except ProviderUnreachable as e:
                logger.warning(
                    f"Provider {selection.provider_id or 'legacy'} unreachable "
                    f"(attempt {attempt}/{max_attempts}): {e}"
                )
                if selection.is_legacy or selection.provider_id is None:
                    raise NoProviderAvailable(task_type.value, organization_id) from e
                if self.provider_service:
                    self.provider_service.record_failure(db, selection.provider_id, str(e))
                failed.append(selection.provider_id)
                continue

            if self.provider_service and selection.provider_id:
                latency_ms = (time.perf_counter() - started) * 1000
                self.provider_service.record_usage(db, selection.provider_id, latency_ms=latency_ms)
            return result

        raise NoProviderAvailable(task_type.value, organization_id)
