"""Live health checks and model discovery against provider APIs."""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import httpx
from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from provider_router.config import Settings, settings as default_settings
from provider_router.models.provider import TEST_STATUS_FAILED, TEST_STATUS_SUCCESS, Provider
from provider_router.services.exceptions import NotFoundError, ProviderRoutingError, ProviderUnreachable
from provider_router.services.provider_service import ProviderService
from provider_router.services.provider_types import (
    DEFAULT_BASE_URLS,
    AnthropicConfig,
    BaseProviderConfig,
    GeminiConfig,
    OpenAICompatibleConfig,
    OpenAIConfig,
    OpenRouterConfig,
    ProviderType,
    parse_provider_config,
    parse_provider_type,
)

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of a provider health check."""

    ok: bool
    latency_ms: int
    message: str
    models: List[str] = field(default_factory=list)


@dataclass
class ModelDiscoveryResult:
    """Outcome of a model listing call."""

    success: bool
    models: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ProviderProber:
    """Runs live calls against a provider's API.

    Both entry points convert transport and upstream errors into a result
    object; only an unknown provider id raises.
    """

    def __init__(
        self,
        provider_service: ProviderService,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize prober.

        Args:
            provider_service: Registry used to load credentials and store results.
            settings: Timeout and limit settings (defaults to global settings).
            transport: Optional httpx transport, used to stub provider APIs.
        """
        self.provider_service = provider_service
        self.settings = settings or default_settings
        self.transport = transport

    async def test_provider(self, db: Session, organization_id: str, provider_id: str) -> ProbeResult:
        """Verify reachability and authentication with a list-models call.

        Stores test_status/test_error/last_tested_at and increments
        error_count on failure.

        Raises:
            NotFoundError: If the provider is not in scope.
        """
        started = time.perf_counter()
        try:
            provider = self.provider_service.get_provider_internal(db, organization_id, provider_id)
            models = await self.list_models(
                provider["type"], provider["base_url"], provider["api_key"], provider["custom_config"]
            )
        except NotFoundError:
            raise
        except ProviderRoutingError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"Provider test failed for {provider_id}: {e}")
            self._store_test_result(db, provider_id, ok=False, error=str(e))
            return ProbeResult(ok=False, latency_ms=latency_ms, message=str(e))

        latency_ms = int((time.perf_counter() - started) * 1000)
        self._store_test_result(db, provider_id, ok=True)
        logger.info(f"Provider {provider_id} test succeeded in {latency_ms}ms ({len(models)} models)")
        return ProbeResult(
            ok=True,
            latency_ms=latency_ms,
            message="Provider connectivity test successful",
            models=models[: self.settings.discovery_model_limit],
        )

    async def discover_models(self, db: Session, organization_id: str, provider_id: str) -> ModelDiscoveryResult:
        """List the provider's models and remember them for task assignment UIs.

        Raises:
            NotFoundError: If the provider is not in scope.
        """
        try:
            provider = self.provider_service.get_provider_internal(db, organization_id, provider_id)
            models = await self.list_models(
                provider["type"], provider["base_url"], provider["api_key"], provider["custom_config"]
            )
        except NotFoundError:
            raise
        except ProviderRoutingError as e:
            logger.error(f"Model discovery failed for provider {provider_id}: {e}")
            return ModelDiscoveryResult(success=False, models=[], error=str(e))

        row = db.query(Provider).filter(Provider.id == provider_id).first()
        row.available_models = json.dumps(models)
        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to store discovered models for provider {provider_id}: {e}")
            raise

        logger.info(f"Discovered {len(models)} models for provider {provider_id}")
        return ModelDiscoveryResult(success=True, models=models)

    async def list_models(
        self,
        provider_type: str,
        base_url: Optional[str],
        api_key: str,
        custom_config: Optional[Dict[str, Any]] = None,
    ) -> List[str]:
        """Fetch model ids from a provider's listing endpoint.

        Raises:
            ProviderUnreachable: On timeout, network, HTTP or response-format errors.
        """
        ptype = parse_provider_type(provider_type)
        config = parse_provider_config(ptype, custom_config)
        base_url = (base_url or DEFAULT_BASE_URLS.get(ptype) or "").rstrip("/")
        if not base_url:
            raise ProviderUnreachable(f"No base URL configured for {ptype.value} provider")

        url, headers, params = self._build_request(ptype, base_url, api_key, config)

        try:
            data = await self._fetch_json(url, headers, params)
        except httpx.TimeoutException:
            raise ProviderUnreachable(
                f"Timed out after {self.settings.probe_timeout_seconds:g}s contacting {base_url}"
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise ProviderUnreachable(f"Authentication failed (HTTP {status})")
            raise ProviderUnreachable(f"Provider returned HTTP {status}")
        except httpx.RequestError as e:
            raise ProviderUnreachable(f"Could not reach {base_url}: {e}")
        except httpx.InvalidURL as e:
            raise ProviderUnreachable(f"Invalid provider URL {base_url}: {e}")
        except httpx.HTTPError as e:
            raise ProviderUnreachable(f"Request to {base_url} failed: {e}")
        except ValueError:
            raise ProviderUnreachable(f"Provider at {base_url} returned invalid JSON")

        return self._parse_models(ptype, data)

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type(httpx.NetworkError),
        reraise=True,
    )
    async def _fetch_json(self, url: str, headers: Dict[str, str], params: Dict[str, str]) -> Any:
        async with httpx.AsyncClient(
            timeout=self.settings.probe_timeout_seconds, transport=self.transport
        ) as client:
            response = await client.get(url, headers=headers, params=params)
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _build_request(
        provider_type: ProviderType,
        base_url: str,
        api_key: str,
        config: BaseProviderConfig,
    ) -> Tuple[str, Dict[str, str], Dict[str, str]]:
        headers = {"Accept": "application/json"}
        params: Dict[str, str] = {}

        if provider_type == ProviderType.ANTHROPIC:
            root = base_url[: -len("/v1")] if base_url.endswith("/v1") else base_url
            headers["x-api-key"] = api_key
            if isinstance(config, AnthropicConfig):
                headers["anthropic-version"] = config.anthropic_version
            return f"{root}/v1/models", headers, params

        if provider_type == ProviderType.GEMINI:
            version = config.api_version if isinstance(config, GeminiConfig) else "v1beta"
            headers["x-goog-api-key"] = api_key
            return f"{base_url}/{version}/models", headers, params

        if provider_type == ProviderType.OLLAMA:
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            return f"{base_url}/api/tags", headers, params

        # OpenAI wire format
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if isinstance(config, OpenAIConfig) and config.organization:
            headers["OpenAI-Organization"] = config.organization
        if isinstance(config, OpenRouterConfig):
            if config.site_url:
                headers["HTTP-Referer"] = config.site_url
            if config.app_name:
                headers["X-Title"] = config.app_name
        if isinstance(config, OpenAICompatibleConfig):
            headers.update(config.headers)
        return f"{base_url}/models", headers, params

    @staticmethod
    def _parse_models(provider_type: ProviderType, data: Any) -> List[str]:
        if not isinstance(data, dict):
            raise ProviderUnreachable("Unexpected model list response format")

        if provider_type == ProviderType.GEMINI:
            entries, key = data.get("models"), "name"
        elif provider_type == ProviderType.OLLAMA:
            entries, key = data.get("models"), "name"
        else:
            # {"data": [{"id": "model-name"}, ...]}
            entries, key = data.get("data"), "id"

        if not isinstance(entries, list):
            raise ProviderUnreachable("Unexpected model list response format")

        models = []
        for entry in entries:
            model_id = entry.get(key) if isinstance(entry, dict) else None
            if isinstance(model_id, str) and model_id:
                if provider_type == ProviderType.GEMINI and model_id.startswith("models/"):
                    model_id = model_id[len("models/"):]
                models.append(model_id)
        return models

    def _store_test_result(self, db: Session, provider_id: str, ok: bool, error: Optional[str] = None) -> None:
        row = db.query(Provider).filter(Provider.id == provider_id).first()
        if not row:
            return
        row.test_status = TEST_STATUS_SUCCESS if ok else TEST_STATUS_FAILED
        row.test_error = None if ok else error
        row.last_tested_at = datetime.utcnow()
        if not ok:
            row.error_count = (row.error_count or 0) + 1
        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to store test result for provider {provider_id}: {e}")
            raise
