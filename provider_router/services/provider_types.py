"""Provider types, task tiers and per-type typed configuration."""

import json
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from provider_router.services.exceptions import ValidationError


class TaskType(str, Enum):
    """Routing tier of a completion request."""

    FAST = "fast"
    SMART = "smart"


class ProviderType(str, Enum):
    """Supported AI backend types."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    TOGETHER = "together"
    OPENROUTER = "openrouter"
    OPENAI_COMPATIBLE = "openai-compatible"


class RotationStrategy(str, Enum):
    """How the router picks among same-tier providers."""

    ROUND_ROBIN = "round-robin"
    RANDOM = "random"
    WEIGHTED = "weighted"
    FAILOVER = "failover"


# Self-hosted backends may run without authentication
KEYLESS_PROVIDER_TYPES = frozenset({ProviderType.OLLAMA, ProviderType.OPENAI_COMPATIBLE})

DEFAULT_TASK_MODELS: Dict[ProviderType, Dict[TaskType, str]] = {
    ProviderType.OPENAI: {TaskType.FAST: "gpt-4o-mini", TaskType.SMART: "gpt-4.1"},
    ProviderType.ANTHROPIC: {
        TaskType.FAST: "claude-3-5-haiku-20241022",
        TaskType.SMART: "claude-3-5-sonnet-20241022",
    },
    ProviderType.GEMINI: {TaskType.FAST: "gemini-1.5-flash", TaskType.SMART: "gemini-1.5-pro"},
    ProviderType.OLLAMA: {TaskType.FAST: "llama3.2", TaskType.SMART: "llama3.1"},
    ProviderType.TOGETHER: {
        TaskType.FAST: "mistralai/Mistral-7B-Instruct-v0.3",
        TaskType.SMART: "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
    },
    ProviderType.OPENROUTER: {
        TaskType.FAST: "openai/gpt-4o-mini",
        TaskType.SMART: "anthropic/claude-3.5-sonnet",
    },
    ProviderType.OPENAI_COMPATIBLE: {TaskType.FAST: "gpt-4o-mini", TaskType.SMART: "gpt-4.1"},
}

# Shown for providers whose models were never discovered
DEFAULT_MODEL_CATALOG: Dict[ProviderType, List[str]] = {
    ProviderType.OPENAI: ["gpt-4.1", "gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo", "dall-e-3", "dall-e-2"],
    ProviderType.ANTHROPIC: [
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
    ],
    ProviderType.GEMINI: ["gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash"],
    ProviderType.OLLAMA: ["llama3.2", "llama3.1", "mistral", "codellama"],
    ProviderType.TOGETHER: [
        "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
        "mistralai/Mistral-7B-Instruct-v0.3",
    ],
    ProviderType.OPENROUTER: ["openai/gpt-4o-mini", "anthropic/claude-3.5-sonnet"],
    ProviderType.OPENAI_COMPATIBLE: ["gpt-4.1", "gpt-4o-mini", "gpt-3.5-turbo", "dall-e-3"],
}

DEFAULT_BASE_URLS: Dict[ProviderType, Optional[str]] = {
    ProviderType.OPENAI: "https://api.openai.com/v1",
    ProviderType.ANTHROPIC: "https://api.anthropic.com",
    ProviderType.GEMINI: "https://generativelanguage.googleapis.com",
    ProviderType.OLLAMA: "http://localhost:11434",
    ProviderType.TOGETHER: "https://api.together.xyz/v1",
    ProviderType.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderType.OPENAI_COMPATIBLE: None,
}


class BaseProviderConfig(BaseModel):
    """Settings shared by every provider type."""

    model_config = ConfigDict(extra="forbid")

    fast_model: Optional[str] = None
    smart_model: Optional[str] = None
    tiers: List[TaskType] = Field(default_factory=lambda: [TaskType.FAST, TaskType.SMART], min_length=1)
    # Share under the weighted strategy, priority under failover
    weight: int = Field(default=1, ge=1, le=1000)

    def supports(self, task_type: TaskType) -> bool:
        return task_type in self.tiers

    def model_for(self, task_type: TaskType) -> str:
        """Resolve the model for a tier, falling back to the type's default mapping."""
        override = self.fast_model if task_type == TaskType.FAST else self.smart_model
        if override:
            return override
        return DEFAULT_TASK_MODELS[ProviderType(self.type)][task_type]


class OpenAIConfig(BaseProviderConfig):
    type: Literal["openai"] = "openai"
    organization: Optional[str] = None


class AnthropicConfig(BaseProviderConfig):
    type: Literal["anthropic"] = "anthropic"
    anthropic_version: str = "2023-06-01"


class GeminiConfig(BaseProviderConfig):
    type: Literal["gemini"] = "gemini"
    api_version: str = "v1beta"


class OllamaConfig(BaseProviderConfig):
    type: Literal["ollama"] = "ollama"
    keep_alive: Optional[str] = None


class TogetherConfig(BaseProviderConfig):
    type: Literal["together"] = "together"


class OpenRouterConfig(BaseProviderConfig):
    type: Literal["openrouter"] = "openrouter"
    site_url: Optional[str] = None
    app_name: Optional[str] = None


class OpenAICompatibleConfig(BaseProviderConfig):
    type: Literal["openai-compatible"] = "openai-compatible"
    headers: Dict[str, str] = Field(default_factory=dict)


ProviderConfig = Annotated[
    Union[
        OpenAIConfig,
        AnthropicConfig,
        GeminiConfig,
        OllamaConfig,
        TogetherConfig,
        OpenRouterConfig,
        OpenAICompatibleConfig,
    ],
    Field(discriminator="type"),
]

_config_adapter = TypeAdapter(ProviderConfig)


def parse_provider_type(value: Optional[str]) -> ProviderType:
    """Convert a raw type string into a ProviderType.

    Raises:
        ValidationError: If the value is empty or not a supported type.
    """
    if not value:
        raise ValidationError("name and type are required")
    try:
        return ProviderType(value)
    except ValueError:
        valid = ", ".join(t.value for t in ProviderType)
        raise ValidationError(f"Invalid provider type: {value}. Valid types: {valid}")


def parse_provider_config(provider_type: ProviderType, raw: Union[str, dict, None]) -> BaseProviderConfig:
    """Validate a stored or submitted custom config against its provider type.

    Args:
        provider_type: Type that selects the config variant.
        raw: JSON text, a dict, or None for the type's defaults.

    Raises:
        ValidationError: If the JSON is malformed or does not fit the type's settings.
    """
    if raw is None or raw == "":
        data = {}
    elif isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"customConfig is not valid JSON: {e}")
    else:
        data = dict(raw)

    if not isinstance(data, dict):
        raise ValidationError("customConfig must be a JSON object")

    data["type"] = provider_type.value
    try:
        return _config_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid customConfig for {provider_type.value} providers: {e}")


def dump_provider_config(config: BaseProviderConfig) -> str:
    """Serialize a config for storage; the type column stays authoritative."""
    return config.model_dump_json(exclude={"type"})


def parse_rotation_strategy(value: Union[str, RotationStrategy]) -> RotationStrategy:
    """Convert a configured strategy name into a RotationStrategy.

    Raises:
        ValidationError: If the name is not a supported strategy.
    """
    try:
        return RotationStrategy(value)
    except ValueError:
        valid = ", ".join(s.value for s in RotationStrategy)
        raise ValidationError(f"Invalid rotation strategy: {value}. Valid strategies: {valid}")
