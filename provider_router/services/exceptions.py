"""Errors raised by the provider registry, prober and router."""


class ProviderRoutingError(Exception):
    """Base class for provider routing errors."""


class ValidationError(ProviderRoutingError, ValueError):
    """Bad input shape or a required field is missing. Never retried."""


class NotFoundError(ProviderRoutingError, LookupError):
    """Unknown provider id, soft-deleted provider, or organization scope mismatch."""

    def __init__(self, provider_id: str):
        super().__init__(f"AI provider with ID {provider_id} not found")
        self.provider_id = provider_id


class ProviderDisabledError(ProviderRoutingError):
    """Operation requires an enabled provider."""

    def __init__(self, provider_id: str):
        super().__init__(f"AI provider with ID {provider_id} is disabled")
        self.provider_id = provider_id


class NoProviderAvailable(ProviderRoutingError):
    """No dynamic provider and no legacy fallback can serve the task."""

    user_message = "AI functionality unavailable"

    def __init__(self, task_type: str, organization_id=None):
        super().__init__(
            f"No AI provider available for task '{task_type}' "
            f"(organization: {organization_id or 'global'})"
        )
        self.task_type = task_type
        self.organization_id = organization_id


class ProviderUnreachable(ProviderRoutingError):
    """Transient transport or upstream failure talking to a provider."""

    def __init__(self, message: str, provider_id=None):
        super().__init__(message)
        self.provider_id = provider_id


class QuotaExceeded(ProviderRoutingError):
    """The organization has no remaining allowance for the credit type."""

    def __init__(self, organization_id: str, credit_type: str, remaining: int = 0):
        super().__init__(
            f"Organization {organization_id} has no remaining '{credit_type}' credits"
        )
        self.organization_id = organization_id
        self.credit_type = credit_type
        self.remaining = remaining


class EncryptionError(ProviderRoutingError):
    """An API key could not be encrypted or decrypted."""


class ConcurrentModificationError(ProviderRoutingError):
    """A concurrent writer changed the same default slot; the caller may retry."""

    def __init__(self, provider_id: str):
        super().__init__(
            f"AI provider with ID {provider_id} was modified concurrently, please retry"
        )
        self.provider_id = provider_id
