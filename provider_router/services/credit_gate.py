"""Credit/quota gate consulted before billable AI tasks."""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from provider_router.services.exceptions import QuotaExceeded, ValidationError

logger = logging.getLogger(__name__)

CREDIT_TYPES = ("ai_images", "ai_videos")


@dataclass(frozen=True)
class CreditCheck:
    allowed: bool
    remaining: int


class CreditGate(ABC):
    """Interface to the billing subsystem's allowance check.

    A denied check is terminal for the request; routing never retries around it.
    """

    @abstractmethod
    def check_credits(self, organization_id: str, credit_type: str) -> CreditCheck:
        """Report whether the organization may run one more task of this type."""

    def ensure_credits(self, organization_id: str, credit_type: str) -> CreditCheck:
        """Check credits and raise on deny.

        Raises:
            ValidationError: If the credit type is unknown.
            QuotaExceeded: If the organization has no remaining allowance.
        """
        if credit_type not in CREDIT_TYPES:
            raise ValidationError(f"Invalid credit type: {credit_type}. Valid types: {', '.join(CREDIT_TYPES)}")
        result = self.check_credits(organization_id, credit_type)
        if not result.allowed:
            logger.warning(f"Org {organization_id} denied '{credit_type}': no remaining credits")
            raise QuotaExceeded(organization_id, credit_type, result.remaining)
        return result


class UnlimitedCreditGate(CreditGate):
    """Allows everything; used when billing is not wired in."""

    def check_credits(self, organization_id: str, credit_type: str) -> CreditCheck:
        return CreditCheck(allowed=True, remaining=-1)


class StaticCreditGate(CreditGate):
    """Fixed per-organization allowances held in memory."""

    def __init__(self, allowances: Optional[Dict[Tuple[str, str], int]] = None, default: int = 0):
        self._allowances = dict(allowances or {})
        self._default = default
        self._lock = threading.Lock()

    def check_credits(self, organization_id: str, credit_type: str) -> CreditCheck:
        with self._lock:
            remaining = self._allowances.get((organization_id, credit_type), self._default)
        return CreditCheck(allowed=remaining > 0, remaining=remaining)

    def consume(self, organization_id: str, credit_type: str, amount: int = 1) -> int:
        """Deduct credits after a billable task; returns what is left."""
        key = (organization_id, credit_type)
        with self._lock:
            remaining = max(0, self._allowances.get(key, self._default) - amount)
            self._allowances[key] = remaining
        return remaining
