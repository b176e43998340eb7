from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from uuid import UUID


class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-independent view of one charge state change."""

    provider: str
    charge_ref: str
    outcome: PaymentOutcome
    org_id: Optional[UUID] = None
    line_org_id: Optional[str] = None
    plan: Optional[str] = None
    period: Optional[str] = None
    amount: Optional[int] = None
    currency: str = "thb"


class PaymentProvider(ABC):
    """Authenticity check and normalization for one provider's webhooks."""

    name: str

    @abstractmethod
    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Return True when the delivery is signed by the provider.

        Raises ConfigurationError when the provider's secret is not configured.
        """

    @abstractmethod
    def normalize(self, payload: dict) -> Optional[PaymentEvent]:
        """Map a verified webhook payload to a PaymentEvent, or None for irrelevant events."""


def parse_org_id(value) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def payment_metadata(org_id: UUID, line_org_id: Optional[str], is_group: bool, plan: str, period: str) -> dict:
    """Metadata attached to every charge so webhooks can be matched back to a tenant."""
    return {
        "org_id": str(org_id),
        "line_org_id": line_org_id or "",
        "is_group": "true" if is_group else "false",
        "plan": plan,
        "period": period,
    }
