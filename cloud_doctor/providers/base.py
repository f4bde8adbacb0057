"""
Provider capability contracts for multi-cloud cost and waste collection.

Defines the shared data model every provider adapter normalizes into, the
exception hierarchy, the three capability interfaces (identity, cost,
resource) and the factory that assembles a provider's capability set.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
TOTAL_KEY = "Total"
UNKNOWN_STOPPED_DAYS = -1

SUPPORTED_PROVIDERS = ("aws", "gcp", "azure")

VOLUME_STATUS_AVAILABLE = "available"
VOLUME_STATUS_ATTACHED_STOPPED = "attached_stopped"
RESERVATION_STATUS_EXPIRING = "expiring"
RESERVATION_STATUS_EXPIRED = "expired"


class Workflow(Enum):
    """Mutually exclusive collection workflows."""

    DEFAULT = "default"
    TREND = "trend"
    WASTE = "waste"

    @classmethod
    def from_flags(cls, trend: bool = False, waste: bool = False) -> "Workflow":
        """Waste takes precedence over trend; neither selects the cost comparison."""
        if waste:
            return cls.WASTE
        if trend:
            return cls.TREND
        return cls.DEFAULT

    @property
    def needs_cost(self) -> bool:
        return self is not Workflow.WASTE


class AccountInfo(BaseModel):
    """Identity of the account, project or subscription a result belongs to."""

    model_config = ConfigDict(frozen=True)

    provider: str
    account_id: str
    account_name: str = ""

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate and normalize provider name."""
        normalized = v.lower().strip()
        if normalized not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f'Invalid provider "{v}". Must be one of: {", ".join(SUPPORTED_PROVIDERS)}'
            )
        return normalized


class CostAmount(BaseModel):
    """A single monetary amount with its currency unit."""

    model_config = ConfigDict(frozen=True)

    amount: float
    unit: str = DEFAULT_CURRENCY

    @field_validator("unit", mode="before")
    @classmethod
    def validate_unit(cls, v: str | None) -> str:
        """Default missing units to USD and normalize the code."""
        if v is None or not str(v).strip():
            return DEFAULT_CURRENCY
        return str(v).upper().strip()


class CostInfo(BaseModel):
    """Cost breakdown for exactly one billing period of one provider."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    cost_group: dict[str, CostAmount] = {}

    @model_validator(mode="after")
    def validate_period(self):
        """Validate the billing period bounds."""
        if self.start > self.end:
            raise ValueError(f"Start date {self.start} must not be after end date {self.end}")
        return self

    @field_serializer("start", "end")
    def serialize_date(self, value: date) -> str:
        return value.strftime("%Y-%m-%d")

    @property
    def total_amount(self) -> float:
        """Period total: the reserved Total entry when present, else the sum of services."""
        if TOTAL_KEY in self.cost_group:
            return self.cost_group[TOTAL_KEY].amount
        return sum(entry.amount for entry in self.cost_group.values())

    @property
    def currency(self) -> str:
        """Currency of the first entry, USD when the group is empty."""
        for entry in self.cost_group.values():
            return entry.unit
        return DEFAULT_CURRENCY

    @property
    def month_label(self) -> str:
        return self.start.strftime("%Y-%m")

    def sorted_services(self) -> list[tuple[str, CostAmount]]:
        """Services ordered by amount, most expensive first."""
        return sorted(self.cost_group.items(), key=lambda item: item[1].amount, reverse=True)


class UnusedVolume(BaseModel):
    """A block storage volume that is unattached or attached to a stopped instance."""

    model_config = ConfigDict(frozen=True)

    id: str
    size_gb: int = 0
    status: str = VOLUME_STATUS_AVAILABLE

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in (VOLUME_STATUS_AVAILABLE, VOLUME_STATUS_ATTACHED_STOPPED):
            raise ValueError(f"Invalid volume status: {v}")
        return v


class UnusedIP(BaseModel):
    """A reserved public IP address not associated with any resource."""

    model_config = ConfigDict(frozen=True)

    address: str
    allocation_id: str = ""


class StoppedInstance(BaseModel):
    """A compute instance that has been stopped or deallocated."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    stopped_days: int = UNKNOWN_STOPPED_DAYS

    @field_validator("stopped_days")
    @classmethod
    def validate_stopped_days(cls, v: int) -> int:
        if v < UNKNOWN_STOPPED_DAYS:
            raise ValueError(f"Stopped days must be non-negative or {UNKNOWN_STOPPED_DAYS}, got {v}")
        return v

    @property
    def stopped_days_known(self) -> bool:
        return self.stopped_days != UNKNOWN_STOPPED_DAYS


class Reservation(BaseModel):
    """A reserved instance or commitment that is about to expire or recently expired."""

    model_config = ConfigDict(frozen=True)

    id: str
    instance_type: str = ""
    status: str
    days_until_expiry: int

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in (RESERVATION_STATUS_EXPIRING, RESERVATION_STATUS_EXPIRED):
            raise ValueError(f"Invalid reservation status: {v}")
        return v


class CloudProviderError(Exception):
    """Base exception for cloud provider errors."""

    pass


class AuthenticationError(CloudProviderError):
    """Authentication-related errors."""

    pass


class APIError(CloudProviderError):
    """API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class RateLimitError(APIError):
    """Rate limiting errors."""

    def __init__(self, message: str, retry_after: int | None = None, provider: str | None = None):
        super().__init__(message, status_code=429, provider=provider)
        self.retry_after = retry_after


class ProviderTimeoutError(APIError):
    """A provider did not finish its workflow within the allotted time."""

    def __init__(self, provider: str, timeout: float):
        super().__init__(f"{provider} did not respond within {timeout:g} seconds", provider=provider)
        self.timeout = timeout


class CostParseError(CloudProviderError):
    """A formatted cost total could not be parsed into an amount."""

    pass


class ConfigurationError(CloudProviderError):
    """Configuration-related errors."""

    pass


class NoProvidersConfiguredError(ConfigurationError):
    """No provider had the identifiers required for the requested workflow."""

    pass


class AllProvidersFailedError(CloudProviderError):
    """Every configured provider failed; carries the failed result records."""

    def __init__(self, results: list[Any]):
        providers = ", ".join(result.provider for result in results)
        super().__init__(f"All providers failed: {providers}")
        self.results = results


class IdentityService(ABC):
    """Resolves the account, project or subscription being queried."""

    @abstractmethod
    async def get_account_info(self) -> AccountInfo:
        """
        Get identity information for the configured account.

        Returns:
            AccountInfo for this provider

        Raises:
            AuthenticationError: If credentials are rejected
            APIError: If the identity call fails
        """
        pass


class CostService(ABC):
    """Billing queries for one provider account."""

    @abstractmethod
    async def get_current_month_costs_by_service(self) -> CostInfo:
        """Month-to-date costs grouped by service."""
        pass

    @abstractmethod
    async def get_last_month_costs_by_service(self) -> CostInfo:
        """Costs grouped by service for the same span of the previous month."""
        pass

    @abstractmethod
    async def get_current_month_total_costs(self) -> str:
        """Month-to-date total formatted as "<amount> <unit>"."""
        pass

    @abstractmethod
    async def get_last_month_total_costs(self) -> str:
        """Previous month total formatted as "<amount> <unit>"."""
        pass

    @abstractmethod
    async def get_last_six_months_costs(self) -> list[CostInfo]:
        """
        Get the monthly totals of the six complete months before the current one.

        Returns:
            Six CostInfo records, oldest first, each carrying only the Total entry
        """
        pass


class ResourceService(ABC):
    """Idle resource inventory for one provider account."""

    @abstractmethod
    async def get_unused_volumes(self) -> list[UnusedVolume]:
        pass

    @abstractmethod
    async def get_unused_ips(self) -> list[UnusedIP]:
        pass

    @abstractmethod
    async def get_stopped_instances(self) -> tuple[list[StoppedInstance], list[UnusedVolume]]:
        """
        Get long-stopped instances and the volumes attached to them.

        Returns:
            Tuple of (stopped instances, volumes attached to those instances)
        """
        pass

    @abstractmethod
    async def get_expiring_reservations(self) -> list[Reservation]:
        pass


@dataclass(frozen=True)
class ProviderCapabilitySet:
    """The capabilities one provider supplies for a workflow, tagged by provider name."""

    provider: str
    identity: IdentityService
    cost: CostService | None = None
    resource: ResourceService | None = None

    def require_cost(self) -> CostService:
        if self.cost is None:
            raise ConfigurationError(f"Provider {self.provider} does not support cost queries")
        return self.cost

    def require_resource(self) -> ResourceService:
        if self.resource is None:
            raise ConfigurationError(f"Provider {self.provider} does not support resource queries")
        return self.resource


CapabilityBuilder = Callable[..., ProviderCapabilitySet]


class ProviderFactory:
    """Factory class for assembling provider capability sets."""

    _providers: dict[str, CapabilityBuilder] = {}

    @classmethod
    def register_provider(cls, name: str, builder: CapabilityBuilder):
        """Register a capability builder with the factory."""
        cls._providers[name.lower()] = builder

    @classmethod
    def unregister_provider(cls, name: str):
        cls._providers.pop(name.lower(), None)

    @classmethod
    def create_capabilities(cls, name: str, invocation: Any, workflow: Any) -> ProviderCapabilitySet:
        """
        Build the capability set for a provider.

        Args:
            name: Provider name (aws, gcp, azure)
            invocation: Per-invocation configuration record
            workflow: Workflow the capabilities are needed for

        Returns:
            ProviderCapabilitySet for the provider

        Raises:
            ConfigurationError: If the provider is not registered
        """
        name = name.lower()
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys()) or "none"
            raise ConfigurationError(
                f"Unknown provider '{name}'. Available providers: {available}"
            )

        capabilities = cls._providers[name](invocation, workflow)
        logger.debug(
            f"Built capabilities for {name}: cost={capabilities.cost is not None}, "
            f"resource={capabilities.resource is not None}"
        )
        return capabilities

    @classmethod
    def get_available_providers(cls) -> list[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
