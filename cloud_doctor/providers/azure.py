"""
Microsoft Azure provider adapters.

Subscription identity from Azure Resource Manager, costs from the Cost
Management query API and idle resources from the Compute, Network and
Reservations APIs.
"""

import logging
from datetime import date, datetime
from typing import Any

try:
    from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
    from azure.identity import ClientSecretCredential, DefaultAzureCredential
    from azure.mgmt.compute import ComputeManagementClient
    from azure.mgmt.costmanagement import CostManagementClient
    from azure.mgmt.costmanagement.models import (
        QueryAggregation,
        QueryDataset,
        QueryDefinition,
        QueryGrouping,
        QueryTimePeriod,
    )
    from azure.mgmt.network import NetworkManagementClient
    from azure.mgmt.reservations import AzureReservationAPI
    from azure.mgmt.subscription import SubscriptionClient

    AZURE_AVAILABLE = True
except ImportError:
    AZURE_AVAILABLE = False

from ..utils.blocking import run_blocking
from ..utils.data_normalizer import (
    RESERVATION_WINDOW_DAYS,
    AzureNormalizer,
    as_utc,
    current_month_period,
    extract_resource_group,
    last_month_period,
    month_windows,
    utc_now,
)
from .base import (
    AccountInfo,
    APIError,
    AuthenticationError,
    CostInfo,
    CostService,
    IdentityService,
    ProviderCapabilitySet,
    ProviderFactory,
    RateLimitError,
    Reservation,
    ResourceService,
    StoppedInstance,
    UnusedIP,
    UnusedVolume,
)

logger = logging.getLogger(__name__)


def create_credential(invocation):
    """Service principal credentials when all three are configured, otherwise the default chain."""
    if invocation.azure_tenant_id and invocation.azure_client_id and invocation.azure_client_secret:
        return ClientSecretCredential(
            tenant_id=invocation.azure_tenant_id,
            client_id=invocation.azure_client_id,
            client_secret=invocation.azure_client_secret,
        )
    return DefaultAzureCredential()


class AzureServiceBase:
    """Shared call path: run the blocking SDK call off the event loop and map its errors."""

    async def _call(self, func, *args, **kwargs):
        try:
            return await run_blocking(func, *args, **kwargs)
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Azure authentication failed: {e}") from e
        except HttpResponseError as e:
            self._handle_http_error(e)

    def _handle_http_error(self, error: "HttpResponseError"):
        """Handle Azure HTTP errors appropriately."""
        status_code = error.status_code
        if status_code in (401, 403):
            raise AuthenticationError(f"Azure unauthorized: {error.message}") from error
        elif status_code == 429:
            retry_after = None
            if error.response is not None:
                retry_after = error.response.headers.get("Retry-After")
            raise RateLimitError(
                f"Azure API rate limit exceeded: {error.message}",
                retry_after=int(retry_after) if retry_after and str(retry_after).isdigit() else None,
                provider="azure",
            ) from error
        else:
            raise APIError(
                f"Azure API error: {error.message}", status_code=status_code, provider="azure"
            ) from error


class AzureIdentityService(AzureServiceBase, IdentityService):
    """Subscription identity from Azure Resource Manager."""

    def __init__(self, subscription_client, subscription_id: str):
        self.client = subscription_client
        self.subscription_id = subscription_id

    async def get_account_info(self) -> AccountInfo:
        subscription = await self._call(self.client.subscriptions.get, self.subscription_id)
        return AccountInfo(
            provider="azure",
            account_id=self.subscription_id,
            account_name=subscription.display_name or "",
        )

    async def list_subscriptions(self) -> list[dict[str, str]]:
        """All subscriptions the credential can see."""
        subscriptions = await self._call(lambda: list(self.client.subscriptions.list()))
        return [
            {
                "subscription_id": subscription.subscription_id or "",
                "display_name": subscription.display_name or "",
                "state": str(subscription.state or ""),
            }
            for subscription in subscriptions
        ]


class AzureCostService(AzureServiceBase, CostService):
    """Actual costs for one subscription from the Cost Management query API."""

    def __init__(self, cost_client, subscription_id: str, today: date | None = None):
        self.client = cost_client
        self.scope = f"/subscriptions/{subscription_id}"
        self.today = today

    def _today(self) -> date:
        return self.today or date.today()

    async def _query(self, start: date, end: date, group_by_service: bool):
        dataset = QueryDataset(
            granularity="Daily",
            aggregation={"totalCost": QueryAggregation(name="Cost", function="Sum")},
        )
        if group_by_service:
            dataset.grouping = [QueryGrouping(type="Dimension", name="ServiceName")]

        definition = QueryDefinition(
            type="ActualCost",
            timeframe="Custom",
            time_period=QueryTimePeriod(from_property=as_utc(start), to=as_utc(end)),
            dataset=dataset,
        )
        result = await self._call(self.client.query.usage, self.scope, definition)
        logger.debug(f"Azure: {len(result.rows or [])} cost rows for {start} to {end}")
        return result

    async def _costs_by_service(self, start: date, end: date) -> CostInfo:
        result = await self._query(start, end, group_by_service=True)
        return AzureNormalizer.cost_info(result, start, end)

    async def _total(self, start: date, end: date) -> str:
        result = await self._query(start, end, group_by_service=False)
        return AzureNormalizer.total(result)

    async def get_current_month_costs_by_service(self) -> CostInfo:
        return await self._costs_by_service(*current_month_period(self._today()))

    async def get_last_month_costs_by_service(self) -> CostInfo:
        return await self._costs_by_service(*last_month_period(self._today()))

    async def get_current_month_total_costs(self) -> str:
        return await self._total(*current_month_period(self._today()))

    async def get_last_month_total_costs(self) -> str:
        return await self._total(*last_month_period(self._today()))

    async def get_last_six_months_costs(self) -> list[CostInfo]:
        # One query per month; a failing month fails the whole trend
        trend = []
        for start, end in month_windows(self._today()):
            result = await self._query(start, end, group_by_service=False)
            trend.append(AzureNormalizer.trend_record(result, start, end))
        logger.info(f"Azure: Retrieved {len(trend)} months of cost history")
        return trend


class AzureComputeService(AzureServiceBase, ResourceService):
    """Idle compute, network and reservation resources in one subscription."""

    def __init__(
        self,
        compute_client,
        network_client,
        reservation_client,
        reservation_window_days: int = RESERVATION_WINDOW_DAYS,
        now: datetime | None = None,
    ):
        self.compute_client = compute_client
        self.network_client = network_client
        self.reservation_client = reservation_client
        self.reservation_window_days = reservation_window_days
        self.now = now

    def _now(self) -> datetime:
        return self.now or utc_now()

    async def get_unused_volumes(self) -> list[UnusedVolume]:
        disks = await self._call(lambda: list(self.compute_client.disks.list()))
        return [volume for volume in map(AzureNormalizer.unused_volume, disks) if volume is not None]

    async def get_unused_ips(self) -> list[UnusedIP]:
        public_ips = await self._call(lambda: list(self.network_client.public_ip_addresses.list_all()))
        return [ip for ip in map(AzureNormalizer.unused_ip, public_ips) if ip is not None]

    async def get_stopped_instances(self) -> tuple[list[StoppedInstance], list[UnusedVolume]]:
        """
        Deallocated VMs and their managed disks.

        Azure exposes no deallocation timestamp, so every deallocated VM is
        reported with an unknown stop duration.
        """
        vms = await self._call(lambda: list(self.compute_client.virtual_machines.list_all()))

        stopped_instances = []
        attached_volumes = []
        for vm in vms:
            instance_view = await self._call(
                self.compute_client.virtual_machines.instance_view,
                extract_resource_group(vm.id),
                vm.name,
            )
            if not AzureNormalizer.is_deallocated(instance_view):
                continue
            stopped, volumes = AzureNormalizer.stopped_instance(vm)
            stopped_instances.append(stopped)
            attached_volumes.extend(volumes)

        logger.info(
            f"Azure: {len(stopped_instances)} of {len(vms)} VMs deallocated, "
            f"{len(attached_volumes)} attached disks"
        )
        return stopped_instances, attached_volumes

    async def get_expiring_reservations(self) -> list[Reservation]:
        orders = await self._call(lambda: list(self.reservation_client.reservation_order.list()))

        now = self._now()
        reservations = []
        for order in orders:
            reservation = AzureNormalizer.reservation(order, now, self.reservation_window_days)
            if reservation is not None:
                reservations.append(reservation)
        return reservations


def transport_options(invocation) -> dict[str, float]:
    """Connection and read timeouts for the management clients, taken from the provider timeout."""
    return {"connection_timeout": invocation.provider_timeout, "read_timeout": invocation.provider_timeout}


def build_azure_capabilities(invocation, workflow) -> ProviderCapabilitySet:
    """Create one credential for the subscription and wire the services."""
    subscription_id = invocation.azure_subscription
    credential = create_credential(invocation)
    options = transport_options(invocation)
    identity = AzureIdentityService(SubscriptionClient(credential, **options), subscription_id)

    if not workflow.needs_cost:
        resource = AzureComputeService(
            ComputeManagementClient(credential, subscription_id, **options),
            NetworkManagementClient(credential, subscription_id, **options),
            AzureReservationAPI(credential, **options),
            reservation_window_days=invocation.reservation_window_days,
        )
        return ProviderCapabilitySet(provider="azure", identity=identity, resource=resource)

    cost = AzureCostService(CostManagementClient(credential, **options), subscription_id)
    return ProviderCapabilitySet(provider="azure", identity=identity, cost=cost)


async def list_subscriptions(invocation) -> list[dict[str, str]]:
    """Subscriptions visible to the configured Azure credential."""
    client = SubscriptionClient(create_credential(invocation), **transport_options(invocation))
    identity = AzureIdentityService(client, "")
    return await identity.list_subscriptions()


# Register the Azure provider with the factory
if AZURE_AVAILABLE:
    ProviderFactory.register_provider("azure", build_azure_capabilities)
else:
    logger.warning("Azure SDK not available, Azure provider not registered")
