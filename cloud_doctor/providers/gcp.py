"""
Google Cloud Platform (GCP) provider adapters.

Project identity from Resource Manager, costs from the BigQuery billing
export and idle resources from the Compute Engine API.
"""

import logging
from datetime import date, datetime
from typing import Any

try:
    from google.api_core.exceptions import (
        BadRequest,
        Forbidden,
        GoogleAPICallError,
        NotFound,
        PermissionDenied,
        ResourceExhausted,
        TooManyRequests,
        Unauthenticated,
        Unauthorized,
    )
    from google.auth.exceptions import DefaultCredentialsError
    from google.cloud import bigquery, compute_v1, resourcemanager_v3

    GCP_AVAILABLE = True
except ImportError:
    GCP_AVAILABLE = False

from ..utils.blocking import run_blocking
from ..utils.data_normalizer import (
    RESERVATION_WINDOW_DAYS,
    STOPPED_INSTANCE_DAYS,
    GCPNormalizer,
    current_month_period,
    exclusive_end,
    last_month_period,
    month_windows,
    utc_now,
)
from .base import (
    AccountInfo,
    APIError,
    AuthenticationError,
    ConfigurationError,
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

BILLING_TABLE_PREFIX = "gcp_billing_export_v1_"
STOPPED_INSTANCE_STATUS = "TERMINATED"


def billing_table_name(project_id: str, dataset: str, billing_account: str) -> str:
    """Fully qualified billing export table for a billing account."""
    account = billing_account.replace("billingAccounts/", "").replace("-", "_")
    return f"{project_id}.{dataset}.{BILLING_TABLE_PREFIX}{account}"


class GCPServiceBase:
    """Shared call path: run the blocking client call off the event loop and map its errors."""

    timeout: float | None = None

    def _rpc_options(self) -> dict[str, float]:
        """Per-request deadline passed to client calls when a timeout is set."""
        return {"timeout": self.timeout} if self.timeout else {}

    async def _call(self, func, *args, **kwargs):
        try:
            return await run_blocking(func, *args, **kwargs)
        except DefaultCredentialsError as e:
            raise AuthenticationError(f"GCP credentials not found: {e}") from e
        except GoogleAPICallError as e:
            self._handle_gcp_error(e)

    def _handle_gcp_error(self, error: "GoogleAPICallError"):
        """Handle GCP API errors appropriately."""
        if isinstance(error, (ResourceExhausted, TooManyRequests)):
            raise RateLimitError(f"GCP API quota exceeded: {error}", provider="gcp") from error
        elif isinstance(error, (PermissionDenied, Unauthenticated, Forbidden, Unauthorized)):
            raise AuthenticationError(f"GCP permission denied: {error}") from error
        elif isinstance(error, (NotFound, BadRequest)):
            raise ConfigurationError(f"GCP resource not found or invalid: {error}") from error
        else:
            raise APIError(f"GCP API error: {error}", status_code=error.code, provider="gcp") from error


class GCPIdentityService(GCPServiceBase, IdentityService):
    """Project identity from Resource Manager."""

    def __init__(self, projects_client, project_id: str, timeout: float | None = None):
        self.client = projects_client
        self.project_id = project_id
        self.timeout = timeout

    async def get_account_info(self) -> AccountInfo:
        project = await self._call(
            self.client.get_project, name=f"projects/{self.project_id}", **self._rpc_options()
        )
        return AccountInfo(provider="gcp", account_id=self.project_id, account_name=project.display_name or "")


class GCPBillingService(GCPServiceBase, CostService):
    """Project costs from the BigQuery billing export."""

    SERVICE_QUERY = """
        SELECT
            service.description AS service,
            SUM(cost) AS total_cost,
            currency
        FROM `{table}`
        WHERE
            project.id = @project_id
            AND DATE(usage_start_time) >= @start_date
            AND DATE(usage_start_time) < @end_date
        GROUP BY service, currency
        HAVING SUM(cost) > 0
        ORDER BY total_cost DESC
    """

    TOTAL_QUERY = """
        SELECT
            SUM(cost) AS total_cost,
            currency
        FROM `{table}`
        WHERE
            project.id = @project_id
            AND DATE(usage_start_time) >= @start_date
            AND DATE(usage_start_time) < @end_date
        GROUP BY currency
    """

    TREND_QUERY = """
        SELECT
            FORMAT_DATE('%Y%m', DATE(usage_start_time)) AS month,
            SUM(cost) AS total_cost,
            currency
        FROM `{table}`
        WHERE
            project.id = @project_id
            AND DATE(usage_start_time) >= @start_date
            AND DATE(usage_start_time) < @end_date
        GROUP BY month, currency
        ORDER BY month
    """

    def __init__(
        self,
        bigquery_client,
        project_id: str,
        billing_account: str,
        dataset: str = "billing_export",
        today: date | None = None,
        timeout: float | None = None,
    ):
        self.client = bigquery_client
        self.project_id = project_id
        self.table = billing_table_name(project_id, dataset, billing_account)
        self.today = today
        self.timeout = timeout

    def _today(self) -> date:
        return self.today or date.today()

    async def _query(self, template: str, start: date, end: date) -> list[dict[str, Any]]:
        """Run a billing query over [start, end] inclusive and return plain dict rows."""
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("project_id", "STRING", self.project_id),
                bigquery.ScalarQueryParameter("start_date", "DATE", start),
                bigquery.ScalarQueryParameter("end_date", "DATE", exclusive_end(end)),
            ]
        )
        query = template.format(table=self.table)
        options = self._rpc_options()

        def _run():
            job = self.client.query(query, job_config=job_config, **options)
            return [dict(row.items()) for row in job.result(**options)]

        rows = await self._call(_run)
        logger.debug(f"🟡 GCP: {len(rows)} billing rows for {start} to {end}")
        return rows

    async def _costs_by_service(self, start: date, end: date) -> CostInfo:
        rows = await self._query(self.SERVICE_QUERY, start, end)
        return GCPNormalizer.cost_info(rows, start, end)

    async def _total(self, start: date, end: date) -> str:
        rows = await self._query(self.TOTAL_QUERY, start, end)
        return GCPNormalizer.total(rows)

    async def get_current_month_costs_by_service(self) -> CostInfo:
        return await self._costs_by_service(*current_month_period(self._today()))

    async def get_last_month_costs_by_service(self) -> CostInfo:
        return await self._costs_by_service(*last_month_period(self._today()))

    async def get_current_month_total_costs(self) -> str:
        return await self._total(*current_month_period(self._today()))

    async def get_last_month_total_costs(self) -> str:
        return await self._total(*last_month_period(self._today()))

    async def get_last_six_months_costs(self) -> list[CostInfo]:
        windows = month_windows(self._today())
        rows = await self._query(self.TREND_QUERY, windows[0][0], windows[-1][1])
        trend = GCPNormalizer.trend(rows, windows)
        logger.info(f"🟡 GCP: Retrieved {len(trend)} months of cost history")
        return trend


class GCPComputeService(GCPServiceBase, ResourceService):
    """Idle Compute Engine resources across all zones and regions of a project."""

    def __init__(
        self,
        project_id: str,
        disks_client,
        addresses_client,
        global_addresses_client,
        instances_client,
        commitments_client,
        stopped_instance_days: int = STOPPED_INSTANCE_DAYS,
        reservation_window_days: int = RESERVATION_WINDOW_DAYS,
        now: datetime | None = None,
        timeout: float | None = None,
    ):
        self.project_id = project_id
        self.timeout = timeout
        self.disks_client = disks_client
        self.addresses_client = addresses_client
        self.global_addresses_client = global_addresses_client
        self.instances_client = instances_client
        self.commitments_client = commitments_client
        self.stopped_instance_days = stopped_instance_days
        self.reservation_window_days = reservation_window_days
        self.now = now

    def _now(self) -> datetime:
        return self.now or utc_now()

    async def _aggregated(self, client, field: str) -> list[Any]:
        """Flatten an aggregated list into the items of every scope."""

        def _drain():
            items = []
            for _scope, scoped_list in client.aggregated_list(project=self.project_id, **self._rpc_options()):
                items.extend(getattr(scoped_list, field, None) or [])
            return items

        return await self._call(_drain)

    async def get_unused_volumes(self) -> list[UnusedVolume]:
        disks = await self._aggregated(self.disks_client, "disks")
        volumes = [volume for volume in map(GCPNormalizer.unused_volume, disks) if volume is not None]
        logger.debug(f"🟡 GCP: {len(volumes)} of {len(disks)} disks unattached")
        return volumes

    async def get_unused_ips(self) -> list[UnusedIP]:
        addresses = await self._aggregated(self.addresses_client, "addresses")
        global_addresses = await self._call(
            lambda: list(self.global_addresses_client.list(project=self.project_id, **self._rpc_options()))
        )
        return [
            ip
            for ip in map(GCPNormalizer.unused_ip, [*addresses, *global_addresses])
            if ip is not None
        ]

    async def get_stopped_instances(self) -> tuple[list[StoppedInstance], list[UnusedVolume]]:
        instances = await self._aggregated(self.instances_client, "instances")

        now = self._now()
        stopped_instances = []
        attached_volumes = []
        for instance in instances:
            if instance.status != STOPPED_INSTANCE_STATUS:
                continue
            found = GCPNormalizer.stopped_instance(instance, now, self.stopped_instance_days)
            if found is None:
                continue
            stopped, volumes = found
            stopped_instances.append(stopped)
            attached_volumes.extend(volumes)

        logger.info(
            f"🟡 GCP: {len(stopped_instances)} instances stopped over "
            f"{self.stopped_instance_days} days, {len(attached_volumes)} attached disks"
        )
        return stopped_instances, attached_volumes

    async def get_expiring_reservations(self) -> list[Reservation]:
        commitments = await self._aggregated(self.commitments_client, "commitments")

        now = self._now()
        reservations = []
        for commitment in commitments:
            reservation = GCPNormalizer.reservation(commitment, now, self.reservation_window_days)
            if reservation is not None:
                reservations.append(reservation)
        return reservations


def build_gcp_capabilities(invocation, workflow) -> ProviderCapabilitySet:
    """Create clients with application default credentials and wire the services."""
    try:
        return _build_gcp_capabilities(invocation, workflow)
    except DefaultCredentialsError as e:
        raise AuthenticationError(f"GCP credentials not found: {e}") from e


def _build_gcp_capabilities(invocation, workflow) -> ProviderCapabilitySet:
    project_id = invocation.gcp_project
    timeout = invocation.provider_timeout
    identity = GCPIdentityService(resourcemanager_v3.ProjectsClient(), project_id, timeout=timeout)

    if not workflow.needs_cost:
        resource = GCPComputeService(
            project_id,
            disks_client=compute_v1.DisksClient(),
            addresses_client=compute_v1.AddressesClient(),
            global_addresses_client=compute_v1.GlobalAddressesClient(),
            instances_client=compute_v1.InstancesClient(),
            commitments_client=compute_v1.RegionCommitmentsClient(),
            stopped_instance_days=invocation.stopped_instance_days,
            reservation_window_days=invocation.reservation_window_days,
            timeout=timeout,
        )
        return ProviderCapabilitySet(provider="gcp", identity=identity, resource=resource)

    cost = GCPBillingService(
        bigquery.Client(project=project_id),
        project_id,
        invocation.gcp_billing_account,
        dataset=invocation.gcp_billing_dataset,
        timeout=timeout,
    )
    return ProviderCapabilitySet(provider="gcp", identity=identity, cost=cost)


# Register the GCP provider with the factory
if GCP_AVAILABLE:
    ProviderFactory.register_provider("gcp", build_gcp_capabilities)
else:
    logger.warning("Google Cloud SDK not available, GCP provider not registered")
