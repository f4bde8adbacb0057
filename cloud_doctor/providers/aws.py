"""
AWS provider adapters.

Identity from STS, costs from the Cost Explorer API and idle resources from
EC2, each normalized into the shared model.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Any

try:
    import boto3
    from botocore.config import Config
    from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

    AWS_AVAILABLE = True
except ImportError:
    AWS_AVAILABLE = False

from ..utils.blocking import run_blocking
from ..utils.data_normalizer import (
    RESERVATION_WINDOW_DAYS,
    STOPPED_INSTANCE_DAYS,
    VOLUME_STATUS_ATTACHED_STOPPED,
    AWSNormalizer,
    current_month_period,
    exclusive_end,
    format_date,
    is_long_stopped,
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
    Workflow,
)

logger = logging.getLogger(__name__)

THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequestsException"}
AUTH_CODES = {
    "UnauthorizedOperation",
    "AccessDenied",
    "AccessDeniedException",
    "AuthFailure",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
}
PARAMETER_CODES = {"InvalidParameterValue", "ValidationException", "DataUnavailableException"}


class AWSServiceBase:
    """Shared call path: run the blocking boto3 call off the event loop and map its errors."""

    max_retries = 3
    retry_delay = 1

    async def _call(self, method, **params) -> dict[str, Any]:
        for attempt in range(self.max_retries):
            try:
                return await run_blocking(method, **params)
            except ClientError as e:
                error_code = e.response["Error"]["Code"]
                if error_code in THROTTLING_CODES and attempt < self.max_retries - 1:
                    # Exponential backoff for throttling
                    await asyncio.sleep(self.retry_delay * (2**attempt))
                    continue
                self._handle_client_error(e)
            except NoCredentialsError as e:
                raise AuthenticationError(f"AWS credentials not found: {e}") from e
            except BotoCoreError as e:
                raise APIError(f"AWS request failed: {e}", provider="aws") from e

        raise APIError("Max retries exceeded for AWS API", provider="aws")

    async def _collect_pages(self, client, operation: str, key: str, **params) -> list[dict[str, Any]]:
        """Drain a boto3 paginator into one list of items."""

        def _drain():
            items = []
            for page in client.get_paginator(operation).paginate(**params):
                items.extend(page.get(key, []))
            return items

        return await self._call(_drain)

    def _handle_client_error(self, error: "ClientError"):
        """Handle AWS client errors appropriately."""
        error_code = error.response["Error"]["Code"]
        error_message = error.response["Error"].get("Message", "")

        if error_code in THROTTLING_CODES:
            raise RateLimitError(
                f"AWS API rate limit exceeded: {error_message}", provider="aws"
            ) from error
        elif error_code in AUTH_CODES:
            raise AuthenticationError(f"AWS unauthorized: {error_message}") from error
        elif error_code in PARAMETER_CODES:
            raise ConfigurationError(f"AWS invalid parameter: {error_message}") from error
        else:
            raise APIError(
                f"AWS API error ({error_code}): {error_message}",
                status_code=error.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
                provider="aws",
            ) from error


class AWSIdentityService(AWSServiceBase, IdentityService):
    """Caller identity from STS."""

    def __init__(self, sts_client):
        self.client = sts_client

    async def get_account_info(self) -> AccountInfo:
        identity = await self._call(self.client.get_caller_identity)
        return AccountInfo(provider="aws", account_id=identity["Account"], account_name=identity["Arn"])


class AWSCostService(AWSServiceBase, CostService):
    """Unblended monthly costs from Cost Explorer."""

    METRIC = AWSNormalizer.METRIC

    def __init__(self, ce_client, today: date | None = None):
        self.client = ce_client
        self.today = today

    def _today(self) -> date:
        return self.today or date.today()

    async def _get_cost_and_usage(self, start: date, end: date, group_by_service: bool) -> dict[str, Any]:
        params: dict[str, Any] = {
            "TimePeriod": {"Start": format_date(start), "End": format_date(exclusive_end(end))},
            "Granularity": "MONTHLY",
            "Metrics": [self.METRIC],
        }
        if group_by_service:
            params["GroupBy"] = [{"Type": "DIMENSION", "Key": "SERVICE"}]

        results = []
        while True:
            response = await self._call(self.client.get_cost_and_usage, **params)
            results.extend(response.get("ResultsByTime", []))
            token = response.get("NextPageToken")
            if not token:
                break
            params["NextPageToken"] = token

        logger.debug(f"🔵 AWS: {len(results)} result periods for {start} to {end}")
        return {"ResultsByTime": results}

    async def _costs_by_service(self, start: date, end: date) -> CostInfo:
        response = await self._get_cost_and_usage(start, end, group_by_service=True)
        return AWSNormalizer.cost_info(response, start, end)

    async def _total(self, start: date, end: date) -> str:
        response = await self._get_cost_and_usage(start, end, group_by_service=False)
        return AWSNormalizer.total(response)

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
        response = await self._get_cost_and_usage(windows[0][0], windows[-1][1], group_by_service=False)
        trend = AWSNormalizer.trend(response)
        logger.info(f"🔵 AWS: Retrieved {len(trend)} months of cost history")
        return trend


class AWSResourceService(AWSServiceBase, ResourceService):
    """Idle EC2 resources in one region."""

    def __init__(
        self,
        ec2_client,
        stopped_instance_days: int = STOPPED_INSTANCE_DAYS,
        reservation_window_days: int = RESERVATION_WINDOW_DAYS,
        now: datetime | None = None,
    ):
        self.client = ec2_client
        self.stopped_instance_days = stopped_instance_days
        self.reservation_window_days = reservation_window_days
        self.now = now

    def _now(self) -> datetime:
        return self.now or utc_now()

    async def get_unused_ips(self) -> list[UnusedIP]:
        response = await self._call(self.client.describe_addresses)
        return AWSNormalizer.unused_ips(response.get("Addresses", []))

    async def get_unused_volumes(self) -> list[UnusedVolume]:
        volumes = await self._collect_pages(
            self.client,
            "describe_volumes",
            "Volumes",
            Filters=[{"Name": "status", "Values": ["available"]}],
        )
        return [AWSNormalizer.volume(volume) for volume in volumes]

    async def get_stopped_instances(self) -> tuple[list[StoppedInstance], list[UnusedVolume]]:
        reservations = await self._collect_pages(
            self.client,
            "describe_instances",
            "Reservations",
            Filters=[{"Name": "instance-state-name", "Values": ["stopped"]}],
        )

        now = self._now()
        stopped_instances = []
        volume_ids = []
        for reservation in reservations:
            for instance in reservation.get("Instances", []):
                stopped = AWSNormalizer.stopped_instance(instance, now)
                if not is_long_stopped(stopped.stopped_days, self.stopped_instance_days):
                    continue
                stopped_instances.append(stopped)
                volume_ids.extend(AWSNormalizer.attached_volume_ids(instance))

        attached_volumes = []
        if volume_ids:
            volumes = await self._collect_pages(
                self.client, "describe_volumes", "Volumes", VolumeIds=volume_ids
            )
            attached_volumes = [
                AWSNormalizer.volume(volume, VOLUME_STATUS_ATTACHED_STOPPED) for volume in volumes
            ]

        logger.info(
            f"🔵 AWS: {len(stopped_instances)} instances stopped over "
            f"{self.stopped_instance_days} days, {len(attached_volumes)} attached volumes"
        )
        return stopped_instances, attached_volumes

    async def get_expiring_reservations(self) -> list[Reservation]:
        response = await self._call(
            self.client.describe_reserved_instances,
            Filters=[{"Name": "state", "Values": ["active", "retired"]}],
        )

        now = self._now()
        reservations = []
        for reserved_instance in response.get("ReservedInstances", []):
            reservation = AWSNormalizer.reservation(reserved_instance, now, self.reservation_window_days)
            if reservation is not None:
                reservations.append(reservation)
        return reservations


def client_config(invocation, **overrides) -> "Config":
    """Client config whose connect and read timeouts match the provider timeout."""
    timeout = invocation.provider_timeout
    return Config(connect_timeout=timeout, read_timeout=timeout, **overrides)


def build_aws_capabilities(invocation, workflow) -> ProviderCapabilitySet:
    """Create a boto3 session from the configured profile/region and wire the services."""
    session = boto3.Session(
        profile_name=invocation.aws_profile or None,
        region_name=invocation.aws_region or None,
    )
    identity = AWSIdentityService(session.client("sts", config=client_config(invocation)))

    if not workflow.needs_cost:
        resource = AWSResourceService(
            session.client("ec2", config=client_config(invocation)),
            stopped_instance_days=invocation.stopped_instance_days,
            reservation_window_days=invocation.reservation_window_days,
        )
        return ProviderCapabilitySet(provider="aws", identity=identity, resource=resource)

    # Cost Explorer is only available in us-east-1
    ce_config = client_config(
        invocation, region_name="us-east-1", retries={"max_attempts": 3, "mode": "adaptive"}
    )
    cost = AWSCostService(session.client("ce", config=ce_config))
    return ProviderCapabilitySet(provider="aws", identity=identity, cost=cost)


# Register the AWS provider with the factory
if AWS_AVAILABLE:
    ProviderFactory.register_provider("aws", build_aws_capabilities)
else:
    logger.warning("AWS SDK not available, AWS provider not registered")
