"""
Single-provider workflow orchestration.

Runs the short, fail-fast pipeline of capability calls one provider needs for
the selected workflow and assembles that provider's result record.
"""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer

from ..providers.base import (
    CostInfo,
    ProviderCapabilitySet,
    Reservation,
    StoppedInstance,
    UnusedIP,
    UnusedVolume,
    Workflow,
)
from ..utils.data_normalizer import parse_total_cost

logger = logging.getLogger(__name__)


class ProviderResult(BaseModel):
    """Fields shared by every per-provider outcome."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    provider: str
    account_id: str = ""
    account_name: str = ""
    error: Exception | None = None

    @field_serializer("error")
    def serialize_error(self, value: Exception | None) -> str | None:
        return str(value) if value is not None else None

    @property
    def failed(self) -> bool:
        """A result carrying an error is failed whatever else it holds."""
        return self.error is not None

    @classmethod
    def failure(cls, provider: str, error: Exception):
        return cls(provider=provider, error=error)


class ProviderCostResult(ProviderResult):
    """One provider's outcome for the cost comparison or trend workflow."""

    current_month: CostInfo | None = None
    last_month: CostInfo | None = None
    current_total: str = ""
    last_total: str = ""
    trend: list[CostInfo] = []


class ProviderWasteResult(ProviderResult):
    """One provider's outcome for the waste workflow."""

    unused_volumes: list[UnusedVolume] = []
    attached_volumes: list[UnusedVolume] = []
    unused_ips: list[UnusedIP] = []
    stopped_instances: list[StoppedInstance] = []
    reservations: list[Reservation] = []


class ProviderOrchestrator:
    """Sequences one provider's capability calls for a workflow."""

    def __init__(self, capabilities: ProviderCapabilitySet):
        self.capabilities = capabilities
        self.provider = capabilities.provider

    @staticmethod
    def result_type(workflow: Workflow) -> type[ProviderResult]:
        return ProviderWasteResult if workflow is Workflow.WASTE else ProviderCostResult

    async def run(self, workflow: Workflow) -> ProviderCostResult | ProviderWasteResult:
        """
        Execute the workflow pipeline.

        Any exception raised by a capability call aborts the pipeline and
        propagates unchanged; no partial result is produced.
        """
        logger.debug(f"Running {workflow.value} workflow for {self.provider}")
        if workflow is Workflow.WASTE:
            return await self._run_waste()
        if workflow is Workflow.TREND:
            return await self._run_trend()
        return await self._run_default()

    async def _run_default(self) -> ProviderCostResult:
        cost = self.capabilities.require_cost()

        current_month = await cost.get_current_month_costs_by_service()
        last_month = await cost.get_last_month_costs_by_service()
        current_total = await cost.get_current_month_total_costs()
        last_total = await cost.get_last_month_total_costs()

        # A malformed total fails this provider instead of being read as zero later
        parse_total_cost(current_total)
        parse_total_cost(last_total)

        account = await self.capabilities.identity.get_account_info()
        return ProviderCostResult(
            provider=self.provider,
            account_id=account.account_id,
            account_name=account.account_name,
            current_month=current_month,
            last_month=last_month,
            current_total=current_total,
            last_total=last_total,
        )

    async def _run_trend(self) -> ProviderCostResult:
        cost = self.capabilities.require_cost()

        trend = await cost.get_last_six_months_costs()
        account = await self.capabilities.identity.get_account_info()
        return ProviderCostResult(
            provider=self.provider,
            account_id=account.account_id,
            account_name=account.account_name,
            trend=trend,
        )

    async def _run_waste(self) -> ProviderWasteResult:
        resource = self.capabilities.require_resource()

        unused_ips = await resource.get_unused_ips()
        unused_volumes = await resource.get_unused_volumes()
        stopped_instances, attached_volumes = await resource.get_stopped_instances()
        reservations = await resource.get_expiring_reservations()
        account = await self.capabilities.identity.get_account_info()

        logger.info(
            f"{self.provider}: {len(unused_volumes)} unused volumes, {len(unused_ips)} unused IPs, "
            f"{len(stopped_instances)} stopped instances, {len(reservations)} reservations"
        )
        return ProviderWasteResult(
            provider=self.provider,
            account_id=account.account_id,
            account_name=account.account_name,
            unused_volumes=unused_volumes,
            attached_volumes=attached_volumes,
            unused_ips=unused_ips,
            stopped_instances=stopped_instances,
            reservations=reservations,
        )


def describe_result(result: Any) -> str:
    """Short log line for a finished provider result."""
    if result.failed:
        return f"{result.provider}: failed ({result.error})"
    return f"{result.provider}: ok (account {result.account_id})"
