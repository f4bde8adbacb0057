"""
Cost comparison and cross-provider aggregation.

Turns collected provider results into the summaries the reports show:
month-over-month deltas, service-level merges, six-month trend statistics
and waste inventories, with failed providers reported but never summed.
"""

import logging
from collections import defaultdict

from pydantic import BaseModel, Field, computed_field

from ..providers.base import DEFAULT_CURRENCY, CostInfo, StoppedInstance
from ..utils.data_normalizer import parse_total_cost
from .orchestrator import ProviderCostResult, ProviderWasteResult

logger = logging.getLogger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_WASTE_FOUND = "waste_found"
STATUS_FAILED = "failed"


def percent_change(current: float, last: float) -> float:
    """Relative change in percent; 0 when there is no positive baseline."""
    if last > 0:
        return (current - last) / last * 100
    return 0.0


class CostComparison(BaseModel):
    """Current vs. previous period totals for one provider."""

    current_total: float
    last_total: float
    difference: float
    percent_change: float
    currency: str = DEFAULT_CURRENCY


class ServiceCostDelta(BaseModel):
    """One service's cost in both compared periods."""

    service: str
    last_amount: float = 0.0
    current_amount: float = 0.0
    unit: str = DEFAULT_CURRENCY

    @computed_field
    @property
    def difference(self) -> float:
        return self.current_amount - self.last_amount


class MonthlyTotal(BaseModel):
    month: str
    amount: float


class TrendSummary(BaseModel):
    """Statistics over an ordered series of monthly totals."""

    months: list[MonthlyTotal] = Field(default_factory=list)
    total_spend: float = 0.0
    average_monthly: float = 0.0
    highest_month: str | None = None
    highest_amount: float = 0.0
    lowest_month: str | None = None
    lowest_amount: float = 0.0
    currency: str = DEFAULT_CURRENCY


class ProviderCostRow(BaseModel):
    provider: str
    account_id: str = ""
    account_name: str = ""
    comparison: CostComparison | None = None
    services: list[ServiceCostDelta] = Field(default_factory=list)
    error: str | None = None


class MultiCloudCostSummary(BaseModel):
    """Cost comparison across providers; failed providers add nothing to the totals."""

    providers: list[ProviderCostRow]
    total_current: float = 0.0
    total_last: float = 0.0
    difference: float = 0.0
    percent_change: float = 0.0
    currency: str = DEFAULT_CURRENCY

    @computed_field
    @property
    def failed_providers(self) -> list[str]:
        return [row.provider for row in self.providers if row.error is not None]


class ProviderTrendRow(BaseModel):
    provider: str
    account_id: str = ""
    account_name: str = ""
    summary: TrendSummary | None = None
    error: str | None = None


class MultiCloudTrendSummary(BaseModel):
    providers: list[ProviderTrendRow]
    combined: TrendSummary = Field(default_factory=TrendSummary)


class ProviderWasteRow(BaseModel):
    """Waste counts for one provider."""

    provider: str
    account_id: str = ""
    account_name: str = ""
    unused_volumes: int = 0
    unused_ips: int = 0
    stopped_instances: int = 0
    expiring_reservations: int = 0
    unused_storage_gb: int = 0
    unknown_stop_duration: int = 0
    longest_stopped: StoppedInstance | None = None
    status: str = STATUS_HEALTHY
    error: str | None = None

    @property
    def waste_count(self) -> int:
        return (
            self.unused_volumes + self.unused_ips + self.stopped_instances + self.expiring_reservations
        )


class MultiCloudWasteSummary(BaseModel):
    providers: list[ProviderWasteRow]
    unused_volumes: int = 0
    unused_ips: int = 0
    stopped_instances: int = 0
    expiring_reservations: int = 0
    unused_storage_gb: int = 0

    @computed_field
    @property
    def all_healthy(self) -> bool:
        """True only when every provider reported and none has waste."""
        return all(row.status == STATUS_HEALTHY for row in self.providers)


def compare_totals(current_total: str, last_total: str) -> CostComparison:
    """
    Compare two formatted totals.

    Raises:
        CostParseError: If either total cannot be parsed
    """
    current, currency = parse_total_cost(current_total)
    last, last_currency = parse_total_cost(last_total)
    if last_currency != currency:
        logger.warning(f"Comparing totals in different currencies: {currency} vs {last_currency}")

    difference = current - last
    return CostComparison(
        current_total=current,
        last_total=last,
        difference=difference,
        percent_change=percent_change(current, last),
        currency=currency,
    )


def merge_service_costs(last: CostInfo | None, current: CostInfo | None) -> list[ServiceCostDelta]:
    """
    Merge two periods' service breakdowns over the union of their services.

    A service missing from one period is shown with 0 for that period. Rows are
    ordered by current amount, then last amount, both descending.
    """
    last_group = last.cost_group if last else {}
    current_group = current.cost_group if current else {}

    deltas = []
    for service in set(last_group) | set(current_group):
        last_entry = last_group.get(service)
        current_entry = current_group.get(service)
        unit = (current_entry or last_entry).unit
        deltas.append(
            ServiceCostDelta(
                service=service,
                last_amount=last_entry.amount if last_entry else 0.0,
                current_amount=current_entry.amount if current_entry else 0.0,
                unit=unit,
            )
        )

    deltas.sort(key=lambda delta: (-delta.current_amount, -delta.last_amount, delta.service))
    return deltas


def summarize_trend(trend: list[CostInfo]) -> TrendSummary:
    """
    Total, average and extreme months of an ordered monthly series.

    Ties for highest or lowest go to the first month seen.
    """
    if not trend:
        return TrendSummary()

    months = [MonthlyTotal(month=record.month_label, amount=record.total_amount) for record in trend]
    return _summarize_months(months, trend[0].currency)


def aggregate_cost_results(results: list[ProviderCostResult]) -> MultiCloudCostSummary:
    """Per-provider comparisons plus totals over the providers that succeeded."""
    rows = []
    total_current = 0.0
    total_last = 0.0
    currencies: list[str] = []

    for result in results:
        if result.failed:
            rows.append(ProviderCostRow(provider=result.provider, error=str(result.error)))
            continue

        comparison = compare_totals(result.current_total, result.last_total)
        total_current += comparison.current_total
        total_last += comparison.last_total
        currencies.append(comparison.currency)
        rows.append(
            ProviderCostRow(
                provider=result.provider,
                account_id=result.account_id,
                account_name=result.account_name,
                comparison=comparison,
                services=merge_service_costs(result.last_month, result.current_month),
            )
        )

    if len(set(currencies)) > 1:
        logger.warning(f"Summing totals in mixed currencies: {sorted(set(currencies))}")

    difference = total_current - total_last
    return MultiCloudCostSummary(
        providers=rows,
        total_current=total_current,
        total_last=total_last,
        difference=difference,
        percent_change=percent_change(total_current, total_last),
        currency=currencies[0] if currencies else DEFAULT_CURRENCY,
    )


def aggregate_trend_results(results: list[ProviderCostResult]) -> MultiCloudTrendSummary:
    """Per-provider trend summaries plus a combined series summed month by month."""
    rows = []
    combined: dict[str, float] = defaultdict(float)
    currency = None

    for result in results:
        if result.failed:
            rows.append(ProviderTrendRow(provider=result.provider, error=str(result.error)))
            continue

        summary = summarize_trend(result.trend)
        for month in summary.months:
            combined[month.month] += month.amount
        currency = currency or (summary.currency if summary.months else None)
        rows.append(
            ProviderTrendRow(
                provider=result.provider,
                account_id=result.account_id,
                account_name=result.account_name,
                summary=summary,
            )
        )

    combined_summary = _summarize_months(
        [MonthlyTotal(month=month, amount=amount) for month, amount in sorted(combined.items())],
        currency or DEFAULT_CURRENCY,
    )
    return MultiCloudTrendSummary(providers=rows, combined=combined_summary)


def _summarize_months(months: list[MonthlyTotal], currency: str) -> TrendSummary:
    if not months:
        return TrendSummary(currency=currency)

    # max and min keep the first of equal elements
    highest = max(months, key=lambda month: month.amount)
    lowest = min(months, key=lambda month: month.amount)
    total_spend = sum(month.amount for month in months)
    return TrendSummary(
        months=months,
        total_spend=total_spend,
        average_monthly=total_spend / len(months),
        highest_month=highest.month,
        highest_amount=highest.amount,
        lowest_month=lowest.month,
        lowest_amount=lowest.amount,
        currency=currency,
    )


def longest_stopped_instance(instances: list[StoppedInstance]) -> StoppedInstance | None:
    """The instance stopped longest among those with a known stop duration."""
    known = [instance for instance in instances if instance.stopped_days_known]
    if not known:
        return None
    return max(known, key=lambda instance: instance.stopped_days)


def summarize_waste(result: ProviderWasteResult) -> ProviderWasteRow:
    """Waste counts for one provider; volumes include those attached to stopped instances."""
    if result.failed:
        return ProviderWasteRow(provider=result.provider, status=STATUS_FAILED, error=str(result.error))

    volumes = [*result.unused_volumes, *result.attached_volumes]
    row = ProviderWasteRow(
        provider=result.provider,
        account_id=result.account_id,
        account_name=result.account_name,
        unused_volumes=len(volumes),
        unused_ips=len(result.unused_ips),
        stopped_instances=len(result.stopped_instances),
        expiring_reservations=len(result.reservations),
        unused_storage_gb=sum(volume.size_gb for volume in volumes),
        unknown_stop_duration=sum(
            1 for instance in result.stopped_instances if not instance.stopped_days_known
        ),
        longest_stopped=longest_stopped_instance(result.stopped_instances),
    )
    if row.waste_count:
        return row.model_copy(update={"status": STATUS_WASTE_FOUND})
    return row


def aggregate_waste_results(results: list[ProviderWasteResult]) -> MultiCloudWasteSummary:
    """Waste rows per provider with totals over the providers that succeeded."""
    rows = [summarize_waste(result) for result in results]
    succeeded = [row for row in rows if row.error is None]
    return MultiCloudWasteSummary(
        providers=rows,
        unused_volumes=sum(row.unused_volumes for row in succeeded),
        unused_ips=sum(row.unused_ips for row in succeeded),
        stopped_instances=sum(row.stopped_instances for row in succeeded),
        expiring_reservations=sum(row.expiring_reservations for row in succeeded),
        unused_storage_gb=sum(row.unused_storage_gb for row in succeeded),
    )
