"""
Text report rendering for multi-cloud cost and waste summaries.

Renders the aggregated summaries as plain text, ANSI-colored text or JSON.
When exactly one provider is in a report, the detail view for that provider
(service breakdown, trend bars or waste item tables) follows the summary.
"""

import json
import logging
import sys
from enum import Enum

from ..services.comparator import (
    STATUS_FAILED,
    STATUS_WASTE_FOUND,
    MultiCloudCostSummary,
    MultiCloudTrendSummary,
    MultiCloudWasteSummary,
    ProviderCostRow,
    ProviderTrendRow,
    ProviderWasteRow,
    TrendSummary,
)
from ..services.orchestrator import ProviderWasteResult

logger = logging.getLogger(__name__)

BAR_WIDTH = 40
UNKNOWN_DURATION = "unknown"


class OutputFormat(Enum):
    """Supported output formats for reports."""

    PLAIN = "plain"
    COLORED = "colored"
    JSON = "json"


class Color:
    """ANSI color codes for terminal output."""

    RED = "\033[91m"
    YELLOW = "\033[93m"
    GREEN = "\033[92m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    END = "\033[0m"  # Reset color


def supports_color() -> bool:
    """Check if the terminal supports color output."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def format_stopped_days(days: int) -> str:
    return UNKNOWN_DURATION if days < 0 else f"{days} days"


def format_change(difference: float, percent: float, currency: str) -> str:
    sign = "+" if difference >= 0 else "-"
    return f"{sign}{abs(difference):.2f} {currency} ({percent:+.1f}%)"


class ReportRenderer:
    """Formats aggregated summaries for one output format."""

    def __init__(self, output_format: OutputFormat = OutputFormat.PLAIN):
        self.output_format = output_format
        self.use_colors = output_format == OutputFormat.COLORED

    def _paint(self, text: str, color: str) -> str:
        if not self.use_colors:
            return text
        return f"{color}{text}{Color.END}"

    def _header(self, title: str) -> list[str]:
        return [self._paint(title, Color.BOLD), "=" * len(title)]

    def _change(self, difference: float, percent: float, currency: str) -> str:
        # Spending more is bad news
        text = format_change(difference, percent, currency)
        if difference > 0:
            return self._paint(text, Color.RED)
        if difference < 0:
            return self._paint(text, Color.GREEN)
        return text

    def _account(self, row) -> str:
        if row.account_name and row.account_name != row.account_id:
            return f"{row.account_id} ({row.account_name})"
        return row.account_id

    def _failed_line(self, provider: str, error: str | None) -> str:
        return f"{provider.upper():<8} {self._paint('FAILED', Color.RED)}  {error}"

    # Cost comparison

    def render_cost(self, summary: MultiCloudCostSummary) -> str:
        """Render the month-over-month comparison."""
        if self.output_format == OutputFormat.JSON:
            return json.dumps(summary.model_dump(mode="json"), indent=2)

        lines = self._header("Cloud cost comparison")
        lines.append(f"{'PROVIDER':<8} {'LAST MONTH':>16} {'THIS MONTH':>16}  CHANGE")
        for row in summary.providers:
            if row.error is not None:
                lines.append(self._failed_line(row.provider, row.error))
                continue
            comparison = row.comparison
            lines.append(
                f"{row.provider.upper():<8} "
                f"{comparison.last_total:>12.2f} {comparison.currency:<3} "
                f"{comparison.current_total:>12.2f} {comparison.currency:<3}  "
                f"{self._change(comparison.difference, comparison.percent_change, comparison.currency)}"
            )

        if len(summary.providers) > 1:
            lines.append("-" * 60)
            lines.append(
                f"{'TOTAL':<8} "
                f"{summary.total_last:>12.2f} {summary.currency:<3} "
                f"{summary.total_current:>12.2f} {summary.currency:<3}  "
                f"{self._change(summary.difference, summary.percent_change, summary.currency)}"
            )

        if len(summary.providers) == 1 and summary.providers[0].error is None:
            lines.append("")
            lines.extend(self._service_breakdown(summary.providers[0]))

        return "\n".join(lines)

    def _service_breakdown(self, row: ProviderCostRow) -> list[str]:
        lines = [self._paint(f"{row.provider.upper()} account {self._account(row)}", Color.CYAN)]
        if not row.services:
            lines.append("No service costs recorded.")
            return lines

        width = max(len("SERVICE"), *(len(delta.service) for delta in row.services))
        lines.append(f"{'SERVICE':<{width}} {'LAST MONTH':>14} {'THIS MONTH':>14}")
        for delta in row.services:
            lines.append(
                f"{delta.service:<{width}} "
                f"{delta.last_amount:>10.2f} {delta.unit:<3} "
                f"{delta.current_amount:>10.2f} {delta.unit:<3}"
            )
        return lines

    # Trend

    def render_trend(self, summary: MultiCloudTrendSummary) -> str:
        """Render six-month trend statistics."""
        if self.output_format == OutputFormat.JSON:
            return json.dumps(summary.model_dump(mode="json"), indent=2)

        lines = self._header("Six month cost trend")
        for row in summary.providers:
            lines.extend(self._trend_row(row))

        succeeded = [row for row in summary.providers if row.error is None]
        if len(summary.providers) > 1 and summary.combined.months:
            lines.append("")
            lines.append(self._paint("ALL PROVIDERS", Color.BOLD))
            lines.extend(self._trend_statistics(summary.combined))

        if len(summary.providers) == 1 and succeeded:
            lines.append("")
            lines.extend(self._trend_bars(succeeded[0].summary))

        return "\n".join(lines)

    def _trend_row(self, row: ProviderTrendRow) -> list[str]:
        if row.error is not None:
            return [self._failed_line(row.provider, row.error)]
        title = f"{row.provider.upper()} account {self._account(row)}"
        return [self._paint(title, Color.CYAN), *self._trend_statistics(row.summary)]

    def _trend_statistics(self, trend: TrendSummary) -> list[str]:
        if not trend.months:
            return ["  No cost history."]
        return [
            f"  Total:   {trend.total_spend:.2f} {trend.currency}",
            f"  Average: {trend.average_monthly:.2f} {trend.currency}",
            f"  Highest: {trend.highest_month} {trend.highest_amount:.2f} {trend.currency}",
            f"  Lowest:  {trend.lowest_month} {trend.lowest_amount:.2f} {trend.currency}",
        ]

    def _trend_bars(self, trend: TrendSummary) -> list[str]:
        lines = []
        scale = trend.highest_amount if trend.highest_amount > 0 else 1.0
        for month in trend.months:
            length = int(round(max(month.amount, 0) / scale * BAR_WIDTH))
            bar = self._paint("#" * length, Color.BLUE)
            lines.append(f"{month.month}  {bar}{' ' * (BAR_WIDTH - length)}  {month.amount:.2f} {trend.currency}")
        return lines

    # Waste

    def render_waste(
        self, summary: MultiCloudWasteSummary, results: list[ProviderWasteResult] | None = None
    ) -> str:
        """Render the idle resource inventory; item tables need the raw results."""
        results = results or []
        if self.output_format == OutputFormat.JSON:
            payload = summary.model_dump(mode="json")
            payload["details"] = [result.model_dump(mode="json") for result in results]
            return json.dumps(payload, indent=2)

        lines = self._header("Cloud waste report")
        lines.append(
            f"{'PROVIDER':<8} {'VOLUMES':>8} {'STORAGE':>10} {'IPS':>5} {'STOPPED':>8} "
            f"{'RESERVED':>9}  LONGEST STOPPED"
        )
        for row in summary.providers:
            lines.append(self._waste_row(row))

        if len(summary.providers) > 1:
            lines.append("-" * 72)
            lines.append(
                f"{'TOTAL':<8} {summary.unused_volumes:>8} {summary.unused_storage_gb:>7} GB "
                f"{summary.unused_ips:>5} {summary.stopped_instances:>8} {summary.expiring_reservations:>9}"
            )

        lines.append("")
        if summary.all_healthy:
            lines.append(self._paint("No waste found.", Color.GREEN))

        succeeded = [result for result in results if not result.failed]
        if len(summary.providers) == 1 and succeeded:
            lines.extend(self._waste_items(succeeded[0]))

        return "\n".join(lines).rstrip("\n")

    def _waste_row(self, row: ProviderWasteRow) -> str:
        if row.status == STATUS_FAILED:
            return self._failed_line(row.provider, row.error)

        parts = []
        if row.longest_stopped is not None:
            parts.append(f"{row.longest_stopped.id} ({format_stopped_days(row.longest_stopped.stopped_days)})")
        if row.unknown_stop_duration:
            parts.append(f"{row.unknown_stop_duration} {UNKNOWN_DURATION}")
        longest = ", ".join(parts) or "-"

        provider = row.provider.upper()
        if row.status == STATUS_WASTE_FOUND:
            provider = self._paint(f"{provider:<8}", Color.YELLOW)
        else:
            provider = f"{provider:<8}"
        return (
            f"{provider} {row.unused_volumes:>8} {row.unused_storage_gb:>7} GB {row.unused_ips:>5} "
            f"{row.stopped_instances:>8} {row.expiring_reservations:>9}  {longest}"
        )

    def _waste_items(self, result: ProviderWasteResult) -> list[str]:
        lines = []
        volumes = [*result.unused_volumes, *result.attached_volumes]
        if volumes:
            lines.append(self._paint("Unused volumes", Color.CYAN))
            for volume in volumes:
                lines.append(f"  {volume.id:<40} {volume.size_gb:>6} GB  {volume.status}")
        if result.unused_ips:
            lines.append(self._paint("Unused IP addresses", Color.CYAN))
            for ip in result.unused_ips:
                lines.append(f"  {ip.address:<20} {ip.allocation_id}")
        if result.stopped_instances:
            lines.append(self._paint("Stopped instances", Color.CYAN))
            for instance in result.stopped_instances:
                lines.append(
                    f"  {instance.id:<40} {instance.name:<24} {format_stopped_days(instance.stopped_days)}"
                )
        if result.reservations:
            lines.append(self._paint("Reservations", Color.CYAN))
            for reservation in result.reservations:
                lines.append(
                    f"  {reservation.id:<40} {reservation.instance_type:<16} "
                    f"{reservation.status:<9} {reservation.days_until_expiry} days"
                )
        return lines
