"""
Data normalization utilities for multi-cloud cost and waste collection.

Translates each provider's native billing and resource shapes into the shared
model defined in providers.base, applying the same policies everywhere:
zero-amount services are dropped, missing currencies default to USD, trend
records only carry a period Total, hierarchical resource paths are shortened
to their trailing segment and unknown stop durations are recorded as -1.
"""

import calendar
import logging
import math
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, timezone
from typing import Any

from ..providers.base import (
    DEFAULT_CURRENCY,
    RESERVATION_STATUS_EXPIRED,
    RESERVATION_STATUS_EXPIRING,
    TOTAL_KEY,
    UNKNOWN_STOPPED_DAYS,
    VOLUME_STATUS_ATTACHED_STOPPED,
    VOLUME_STATUS_AVAILABLE,
    CostAmount,
    CostInfo,
    CostParseError,
    Reservation,
    StoppedInstance,
    UnusedIP,
    UnusedVolume,
)

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
STOPPED_INSTANCE_DAYS = 30
RESERVATION_WINDOW_DAYS = 30
TREND_MONTHS = 6

_TRANSITION_DATE_PATTERN = re.compile(r"\(([^)]+)\)")
_TRANSITION_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def format_date(value: date) -> str:
    """Render a period boundary as YYYY-MM-DD."""
    return value.strftime(DATE_FORMAT)


def format_total(amount: float, unit: str | None = None) -> str:
    """Format a period total as "<amount> <unit>" with two decimals."""
    return f"{amount:.2f} {unit or DEFAULT_CURRENCY}"


def parse_total_cost(total: str) -> tuple[float, str]:
    """
    Parse a formatted total such as "123.45 USD".

    Args:
        total: Formatted total string; a bare amount defaults to USD

    Returns:
        Tuple of (amount, currency unit)

    Raises:
        CostParseError: If the string is empty or the amount is not a finite number
    """
    parts = (total or "").split()
    if not parts or len(parts) > 2:
        raise CostParseError(f"Cannot parse cost total: {total!r}")

    try:
        amount = float(parts[0])
    except ValueError as e:
        raise CostParseError(f"Cannot parse cost amount in total: {total!r}") from e
    if not math.isfinite(amount):
        raise CostParseError(f"Cost total is not finite: {total!r}")

    unit = parts[1].upper() if len(parts) == 2 else DEFAULT_CURRENCY
    return amount, unit


def _coerce_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError) as e:
        raise CostParseError(f"Invalid cost amount: {value!r}") from e
    if not math.isfinite(amount):
        raise CostParseError(f"Cost amount is not finite: {value!r}")
    return amount


def normalize_cost_group(raw: Mapping[str, Any]) -> dict[str, CostAmount]:
    """
    Normalize a service -> cost mapping.

    Values may be CostAmount instances, (amount, unit) tuples or bare amounts.
    Services whose amount is zero are dropped, as are credits and refunds with
    negative amounts. Normalizing an already normalized group returns an equal
    group.

    Raises:
        CostParseError: If an amount is not numeric
    """
    normalized: dict[str, CostAmount] = {}
    for name, value in raw.items():
        if isinstance(value, CostAmount):
            amount, unit = value.amount, value.unit
        elif isinstance(value, tuple):
            amount, unit = value
        else:
            amount, unit = value, None

        amount = _coerce_amount(amount)
        if amount == 0:
            continue
        if amount < 0:
            logger.debug(f"Dropping non-positive cost entry {name}: {amount}")
            continue

        normalized[name or "Unknown"] = CostAmount(amount=amount, unit=unit)
    return normalized


def accumulate_cost_rows(rows: Iterable[tuple[str, Any, str | None]]) -> dict[str, CostAmount]:
    """Sum (service, amount, unit) rows per service, then normalize the result."""
    totals: dict[str, float] = defaultdict(float)
    units: dict[str, str | None] = {}
    for name, amount, unit in rows:
        totals[name] += _coerce_amount(amount)
        if not units.get(name):
            units[name] = unit

    return normalize_cost_group({name: (amount, units[name]) for name, amount in totals.items()})


def build_trend_record(start: date, end: date, amount: Any, unit: str | None = None) -> CostInfo:
    """A trend month carries only the Total entry; a month without spend keeps a zero Total."""
    total = CostAmount(amount=_coerce_amount(amount), unit=unit)
    return CostInfo(start=start, end=end, cost_group={TOTAL_KEY: total})


def first_of_month(day: date) -> date:
    return day.replace(day=1)


def last_of_month(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def shift_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping the day to the target month's length."""
    years, month_index = divmod(day.month - 1 + months, 12)
    year = day.year + years
    month = month_index + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def current_month_period(today: date) -> tuple[date, date]:
    """Month to date, both bounds inclusive."""
    return first_of_month(today), today


def last_month_period(today: date) -> tuple[date, date]:
    """The same span of the previous month, so both periods cover comparable days."""
    same_day = shift_months(today, -1)
    return first_of_month(same_day), same_day


def month_windows(today: date, count: int = TREND_MONTHS) -> list[tuple[date, date]]:
    """Inclusive bounds of the `count` complete months before today's month, oldest first."""
    current = first_of_month(today)
    windows = []
    for offset in range(count, 0, -1):
        start = shift_months(current, -offset)
        windows.append((start, last_of_month(start)))
    return windows


def exclusive_end(end: date) -> date:
    """Convert an inclusive end date into the exclusive bound billing APIs expect."""
    return end + timedelta(days=1)


def as_utc(value: datetime | date) -> datetime:
    """Coerce provider timestamps and dates into aware UTC datetimes."""
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp; None when it is missing or malformed."""
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.debug(f"Unparsable timestamp: {value}")
        return None


def parse_transition_date(reason: str | None) -> datetime | None:
    """
    Extract the stop time from an EC2 StateTransitionReason.

    AWS reports e.g. "User initiated (2024-01-15 10:30:00 GMT)".

    Returns:
        Aware UTC datetime, or None when the reason carries no parsable date
    """
    if not reason:
        return None

    match = _TRANSITION_DATE_PATTERN.search(reason)
    if not match:
        return None

    try:
        parsed = datetime.strptime(match.group(1), _TRANSITION_DATE_FORMAT)
    except ValueError:
        logger.debug(f"Unparsable transition reason: {reason}")
        return None
    return parsed.replace(tzinfo=timezone.utc)


def stopped_days_since(stopped_at: datetime | None, now: datetime) -> int:
    """Whole days since the stop time, or -1 when the stop time is unknown."""
    if stopped_at is None:
        return UNKNOWN_STOPPED_DAYS
    return max((now - as_utc(stopped_at)).days, 0)


def is_long_stopped(stopped_days: int, threshold_days: int = STOPPED_INSTANCE_DAYS) -> bool:
    """Unknown durations count as idle; known ones must exceed the threshold."""
    return stopped_days == UNKNOWN_STOPPED_DAYS or stopped_days > threshold_days


def classify_reservation(
    end: datetime | date,
    now: datetime,
    active: bool,
    window_days: int = RESERVATION_WINDOW_DAYS,
) -> tuple[str, int] | None:
    """
    Decide whether a reservation is expiring soon or expired recently.

    Returns:
        Tuple of (status, days until expiry), or None when outside both windows
    """
    end = as_utc(end)
    window = timedelta(days=window_days)
    days_until_expiry = int((end - now).total_seconds() / 86400)

    if active and now < end <= now + window:
        return RESERVATION_STATUS_EXPIRING, days_until_expiry
    if now - window < end <= now:
        return RESERVATION_STATUS_EXPIRED, days_until_expiry
    return None


def extract_resource_name(path: str | None) -> str:
    """Trailing segment of a GCP resource URL or Azure resource ID."""
    if not path:
        return ""
    return path.rstrip("/").rsplit("/", 1)[-1]


def extract_resource_group(resource_id: str | None) -> str:
    """Resource group name from an Azure resource ID."""
    parts = (resource_id or "").strip("/").split("/")
    for index, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[index + 1]
    return ""


class AWSNormalizer:
    """Translate Cost Explorer and EC2 responses."""

    METRIC = "UnblendedCost"

    @classmethod
    def cost_info(cls, response: dict[str, Any], start: date, end: date) -> CostInfo:
        """Service breakdown from a get_cost_and_usage response grouped by SERVICE."""
        rows = []
        for period in response.get("ResultsByTime", []):
            for group in period.get("Groups", []):
                keys = group.get("Keys") or ["Unknown"]
                metric = group.get("Metrics", {}).get(cls.METRIC, {})
                rows.append((keys[0], metric.get("Amount", 0), metric.get("Unit")))
        return CostInfo(start=start, end=end, cost_group=accumulate_cost_rows(rows))

    @classmethod
    def total(cls, response: dict[str, Any]) -> str:
        """Formatted total from an ungrouped get_cost_and_usage response."""
        amount = 0.0
        unit = None
        for period in response.get("ResultsByTime", []):
            metric = period.get("Total", {}).get(cls.METRIC, {})
            amount += _coerce_amount(metric.get("Amount", 0))
            unit = unit or metric.get("Unit")
        return format_total(amount, unit)

    @classmethod
    def trend(cls, response: dict[str, Any]) -> list[CostInfo]:
        """One Total-only record per monthly result, in API order."""
        records = []
        for period in response.get("ResultsByTime", []):
            time_period = period["TimePeriod"]
            start = date.fromisoformat(time_period["Start"])
            end = date.fromisoformat(time_period["End"]) - timedelta(days=1)
            metric = period.get("Total", {}).get(cls.METRIC, {})
            records.append(
                build_trend_record(start, max(start, end), metric.get("Amount", 0), metric.get("Unit"))
            )
        return records

    @staticmethod
    def unused_ips(addresses: Iterable[dict[str, Any]]) -> list[UnusedIP]:
        return [
            UnusedIP(address=address.get("PublicIp", ""), allocation_id=address.get("AllocationId", ""))
            for address in addresses
            if not address.get("AssociationId")
        ]

    @staticmethod
    def volume(volume: dict[str, Any], status: str = VOLUME_STATUS_AVAILABLE) -> UnusedVolume:
        return UnusedVolume(id=volume["VolumeId"], size_gb=volume.get("Size", 0), status=status)

    @staticmethod
    def instance_name(instance: dict[str, Any]) -> str:
        for tag in instance.get("Tags", []):
            if tag.get("Key") == "Name":
                return tag.get("Value", "")
        return ""

    @classmethod
    def stopped_instance(cls, instance: dict[str, Any], now: datetime) -> StoppedInstance:
        stopped_at = parse_transition_date(instance.get("StateTransitionReason"))
        return StoppedInstance(
            id=instance["InstanceId"],
            name=cls.instance_name(instance),
            stopped_days=stopped_days_since(stopped_at, now),
        )

    @staticmethod
    def attached_volume_ids(instance: dict[str, Any]) -> list[str]:
        return [
            mapping["Ebs"]["VolumeId"]
            for mapping in instance.get("BlockDeviceMappings", [])
            if mapping.get("Ebs", {}).get("VolumeId")
        ]

    @staticmethod
    def reservation(
        reserved_instance: dict[str, Any], now: datetime, window_days: int = RESERVATION_WINDOW_DAYS
    ) -> Reservation | None:
        end = reserved_instance.get("End")
        if end is None:
            return None

        classified = classify_reservation(
            end, now, reserved_instance.get("State") == "active", window_days
        )
        if classified is None:
            return None

        status, days = classified
        return Reservation(
            id=reserved_instance["ReservedInstancesId"],
            instance_type=reserved_instance.get("InstanceType", ""),
            status=status,
            days_until_expiry=days,
        )


class GCPNormalizer:
    """Translate BigQuery billing export rows and Compute Engine resources."""

    @staticmethod
    def cost_info(rows: Iterable[Mapping[str, Any]], start: date, end: date) -> CostInfo:
        cost_rows = [(row["service"], row["total_cost"], row.get("currency")) for row in rows]
        return CostInfo(start=start, end=end, cost_group=accumulate_cost_rows(cost_rows))

    @staticmethod
    def total(rows: Iterable[Mapping[str, Any]]) -> str:
        amount = 0.0
        unit = None
        for row in rows:
            amount += _coerce_amount(row["total_cost"] or 0)
            unit = unit or row.get("currency")
        return format_total(amount, unit)

    @staticmethod
    def trend(rows: Iterable[Mapping[str, Any]], windows: list[tuple[date, date]]) -> list[CostInfo]:
        """
        Build one record per window from monthly rows.

        Rows carry a `month` (YYYYMM invoice month or a date), `total_cost` and
        `currency`. Months without any billing rows get a zero Total.
        """
        monthly: dict[str, tuple[float, str | None]] = {}
        for row in rows:
            month = row["month"]
            key = month.strftime("%Y%m") if isinstance(month, date) else str(month).replace("-", "")[:6]
            amount, unit = monthly.get(key, (0.0, None))
            monthly[key] = (amount + _coerce_amount(row["total_cost"] or 0), unit or row.get("currency"))

        records = []
        for start, end in windows:
            amount, unit = monthly.get(start.strftime("%Y%m"), (0.0, None))
            records.append(build_trend_record(start, end, amount, unit))
        return records

    @staticmethod
    def unused_volume(disk: Any) -> UnusedVolume | None:
        if list(disk.users) or disk.status != "READY":
            return None
        return UnusedVolume(id=disk.name, size_gb=int(disk.size_gb or 0))

    @staticmethod
    def unused_ip(address: Any) -> UnusedIP | None:
        if list(address.users) or address.status != "RESERVED":
            return None
        return UnusedIP(address=address.address, allocation_id=address.name)

    @staticmethod
    def stopped_instance(
        instance: Any, now: datetime, threshold_days: int = STOPPED_INSTANCE_DAYS
    ) -> tuple[StoppedInstance, list[UnusedVolume]] | None:
        """A TERMINATED instance stopped past the threshold, with its attached disks."""
        stopped_at = parse_timestamp(instance.last_stop_timestamp or instance.creation_timestamp)
        stopped_days = stopped_days_since(stopped_at, now)
        if not is_long_stopped(stopped_days, threshold_days):
            return None

        volumes = [
            UnusedVolume(
                id=extract_resource_name(disk.source),
                size_gb=int(disk.disk_size_gb or 0),
                status=VOLUME_STATUS_ATTACHED_STOPPED,
            )
            for disk in instance.disks
            if disk.source
        ]
        stopped = StoppedInstance(id=instance.name, name=instance.name, stopped_days=stopped_days)
        return stopped, volumes

    @staticmethod
    def reservation(
        commitment: Any, now: datetime, window_days: int = RESERVATION_WINDOW_DAYS
    ) -> Reservation | None:
        end = parse_timestamp(commitment.end_timestamp)
        if end is None:
            logger.warning(f"🟡 GCP: Commitment {commitment.name} has no usable end timestamp")
            return None

        classified = classify_reservation(end, now, commitment.status == "ACTIVE", window_days)
        if classified is None:
            return None

        status, days = classified
        return Reservation(
            id=commitment.name,
            instance_type=str(commitment.type_ or ""),
            status=status,
            days_until_expiry=days,
        )


class AzureNormalizer:
    """Translate Cost Management query results and ARM resources."""

    COST_COLUMNS = ("Cost", "totalCost", "PreTaxCost", "CostUSD")
    DEALLOCATED_PREFIX = "PowerState/deallocated"

    @classmethod
    def query_rows(cls, result: Any) -> list[dict[str, Any]]:
        """Zip a QueryResult's columns and rows into dicts."""
        columns = [column.name for column in result.columns or []]
        return [dict(zip(columns, row)) for row in result.rows or []]

    @classmethod
    def _cost_of(cls, row: Mapping[str, Any]) -> Any:
        for column in cls.COST_COLUMNS:
            if column in row:
                return row[column]
        return 0

    @classmethod
    def cost_info(cls, result: Any, start: date, end: date) -> CostInfo:
        rows = [
            (row.get("ServiceName") or "Unknown", cls._cost_of(row), row.get("Currency"))
            for row in cls.query_rows(result)
        ]
        return CostInfo(start=start, end=end, cost_group=accumulate_cost_rows(rows))

    @classmethod
    def total(cls, result: Any) -> str:
        amount = 0.0
        unit = None
        for row in cls.query_rows(result):
            amount += _coerce_amount(cls._cost_of(row))
            unit = unit or row.get("Currency")
        return format_total(amount, unit)

    @classmethod
    def trend_record(cls, result: Any, start: date, end: date) -> CostInfo:
        amount = 0.0
        unit = None
        for row in cls.query_rows(result):
            amount += _coerce_amount(cls._cost_of(row))
            unit = unit or row.get("Currency")
        return build_trend_record(start, end, amount, unit)

    @staticmethod
    def unused_volume(disk: Any) -> UnusedVolume | None:
        if disk.disk_state != "Unattached":
            return None
        return UnusedVolume(id=disk.name or "", size_gb=int(disk.disk_size_gb or 0))

    @staticmethod
    def unused_ip(public_ip: Any) -> UnusedIP | None:
        if public_ip.ip_configuration is not None:
            return None
        return UnusedIP(address=public_ip.ip_address or "", allocation_id=public_ip.name or "")

    @classmethod
    def is_deallocated(cls, instance_view: Any) -> bool:
        return any(
            (status.code or "").startswith(cls.DEALLOCATED_PREFIX)
            for status in instance_view.statuses or []
        )

    @staticmethod
    def stopped_instance(vm: Any) -> tuple[StoppedInstance, list[UnusedVolume]]:
        """Azure does not report when a VM was deallocated, so the duration is unknown."""
        volumes = []
        profile = vm.storage_profile
        if profile is not None:
            disks = [profile.os_disk] if profile.os_disk is not None else []
            disks.extend(profile.data_disks or [])
            for disk in disks:
                if disk.managed_disk is None or not disk.managed_disk.id:
                    continue
                volumes.append(
                    UnusedVolume(
                        id=extract_resource_name(disk.managed_disk.id),
                        size_gb=int(disk.disk_size_gb or 0),
                        status=VOLUME_STATUS_ATTACHED_STOPPED,
                    )
                )

        stopped = StoppedInstance(id=vm.name or "", name=vm.name or "", stopped_days=UNKNOWN_STOPPED_DAYS)
        return stopped, volumes

    @staticmethod
    def reservation(
        order: Any, now: datetime, window_days: int = RESERVATION_WINDOW_DAYS
    ) -> Reservation | None:
        expiry = getattr(order, "expiry_date_time", None) or order.expiry_date
        if expiry is None:
            return None

        active = order.provisioning_state == "Succeeded"
        classified = classify_reservation(expiry, now, active, window_days)
        if classified is None:
            return None

        status, days = classified
        return Reservation(
            id=order.name or "",
            instance_type=order.display_name or "",
            status=status,
            days_until_expiry=days,
        )
