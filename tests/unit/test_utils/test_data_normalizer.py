"""
Tests for the data normalization utilities.

Covers total parsing, cost group normalization, billing period arithmetic,
stop duration and reservation classification, and the per-provider
normalizers.
"""

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from cloud_doctor.providers.base import CostAmount, CostParseError
from cloud_doctor.utils.data_normalizer import (
    AWSNormalizer,
    AzureNormalizer,
    GCPNormalizer,
    accumulate_cost_rows,
    build_trend_record,
    classify_reservation,
    current_month_period,
    exclusive_end,
    extract_resource_group,
    extract_resource_name,
    format_total,
    is_long_stopped,
    last_month_period,
    month_windows,
    normalize_cost_group,
    parse_timestamp,
    parse_total_cost,
    parse_transition_date,
    shift_months,
    stopped_days_since,
)

NOW = datetime(2024, 7, 15, 12, 0, tzinfo=timezone.utc)


class TestTotals:
    """Test cases for formatting and parsing totals."""

    def test_format_total(self):
        assert format_total(1234.5, "USD") == "1234.50 USD"
        assert format_total(0, None) == "0.00 USD"

    def test_parse_total(self):
        assert parse_total_cost("120.00 USD") == (120.0, "USD")
        assert parse_total_cost("  7.5 eur ") == (7.5, "EUR")

    def test_parse_bare_amount_defaults_to_usd(self):
        assert parse_total_cost("42") == (42.0, "USD")

    @pytest.mark.parametrize("total", ["", "   ", "abc USD", "1 2 3", "nan USD", "inf USD", "-inf"])
    def test_parse_invalid_total(self, total):
        with pytest.raises(CostParseError):
            parse_total_cost(total)


class TestCostGroups:
    """Test cases for cost group normalization."""

    def test_drops_zero_and_negative_amounts(self):
        group = normalize_cost_group({"EC2": 10.0, "Tax": 0, "Credits": -5.0})
        assert group == {"EC2": CostAmount(amount=10.0, unit="USD")}

    def test_normalizing_twice_is_idempotent(self):
        raw = {"EC2": ("10.5", "USD"), "S3": ("0", "USD"), "Lambda": ("0.0000", None)}
        once = normalize_cost_group(raw)
        twice = normalize_cost_group(once)
        assert once == twice
        assert "S3" not in twice
        assert "Lambda" not in twice

    def test_empty_name_becomes_unknown(self):
        assert "Unknown" in normalize_cost_group({"": 3.0})

    def test_non_numeric_amount_raises(self):
        with pytest.raises(CostParseError):
            normalize_cost_group({"EC2": "lots"})

    @pytest.mark.parametrize("amount", ["nan", float("inf"), "-Infinity"])
    def test_non_finite_amount_raises(self, amount):
        with pytest.raises(CostParseError, match="not finite"):
            accumulate_cost_rows([("EC2", amount, "USD")])

    def test_accumulate_sums_rows(self):
        group = accumulate_cost_rows([("EC2", "1.5", "USD"), ("EC2", 2, None), ("S3", 0, "USD")])
        assert group == {"EC2": CostAmount(amount=3.5, unit="USD")}

    def test_trend_record_keeps_zero_total(self):
        record = build_trend_record(date(2024, 1, 1), date(2024, 1, 31), 0, None)
        assert record.cost_group["Total"].amount == 0.0
        assert list(record.cost_group) == ["Total"]


class TestPeriods:
    """Test cases for billing period arithmetic."""

    def test_current_month_period(self):
        assert current_month_period(date(2024, 7, 15)) == (date(2024, 7, 1), date(2024, 7, 15))

    def test_last_month_period_clamps_day(self):
        assert last_month_period(date(2024, 3, 31)) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_last_month_period_crosses_year(self):
        assert last_month_period(date(2024, 1, 10)) == (date(2023, 12, 1), date(2023, 12, 10))

    def test_shift_months(self):
        assert shift_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert shift_months(date(2024, 1, 15), -13) == date(2022, 12, 15)

    def test_month_windows_are_complete_months_oldest_first(self):
        windows = month_windows(date(2024, 7, 15))
        assert len(windows) == 6
        assert windows[0] == (date(2024, 1, 1), date(2024, 1, 31))
        assert windows[1] == (date(2024, 2, 1), date(2024, 2, 29))
        assert windows[-1] == (date(2024, 6, 1), date(2024, 6, 30))

    def test_exclusive_end(self):
        assert exclusive_end(date(2024, 6, 30)) == date(2024, 7, 1)


class TestStopDurations:
    """Test cases for stop time parsing and idleness."""

    def test_parse_transition_date(self):
        parsed = parse_transition_date("User initiated (2024-01-15 10:30:00 GMT)")
        assert parsed == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("reason", [None, "", "User initiated", "User initiated (yesterday)"])
    def test_unparsable_transition_reason(self, reason):
        assert parse_transition_date(reason) is None

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-06-01T00:00:00.000-07:00") == datetime(
            2024, 6, 1, 7, 0, tzinfo=timezone.utc
        )
        assert parse_timestamp("not a time") is None
        assert parse_timestamp(None) is None

    def test_stopped_days(self):
        assert stopped_days_since(NOW - timedelta(days=45, hours=3), NOW) == 45
        assert stopped_days_since(None, NOW) == -1
        assert stopped_days_since(NOW + timedelta(days=1), NOW) == 0

    def test_is_long_stopped(self):
        assert is_long_stopped(31, 30)
        assert not is_long_stopped(30, 30)
        assert is_long_stopped(-1, 30)


class TestReservations:
    """Test cases for reservation classification."""

    def test_active_reservation_ending_soon_is_expiring(self):
        assert classify_reservation(NOW + timedelta(days=10), NOW, True) == ("expiring", 10)

    def test_inactive_reservation_ending_soon_is_ignored(self):
        assert classify_reservation(NOW + timedelta(days=10), NOW, False) is None

    def test_recently_ended_reservation_is_expired(self):
        status, days = classify_reservation(NOW - timedelta(days=5), NOW, False)
        assert status == "expired"
        assert days == -5

    def test_reservations_outside_windows(self):
        assert classify_reservation(NOW + timedelta(days=31), NOW, True) is None
        assert classify_reservation(NOW - timedelta(days=31), NOW, False) is None

    def test_date_end_is_treated_as_utc_midnight(self):
        status, _ = classify_reservation(date(2024, 7, 20), NOW, True)
        assert status == "expiring"


class TestResourcePaths:
    """Test cases for resource path shortening."""

    def test_extract_resource_name(self):
        assert extract_resource_name("https://www.googleapis.com/compute/v1/projects/p/zones/z/disks/d1") == "d1"
        assert extract_resource_name(None) == ""

    def test_extract_resource_group(self):
        resource_id = "/subscriptions/s/resourceGroups/rg-prod/providers/Microsoft.Compute/virtualMachines/vm1"
        assert extract_resource_group(resource_id) == "rg-prod"
        assert extract_resource_group("") == ""


@pytest.mark.aws
class TestAWSNormalizer:
    """Test cases for Cost Explorer and EC2 translation."""

    def test_cost_info_groups_by_service(self):
        response = {
            "ResultsByTime": [
                {
                    "Groups": [
                        {"Keys": ["Amazon EC2"], "Metrics": {"UnblendedCost": {"Amount": "80.5", "Unit": "USD"}}},
                        {"Keys": ["Tax"], "Metrics": {"UnblendedCost": {"Amount": "0", "Unit": "USD"}}},
                    ]
                }
            ]
        }
        info = AWSNormalizer.cost_info(response, date(2024, 7, 1), date(2024, 7, 15))
        assert info.cost_group == {"Amazon EC2": CostAmount(amount=80.5, unit="USD")}

    def test_total(self):
        response = {"ResultsByTime": [{"Total": {"UnblendedCost": {"Amount": "120", "Unit": "USD"}}}]}
        assert AWSNormalizer.total(response) == "120.00 USD"

    def test_trend_uses_inclusive_end(self):
        response = {
            "ResultsByTime": [
                {
                    "TimePeriod": {"Start": "2024-01-01", "End": "2024-02-01"},
                    "Total": {"UnblendedCost": {"Amount": "0", "Unit": "USD"}},
                }
            ]
        }
        [record] = AWSNormalizer.trend(response)
        assert record.end == date(2024, 1, 31)
        assert record.cost_group["Total"].amount == 0

    def test_unused_ips_skip_associated(self):
        ips = AWSNormalizer.unused_ips(
            [
                {"PublicIp": "1.2.3.4", "AllocationId": "eipalloc-1"},
                {"PublicIp": "5.6.7.8", "AllocationId": "eipalloc-2", "AssociationId": "eipassoc-1"},
            ]
        )
        assert [ip.address for ip in ips] == ["1.2.3.4"]

    def test_stopped_instance_with_unknown_date(self):
        instance = {"InstanceId": "i-1", "StateTransitionReason": "", "Tags": [{"Key": "Name", "Value": "web"}]}
        stopped = AWSNormalizer.stopped_instance(instance, NOW)
        assert stopped.name == "web"
        assert stopped.stopped_days == -1

    def test_reservation(self):
        reserved = {
            "ReservedInstancesId": "ri-1",
            "InstanceType": "m5.large",
            "State": "active",
            "End": NOW + timedelta(days=7),
        }
        reservation = AWSNormalizer.reservation(reserved, NOW)
        assert reservation.status == "expiring"
        assert reservation.days_until_expiry == 7


@pytest.mark.gcp
class TestGCPNormalizer:
    """Test cases for billing export and Compute Engine translation."""

    def test_trend_fills_missing_months(self):
        windows = month_windows(date(2024, 7, 15))
        rows = [
            {"month": "202401", "total_cost": 10.0, "currency": "USD"},
            {"month": "202403", "total_cost": 5.0, "currency": "USD"},
            {"month": "202403", "total_cost": 2.5, "currency": "USD"},
        ]
        trend = GCPNormalizer.trend(rows, windows)
        assert [record.total_amount for record in trend] == [10.0, 0.0, 7.5, 0.0, 0.0, 0.0]

    def test_unused_volume(self):
        disk = SimpleNamespace(name="d1", users=[], status="READY", size_gb=100)
        attached = SimpleNamespace(name="d2", users=["instance"], status="READY", size_gb=10)
        assert GCPNormalizer.unused_volume(disk).size_gb == 100
        assert GCPNormalizer.unused_volume(attached) is None

    def test_stopped_instance_falls_back_to_creation_time(self):
        instance = SimpleNamespace(
            name="vm-1",
            last_stop_timestamp="",
            creation_timestamp="2024-01-01T00:00:00Z",
            disks=[SimpleNamespace(source="projects/p/zones/z/disks/boot", disk_size_gb=20)],
        )
        stopped, volumes = GCPNormalizer.stopped_instance(instance, NOW)
        assert stopped.stopped_days > 30
        assert volumes[0].id == "boot"
        assert volumes[0].status == "attached_stopped"


@pytest.mark.azure
class TestAzureNormalizer:
    """Test cases for Cost Management and ARM translation."""

    @staticmethod
    def _result(columns, rows):
        return SimpleNamespace(columns=[SimpleNamespace(name=name) for name in columns], rows=rows)

    def test_cost_info_groups_rows_by_service(self):
        result = self._result(
            ["Cost", "UsageDate", "ServiceName", "Currency"],
            [[1.5, 20240701, "Storage", "USD"], [2.0, 20240702, "Storage", "USD"], [0, 20240701, "Bandwidth", "USD"]],
        )
        info = AzureNormalizer.cost_info(result, date(2024, 7, 1), date(2024, 7, 15))
        assert info.cost_group == {"Storage": CostAmount(amount=3.5, unit="USD")}

    def test_total_nets_credits(self):
        result = self._result(["Cost", "Currency"], [[100, "EUR"], [-30, "EUR"]])
        assert AzureNormalizer.total(result) == "70.00 EUR"

    def test_total_matches_trend_record(self):
        result = self._result(["Cost", "Currency"], [[10, "EUR"], [-2, "EUR"], [5, "EUR"]])
        record = AzureNormalizer.trend_record(result, date(2024, 7, 1), date(2024, 7, 31))
        assert AzureNormalizer.total(result) == "13.00 EUR"
        assert record.cost_group["Total"].amount == 13.0

    def test_deallocated(self):
        view = SimpleNamespace(
            statuses=[
                SimpleNamespace(code="ProvisioningState/succeeded"),
                SimpleNamespace(code="PowerState/deallocated"),
            ]
        )
        assert AzureNormalizer.is_deallocated(view)

    def test_stopped_instance_has_unknown_duration(self):
        disk_id = "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/disks/os-disk"
        vm = SimpleNamespace(
            name="vm-1",
            storage_profile=SimpleNamespace(
                os_disk=SimpleNamespace(managed_disk=SimpleNamespace(id=disk_id), disk_size_gb=128),
                data_disks=[],
            ),
        )
        stopped, volumes = AzureNormalizer.stopped_instance(vm)
        assert stopped.stopped_days == -1
        assert volumes[0].id == "os-disk"
