"""
Pytest configuration and shared fixtures for cloud-doctor tests.

This module provides in-memory capability services, sample cost records and
invocation configs used across all test modules.
"""

import asyncio
import os
import threading
from collections.abc import Generator
from datetime import date, datetime, timezone

import pytest

from cloud_doctor.config.settings import InvocationConfig
from cloud_doctor.providers.base import (
    AccountInfo,
    CostAmount,
    CostInfo,
    CostService,
    IdentityService,
    ProviderCapabilitySet,
    ProviderFactory,
    Reservation,
    ResourceService,
    StoppedInstance,
    UnusedIP,
    UnusedVolume,
    Workflow,
)
from cloud_doctor.utils.data_normalizer import build_trend_record, month_windows

TODAY = date(2024, 7, 15)
NOW = datetime(2024, 7, 15, 12, 0, tzinfo=timezone.utc)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "aws: mark test as AWS-specific")
    config.addinivalue_line("markers", "azure: mark test as Azure-specific")
    config.addinivalue_line("markers", "gcp: mark test as GCP-specific")
    config.addinivalue_line("markers", "slow: mark test as slow running")


class FakeIdentityService(IdentityService):
    """Identity service returning a fixed account."""

    def __init__(self, provider: str, account_id: str = "123456789012", account_name: str = "test"):
        self.account = AccountInfo(provider=provider, account_id=account_id, account_name=account_name)
        self.calls = 0

    async def get_account_info(self) -> AccountInfo:
        self.calls += 1
        return self.account


class FakeCostService(CostService):
    """Cost service serving canned records, optionally failing or stalling."""

    def __init__(
        self,
        current: CostInfo | None = None,
        last: CostInfo | None = None,
        current_total: str = "120.00 USD",
        last_total: str = "100.00 USD",
        trend: list[CostInfo] | None = None,
        error: Exception | None = None,
        delay: float = 0,
    ):
        self.current = current or CostInfo(
            start=date(2024, 7, 1), end=TODAY, cost_group={"EC2": CostAmount(amount=120.0)}
        )
        self.last = last or CostInfo(
            start=date(2024, 6, 1), end=date(2024, 6, 15), cost_group={"EC2": CostAmount(amount=100.0)}
        )
        self.current_total = current_total
        self.last_total = last_total
        self.trend = trend if trend is not None else []
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def _respond(self, name: str, value):
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return value

    async def get_current_month_costs_by_service(self) -> CostInfo:
        return await self._respond("current_by_service", self.current)

    async def get_last_month_costs_by_service(self) -> CostInfo:
        return await self._respond("last_by_service", self.last)

    async def get_current_month_total_costs(self) -> str:
        return await self._respond("current_total", self.current_total)

    async def get_last_month_total_costs(self) -> str:
        return await self._respond("last_total", self.last_total)

    async def get_last_six_months_costs(self) -> list[CostInfo]:
        return await self._respond("six_months", self.trend)


class FakeResourceService(ResourceService):
    """Resource service serving canned idle resources."""

    def __init__(
        self,
        volumes: list[UnusedVolume] | None = None,
        attached: list[UnusedVolume] | None = None,
        ips: list[UnusedIP] | None = None,
        instances: list[StoppedInstance] | None = None,
        reservations: list[Reservation] | None = None,
        error: Exception | None = None,
    ):
        self.volumes = volumes or []
        self.attached = attached or []
        self.ips = ips or []
        self.instances = instances or []
        self.reservations = reservations or []
        self.error = error
        self.calls: list[str] = []

    def _check(self, name: str):
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    async def get_unused_volumes(self) -> list[UnusedVolume]:
        self._check("volumes")
        return self.volumes

    async def get_unused_ips(self) -> list[UnusedIP]:
        self._check("ips")
        return self.ips

    async def get_stopped_instances(self) -> tuple[list[StoppedInstance], list[UnusedVolume]]:
        self._check("instances")
        return self.instances, self.attached

    async def get_expiring_reservations(self) -> list[Reservation]:
        self._check("reservations")
        return self.reservations


def make_trend(amounts: list[float], unit: str = "USD") -> list[CostInfo]:
    """Six Total-only records for the months before TODAY."""
    return [
        build_trend_record(start, end, amount, unit)
        for (start, end), amount in zip(month_windows(TODAY, len(amounts)), amounts)
    ]


@pytest.fixture
def sample_cost_info() -> CostInfo:
    """Month-to-date service breakdown."""
    return CostInfo(
        start=date(2024, 7, 1),
        end=TODAY,
        cost_group={
            "Amazon EC2": CostAmount(amount=80.0),
            "Amazon S3": CostAmount(amount=25.5),
            "AWS Lambda": CostAmount(amount=14.5),
        },
    )


@pytest.fixture
def capability_sets():
    """Build a name -> ProviderCapabilitySet map from per-provider fake services."""

    def _build(costs: dict | None = None, resources: dict | None = None) -> dict:
        capabilities = {}
        for name in set(costs or {}) | set(resources or {}):
            capabilities[name] = ProviderCapabilitySet(
                provider=name,
                identity=FakeIdentityService(name, account_id=f"{name}-account"),
                cost=(costs or {}).get(name),
                resource=(resources or {}).get(name),
            )
        return capabilities

    return _build


@pytest.fixture
def fake_factory(capability_sets):
    """A ProviderFactory subclass whose registry serves fake capability sets."""

    def _build(costs: dict | None = None, resources: dict | None = None):
        capabilities = capability_sets(costs, resources)

        class FakeFactory(ProviderFactory):
            _providers = {
                name: (lambda invocation, workflow, name=name: capabilities[name])
                for name in capabilities
            }

        return FakeFactory

    return _build


@pytest.fixture
def hung_factory(capability_sets):
    """
    A factory whose builder for some providers blocks its thread, the way a
    hung SDK handshake does. Blocked builders are released at teardown.
    """
    release = threading.Event()

    def _build(hung: list[str], costs: dict | None = None):
        capabilities = capability_sets(costs)

        def _hang(invocation, workflow):
            release.wait(30)
            raise AssertionError("hung builder was released")

        class HungFactory(ProviderFactory):
            _providers = {
                **{name: (lambda invocation, workflow, name=name: capabilities[name]) for name in capabilities},
                **{name: _hang for name in hung},
            }

        return HungFactory

    yield _build
    release.set()


@pytest.fixture
def all_providers_invocation() -> InvocationConfig:
    """Invocation with every provider configured for the cost workflow."""
    return InvocationConfig(
        workflow=Workflow.DEFAULT,
        aws_region="us-east-1",
        gcp_project="my-project",
        gcp_billing_account="0123AB-4567CD-89EF01",
        azure_subscription="00000000-0000-0000-0000-000000000000",
    )


@pytest.fixture
def aws_only_invocation() -> InvocationConfig:
    return InvocationConfig(workflow=Workflow.DEFAULT, aws_region="us-east-1")


# Environment fixture
@pytest.fixture
def clean_env() -> Generator[dict[str, str], None, None]:
    """Provide a clean environment for testing."""
    original_env = os.environ.copy()
    # Clear environment variables that might affect tests
    for var in list(os.environ):
        if var.startswith("CLOUDDOCTOR_"):
            os.environ.pop(var, None)

    for var in [
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_REGION",
        "AWS_PROFILE",
        "AZURE_CLIENT_ID",
        "AZURE_CLIENT_SECRET",
        "AZURE_TENANT_ID",
        "GOOGLE_APPLICATION_CREDENTIALS",
    ]:
        os.environ.pop(var, None)

    yield os.environ

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)
