"""
Tests for concurrent multi-provider collection.

Covers failure containment, deterministic ordering, timeouts and provider
resolution before any network call.
"""

import asyncio

import pytest

from cloud_doctor.config.settings import InvocationConfig
from cloud_doctor.providers.base import (
    AllProvidersFailedError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    NoProvidersConfiguredError,
    ProviderCapabilitySet,
    ProviderFactory,
    ProviderTimeoutError,
    Workflow,
)
from cloud_doctor.services.collector import MultiProviderCollector, sort_results
from cloud_doctor.services.orchestrator import ProviderCostResult
from tests.conftest import FakeCostService, FakeIdentityService, FakeResourceService


class TestProviderResolution:
    """Test cases for deciding which providers take part."""

    def test_no_providers_configured(self):
        collector = MultiProviderCollector()
        with pytest.raises(NoProvidersConfiguredError, match="^no providers configured"):
            collector.resolve_providers(InvocationConfig())

    def test_waste_guidance_mentions_project_only(self):
        collector = MultiProviderCollector()
        with pytest.raises(NoProvidersConfiguredError, match="--project for GCP"):
            collector.resolve_providers(InvocationConfig(workflow=Workflow.WASTE))

    def test_explicit_unconfigured_provider(self):
        collector = MultiProviderCollector()
        invocation = InvocationConfig(provider="gcp", gcp_project="my-project")
        with pytest.raises(ConfigurationError, match="billing-account"):
            collector.resolve_providers(invocation)

    def test_waste_does_not_need_billing_account(self):
        collector = MultiProviderCollector()
        invocation = InvocationConfig(workflow=Workflow.WASTE, gcp_project="my-project")
        assert collector.resolve_providers(invocation) == ["gcp"]

    def test_priority_order(self, all_providers_invocation):
        assert MultiProviderCollector().resolve_providers(all_providers_invocation) == ["aws", "gcp", "azure"]


class TestCollect:
    """Test cases for concurrent collection."""

    @pytest.mark.asyncio
    async def test_no_providers_fails_before_any_call(self, fake_factory):
        cost = FakeCostService()
        factory = fake_factory(costs={"aws": cost})
        with pytest.raises(NoProvidersConfiguredError):
            await MultiProviderCollector(factory).collect(InvocationConfig())
        assert cost.calls == []

    @pytest.mark.asyncio
    async def test_one_failure_is_contained(self, fake_factory, all_providers_invocation):
        factory = fake_factory(
            costs={
                "aws": FakeCostService(),
                "gcp": FakeCostService(error=AuthenticationError("permission denied")),
                "azure": FakeCostService(current_total="30.00 USD", last_total="20.00 USD"),
            }
        )

        results = await MultiProviderCollector(factory).collect(all_providers_invocation)

        assert len(results) == 3
        failed = [result for result in results if result.failed]
        assert [result.provider for result in failed] == ["gcp"]
        assert "permission denied" in str(failed[0].error)
        assert all(result.current_total for result in results if not result.failed)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", [0, 1, 2])
    async def test_n_results_for_k_failures(self, fake_factory, all_providers_invocation, failing):
        names = ["aws", "gcp", "azure"]
        factory = fake_factory(
            costs={
                name: FakeCostService(error=APIError("down") if index < failing else None)
                for index, name in enumerate(names)
            }
        )

        results = await MultiProviderCollector(factory).collect(all_providers_invocation)

        assert len(results) == 3
        assert sum(result.failed for result in results) == failing
        assert all(result.current_month is not None for result in results if not result.failed)

    @pytest.mark.asyncio
    async def test_all_failed(self, fake_factory, all_providers_invocation):
        factory = fake_factory(
            costs={name: FakeCostService(error=APIError(f"{name} down")) for name in ["aws", "gcp", "azure"]}
        )

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await MultiProviderCollector(factory).collect(all_providers_invocation)

        assert [result.provider for result in exc_info.value.results] == ["aws", "gcp", "azure"]

    @pytest.mark.asyncio
    async def test_order_independent_of_completion(self, fake_factory, all_providers_invocation):
        factory = fake_factory(
            costs={
                "aws": FakeCostService(delay=0.05),
                "gcp": FakeCostService(delay=0.02),
                "azure": FakeCostService(),
            }
        )

        results = await MultiProviderCollector(factory).collect(all_providers_invocation)

        assert [result.provider for result in results] == ["aws", "gcp", "azure"]

    @pytest.mark.asyncio
    async def test_providers_run_concurrently(self, fake_factory, all_providers_invocation):
        factory = fake_factory(costs={name: FakeCostService(delay=0.1) for name in ["aws", "gcp", "azure"]})

        loop = asyncio.get_running_loop()
        started = loop.time()
        await MultiProviderCollector(factory).collect(all_providers_invocation)

        # Four sequential calls of 0.1s per provider; run serially this would take 1.2s
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_timeout_fails_only_slow_provider(self, fake_factory, all_providers_invocation):
        factory = fake_factory(
            costs={"aws": FakeCostService(delay=5), "gcp": FakeCostService(), "azure": FakeCostService()}
        )

        results = await MultiProviderCollector(factory, provider_timeout=0.2).collect(
            all_providers_invocation
        )

        aws = results[0]
        assert aws.provider == "aws"
        assert isinstance(aws.error, ProviderTimeoutError)
        assert not results[1].failed
        assert not results[2].failed

    @pytest.mark.asyncio
    async def test_timeout_abandons_blocked_builder_thread(self, hung_factory, all_providers_invocation):
        factory = hung_factory(["aws"], costs={"gcp": FakeCostService(), "azure": FakeCostService()})

        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await MultiProviderCollector(factory, provider_timeout=0.2).collect(
            all_providers_invocation
        )

        assert loop.time() - started < 2.0
        assert isinstance(results[0].error, ProviderTimeoutError)
        assert [result.failed for result in results] == [True, False, False]

    @pytest.mark.asyncio
    async def test_only_configured_providers_run(self, fake_factory, aws_only_invocation):
        gcp = FakeCostService()
        factory = fake_factory(costs={"aws": FakeCostService(), "gcp": gcp})

        results = await MultiProviderCollector(factory).collect(aws_only_invocation)

        assert [result.provider for result in results] == ["aws"]
        assert gcp.calls == []

    @pytest.mark.asyncio
    async def test_builder_error_becomes_failed_result(self, all_providers_invocation):
        def broken(invocation, workflow):
            raise AuthenticationError("no credentials")

        def working(invocation, workflow):
            return ProviderCapabilitySet(
                provider="aws", identity=FakeIdentityService("aws"), cost=FakeCostService()
            )

        class Factory(ProviderFactory):
            _providers = {"aws": working, "gcp": broken, "azure": broken}

        results = await MultiProviderCollector(Factory).collect(all_providers_invocation)

        assert [result.failed for result in results] == [False, True, True]

    @pytest.mark.asyncio
    async def test_waste_results(self, fake_factory):
        factory = fake_factory(resources={"azure": FakeResourceService()})
        invocation = InvocationConfig(workflow=Workflow.WASTE, azure_subscription="sub")

        results = await MultiProviderCollector(factory).collect(invocation)

        assert results[0].provider == "azure"
        assert results[0].unused_volumes == []


class TestSortResults:
    """Test cases for result ordering."""

    def test_sorts_by_priority(self):
        results = [ProviderCostResult(provider=name) for name in ["azure", "aws", "gcp"]]
        assert [result.provider for result in sort_results(results)] == ["aws", "gcp", "azure"]
