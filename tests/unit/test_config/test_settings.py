"""
Tests for configuration loading and invocation records.
"""

import pytest
from pydantic import ValidationError

from cloud_doctor.config.settings import (
    CloudConfig,
    InvocationConfig,
    provider_guidance,
    reload_config,
)
from cloud_doctor.providers.base import Workflow


class StubConfig(CloudConfig):
    """CloudConfig reading fixed provider sections instead of the shared settings."""

    aws = {"region": "eu-west-1", "profile": None}
    gcp = {"project_id": "file-project", "billing_account": "AAAAAA-BBBBBB-CCCCCC"}
    azure = {"subscription_id": None}
    collection = {"provider_timeout": 120}
    waste = {"stopped_instance_days": 14}


class TestInvocationConfig:
    """Test cases for InvocationConfig."""

    def test_defaults(self):
        invocation = InvocationConfig()
        assert invocation.workflow is Workflow.DEFAULT
        assert invocation.provider == "all"
        assert invocation.provider_timeout == 300.0
        assert invocation.configured_providers() == []

    def test_provider_normalized(self):
        assert InvocationConfig(provider=" AWS ").provider == "aws"

    def test_invalid_provider(self):
        with pytest.raises(ValidationError, match="Invalid provider"):
            InvocationConfig(provider="oracle")

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            InvocationConfig(provider_timeout=0)

    def test_frozen(self):
        invocation = InvocationConfig()
        with pytest.raises(ValidationError):
            invocation.aws_region = "us-east-1"

    def test_secret_not_in_repr(self):
        assert "hunter2" not in repr(InvocationConfig(azure_client_secret="hunter2"))

    @pytest.mark.parametrize(
        "values,provider,expected",
        [
            ({}, "aws", "AWS requires --region or --profile"),
            ({"aws_profile": "dev"}, "aws", None),
            ({}, "gcp", "GCP requires --project"),
            ({"gcp_project": "p"}, "gcp", "GCP cost queries require --billing-account"),
            ({"gcp_project": "p", "workflow": Workflow.WASTE}, "gcp", None),
            ({}, "azure", "Azure requires --subscription"),
            ({"azure_subscription": "s"}, "azure", None),
        ],
    )
    def test_missing_requirements(self, values, provider, expected):
        assert InvocationConfig(**values).missing_requirements(provider) == expected

    def test_configured_providers_in_priority_order(self):
        invocation = InvocationConfig(azure_subscription="s", aws_region="us-east-1")
        assert invocation.configured_providers() == ["aws", "azure"]

    def test_single_selection(self):
        invocation = InvocationConfig(provider="azure", azure_subscription="s", aws_region="us-east-1")
        assert invocation.selected_providers == ["azure"]
        assert invocation.configured_providers() == ["azure"]


class TestProviderGuidance:
    """Test cases for the no-providers guidance text."""

    def test_cost_workflows(self):
        guidance = provider_guidance(Workflow.DEFAULT)
        assert guidance == (
            "--region/--profile for AWS, --project/--billing-account for GCP, --subscription for Azure"
        )

    def test_waste_workflow(self):
        assert "--project for GCP" in provider_guidance(Workflow.WASTE)
        assert "--billing-account" not in provider_guidance(Workflow.WASTE)


class TestCloudConfig:
    """Test cases for turning settings into invocation records."""

    def test_settings_values(self):
        invocation = StubConfig().invocation(Workflow.DEFAULT)

        assert invocation.aws_region == "eu-west-1"
        assert invocation.gcp_project == "file-project"
        assert invocation.gcp_billing_dataset == "billing_export"
        assert invocation.provider_timeout == 120.0
        assert invocation.stopped_instance_days == 14
        assert invocation.reservation_window_days == 30

    def test_cli_arguments_take_precedence(self):
        config = StubConfig()
        invocation = config.invocation(
            Workflow.TREND,
            provider="aws",
            cli_args={"region": "us-west-2", "project": None, "subscription": "cli-sub", "timeout": 5.0},
        )

        assert invocation.workflow is Workflow.TREND
        assert invocation.provider == "aws"
        assert invocation.aws_region == "us-west-2"
        assert invocation.gcp_project == "file-project"
        assert invocation.azure_subscription == "cli-sub"
        assert invocation.provider_timeout == 5.0
        assert config.aws["region"] == "eu-west-1"

    def test_get_provider_config(self):
        config = StubConfig()
        assert config.get_provider_config("gcp")["project_id"] == "file-project"
        assert config.get_provider_config("oracle") == {}

    def test_invocation_reads_provider_sections(self):
        class PatchedConfig(StubConfig):
            def get_provider_config(self, provider):
                return {"azure": {"subscription_id": "section-sub"}}.get(provider, {})

        invocation = PatchedConfig().invocation(Workflow.DEFAULT)

        assert invocation.azure_subscription == "section-sub"
        assert invocation.aws_region is None
        assert invocation.configured_providers() == ["azure"]


class TestEnvironmentOverrides:
    """Test cases for CLOUDDOCTOR_ environment variables."""

    @pytest.fixture
    def reloaded(self, clean_env):
        yield
        reload_config()

    def test_env_sets_aws_region(self, reloaded, monkeypatch):
        monkeypatch.setenv("CLOUDDOCTOR_CLOUDS__AWS__REGION", "ap-south-1")
        config = reload_config()

        assert config.aws["region"] == "ap-south-1"
        assert config.invocation(Workflow.DEFAULT).configured_providers() == ["aws"]
