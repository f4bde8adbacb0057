"""
Configuration management for multi-cloud cost and waste collection.

Uses dynaconf for flexible configuration with YAML files and environment
overrides, and turns the merged settings plus CLI flags into the immutable
InvocationConfig handed to the collector.
"""

import logging
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf, ValidationError, Validator
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..providers.base import SUPPORTED_PROVIDERS, ConfigurationError, Workflow

logger = logging.getLogger(__name__)

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

DEFAULT_PROVIDER_TIMEOUT = 300.0

settings = Dynaconf(
    envvar_prefix="CLOUDDOCTOR",
    settings_files=[
        str(CONFIG_DIR / "config.yaml"),  # Base configuration
        str(CONFIG_DIR / "config.local.yaml"),  # Local overrides (git-ignored)
        str(CONFIG_DIR / ".secrets.yaml"),  # Secrets file (git-ignored)
    ],
    environments=False,
    load_dotenv=True,
    merge_enabled=True,
    envvar_separator="__",  # CLOUDDOCTOR_CLOUDS__AWS__REGION=us-east-1
    validators=[
        Validator("collection.provider_timeout", gt=0, default=DEFAULT_PROVIDER_TIMEOUT),
        Validator("waste.stopped_instance_days", gte=0, default=30),
        Validator("waste.reservation_window_days", gte=0, default=30),
        Validator("clouds.gcp.billing_dataset", default="billing_export"),
    ],
)

PROVIDER_GUIDANCE = {
    "aws": "--region/--profile for AWS",
    "gcp": "--project/--billing-account for GCP",
    "azure": "--subscription for Azure",
}
WASTE_PROVIDER_GUIDANCE = {**PROVIDER_GUIDANCE, "gcp": "--project for GCP"}

# CLI option -> InvocationConfig field
CLI_OVERRIDES = {
    "region": "aws_region",
    "profile": "aws_profile",
    "project": "gcp_project",
    "billing_account": "gcp_billing_account",
    "subscription": "azure_subscription",
    "timeout": "provider_timeout",
}


def provider_guidance(workflow: Workflow) -> str:
    """Which flags each provider needs to take part in the workflow."""
    guidance = WASTE_PROVIDER_GUIDANCE if workflow is Workflow.WASTE else PROVIDER_GUIDANCE
    return ", ".join(guidance[name] for name in SUPPORTED_PROVIDERS)


class InvocationConfig(BaseModel):
    """Everything one collection run needs to know about providers and limits."""

    model_config = ConfigDict(frozen=True)

    workflow: Workflow = Workflow.DEFAULT
    provider: str = Field("all", description="Selected provider or 'all'")

    aws_region: str | None = None
    aws_profile: str | None = None

    gcp_project: str | None = None
    gcp_billing_account: str | None = None
    gcp_billing_dataset: str = "billing_export"

    azure_subscription: str | None = None
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = Field(None, repr=False)

    provider_timeout: float = Field(DEFAULT_PROVIDER_TIMEOUT, gt=0)
    stopped_instance_days: int = Field(30, ge=0)
    reservation_window_days: int = Field(30, ge=0)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate and normalize provider selection."""
        normalized = v.lower().strip()
        valid_providers = {*SUPPORTED_PROVIDERS, "all"}

        if normalized not in valid_providers:
            raise ValueError(
                f'Invalid provider "{v}". Must be one of: {", ".join(sorted(valid_providers))}'
            )
        return normalized

    def missing_requirements(self, provider: str) -> str | None:
        """Describe what a provider lacks for this workflow, or None when it is configured."""
        if provider == "aws":
            if not (self.aws_region or self.aws_profile):
                return "AWS requires --region or --profile"
        elif provider == "gcp":
            if not self.gcp_project:
                return "GCP requires --project"
            if self.workflow is not Workflow.WASTE and not self.gcp_billing_account:
                return "GCP cost queries require --billing-account"
        elif provider == "azure":
            if not self.azure_subscription:
                return "Azure requires --subscription"
        else:
            return f"Unknown provider '{provider}'"
        return None

    @property
    def selected_providers(self) -> list[str]:
        if self.provider == "all":
            return list(SUPPORTED_PROVIDERS)
        return [self.provider]

    def configured_providers(self) -> list[str]:
        """Selected providers that have what the workflow needs, in priority order."""
        configured = []
        for name in self.selected_providers:
            missing = self.missing_requirements(name)
            if missing is None:
                configured.append(name)
            elif self.provider == "all":
                logger.debug(f"Skipping {name}: {missing}")
        return configured


class CloudConfig:
    """Configuration wrapper for cloud provider settings."""

    def __init__(self):
        self.settings = settings
        self._validate_config()

    def _validate_config(self):
        """Validate the configuration on initialization."""
        try:
            self.settings.validators.validate()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @property
    def aws(self) -> dict[str, Any]:
        """AWS configuration settings."""
        return self.settings.get("clouds.aws", {}) or {}

    @property
    def gcp(self) -> dict[str, Any]:
        """GCP configuration settings."""
        return self.settings.get("clouds.gcp", {}) or {}

    @property
    def azure(self) -> dict[str, Any]:
        """Azure configuration settings."""
        return self.settings.get("clouds.azure", {}) or {}

    @property
    def collection(self) -> dict[str, Any]:
        return self.settings.get("collection", {}) or {}

    @property
    def waste(self) -> dict[str, Any]:
        return self.settings.get("waste", {}) or {}

    def get_provider_config(self, provider: str) -> dict[str, Any]:
        """Get configuration for a specific cloud provider."""
        provider_configs = {"aws": self.aws, "gcp": self.gcp, "azure": self.azure}
        return provider_configs.get(provider, {})

    def invocation(
        self, workflow: Workflow, provider: str = "all", cli_args: dict[str, Any] | None = None
    ) -> InvocationConfig:
        """
        Freeze the current settings into the record one collection run uses.

        CLI arguments that are set take precedence over file and environment
        settings; the shared settings object is left untouched.
        """
        aws = self.get_provider_config("aws")
        gcp = self.get_provider_config("gcp")
        azure = self.get_provider_config("azure")
        values = {
            "aws_region": aws.get("region"),
            "aws_profile": aws.get("profile"),
            "gcp_project": gcp.get("project_id"),
            "gcp_billing_account": gcp.get("billing_account"),
            "gcp_billing_dataset": gcp.get("billing_dataset") or "billing_export",
            "azure_subscription": azure.get("subscription_id"),
            "azure_tenant_id": azure.get("tenant_id"),
            "azure_client_id": azure.get("client_id"),
            "azure_client_secret": azure.get("client_secret"),
            "provider_timeout": float(
                self.collection.get("provider_timeout", DEFAULT_PROVIDER_TIMEOUT)
            ),
            "stopped_instance_days": int(self.waste.get("stopped_instance_days", 30)),
            "reservation_window_days": int(self.waste.get("reservation_window_days", 30)),
        }

        for cli_key, field in CLI_OVERRIDES.items():
            if cli_args and cli_args.get(cli_key) is not None:
                values[field] = cli_args[cli_key]

        return InvocationConfig(workflow=workflow, provider=provider, **values)


_config: CloudConfig | None = None


def get_config() -> CloudConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = CloudConfig()
    return _config


def load_config_file(path: str) -> CloudConfig:
    """Merge an extra settings file over the defaults."""
    settings.load_file(path=path)
    return reload_config(reread=False)


def reload_config(reread: bool = True) -> CloudConfig:
    """Reload configuration from files."""
    global _config
    if reread:
        settings.reload()
    _config = CloudConfig()
    return _config
