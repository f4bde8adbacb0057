"""
MCP tool server for multi-cloud cost and waste data.

Exposes the cost comparison, six-month trend and waste workflows as Model
Context Protocol tools over stdio, per provider and across all configured
providers. Provider identifiers come from the same settings files and
CLOUDDOCTOR_ environment variables the CLI reads.
"""

import asyncio
import logging
from typing import Any

import click
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .config.settings import get_config, load_config_file
from .main import setup_logging
from .providers import ProviderFactory, azure as azure_provider
from .providers.base import (
    SUPPORTED_PROVIDERS,
    AllProvidersFailedError,
    CloudProviderError,
    ProviderTimeoutError,
    Workflow,
)
from .services.collector import MultiProviderCollector
from .services.comparator import (
    aggregate_cost_results,
    aggregate_trend_results,
    aggregate_waste_results,
)
from .utils.blocking import run_blocking

logger = logging.getLogger(__name__)

SERVER_NAME = "cloud-doctor"

PROVIDER_LABELS = {"aws": "AWS", "gcp": "GCP", "azure": "Azure"}
IDENTITY_TOOLS = {
    "aws": "aws_get_account_info",
    "gcp": "gcp_get_project_info",
    "azure": "azure_get_subscription_info",
}

mcp = FastMCP(SERVER_NAME)


def _invocation(workflow: Workflow, provider: str):
    return get_config().invocation(workflow, provider)


async def _collect(workflow: Workflow, provider: str, action: str):
    """
    Run one workflow through the shared collector.

    A single provider's failure becomes a tool error. Across providers the
    failed records are returned like any other, so the summary still shows
    which provider failed and why.
    """
    invocation = _invocation(workflow, provider)
    try:
        return await MultiProviderCollector(ProviderFactory).collect(invocation)
    except AllProvidersFailedError as e:
        if provider == "all":
            return e.results
        raise ToolError(f"Failed to {action}: {e.results[0].error}") from e
    except CloudProviderError as e:
        raise ToolError(f"Failed to {action}: {e}") from e


async def _collect_one(workflow: Workflow, provider: str, action: str):
    results = await _collect(workflow, provider, action)
    return results[0]


# Per-provider handlers


async def get_account_info(provider: str) -> dict[str, Any]:
    """Identity of the configured account, project or subscription."""
    # The waste workflow needs only the account identifier, not billing access
    invocation = _invocation(Workflow.WASTE, provider)
    missing = invocation.missing_requirements(provider)
    if missing:
        raise ToolError(f"Failed to get account info: {missing}")

    try:
        capabilities = await asyncio.wait_for(
            run_blocking(ProviderFactory.create_capabilities, provider, invocation, Workflow.WASTE),
            invocation.provider_timeout,
        )
        account = await asyncio.wait_for(
            capabilities.identity.get_account_info(), invocation.provider_timeout
        )
    except asyncio.TimeoutError as e:
        timeout_error = ProviderTimeoutError(provider, invocation.provider_timeout)
        raise ToolError(f"Failed to get account info: {timeout_error}") from e
    except CloudProviderError as e:
        raise ToolError(f"Failed to get account info: {e}") from e
    return account.model_dump(mode="json")


async def get_current_month_costs(provider: str) -> dict[str, Any]:
    """Month-to-date costs by service, most expensive first."""
    result = await _collect_one(Workflow.DEFAULT, provider, "get current month costs")
    period = result.current_month
    return {
        "provider": result.provider,
        "account_id": result.account_id,
        "start_date": period.start.isoformat(),
        "end_date": period.end.isoformat(),
        "services": [
            {"name": name, "amount": cost.amount, "unit": cost.unit}
            for name, cost in period.sorted_services()
        ],
        "total": period.total_amount,
        "currency": period.currency,
    }


async def get_cost_comparison(provider: str) -> dict[str, Any]:
    """This month so far against the same days of last month."""
    result = await _collect_one(Workflow.DEFAULT, provider, "get cost comparison")
    return aggregate_cost_results([result]).providers[0].model_dump(mode="json")


async def get_cost_trend(provider: str) -> dict[str, Any]:
    """Totals for the last six complete months with summary statistics."""
    result = await _collect_one(Workflow.TREND, provider, "get cost trend")
    return aggregate_trend_results([result]).providers[0].model_dump(mode="json")


async def get_waste_summary(provider: str) -> dict[str, Any]:
    """Counts of every idle resource kind plus the resources themselves."""
    result = await _collect_one(Workflow.WASTE, provider, "get waste summary")
    summary = aggregate_waste_results([result]).providers[0]
    return {"summary": summary.model_dump(mode="json"), "details": result.model_dump(mode="json")}


async def get_unused_volumes(provider: str) -> dict[str, Any]:
    result = await _collect_one(Workflow.WASTE, provider, "get unused volumes")
    return {
        "provider": provider,
        "volumes": [volume.model_dump(mode="json") for volume in result.unused_volumes],
    }


async def get_unused_ips(provider: str) -> dict[str, Any]:
    result = await _collect_one(Workflow.WASTE, provider, "get unused IPs")
    return {"provider": provider, "ips": [ip.model_dump(mode="json") for ip in result.unused_ips]}


async def get_stopped_instances(provider: str) -> dict[str, Any]:
    result = await _collect_one(Workflow.WASTE, provider, "get stopped instances")
    return {
        "provider": provider,
        "instances": [instance.model_dump(mode="json") for instance in result.stopped_instances],
        "attached_volumes": [volume.model_dump(mode="json") for volume in result.attached_volumes],
    }


async def get_expiring_reservations(provider: str) -> dict[str, Any]:
    result = await _collect_one(Workflow.WASTE, provider, "get expiring reservations")
    return {
        "provider": provider,
        "reservations": [reservation.model_dump(mode="json") for reservation in result.reservations],
    }


# (tool name suffix, handler, description); {label} is the provider's display name
PROVIDER_TOOLS = [
    ("get_current_month_costs", get_current_month_costs,
     "Get {label} costs for the current month, broken down by service"),
    ("get_cost_comparison", get_cost_comparison,
     "Compare {label} costs between the current month and the same period of last month"),
    ("get_cost_trend", get_cost_trend,
     "Get {label} cost trend for the last 6 months with summary statistics"),
    ("get_unused_volumes", get_unused_volumes,
     "List {label} disks that are not attached to any instance"),
    ("get_unused_ips", get_unused_ips,
     "List {label} reserved IP addresses that are not associated with any resource"),
    ("get_stopped_instances", get_stopped_instances,
     "List {label} instances stopped for longer than the threshold, with their attached disks"),
    ("get_expiring_reservations", get_expiring_reservations,
     "List {label} reservations expiring soon or recently expired"),
    ("get_waste_summary", get_waste_summary,
     "Get a summary of all {label} waste: unused volumes, unused IPs, stopped instances and reservations"),
]


def _bind(handler, provider: str):
    """A zero-argument tool function running handler for one provider."""

    async def tool() -> dict[str, Any]:
        return await handler(provider)

    tool.__name__ = f"{provider}_{handler.__name__}"
    return tool


def register_provider_tools(server: FastMCP, provider: str):
    label = PROVIDER_LABELS[provider]
    server.add_tool(
        _bind(get_account_info, provider),
        name=IDENTITY_TOOLS[provider],
        description=f"Get {label} identity information for the configured account",
    )
    for suffix, handler, description in PROVIDER_TOOLS:
        server.add_tool(
            _bind(handler, provider),
            name=f"{provider}_{suffix}",
            description=description.format(label=label),
        )


for _provider in SUPPORTED_PROVIDERS:
    register_provider_tools(mcp, _provider)


@mcp.tool("azure_list_subscriptions")
async def azure_list_subscriptions() -> dict[str, Any]:
    """List the Azure subscriptions visible to the configured credential."""
    if not azure_provider.AZURE_AVAILABLE:
        raise ToolError("Failed to list subscriptions: Azure SDK not available")

    invocation = _invocation(Workflow.DEFAULT, "azure")
    try:
        subscriptions = await asyncio.wait_for(
            azure_provider.list_subscriptions(invocation), invocation.provider_timeout
        )
    except asyncio.TimeoutError as e:
        timeout_error = ProviderTimeoutError("azure", invocation.provider_timeout)
        raise ToolError(f"Failed to list subscriptions: {timeout_error}") from e
    except CloudProviderError as e:
        raise ToolError(f"Failed to list subscriptions: {e}") from e
    return {"subscriptions": subscriptions}


@mcp.tool("multicloud_get_cost_summary")
async def multicloud_get_cost_summary() -> dict[str, Any]:
    """Get cost summary across all configured cloud providers, current month against last month."""
    results = await _collect(Workflow.DEFAULT, "all", "get cost summary")
    return aggregate_cost_results(results).model_dump(mode="json")


@mcp.tool("multicloud_get_waste_summary")
async def multicloud_get_waste_summary() -> dict[str, Any]:
    """Get waste detection summary across all configured cloud providers."""
    results = await _collect(Workflow.WASTE, "all", "get waste summary")
    payload = aggregate_waste_results(results).model_dump(mode="json")
    payload["details"] = [result.model_dump(mode="json") for result in results]
    return payload


@click.command()
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Path to configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging on stderr")
def main(config, verbose):
    """Serve the cloud-doctor tools over stdio."""
    # stdout carries the protocol; logging.basicConfig writes to stderr
    setup_logging(verbose)
    if config:
        load_config_file(config)

    providers = ProviderFactory.get_available_providers()
    logger.info(f"Starting {SERVER_NAME} MCP server with providers: {', '.join(providers) or 'none'}")
    mcp.run()


if __name__ == "__main__":
    main()
