"""
Main CLI interface for multi-cloud cost and waste reports.

Provides the cost comparison, six-month trend and waste commands across
AWS, GCP, and Azure.
"""

import asyncio
import logging
import sys

import click
from pydantic import ValidationError

from .config.settings import get_config, load_config_file

# Import provider implementations to register them
from .providers import ProviderFactory, azure as azure_provider
from .providers.base import (
    SUPPORTED_PROVIDERS,
    AllProvidersFailedError,
    CloudProviderError,
    Workflow,
)
from .reporting.text_report import OutputFormat, ReportRenderer, supports_color
from .services.collector import MultiProviderCollector
from .services.comparator import (
    aggregate_cost_results,
    aggregate_trend_results,
    aggregate_waste_results,
)

logger = logging.getLogger(__name__)

# Exit status when a report was printed but at least one provider failed
EXIT_PARTIAL_FAILURE = 2


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity settings."""
    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Default is quiet (only show results)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.ERROR)

    # Configure cloud provider loggers to reduce noise
    cloud_loggers = [
        "azure.core.pipeline.policies.http_logging_policy",
        "azure.identity",
        "boto3",
        "botocore",
        "urllib3",
        "google.auth",
        "google.cloud",
    ]

    for logger_name in cloud_loggers:
        logging.getLogger(logger_name).setLevel(logging.INFO if verbose else logging.ERROR)


def provider_options(func):
    """Options shared by the collection commands."""
    options = [
        click.option(
            "--provider",
            type=click.Choice([*SUPPORTED_PROVIDERS, "all"]),
            default="all",
            help="Cloud provider to query (default: all configured)",
        ),
        click.option("--region", help="AWS region"),
        click.option("--profile", help="AWS named profile"),
        click.option("--project", help="GCP project ID"),
        click.option("--billing-account", help="GCP billing account ID"),
        click.option("--subscription", help="Azure subscription ID"),
        click.option(
            "--timeout",
            type=click.FloatRange(min=0, min_open=True),
            help="Per-provider timeout in seconds (default: 300)",
        ),
        click.option(
            "--format",
            "output_format",
            type=click.Choice([fmt.value for fmt in OutputFormat]),
            help="Output format (default: colored on a terminal, plain otherwise)",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _resolve_format(output_format: str | None) -> OutputFormat:
    if output_format:
        return OutputFormat(output_format)
    return OutputFormat.COLORED if supports_color() else OutputFormat.PLAIN


def _collect(ctx, workflow: Workflow, provider: str, cli_args: dict):
    """Run the collector, exiting with status 1 on configuration or aggregate errors."""
    config = ctx.obj["config"]
    try:
        invocation = config.invocation(workflow, provider, cli_args)
    except ValidationError as e:
        click.echo(f"❌ Invalid options: {e}", err=True)
        sys.exit(1)

    async def _run():
        return await MultiProviderCollector(ProviderFactory).collect(invocation)

    try:
        return asyncio.run(_run())
    except AllProvidersFailedError as e:
        click.echo(f"❌ {e}", err=True)
        for result in e.results:
            click.echo(f"  {result.provider.upper()}: {result.error}", err=True)
        sys.exit(1)
    except CloudProviderError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)


def _finish(results):
    if any(result.failed for result in results):
        sys.exit(EXIT_PARTIAL_FAILURE)


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Path to configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and debug output")
@click.pass_context
def cli(ctx, config, verbose):
    """Cloud Doctor - Compare costs and find waste across AWS, GCP, and Azure."""
    setup_logging(verbose)

    # Ensure context object exists
    ctx.ensure_object(dict)

    # Store common options
    ctx.obj["config_file"] = config
    ctx.obj["verbose"] = verbose

    # Load configuration
    try:
        ctx.obj["config"] = load_config_file(config) if config else get_config()
    except CloudProviderError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@provider_options
@click.pass_context
def cost(ctx, provider, output_format, **cli_args):
    """Compare this month's spend with the same span of last month."""
    results = _collect(ctx, Workflow.DEFAULT, provider, cli_args)
    renderer = ReportRenderer(_resolve_format(output_format))
    try:
        summary = aggregate_cost_results(results)
    except CloudProviderError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)
    click.echo(renderer.render_cost(summary))
    _finish(results)


@cli.command()
@provider_options
@click.pass_context
def trend(ctx, provider, output_format, **cli_args):
    """Show the monthly totals of the last six complete months."""
    results = _collect(ctx, Workflow.TREND, provider, cli_args)
    renderer = ReportRenderer(_resolve_format(output_format))
    click.echo(renderer.render_trend(aggregate_trend_results(results)))
    _finish(results)


@cli.command()
@provider_options
@click.pass_context
def waste(ctx, provider, output_format, **cli_args):
    """Find unused volumes, idle IPs, stopped instances and expiring reservations."""
    results = _collect(ctx, Workflow.WASTE, provider, cli_args)
    renderer = ReportRenderer(_resolve_format(output_format))
    click.echo(renderer.render_waste(aggregate_waste_results(results), results))
    _finish(results)


@cli.command("azure-subscriptions")
@click.pass_context
def azure_subscriptions(ctx):
    """List the Azure subscriptions visible to the configured credential."""
    if not azure_provider.AZURE_AVAILABLE:
        click.echo("❌ Azure SDK not available. Install the azure-mgmt packages.", err=True)
        sys.exit(1)

    invocation = ctx.obj["config"].invocation(Workflow.DEFAULT, "azure")

    try:
        subscriptions = asyncio.run(azure_provider.list_subscriptions(invocation))
    except CloudProviderError as e:
        click.echo(f"❌ Error: {e}", err=True)
        sys.exit(1)

    if not subscriptions:
        click.echo("No subscriptions found.")
        return

    for subscription in subscriptions:
        click.echo(
            f"{subscription['subscription_id']}  {subscription['display_name']}  {subscription['state']}"
        )


@cli.command()
@click.pass_context
def config_info(ctx):
    """Display current configuration information."""
    config = ctx.obj["config"]
    invocation = config.invocation(Workflow.DEFAULT)

    click.echo("Cloud Doctor Configuration")
    click.echo("=" * 40)
    click.echo(f"Registered Providers: {', '.join(ProviderFactory.get_available_providers()) or 'None'}")
    click.echo(f"Provider Timeout: {invocation.provider_timeout:g} seconds")
    click.echo(f"Stopped Instance Threshold: {invocation.stopped_instance_days} days")
    click.echo(f"Reservation Window: {invocation.reservation_window_days} days")

    click.echo("\nProvider Settings:")
    click.echo(f"  AWS: region={invocation.aws_region or '-'} profile={invocation.aws_profile or '-'}")
    click.echo(
        f"  GCP: project={invocation.gcp_project or '-'} "
        f"billing_account={invocation.gcp_billing_account or '-'} "
        f"dataset={invocation.gcp_billing_dataset}"
    )
    click.echo(f"  AZURE: subscription={invocation.azure_subscription or '-'}")

    for workflow in Workflow:
        configured = config.invocation(workflow).configured_providers()
        click.echo(f"\n{workflow.value.title()} workflow providers: {', '.join(configured) or 'None'}")


@cli.command()
def version():
    """Display version information."""
    from . import __version__

    click.echo(f"Cloud Doctor v{__version__}")
    click.echo("Cost comparison and waste detection across AWS, GCP, and Azure")


if __name__ == "__main__":
    cli()
