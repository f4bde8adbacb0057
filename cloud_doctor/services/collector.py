"""
Multi-provider collection.

Runs the single-provider orchestrator concurrently for every configured
provider. Each worker contains its own failure in its result record and sends
the record over a queue to one accumulator task, which owns the result list.
"""

import asyncio
import logging

from ..config.settings import InvocationConfig, provider_guidance
from ..providers.base import (
    AllProvidersFailedError,
    ConfigurationError,
    NoProvidersConfiguredError,
    ProviderFactory,
    ProviderTimeoutError,
    Workflow,
)
from ..utils.blocking import run_blocking
from .orchestrator import (
    ProviderCostResult,
    ProviderOrchestrator,
    ProviderResult,
    ProviderWasteResult,
    describe_result,
)

logger = logging.getLogger(__name__)

PROVIDER_PRIORITY = {"aws": 1, "gcp": 2, "azure": 3}


def sort_results(results: list[ProviderResult]) -> list[ProviderResult]:
    """Order results by provider priority, independent of completion order."""
    return sorted(results, key=lambda result: PROVIDER_PRIORITY.get(result.provider, 99))


class MultiProviderCollector:
    """Fan a workflow out to all configured providers and gather their results."""

    def __init__(self, factory: type[ProviderFactory] = ProviderFactory, provider_timeout: float | None = None):
        self.factory = factory
        self.provider_timeout = provider_timeout

    def resolve_providers(self, invocation: InvocationConfig) -> list[str]:
        """
        Decide which providers take part before any network call.

        Raises:
            ConfigurationError: If an explicitly selected provider lacks identifiers
            NoProvidersConfiguredError: If no provider is configured for the workflow
        """
        if invocation.provider != "all":
            missing = invocation.missing_requirements(invocation.provider)
            if missing:
                raise ConfigurationError(missing)

        providers = invocation.configured_providers()
        if not providers:
            raise NoProvidersConfiguredError(
                f"no providers configured. Use {provider_guidance(invocation.workflow)}"
            )
        return providers

    async def collect(
        self, invocation: InvocationConfig
    ) -> list[ProviderCostResult] | list[ProviderWasteResult]:
        """
        Run the invocation's workflow on every configured provider.

        Returns:
            One result per configured provider, sorted aws, gcp, azure

        Raises:
            NoProvidersConfiguredError: If no provider is configured
            AllProvidersFailedError: If every provider's result carries an error
        """
        providers = self.resolve_providers(invocation)
        workflow = invocation.workflow
        timeout = self.provider_timeout or invocation.provider_timeout

        logger.info(f"Collecting {workflow.value} data from {', '.join(providers)}")

        queue: asyncio.Queue = asyncio.Queue()
        accumulator = asyncio.create_task(self._accumulate(queue, len(providers)))
        workers = [
            asyncio.create_task(self._run_provider(name, invocation, timeout, queue))
            for name in providers
        ]

        await asyncio.gather(*workers)
        results = sort_results(await accumulator)

        if all(result.failed for result in results):
            raise AllProvidersFailedError(results)

        failed = [result.provider for result in results if result.failed]
        if failed:
            logger.warning(f"{len(failed)} of {len(results)} providers failed: {', '.join(failed)}")
        return results

    async def _accumulate(self, queue: asyncio.Queue, expected: int) -> list[ProviderResult]:
        results: list[ProviderResult] = []
        while len(results) < expected:
            result = await queue.get()
            logger.debug(describe_result(result))
            results.append(result)
            queue.task_done()
        return results

    async def _run_provider(
        self, name: str, invocation: InvocationConfig, timeout: float, queue: asyncio.Queue
    ):
        workflow = invocation.workflow
        try:
            result = await asyncio.wait_for(self._orchestrate(name, invocation, workflow), timeout)
        except asyncio.TimeoutError:
            logger.error(f"{name}: timed out after {timeout:g}s")
            result = self._failure(name, workflow, ProviderTimeoutError(name, timeout))
        except Exception as e:
            logger.error(f"{name}: {workflow.value} workflow failed: {e}")
            result = self._failure(name, workflow, e)

        await queue.put(result)

    async def _orchestrate(self, name: str, invocation: InvocationConfig, workflow: Workflow):
        capabilities = await run_blocking(self.factory.create_capabilities, name, invocation, workflow)
        return await ProviderOrchestrator(capabilities).run(workflow)

    @staticmethod
    def _failure(name: str, workflow: Workflow, error: Exception) -> ProviderResult:
        return ProviderOrchestrator.result_type(workflow).failure(name, error)
