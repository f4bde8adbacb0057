"""Cloud provider adapters for AWS, GCP, and Azure."""

# Import provider implementations to register them with ProviderFactory
from . import aws
from . import azure
from . import gcp

# Make key classes available at package level
from .base import (
    AccountInfo,
    CostInfo,
    ProviderCapabilitySet,
    ProviderFactory,
    Workflow,
)
