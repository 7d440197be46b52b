"""Chainward: provision and verify single-node blockchain verifiers.

Example:
    from chainward import ConfigResolver, OutputLayout, provision

    request = ConfigResolver().resolve({"provider": "aws", "node_type": "bitcoin", "dry_run": True})
    outcome = provision(request, OutputLayout.resolve())
"""

__version__ = "0.1.0"

from chainward.config import ConfigResolver
from chainward.errors import (
    ChainwardError,
    ConfigError,
    ProviderError,
    ProvisioningError,
    WorkflowInterrupted,
)
from chainward.state import OutputLayout
from chainward.tracker import ResourceTracker
from chainward.types import OutcomeKind, ProvisionOutcome, ProvisionRequest, ResourceKind, ResourceRecord
from chainward.workflow import ProvisionContext, ProvisioningWorkflow, provision, teardown_resources

__all__ = [
    "ChainwardError",
    "ConfigError",
    "ConfigResolver",
    "OutcomeKind",
    "OutputLayout",
    "ProviderError",
    "ProvisionContext",
    "ProvisionOutcome",
    "ProvisionRequest",
    "ProvisioningError",
    "ProvisioningWorkflow",
    "ResourceKind",
    "ResourceRecord",
    "ResourceTracker",
    "WorkflowInterrupted",
    "__version__",
    "provision",
    "teardown_resources",
]
