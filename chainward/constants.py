"""Centralized constants and enums for Chainward.

All magic strings, ports, paths and polling intervals live here so the
workflow, the probe and the providers agree on them.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Final

# =============================================================================
# Resource Tags
# =============================================================================


class ChainwardTag(StrEnum):
    """Cloud resource tag keys used by Chainward."""

    MANAGED = "chainward:managed"
    NAME = "Name"
    PROJECT = "Project"
    ENVIRONMENT = "Environment"


# =============================================================================
# Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


RUNNING_FAMILY: Final = frozenset({InstanceState.PENDING, InstanceState.RUNNING})
"""Provider states in which polling an instance still makes sense."""


# =============================================================================
# Network
# =============================================================================

SSH_PORT: Final = 22
ANY_IPV4: Final = "0.0.0.0/0"

# TEST-NET-1 (RFC 5737), never routable
DRY_RUN_ADDRESS: Final = "192.0.2.123"

# =============================================================================
# Defaults
# =============================================================================

PROJECT_NAME: Final = "chainward"
DEFAULT_ENVIRONMENT: Final = "development"
DEFAULT_SYNC_THRESHOLD: Final = 0.99

CHAINWARD_HOME_ENV: Final = "CHAINWARD_HOME"
DEFAULT_HOME: Final = Path.home() / ".chainward"

# =============================================================================
# Remote Paths
# =============================================================================

USER_DATA_LOG: Final = "/var/log/user-data.log"
CLOUD_INIT_OUTPUT_LOG: Final = "/var/log/cloud-init-output.log"
SETUP_COMPLETE_MARKER: Final = "/var/lib/chainward-setup-complete"
STATUS_HELPER: Final = "/usr/local/bin/chainward-status"
MONITOR_HELPER: Final = "/usr/local/bin/chainward-monitor"

# =============================================================================
# Readiness Polling (seconds)
# =============================================================================

NETWORK_INTERVAL: Final = 5.0
NETWORK_MAX_ATTEMPTS: Final = 30

SHELL_INITIAL_DELAY: Final = 30.0
SHELL_INTERVAL: Final = 10.0
SHELL_TIMEOUT: Final = 300.0

BOOTSTRAP_INTERVAL: Final = 30.0
BOOTSTRAP_TIMEOUT: Final = 1800.0

HEALTH_INTERVAL: Final = 300.0
HEALTH_TIMEOUT: Final = 86400.0

SSH_CONNECT_TIMEOUT: Final = 10
SSH_COMMAND_TIMEOUT: Final = 30

# EC2 instance_running waiter: 15 s x 80 = 20 minutes
INSTANCE_RUNNING_DELAY: Final = 15
INSTANCE_RUNNING_MAX_ATTEMPTS: Final = 80
