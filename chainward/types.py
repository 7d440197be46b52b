"""Core value types shared by the workflow, the providers and the CLI.

All types are frozen dataclasses: a ``ProvisionRequest`` is built once by
the config resolver, records and outcomes are produced once and never
mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from chainward.constants import ANY_IPV4, DEFAULT_ENVIRONMENT, DEFAULT_SYNC_THRESHOLD, PROJECT_NAME

# =============================================================================
# Request
# =============================================================================


@dataclass(frozen=True, slots=True)
class ProvisionRequest:
    """Fully resolved parameters for one provisioning attempt.

    Args:
        provider: Registered provider name (e.g. ``"aws"``).
        node_type: Registered node type (e.g. ``"bitcoin"``).
        region: Provider region.
        instance_size: Provider instance type / size.
        disk_size: Root volume size in GB.
        instance_name: Name tag of the instance; keys the persisted record.
        key_name: Remote key pair name.
        security_group_name: Security group name.
        dry_run: Replace every provider and probe call with canned results.
        image_id: Machine image to boot.
        ssh_user: Login user of the image.
        project: Value of the ``Project`` tag.
        environment: Value of the ``Environment`` tag.
        wait_for_sync: Run the health-threshold phase after bootstrap.
        sync_threshold: Progress fraction considered "synced".
    """

    provider: str
    node_type: str
    region: str
    instance_size: str
    disk_size: int
    instance_name: str
    key_name: str
    security_group_name: str
    dry_run: bool = False
    image_id: str = ""
    ssh_user: str = "ubuntu"
    project: str = PROJECT_NAME
    environment: str = DEFAULT_ENVIRONMENT
    wait_for_sync: bool = False
    sync_threshold: float = DEFAULT_SYNC_THRESHOLD


# =============================================================================
# Resources
# =============================================================================


class ResourceKind(StrEnum):
    """Kinds of cloud resources a workflow run creates."""

    KEY = "key"
    SECURITY_GROUP = "security-group"
    INSTANCE = "instance"


@dataclass(frozen=True, slots=True)
class ResourceRecord:
    """Identifier of one cloud resource created during a run."""

    kind: ResourceKind
    provider: str
    id: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.kind}={self.id}"


@dataclass(frozen=True, slots=True)
class KeyPair:
    """Result of ensuring a key pair exists.

    ``path`` is None when the key exists remotely but its private half is not
    available locally; remote-shell phases are skipped in that case.
    """

    name: str
    path: Path | None
    created: bool


@dataclass(frozen=True, slots=True)
class SecurityRule:
    """One ingress rule. ICMP rules use ``-1`` for both ports."""

    protocol: str
    from_port: int
    to_port: int
    description: str
    cidr: str = ANY_IPV4

    @classmethod
    def tcp(cls, port: int, description: str) -> SecurityRule:
        return cls("tcp", port, port, description)

    @classmethod
    def icmp_echo(cls) -> SecurityRule:
        return cls("icmp", -1, -1, "ICMP echo (ping)")


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Everything a provider needs to launch the instance."""

    name: str
    image_id: str
    instance_size: str
    disk_size: int
    key_name: str
    security_group_id: str
    project: str
    environment: str


# =============================================================================
# Outcome
# =============================================================================


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial-success"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TeardownReport:
    """Which tracked resources were destroyed and which deletions failed."""

    destroyed: tuple[ResourceRecord, ...] = ()
    failed: tuple[ResourceRecord, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.failed


@dataclass(frozen=True, slots=True)
class ProvisionOutcome:
    """Terminal result of one workflow run.

    ``created`` lists every resource registered during the run, ``destroyed``
    and ``failed_deletions`` are only populated when the run rolled back.
    """

    kind: OutcomeKind
    reason: str = ""
    instance_id: str | None = None
    public_address: str | None = None
    key_path: Path | None = None
    created: tuple[ResourceRecord, ...] = ()
    destroyed: tuple[ResourceRecord, ...] = ()
    failed_deletions: tuple[ResourceRecord, ...] = ()
    recovery_commands: tuple[str, ...] = field(default=())
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is not OutcomeKind.FAILED
