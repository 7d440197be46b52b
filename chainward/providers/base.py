"""Capability interface every provider gateway implements.

Create calls raise ``ProviderError`` on failure; delete calls are
best-effort and report success as a boolean so teardown can attempt every
resource regardless of individual failures.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from chainward.types import KeyPair, LaunchSpec, ResourceRecord, SecurityRule

type OnCreated = Callable[[str], None]
"""Called with the new resource id as soon as the provider returns it."""


@runtime_checkable
class ProviderGateway(Protocol):
    """Create/describe/delete for key pairs, security groups and instances."""

    @property
    def name(self) -> str: ...

    def verify_credentials(self) -> None:
        """Raise ``ProviderError`` when the account cannot be used."""
        ...

    def ensure_key_pair(self, name: str, key_dir: Path, on_created: OnCreated) -> KeyPair:
        """Reuse or create a key pair, persisting new private keys in ``key_dir``."""
        ...

    def ensure_security_group(
        self,
        name: str,
        rules: Sequence[SecurityRule],
        tags: Mapping[str, str],
        on_created: OnCreated,
    ) -> str:
        """Replace any group called ``name`` with a fresh one carrying ``rules``."""
        ...

    def launch_instance(self, spec: LaunchSpec, user_data: str, on_created: OnCreated) -> str:
        """Launch and block until the provider reports the instance running."""
        ...

    def get_public_address(self, instance_id: str) -> str | None: ...

    def describe_status(self, instance_id: str) -> str: ...

    def terminate_instance(self, instance_id: str) -> bool: ...

    def delete_security_group(self, group_id: str) -> bool: ...

    def delete_key_pair(self, name: str) -> bool: ...

    def recovery_command(self, record: ResourceRecord) -> str:
        """Shell command an operator can run to delete ``record`` by hand."""
        ...
