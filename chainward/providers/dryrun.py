"""Gateway that fakes every provider call with canned successes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

from loguru import logger

from chainward.constants import DRY_RUN_ADDRESS, InstanceState
from chainward.providers.base import OnCreated
from chainward.types import KeyPair, LaunchSpec, ResourceRecord, SecurityRule

log = logger.bind(component="dry-run")


class DryRunGateway:
    """Stands in for a real provider in dry-run mode.

    Every create call invokes ``on_created`` with a synthetic id, so the
    workflow registers a full resource set. ``calls`` records each operation
    name for inspection.
    """

    def __init__(self, provider: str) -> None:
        self._provider = provider
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return self._provider

    def _record(self, operation: str, detail: str) -> None:
        self.calls.append(operation)
        log.info("[DRY RUN] Would {operation} {detail}", operation=operation, detail=detail)

    def verify_credentials(self) -> None:
        self._record("verify-credentials", self._provider)

    def ensure_key_pair(self, name: str, key_dir: Path, on_created: OnCreated) -> KeyPair:
        self._record("create-key-pair", name)
        on_created(name)
        return KeyPair(name=name, path=key_dir / f"{name}.pem", created=True)

    def ensure_security_group(
        self,
        name: str,
        rules: Sequence[SecurityRule],
        tags: Mapping[str, str],
        on_created: OnCreated,
    ) -> str:
        self._record("create-security-group", f"{name} with {len(rules)} rules")
        group_id = f"sg-dry-run-{name}"
        on_created(group_id)
        return group_id

    def launch_instance(self, spec: LaunchSpec, user_data: str, on_created: OnCreated) -> str:
        self._record("launch-instance", f"{spec.instance_size} {spec.name}")
        instance_id = f"i-dry-run-{spec.name}"
        on_created(instance_id)
        return instance_id

    def get_public_address(self, instance_id: str) -> str | None:
        return DRY_RUN_ADDRESS

    def describe_status(self, instance_id: str) -> str:
        return InstanceState.RUNNING

    def terminate_instance(self, instance_id: str) -> bool:
        self._record("terminate-instance", instance_id)
        return True

    def delete_security_group(self, group_id: str) -> bool:
        self._record("delete-security-group", group_id)
        return True

    def delete_key_pair(self, name: str) -> bool:
        self._record("delete-key-pair", name)
        return True

    def recovery_command(self, record: ResourceRecord) -> str:
        return f"# dry run: nothing to delete for {record}"
