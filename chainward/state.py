"""Output directory layout and persisted deployment records.

A record is a ``KEY=value`` text file at ``<home>/state/<instance-name>.conf``
holding everything needed to query or tear down a deployment later.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from chainward.constants import CHAINWARD_HOME_ENV, DEFAULT_HOME
from chainward.errors import DeploymentNotFoundError
from chainward.tracker import ResourceTracker
from chainward.types import ResourceKind

log = logger.bind(component="state")


# =============================================================================
# Layout
# =============================================================================


@dataclass(frozen=True, slots=True)
class OutputLayout:
    """Directories under the chainward home."""

    root: Path

    @classmethod
    def resolve(cls, override: str | Path | None = None) -> OutputLayout:
        """``override`` > ``$CHAINWARD_HOME`` > ``~/.chainward``."""
        root = override or os.environ.get(CHAINWARD_HOME_ENV) or DEFAULT_HOME
        return cls(Path(root).expanduser())

    @property
    def keys(self) -> Path:
        return self.root / "keys"

    @property
    def state(self) -> Path:
        return self.root / "state"

    @property
    def scripts(self) -> Path:
        return self.root / "scripts"

    @property
    def logs(self) -> Path:
        return self.root / "logs"

    @property
    def ui(self) -> Path:
        return self.root / "ui"

    def ensure(self) -> OutputLayout:
        for directory in (self.keys, self.state, self.scripts, self.logs, self.ui):
            directory.mkdir(parents=True, exist_ok=True)
        self.keys.chmod(0o700)
        return self

    def record_path(self, name: str) -> Path:
        return self.state / f"{name}.conf"

    def script_path(self, name: str) -> Path:
        return self.scripts / f"teardown-{name}.sh"


# =============================================================================
# Records
# =============================================================================

_FILE_KEYS = {
    "name": "INSTANCE_NAME",
    "provider": "PROVIDER",
    "node_type": "NODE_TYPE",
    "region": "REGION",
    "instance_id": "INSTANCE_ID",
    "public_address": "PUBLIC_IP",
    "key_name": "KEY_NAME",
    "key_path": "KEY_FILE",
    "key_created": "KEY_CREATED",
    "ssh_user": "SSH_USER",
    "security_group_id": "SG_ID",
    "security_group_name": "SG_NAME",
    "outcome": "OUTCOME",
    "created_at": "CREATED_AT",
}


@dataclass(frozen=True, slots=True)
class DeploymentRecord:
    name: str
    provider: str
    node_type: str
    region: str
    instance_id: str
    public_address: str = ""
    key_name: str = ""
    key_path: str = ""
    key_created: bool = False
    ssh_user: str = "ubuntu"
    security_group_id: str = ""
    security_group_name: str = ""
    outcome: str = ""
    created_at: str = ""

    def to_text(self) -> str:
        lines = [f"# chainward deployment record: {self.name}"]
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                value = "true" if value else "false"
            lines.append(f"{_FILE_KEYS[f.name]}={value}")
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str) -> DeploymentRecord:
        by_file_key = {v: k for k, v in _FILE_KEYS.items()}
        values: dict[str, str | bool] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if sep and key in by_file_key:
                values[by_file_key[key]] = value
        values["key_created"] = values.get("key_created") == "true"
        return cls(**values)  # type: ignore[arg-type]

    def tracker(self) -> ResourceTracker:
        """Tracker holding the resources this deployment owns, in creation order."""
        tracker = ResourceTracker()
        if self.key_created and self.key_name:
            tracker.register(ResourceKind.KEY, self.provider, self.key_name)
        if self.security_group_id:
            tracker.register(ResourceKind.SECURITY_GROUP, self.provider, self.security_group_id)
        if self.instance_id:
            tracker.register(ResourceKind.INSTANCE, self.provider, self.instance_id)
        return tracker

    def as_dict(self) -> dict[str, str | bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def write_record(layout: OutputLayout, record: DeploymentRecord) -> Path:
    path = layout.record_path(record.name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(record.to_text())
    log.info("Deployment record saved to {path}", path=path)
    return path


def read_record(layout: OutputLayout, name: str) -> DeploymentRecord:
    path = layout.record_path(name)
    if not path.is_file():
        raise DeploymentNotFoundError(f"No deployment record for '{name}' in {layout.state}")
    return DeploymentRecord.from_text(path.read_text())


def list_records(layout: OutputLayout) -> list[DeploymentRecord]:
    if not layout.state.is_dir():
        return []
    return [DeploymentRecord.from_text(p.read_text()) for p in sorted(layout.state.glob("*.conf"))]


def remove_record(layout: OutputLayout, name: str) -> bool:
    path = layout.record_path(name)
    if not path.exists():
        return False
    path.unlink()
    log.info("Removed deployment record {path}", path=path)
    return True
