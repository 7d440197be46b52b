"""Configuration resolution.

Values are merged with the precedence, highest first:

    command line > configuration file > provider defaults > derived names

Configuration files are either TOML (values at the top level or under a
``[deploy]`` table) or the ``KEY=value`` format of deployment ``.conf``
files, chosen by file suffix.
"""

from __future__ import annotations

import re
import tomllib
from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

from loguru import logger

from chainward.constants import PROJECT_NAME
from chainward.errors import ConfigError
from chainward.nodes import get_node_type
from chainward.providers import ProviderRegistry, default_registry
from chainward.types import ProvisionRequest

log = logger.bind(component="config")

type RawConfig = dict[str, Any]

REQUEST_FIELDS = frozenset(f.name for f in fields(ProvisionRequest))
INSTANCE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

LEGACY_KEYS: Mapping[str, str] = {
    "PROVIDER": "provider",
    "NODE_TYPE": "node_type",
    "REGION": "region",
    "AWS_REGION": "region",
    "INSTANCE_TYPE": "instance_size",
    "INSTANCE_SIZE": "instance_size",
    "VOLUME_SIZE": "disk_size",
    "DISK_SIZE": "disk_size",
    "INSTANCE_NAME": "instance_name",
    "KEY_NAME": "key_name",
    "SG_NAME": "security_group_name",
    "SECURITY_GROUP_NAME": "security_group_name",
    "IMAGE_ID": "image_id",
    "AMI_ID": "image_id",
    "SSH_USER": "ssh_user",
    "PROJECT": "project",
    "ENVIRONMENT": "environment",
    "DRY_RUN": "dry_run",
    "WAIT_FOR_SYNC": "wait_for_sync",
    "SYNC_THRESHOLD": "sync_threshold",
}

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


# =============================================================================
# File formats
# =============================================================================


def _read_toml(path: Path) -> RawConfig:
    try:
        with path.open("rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    section = raw.get("deploy", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"[deploy] in {path} must be a table")
    return {k.replace("-", "_"): v for k, v in section.items() if not isinstance(v, dict)}


def _read_legacy(path: Path) -> RawConfig:
    values: RawConfig = {}
    for lineno, line in enumerate(path.read_text().splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ")
        key, sep, value = line.partition("=")
        if not sep:
            raise ConfigError(f"{path}:{lineno}: expected KEY=value")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key in LEGACY_KEYS:
            values[LEGACY_KEYS[key]] = value
        else:
            log.debug("Ignoring unknown key {key} in {path}", key=key, path=path)
    return values


def read_config_file(path: Path) -> RawConfig:
    """Load a configuration file into request field names."""
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    values = _read_toml(path) if path.suffix == ".toml" else _read_legacy(path)
    unknown = set(values) - REQUEST_FIELDS
    if unknown:
        log.warning("Ignoring unknown settings in {path}: {keys}", path=path, keys=", ".join(sorted(unknown)))
    return {k: v for k, v in values.items() if k in REQUEST_FIELDS}


# =============================================================================
# Coercion
# =============================================================================


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_int(name: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {number}")
    return number


def _as_fraction(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if not 0.0 < number <= 1.0:
        raise ConfigError(f"{name} must be in (0, 1], got {number}")
    return number


def _coerce(values: RawConfig) -> RawConfig:
    result = dict(values)
    result["disk_size"] = _as_int("disk_size", result["disk_size"])
    for name in ("dry_run", "wait_for_sync"):
        if name in result:
            result[name] = _as_bool(name, result[name])
    if "sync_threshold" in result:
        result["sync_threshold"] = _as_fraction("sync_threshold", result["sync_threshold"])
    for name in REQUEST_FIELDS - {"disk_size", "dry_run", "wait_for_sync", "sync_threshold"}:
        if name in result:
            result[name] = str(result[name])
    return result


# =============================================================================
# Resolver
# =============================================================================


class ConfigResolver:
    """Builds an immutable ``ProvisionRequest`` from layered settings."""

    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        self._registry = registry or default_registry()

    def resolve(
        self,
        cli: Mapping[str, Any] | None = None,
        config_file: Path | None = None,
    ) -> ProvisionRequest:
        cli_values = {k: v for k, v in (cli or {}).items() if v is not None and k in REQUEST_FIELDS}
        file_values = read_config_file(config_file) if config_file else {}

        provider = cli_values.get("provider") or file_values.get("provider")
        node_type = cli_values.get("node_type") or file_values.get("node_type")
        if not provider:
            raise ConfigError("Provider is required (--provider or PROVIDER in the config file)")
        if not node_type:
            raise ConfigError("Node type is required (--type or NODE_TYPE in the config file)")

        defaults = self._registry.defaults(provider)
        get_node_type(node_type)

        derived = {
            "project": PROJECT_NAME,
            "instance_name": f"{PROJECT_NAME}-{provider}-{node_type}",
            "key_name": f"{PROJECT_NAME}-{provider}-key",
            "security_group_name": f"{PROJECT_NAME}-{provider}-sg",
        }
        merged = {**derived, **defaults, **file_values, **cli_values}

        required = ("region", "instance_size", "disk_size", "image_id")
        missing = [name for name in required if merged.get(name) in (None, "")]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")
        merged = _coerce(merged)
        if not INSTANCE_NAME_PATTERN.match(merged["instance_name"]):
            raise ConfigError(f"Invalid instance name: {merged['instance_name']!r}")

        request = ProvisionRequest(**merged)
        log.debug("Resolved request: {request}", request=request)
        return request
