"""Provider registry.

Each supported provider registers its defaults and a gateway factory.
Providers without a registration are rejected when the configuration is
resolved, never deep inside the workflow.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from loguru import logger

from chainward.errors import ConfigError
from chainward.providers.base import OnCreated, ProviderGateway
from chainward.providers.dryrun import DryRunGateway

log = logger.bind(component="registry")

type GatewayFactory = Callable[[str], ProviderGateway]
"""Builds a gateway for the given region."""


@dataclass(frozen=True, slots=True)
class ProviderEntry:
    """A registered provider: its defaults and how to build its gateway."""

    name: str
    factory: GatewayFactory
    defaults: Mapping[str, str | int] = field(default_factory=dict)


class ProviderRegistry:
    """Maps provider names to ``ProviderEntry``."""

    def __init__(self, *entries: ProviderEntry) -> None:
        self._entries: dict[str, ProviderEntry] = {}
        for entry in entries:
            self.register(entry)

    def register(self, entry: ProviderEntry) -> None:
        self._entries[entry.name] = entry

    def get(self, name: str) -> ProviderEntry:
        try:
            return self._entries[name]
        except KeyError:
            raise ConfigError(
                f"Provider '{name}' is not supported. Available: {', '.join(self._entries) or 'none'}"
            ) from None

    def defaults(self, name: str) -> Mapping[str, str | int]:
        return MappingProxyType(dict(self.get(name).defaults))

    def create_gateway(self, provider: str, region: str, *, dry_run: bool = False) -> ProviderGateway:
        """Build the gateway for ``provider``; dry runs get a fake one."""
        entry = self.get(provider)
        if dry_run:
            return DryRunGateway(entry.name)
        log.debug("Creating {name} gateway for {region}", name=entry.name, region=region)
        return entry.factory(region)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)


def _aws_factory(region: str) -> ProviderGateway:
    from chainward.providers.aws import AWSGateway

    return AWSGateway(region)


def default_registry() -> ProviderRegistry:
    """Registry with every provider shipped in this package."""
    from chainward.providers.aws import AWS_DEFAULTS

    return ProviderRegistry(ProviderEntry("aws", _aws_factory, AWS_DEFAULTS))


__all__ = [
    "DryRunGateway",
    "GatewayFactory",
    "OnCreated",
    "ProviderEntry",
    "ProviderGateway",
    "ProviderRegistry",
    "default_registry",
]
