"""Node-type registry.

A node type bundles everything the workflow needs to know about one kind of
verifier: how to build its boot payload, which service to watch, which port
to open and how to read its sync progress.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from chainward.bootstrap import bitcoin_user_data
from chainward.constants import MONITOR_HELPER, STATUS_HELPER
from chainward.errors import ConfigError


@dataclass(frozen=True, slots=True)
class NodeType:
    """Description of one verifier node type.

    Args:
        name: Registry key (``--type`` on the command line).
        service: systemd unit whose active state gates bootstrap completion.
        p2p_port: Domain protocol port opened in the security group.
        build_payload: Returns the bootstrap template.
        status_command: Remote command printing sync state as JSON.
        report_command: Remote command printing a human-readable report.
        progress_field: JSON field holding the sync fraction (0.0 - 1.0).
        template_values: Node-specific placeholder values.
    """

    name: str
    service: str
    p2p_port: int
    build_payload: Callable[[], str]
    status_command: str = STATUS_HELPER
    report_command: str = MONITOR_HELPER
    progress_field: str = "verificationprogress"
    template_values: Mapping[str, str] = field(default_factory=dict)


BITCOIN_TESTNET = NodeType(
    name="bitcoin",
    service="bitcoind",
    p2p_port=18333,
    build_payload=bitcoin_user_data,
    template_values=MappingProxyType(
        {
            "BITCOIN_VERSION": "25.0",
            "BITCOIN_CHAIN_CONF": "testnet=1",
            "BITCOIN_CLI_FLAGS": "-testnet",
            "RPC_USER": "chainwardverifier",
            "DB_CACHE": "4000",
        }
    ),
)

BITCOIN_MAINNET = NodeType(
    name="bitcoin-mainnet",
    service="bitcoind",
    p2p_port=8333,
    build_payload=bitcoin_user_data,
    template_values=MappingProxyType(
        {
            "BITCOIN_VERSION": "25.0",
            "BITCOIN_CHAIN_CONF": "",
            "BITCOIN_CLI_FLAGS": "",
            "RPC_USER": "chainwardverifier",
            "DB_CACHE": "4000",
        }
    ),
)

NODE_TYPES: Mapping[str, NodeType] = MappingProxyType(
    {node.name: node for node in (BITCOIN_TESTNET, BITCOIN_MAINNET)}
)


def get_node_type(name: str) -> NodeType:
    try:
        return NODE_TYPES[name]
    except KeyError:
        raise ConfigError(
            f"Unknown node type '{name}'. Valid: {', '.join(NODE_TYPES)}"
        ) from None
