"""Declarative bootstrap script DSL.

Builds the boot-time payload for a node as a shell script with ``{{KEY}}``
placeholders, then renders it against the resolved configuration.

Example:
    >>> from chainward.bootstrap import bootstrap, apt, file, render
    >>>
    >>> template = bootstrap(
    ...     apt("jq"),
    ...     file("/etc/motd", "{{INSTANCE_NAME}}"),
    ... )
    >>> script = render(template, {"INSTANCE_NAME": "node-1", "NODE_TYPE": "bitcoin"})
"""

from __future__ import annotations

from .bitcoin import bitcoin_user_data
from .compose import Op, bootstrap, resolve
from .ops import (
    apt,
    capture,
    download,
    enable_service,
    file,
    install_binaries,
    marker,
    mkdir,
    shell,
    step,
    system_user,
    systemd_unit,
)
from .template import placeholders, render

__all__ = [
    "Op",
    "apt",
    "bitcoin_user_data",
    "bootstrap",
    "capture",
    "download",
    "enable_service",
    "file",
    "install_binaries",
    "marker",
    "mkdir",
    "placeholders",
    "render",
    "resolve",
    "shell",
    "step",
    "system_user",
    "systemd_unit",
]
