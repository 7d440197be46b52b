"""Network reachability checks used by the readiness probe."""

from __future__ import annotations

import shutil
import socket
import subprocess
from collections.abc import Callable

from loguru import logger

from chainward.constants import SSH_PORT
from chainward.errors import RequirementError

log = logger.bind(component="network")

type Reachability = Callable[[str], bool]


def require_tool(tool: str) -> str:
    """Return the absolute path of ``tool`` or raise ``RequirementError``."""
    path = shutil.which(tool)
    if path is None:
        raise RequirementError(f"Required tool '{tool}' is not installed")
    return path


def ping(host: str, timeout: int = 2) -> bool:
    """Single ICMP echo request."""
    try:
        result = subprocess.run(
            ["ping", "-c", "1", "-W", str(timeout), host],
            capture_output=True,
            timeout=timeout + 3,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug("ping {host} failed: {err}", host=host, err=e)
        return False
    return result.returncode == 0


def tcp_open(host: str, port: int = SSH_PORT, timeout: float = 3.0) -> bool:
    """Whether a TCP connection to ``host:port`` can be established."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def reachable(host: str) -> bool:
    """ICMP echo first, falling back to the remote-shell port."""
    return ping(host) or tcp_open(host)
