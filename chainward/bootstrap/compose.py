"""Bootstrap script composition.

Core types and composition functions for the declarative bootstrap DSL.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Final

from ..constants import USER_DATA_LOG

# =============================================================================
# Core Types
# =============================================================================

type Op = str | Callable[[], str] | list[Op]
"""Operation type: either a literal string or a function returning a string."""


def resolve(op: Op | None) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(map(lambda o: resolve(o), op))
        case None:
            return ""
        case _:
            return op()


# =============================================================================
# Header
# =============================================================================

HEADER: Final = f"""#!/bin/bash
# Generated by chainward for node {{{{INSTANCE_NAME}}}} ({{{{NODE_TYPE}}}})
set -e

exec > >(tee {USER_DATA_LOG}) 2>&1

export DEBIAN_FRONTEND=noninteractive

step() {{
    echo "[$(date '+%Y-%m-%d %H:%M:%S')] $1"
}}

step "Starting node setup"

"""


def bootstrap(*ops: Op | None, header: str | None = None) -> str:
    """Compose operations into a complete bootstrap script.

    Args:
        *ops: Operations to compose. Can be strings or callables returning strings.
        header: Optional custom header replacing the default one.

    Returns:
        Complete shell script string.

    Example:
        >>> script = bootstrap(
        ...     apt("jq", "curl"),
        ...     "echo 'custom command'",
        ... )
    """
    base = header if header is not None else HEADER
    commands = [resolve(op) for op in ops if op is not None]
    return base + "\n\n".join(commands) + "\n"
