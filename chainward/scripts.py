"""Standalone teardown scripts for deployments."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

from loguru import logger

from chainward.state import OutputLayout, now
from chainward.types import ProvisionRequest

log = logger.bind(component="scripts")

TEARDOWN_TEMPLATE = """#!/bin/bash
# Teardown for {name} ({provider}, {region})
# Generated by chainward on {date}
set -euo pipefail

exec {python} -m chainward teardown {name_arg} \\
    --provider {provider_arg} \\
    --output-dir {root_arg}{dry_run} "$@"
"""


def teardown_script(layout: OutputLayout, request: ProvisionRequest, python: str | None = None) -> str:
    return TEARDOWN_TEMPLATE.format(
        name=request.instance_name,
        provider=request.provider,
        region=request.region,
        date=now(),
        python=shlex.quote(python or sys.executable),
        name_arg=shlex.quote(request.instance_name),
        provider_arg=shlex.quote(request.provider),
        root_arg=shlex.quote(str(layout.root)),
        dry_run=" \\\n    --dry-run" if request.dry_run else "",
    )


def write_teardown_script(layout: OutputLayout, request: ProvisionRequest) -> Path:
    path = layout.script_path(request.instance_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(teardown_script(layout, request))
    path.chmod(0o755)
    log.info("Teardown script written to {path}", path=path)
    return path
