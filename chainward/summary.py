"""Human-readable run summaries and record listings."""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from pathlib import Path

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chainward.constants import MONITOR_HELPER
from chainward.state import DeploymentRecord, OutputLayout
from chainward.types import OutcomeKind, ProvisionOutcome, ProvisionRequest, ResourceRecord

_OUTCOME_STYLE = {
    OutcomeKind.SUCCESS: "green bold",
    OutcomeKind.PARTIAL_SUCCESS: "yellow bold",
    OutcomeKind.FAILED: "red bold",
}


def _records(records: Sequence[ResourceRecord]) -> Text:
    if not records:
        return Text("none", style="dim")
    return Text("\n".join(str(r) for r in records))


def ssh_hint(user: str, address: str, key_path: Path | str) -> str:
    return f"ssh -i {shlex.quote(str(key_path))} {user}@{address}"


def render_summary(
    outcome: ProvisionOutcome,
    request: ProvisionRequest,
    layout: OutputLayout,
    log_file: Path | None = None,
) -> RenderableType:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="dim", justify="right")
    table.add_column()

    table.add_row("mode", "dry run" if outcome.dry_run else "live")
    table.add_row("provider", f"{request.provider} > {request.region} > {request.instance_size}")
    table.add_row("node", f"{request.node_type} ({request.instance_name})")
    table.add_row("outcome", Text(outcome.kind, style=_OUTCOME_STYLE[outcome.kind]))
    if outcome.reason:
        table.add_row("reason", outcome.reason)
    if outcome.instance_id:
        table.add_row("instance", outcome.instance_id)
    if outcome.public_address:
        table.add_row("address", outcome.public_address)
    table.add_row("created", _records(outcome.created))

    if outcome.kind is OutcomeKind.FAILED:
        table.add_row("destroyed", _records(outcome.destroyed))
        if outcome.failed_deletions:
            table.add_row("not deleted", Text(_records(outcome.failed_deletions).plain, style="red"))
            table.add_row("recover with", "\n".join(outcome.recovery_commands))
    else:
        if outcome.public_address and outcome.key_path:
            ssh = ssh_hint(request.ssh_user, outcome.public_address, outcome.key_path)
            table.add_row("ssh", ssh)
            table.add_row("node status", f"{ssh} {MONITOR_HELPER}")
        if outcome.kind is OutcomeKind.PARTIAL_SUCCESS:
            table.add_row(
                "check later",
                f"chainward status {shlex.quote(request.instance_name)}",
            )
        table.add_row("teardown", str(layout.script_path(request.instance_name)))

    if log_file is not None:
        table.add_row("log", str(log_file))

    return Panel(table, title="chainward", title_align="left", expand=False)


def render_records(records: Sequence[DeploymentRecord]) -> RenderableType:
    if not records:
        return Text("No deployments recorded.", style="dim")
    table = Table(title="deployments", title_justify="left")
    for column in ("name", "provider", "node", "region", "instance", "address", "outcome", "created"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.name,
            record.provider,
            record.node_type,
            record.region,
            record.instance_id,
            record.public_address,
            record.outcome,
            record.created_at,
        )
    return table


def render_record(record: DeploymentRecord, live_status: str | None) -> RenderableType:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="dim", justify="right")
    table.add_column()
    for key, value in record.as_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    status = Text(live_status or "unknown", style="green" if live_status == "running" else "yellow")
    table.add_row("live status", status)
    parts: list[RenderableType] = [table]
    if record.public_address and record.key_path:
        parts.append(Text(ssh_hint(record.ssh_user, record.public_address, record.key_path), style="dim"))
    return Panel(Group(*parts), title=record.name, title_align="left", expand=False)
