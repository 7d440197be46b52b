"""Command line interface.

    chainward deploy -p aws -t bitcoin [-c deploy.toml] [-d]
    chainward teardown NAME
    chainward status NAME
    chainward list
    chainward wait-sync NAME
    chainward api deploy '{"provider": "aws", "node_type": "bitcoin"}'
    chainward api status DEPLOY_ID
    chainward api list
    chainward api run DEPLOY_ID        (started detached by `api deploy`)
"""

from __future__ import annotations

import argparse
import json
from collections.abc import Sequence
from functools import partial
from pathlib import Path

from loguru import logger
from rich.console import Console

from chainward import __version__
from chainward.api import DeploymentAPI, process_spawner
from chainward.config import ConfigResolver
from chainward.constants import DEFAULT_SYNC_THRESHOLD
from chainward.errors import ChainwardError, DeploymentNotFoundError, ProviderError
from chainward.logging import LogConfig, run_log_path, setup_logging, teardown_logging
from chainward.nodes import NODE_TYPES, get_node_type
from chainward.probe import ProbeTarget, ReadinessProbe, Verdict
from chainward.providers import ProviderRegistry, default_registry
from chainward.shell import SSHConfig
from chainward.state import OutputLayout, list_records, read_record, remove_record
from chainward.summary import render_record, render_records, render_summary
from chainward.workflow import ProvisionContext, ProvisioningWorkflow, provision, teardown_resources

log = logger.bind(component="cli")

# =============================================================================
# Commands
# =============================================================================


def _deploy(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    cli_values = {
        "provider": args.provider,
        "node_type": args.node_type,
        "region": args.region,
        "instance_size": args.instance_size,
        "disk_size": args.disk_size,
        "instance_name": args.name,
        "key_name": args.key_name,
        "security_group_name": args.sg_name,
        "image_id": args.image_id,
        "dry_run": True if args.dry_run else None,
        "wait_for_sync": True if args.wait_for_sync else None,
        "sync_threshold": args.sync_threshold,
    }
    request = ConfigResolver(registry).resolve(cli_values, args.config)
    context = ProvisionContext.build(request, registry, layout)
    outcome = ProvisioningWorkflow(context).run()

    console.print(render_summary(outcome, request, layout, args.log_file))
    return 0 if outcome.ok else 1


def _teardown(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    try:
        record = read_record(layout, args.name)
    except DeploymentNotFoundError:
        if args.dry_run:
            log.info("[DRY RUN] No record for {name}; nothing to tear down", name=args.name)
            return 0
        raise

    if args.provider and args.provider != record.provider:
        raise ChainwardError(
            f"Deployment {record.name} belongs to {record.provider}, not {args.provider}"
        )

    gateway = registry.create_gateway(record.provider, record.region, dry_run=args.dry_run)
    report = teardown_resources(gateway, record.tracker())

    for destroyed in report.destroyed:
        console.print(f"[green]deleted[/green] {destroyed}")
    for failed in report.failed:
        console.print(f"[red]not deleted[/red] {failed}: {gateway.recovery_command(failed)}")

    if report.clean and not args.dry_run:
        remove_record(layout, record.name)
        layout.script_path(record.name).unlink(missing_ok=True)
    return 0 if report.clean else 1


def _status(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    record = read_record(layout, args.name)
    gateway = registry.create_gateway(record.provider, record.region)
    try:
        live = gateway.describe_status(record.instance_id)
    except ProviderError as e:
        log.warning("Could not query {id}: {err}", id=record.instance_id, err=e)
        live = None
    console.print(render_record(record, live))
    return 0


def _list(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    console.print(render_records(list_records(layout)))
    return 0


def _wait_sync(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    record = read_record(layout, args.name)
    if not record.key_path or not Path(record.key_path).is_file():
        raise ChainwardError(f"Private key for {record.name} is not available locally")

    gateway = registry.create_gateway(record.provider, record.region)
    ssh = SSHConfig(host=record.public_address, username=record.ssh_user, key_path=Path(record.key_path))
    target = ProbeTarget(record.instance_id, record.public_address, get_node_type(record.node_type), ssh)
    probe = ReadinessProbe(gateway, target, diagnostics_dir=layout.logs)
    try:
        result = probe.health(args.sync_threshold)
    finally:
        probe.close()

    if result.verdict is Verdict.SUCCESS:
        console.print(f"[green]{record.name} is synced[/green] ({result.progress:.4f})")
        return 0
    console.print(f"[yellow]{record.name}: {result.reason}[/yellow]")
    return 1


def _api(args: argparse.Namespace, layout: OutputLayout, registry: ProviderRegistry, console: Console) -> int:
    api = DeploymentAPI(
        layout,
        resolver=ConfigResolver(registry),
        runner=partial(provision, layout=layout, registry=registry),
        spawner=process_spawner(layout),
    )
    match args.api_command:
        case "deploy":
            try:
                params = json.loads(args.payload)
            except json.JSONDecodeError as e:
                response: object = {"status": "error", "error": f"Invalid JSON: {e}"}
            else:
                response = (
                    api.deploy(params)
                    if isinstance(params, dict)
                    else {"status": "error", "error": "Request must be a JSON object"}
                )
        case "status":
            response = api.status(args.deploy_id)
        case "run":
            response = api.run(args.deploy_id)
        case _:
            response = api.list()
    console.print_json(json.dumps(response, default=str))
    return 1 if isinstance(response, dict) and response.get("status") == "error" else 0


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--output-dir", type=Path, help="Output root (default: $CHAINWARD_HOME or ~/.chainward)")
    common.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level"
    )

    parser = argparse.ArgumentParser(prog="chainward", description="Provision blockchain verifier nodes")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", parents=[common], help="Provision a verifier node")
    deploy.add_argument("-p", "--provider", help="Cloud provider (aws)")
    deploy.add_argument("-t", "--type", dest="node_type", help=f"Node type ({', '.join(NODE_TYPES)})")
    deploy.add_argument("-c", "--config", type=Path, help="Configuration file (.toml or KEY=value)")
    deploy.add_argument("-r", "--region", help="Provider region")
    deploy.add_argument("-i", "--instance-size", help="Instance type")
    deploy.add_argument("-v", "--disk-size", type=int, help="Root volume size in GB")
    deploy.add_argument("-n", "--name", help="Instance name")
    deploy.add_argument("-d", "--dry-run", action="store_true", help="Simulate without creating resources")
    deploy.add_argument("--key-name", help="Key pair name")
    deploy.add_argument("--sg-name", help="Security group name")
    deploy.add_argument("--image-id", help="Machine image id")
    deploy.add_argument("--wait-for-sync", action="store_true", help="Wait until the node is fully synced")
    deploy.add_argument("--sync-threshold", type=float, help="Sync progress considered complete")
    deploy.set_defaults(handler=_deploy, log_to_file=True)

    teardown = sub.add_parser("teardown", parents=[common], help="Delete a recorded deployment")
    teardown.add_argument("name")
    teardown.add_argument("--provider", help="Expected provider of the deployment")
    teardown.add_argument("-d", "--dry-run", action="store_true")
    teardown.set_defaults(handler=_teardown, log_to_file=True)

    status = sub.add_parser("status", parents=[common], help="Show a recorded deployment")
    status.add_argument("name")
    status.set_defaults(handler=_status, log_to_file=False)

    listing = sub.add_parser("list", parents=[common], help="List recorded deployments")
    listing.set_defaults(handler=_list, log_to_file=False)

    wait_sync = sub.add_parser("wait-sync", parents=[common], help="Wait until a node is synced")
    wait_sync.add_argument("name")
    wait_sync.add_argument("--sync-threshold", type=float, default=DEFAULT_SYNC_THRESHOLD)
    wait_sync.set_defaults(handler=_wait_sync, log_to_file=True)

    api = sub.add_parser("api", help="JSON adapter for web callers")
    api_sub = api.add_subparsers(dest="api_command", required=True)
    api_deploy = api_sub.add_parser("deploy", parents=[common], help="Accept a request and start it detached")
    api_deploy.add_argument("payload", help="JSON request object")
    api_deploy.set_defaults(log_to_file=False)
    api_status = api_sub.add_parser("status", parents=[common])
    api_status.add_argument("deploy_id")
    api_status.set_defaults(log_to_file=False)
    api_list = api_sub.add_parser("list", parents=[common])
    api_list.set_defaults(log_to_file=False)
    api_run = api_sub.add_parser("run", parents=[common], help="Execute an accepted request in this process")
    api_run.add_argument("deploy_id")
    api_run.set_defaults(log_to_file=True)
    api.set_defaults(handler=_api)

    return parser


def main(
    argv: Sequence[str] | None = None,
    *,
    registry: ProviderRegistry | None = None,
    console: Console | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    layout = OutputLayout.resolve(args.output_dir)
    console = console or Console()

    args.log_file = None
    if args.log_to_file:
        layout.ensure()
        args.log_file = run_log_path(layout.logs)
    handler_ids = setup_logging(
        LogConfig(level=args.log_level, file=str(args.log_file) if args.log_file else None)
    )
    try:
        return args.handler(args, layout, registry or default_registry(), console)
    except ChainwardError as e:
        log.error(str(e))
        console.print(f"[red]error:[/red] {e}")
        return 1
    finally:
        teardown_logging(handler_ids)
