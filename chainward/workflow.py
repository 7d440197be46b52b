"""Provisioning state machine.

    INIT -> KEY_READY -> SECURITY_GROUP_READY -> INSTANCE_LAUNCHED
         -> NETWORK_VERIFIED -> DONE

Each transition is one gateway call (or, for NETWORK_VERIFIED, a probe run
through the bootstrap phase). A fatal failure in any state moves to
ABORTING, which tears down every tracked resource in reverse registration
order before the run returns. A readiness timeout ends in a partial
success and leaves the resources running.
"""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from types import FrameType

from loguru import logger

from chainward.bootstrap import render
from chainward.constants import ChainwardTag, SSH_PORT
from chainward.errors import ChainwardError, ProviderError, ProvisioningError, WorkflowInterrupted
from chainward.network import Reachability, reachable, require_tool
from chainward.nodes import NodeType, get_node_type
from chainward.probe import (
    DryRunProbe,
    Phase,
    Probe,
    ProbeSettings,
    ProbeTarget,
    ReadinessProbe,
    Sleep,
    Verdict,
)
from chainward.providers import ProviderGateway, ProviderRegistry
from chainward.scripts import write_teardown_script
from chainward.shell import ParamikoShell, ShellFactory, SSHConfig
from chainward.state import DeploymentRecord, OutputLayout, now, write_record
from chainward.tracker import ResourceTracker
from chainward.types import (
    KeyPair,
    LaunchSpec,
    OutcomeKind,
    ProvisionOutcome,
    ProvisionRequest,
    ResourceKind,
    ResourceRecord,
    SecurityRule,
    TeardownReport,
)

log = logger.bind(component="workflow")


class WorkflowState(StrEnum):
    INIT = "init"
    KEY_READY = "key-ready"
    SECURITY_GROUP_READY = "security-group-ready"
    INSTANCE_LAUNCHED = "instance-launched"
    NETWORK_VERIFIED = "network-verified"
    ABORTING = "aborting"
    DONE = "done"


type Teardown = Callable[[ProviderGateway, ResourceTracker], TeardownReport]

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


# =============================================================================
# Teardown
# =============================================================================


def teardown_resources(gateway: ProviderGateway, tracker: ResourceTracker) -> TeardownReport:
    """Delete every tracked resource, newest first.

    Each record is forgotten after its deletion attempt whatever the result,
    so running this twice never repeats a deletion.
    """
    destroyed: list[ResourceRecord] = []
    failed: list[ResourceRecord] = []

    for record in reversed(tracker.records()):
        try:
            match record.kind:
                case ResourceKind.INSTANCE:
                    ok = gateway.terminate_instance(record.id)
                case ResourceKind.SECURITY_GROUP:
                    ok = gateway.delete_security_group(record.id)
                case ResourceKind.KEY:
                    ok = gateway.delete_key_pair(record.id)
        except ProviderError as e:
            log.warning("Deleting {record} failed: {err}", record=record, err=e)
            ok = False
        tracker.discard(record)
        (destroyed if ok else failed).append(record)

    if destroyed or failed:
        log.info(
            "Teardown finished: {d} destroyed, {f} failed", d=len(destroyed), f=len(failed)
        )
    return TeardownReport(destroyed=tuple(destroyed), failed=tuple(failed))


# =============================================================================
# Context
# =============================================================================


@dataclass(slots=True)
class ProvisionContext:
    """Everything one provisioning run works with.

    Each run owns its context and tracker; nothing here is shared between
    runs.
    """

    request: ProvisionRequest
    gateway: ProviderGateway
    layout: OutputLayout
    node: NodeType
    tracker: ResourceTracker = field(default_factory=ResourceTracker)
    shell_factory: ShellFactory = ParamikoShell
    probe_settings: ProbeSettings = field(default_factory=ProbeSettings)
    reachable: Reachability = reachable
    sleep: Sleep = time.sleep
    required_tools: tuple[str, ...] = ("ping",)

    @classmethod
    def build(
        cls,
        request: ProvisionRequest,
        registry: ProviderRegistry,
        layout: OutputLayout,
        **overrides: object,
    ) -> ProvisionContext:
        return cls(
            request=request,
            gateway=registry.create_gateway(
                request.provider, request.region, dry_run=request.dry_run
            ),
            layout=layout,
            node=get_node_type(request.node_type),
            **overrides,  # type: ignore[arg-type]
        )

    def make_probe(self, target: ProbeTarget) -> Probe:
        if self.request.dry_run:
            return DryRunProbe(target)
        return ReadinessProbe(
            self.gateway,
            target,
            shell_factory=self.shell_factory,
            settings=self.probe_settings,
            reachable=self.reachable,
            sleep=self.sleep,
            diagnostics_dir=self.layout.logs,
        )


# =============================================================================
# Workflow
# =============================================================================


class ProvisioningWorkflow:
    """Drives one provisioning attempt to a ``ProvisionOutcome``.

    Args:
        context: Request, gateway, tracker and probe collaborators.
        teardown: Routine used both on fatal failures and on interrupts.
        handle_signals: Route SIGINT/SIGTERM into teardown. Only effective on
            the main thread.
    """

    def __init__(
        self,
        context: ProvisionContext,
        *,
        teardown: Teardown = teardown_resources,
        handle_signals: bool = True,
    ) -> None:
        self._ctx = context
        self._teardown = teardown
        self._handle_signals = handle_signals
        self._state = WorkflowState.INIT
        self._torn_down = False
        self._created: list[ResourceRecord] = []
        self._deferred_signals: list[int] = []
        self.history: list[WorkflowState] = [WorkflowState.INIT]

    @property
    def state(self) -> WorkflowState:
        return self._state

    def run(self) -> ProvisionOutcome:
        request = self._ctx.request
        log.info(
            "{mode}Provisioning {node} node '{name}' on {provider} ({region})",
            mode="[DRY RUN] " if request.dry_run else "",
            node=request.node_type,
            name=request.instance_name,
            provider=request.provider,
            region=request.region,
        )
        with self._signal_handlers():
            try:
                outcome = self._provision()
            except WorkflowInterrupted as e:
                log.warning("Interrupted by signal {signum}, rolling back", signum=e.signum)
                outcome = self._abort(str(e))
            except ChainwardError as e:
                log.error("Provisioning failed in state {state}: {err}", state=self._state, err=e)
                outcome = self._abort(str(e))
            except BaseException:
                self._abort("unexpected error")
                raise
            self._transition(WorkflowState.DONE)
            if outcome.ok:
                self._persist(outcome)

        if self._deferred_signals:
            log.warning("Signals received during cleanup: {sigs}", sigs=self._deferred_signals)
        return outcome

    def teardown(self) -> TeardownReport:
        """Run the injected teardown once; later calls are no-ops."""
        if self._torn_down:
            return TeardownReport()
        self._torn_down = True
        return self._teardown(self._ctx.gateway, self._ctx.tracker)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _provision(self) -> ProvisionOutcome:
        ctx = self._ctx
        user_data = self._preflight()

        key = self._step(self._ensure_key)
        self._transition(WorkflowState.KEY_READY)

        group_id = self._step(self._ensure_security_group)
        self._transition(WorkflowState.SECURITY_GROUP_READY)

        instance_id = self._step(lambda: self._launch(group_id, user_data))
        self._transition(WorkflowState.INSTANCE_LAUNCHED)

        address = self._step(lambda: ctx.gateway.get_public_address(instance_id))
        if not address:
            raise ProvisioningError(self._state, f"instance {instance_id} has no public address")
        log.info("Instance {id} public address: {address}", id=instance_id, address=address)

        ssh = (
            SSHConfig(host=address, username=ctx.request.ssh_user, key_path=key.path)
            if key.path is not None
            else None
        )
        probe = ctx.make_probe(ProbeTarget(instance_id, address, ctx.node, ssh))
        try:
            return self._verify(probe, instance_id, address, key)
        finally:
            probe.close()

    def _preflight(self) -> str:
        ctx = self._ctx
        if not ctx.request.dry_run:
            for tool in ctx.required_tools:
                require_tool(tool)
        ctx.gateway.verify_credentials()
        ctx.layout.ensure()
        return render(ctx.node.build_payload(), self._template_values(), strict=True)

    def _template_values(self) -> dict[str, object]:
        request = self._ctx.request
        return {
            **self._ctx.node.template_values,
            "INSTANCE_NAME": request.instance_name,
            "NODE_TYPE": request.node_type,
            "PROVIDER": request.provider,
            "REGION": request.region,
            "PROJECT": request.project,
            "ENVIRONMENT": request.environment,
        }

    def _ensure_key(self) -> KeyPair:
        ctx = self._ctx
        return ctx.gateway.ensure_key_pair(
            ctx.request.key_name, ctx.layout.keys, self._on_created(ResourceKind.KEY)
        )

    def _ensure_security_group(self) -> str:
        ctx = self._ctx
        request = ctx.request
        rules = (
            SecurityRule.tcp(SSH_PORT, "SSH"),
            SecurityRule.tcp(ctx.node.p2p_port, f"{ctx.node.name} P2P"),
            SecurityRule.icmp_echo(),
        )
        tags = {
            ChainwardTag.NAME: request.security_group_name,
            ChainwardTag.PROJECT: request.project,
            ChainwardTag.ENVIRONMENT: request.environment,
            ChainwardTag.MANAGED: "true",
        }
        return ctx.gateway.ensure_security_group(
            request.security_group_name, rules, tags, self._on_created(ResourceKind.SECURITY_GROUP)
        )

    def _launch(self, group_id: str, user_data: str) -> str:
        ctx = self._ctx
        request = ctx.request
        spec = LaunchSpec(
            name=request.instance_name,
            image_id=request.image_id,
            instance_size=request.instance_size,
            disk_size=request.disk_size,
            key_name=request.key_name,
            security_group_id=group_id,
            project=request.project,
            environment=request.environment,
        )
        return ctx.gateway.launch_instance(spec, user_data, self._on_created(ResourceKind.INSTANCE))

    def _verify(self, probe: Probe, instance_id: str, address: str, key: KeyPair) -> ProvisionOutcome:
        request = self._ctx.request

        def outcome(kind: OutcomeKind, reason: str = "") -> ProvisionOutcome:
            return ProvisionOutcome(
                kind=kind,
                reason=reason,
                instance_id=instance_id,
                public_address=address,
                key_path=key.path,
                created=tuple(self._created),
                dry_run=request.dry_run,
            )

        network = probe.network()
        if network.verdict is Verdict.FATAL:
            raise ProvisioningError(self._state, network.reason)
        if network.verdict is Verdict.TIMED_OUT:
            return outcome(OutcomeKind.PARTIAL_SUCCESS, network.reason)

        if key.path is None:
            log.warning("Skipping remote checks: private key for {key} is unavailable", key=key.name)
            return outcome(OutcomeKind.PARTIAL_SUCCESS, "private key unavailable")

        report = probe.run((Phase.SHELL, Phase.BOOTSTRAP))
        if report.verdict is Verdict.FATAL:
            raise ProvisioningError(self._state, report.reason)
        if report.verdict is Verdict.TIMED_OUT:
            return outcome(OutcomeKind.PARTIAL_SUCCESS, report.reason)
        self._transition(WorkflowState.NETWORK_VERIFIED)

        if node_report := probe.node_report():
            log.info("Node report:\n{report}", report=node_report)

        if request.wait_for_sync:
            health = probe.health(request.sync_threshold)
            if health.verdict is Verdict.FATAL:
                raise ProvisioningError(self._state, health.reason)
            if health.verdict is Verdict.TIMED_OUT:
                return outcome(OutcomeKind.PARTIAL_SUCCESS, health.reason)

        return outcome(OutcomeKind.SUCCESS)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _step[T](self, action: Callable[[], T]) -> T:
        """Run one gateway call, naming the current state in any failure."""
        try:
            return action()
        except ProviderError as e:
            raise ProvisioningError(self._state, str(e)) from e

    def _on_created(self, kind: ResourceKind) -> Callable[[str], None]:
        def register(resource_id: str) -> None:
            record = self._ctx.tracker.register(kind, self._ctx.gateway.name, resource_id)
            self._created.append(record)

        return register

    def _transition(self, state: WorkflowState) -> None:
        log.debug("{old} -> {new}", old=self._state, new=state)
        self._state = state
        self.history.append(state)

    def _abort(self, reason: str) -> ProvisionOutcome:
        self._transition(WorkflowState.ABORTING)
        ctx = self._ctx
        report = self.teardown()
        if report.failed:
            log.error(
                "Could not delete {n} resource(s); delete them manually", n=len(report.failed)
            )
        instance_id = next(
            (r.id for r in self._created if r.kind is ResourceKind.INSTANCE), None
        )
        return ProvisionOutcome(
            kind=OutcomeKind.FAILED,
            reason=reason,
            instance_id=instance_id,
            created=tuple(self._created),
            destroyed=report.destroyed,
            failed_deletions=report.failed,
            recovery_commands=tuple(ctx.gateway.recovery_command(r) for r in report.failed),
            dry_run=ctx.request.dry_run,
        )

    def _persist(self, outcome: ProvisionOutcome) -> None:
        ctx = self._ctx
        request = ctx.request
        if not request.dry_run:
            tracker = ctx.tracker
            record = DeploymentRecord(
                name=request.instance_name,
                provider=request.provider,
                node_type=request.node_type,
                region=request.region,
                instance_id=outcome.instance_id or "",
                public_address=outcome.public_address or "",
                key_name=request.key_name,
                key_path=str(outcome.key_path or ""),
                key_created=tracker.lookup(ResourceKind.KEY, ctx.gateway.name) is not None,
                ssh_user=request.ssh_user,
                security_group_id=tracker.lookup(ResourceKind.SECURITY_GROUP, ctx.gateway.name) or "",
                security_group_name=request.security_group_name,
                outcome=outcome.kind,
                created_at=now(),
            )
            try:
                write_record(ctx.layout, record)
            except OSError as e:
                log.error("Could not save deployment record for {name}: {err}", name=request.instance_name, err=e)
        try:
            write_teardown_script(ctx.layout, request)
        except OSError as e:
            log.error("Could not write teardown script for {name}: {err}", name=request.instance_name, err=e)

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = {sig: signal.getsignal(sig) for sig in INTERRUPT_SIGNALS}
        for sig in INTERRUPT_SIGNALS:
            signal.signal(sig, self._on_signal)
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        if self._state in (WorkflowState.ABORTING, WorkflowState.DONE):
            log.warning("Signal {signum} received during cleanup, deferring", signum=signum)
            self._deferred_signals.append(signum)
            return
        raise WorkflowInterrupted(signum)


def provision(
    request: ProvisionRequest,
    layout: OutputLayout,
    registry: ProviderRegistry | None = None,
    *,
    handle_signals: bool = True,
    **overrides: object,
) -> ProvisionOutcome:
    """Build a context for ``request`` and run one workflow to completion."""
    from chainward.providers import default_registry

    context = ProvisionContext.build(request, registry or default_registry(), layout, **overrides)
    return ProvisioningWorkflow(context, handle_signals=handle_signals).run()
