"""Layered readiness polling for a freshly launched node.

Phases run strictly in order, each with its own interval and bound:

1. network   - ICMP / TCP reachability of the public address
2. shell     - a trivial remote command succeeds
3. bootstrap - cloud-init reports done and the node service is active
4. health    - the node's sync progress reaches a threshold (optional)

Every iteration first asks the provider for the instance status and
aborts the phase as soon as the instance has left the running family, so
a terminated instance is never polled until timeout.

Polling uses tenacity: "not ready yet" is a private exception that is
retried with a fixed wait, fatal conditions are a second private
exception that tenacity does not retry, and exhausting the stop condition
is reported as ``TIMED_OUT``.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

import paramiko
from loguru import logger
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)
from tenacity.stop import stop_base

from chainward import constants
from chainward.constants import CLOUD_INIT_OUTPUT_LOG, RUNNING_FAMILY
from chainward.errors import ProviderError
from chainward.network import Reachability, reachable
from chainward.nodes import NodeType
from chainward.providers.base import ProviderGateway
from chainward.shell import CommandResult, ParamikoShell, RemoteShell, ShellFactory, SSHConfig

log = logger.bind(component="probe")

type Sleep = Callable[[float], None]


class Phase(StrEnum):
    NETWORK = "network"
    SHELL = "shell"
    BOOTSTRAP = "bootstrap"
    HEALTH = "health"


class Verdict(StrEnum):
    CONTINUE = "continue"
    SUCCESS = "success"
    FATAL = "fatal"
    TIMED_OUT = "timed-out"


# =============================================================================
# Settings and results
# =============================================================================


@dataclass(frozen=True, slots=True)
class PhaseSettings:
    """Polling bounds of one phase.

    A phase stops at whichever of ``max_attempts`` and ``timeout`` (seconds)
    is reached first; with neither set it polls until success or a fatal
    condition.
    """

    interval: float
    timeout: float | None = None
    max_attempts: int | None = None
    initial_delay: float = 0.0

    def stop(self) -> stop_base:
        stop: stop_base = stop_never
        if self.max_attempts is not None:
            stop = stop_after_attempt(self.max_attempts)
        if self.timeout is not None:
            delay = stop_after_delay(self.timeout)
            stop = delay if stop is stop_never else stop | delay
        return stop


@dataclass(frozen=True, slots=True)
class ProbeSettings:
    network: PhaseSettings = PhaseSettings(
        interval=constants.NETWORK_INTERVAL, max_attempts=constants.NETWORK_MAX_ATTEMPTS
    )
    shell: PhaseSettings = PhaseSettings(
        interval=constants.SHELL_INTERVAL,
        timeout=constants.SHELL_TIMEOUT,
        initial_delay=constants.SHELL_INITIAL_DELAY,
    )
    bootstrap: PhaseSettings = PhaseSettings(
        interval=constants.BOOTSTRAP_INTERVAL, timeout=constants.BOOTSTRAP_TIMEOUT
    )
    health: PhaseSettings = PhaseSettings(
        interval=constants.HEALTH_INTERVAL, timeout=constants.HEALTH_TIMEOUT
    )

    def for_phase(self, phase: Phase) -> PhaseSettings:
        return getattr(self, phase.value)


@dataclass(slots=True)
class ProbeState:
    """Mutable polling state, discarded once a phase reaches a verdict."""

    attempts: int = 0
    started: float = field(default_factory=time.monotonic)
    last_status: str | None = None
    last_remote: str | None = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


@dataclass(frozen=True, slots=True)
class PhaseResult:
    phase: Phase
    verdict: Verdict
    reason: str = ""
    attempts: int = 0
    last_status: str | None = None
    last_remote: str | None = None
    progress: float | None = None

    @property
    def ok(self) -> bool:
        return self.verdict is Verdict.SUCCESS


@dataclass(frozen=True, slots=True)
class ProbeReport:
    """Results of the phases that ran, in order."""

    results: tuple[PhaseResult, ...] = ()

    @property
    def final(self) -> PhaseResult | None:
        return self.results[-1] if self.results else None

    @property
    def verdict(self) -> Verdict:
        final = self.final
        return final.verdict if final else Verdict.SUCCESS

    @property
    def reason(self) -> str:
        final = self.final
        return final.reason if final else ""


@dataclass(frozen=True, slots=True)
class ProbeTarget:
    """What to probe: the instance, its address and how to log in."""

    instance_id: str
    host: str
    node: NodeType
    ssh: SSHConfig | None = None


class Probe(Protocol):
    def network(self) -> PhaseResult: ...

    def shell_access(self) -> PhaseResult: ...

    def bootstrap(self) -> PhaseResult: ...

    def health(self, threshold: float) -> PhaseResult: ...

    def run(self, phases: Sequence[Phase]) -> ProbeReport: ...

    def node_report(self) -> str | None: ...

    def close(self) -> None: ...


# =============================================================================
# Polling control flow
# =============================================================================


class _NotReadyError(Exception):
    """Condition not met yet - retry."""


class _FatalError(Exception):
    """Stop polling immediately."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def _parse_key_values(output: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            values[key.strip().lower()] = value.strip()
    return values


def cloud_init_state(output: str) -> str:
    """Classify ``cloud-init status`` output as "error", "done" or "running".

    cloud-init exits non-zero on error and on degraded completion, and any
    ``status:`` line mentioning "error" wins over one mentioning "done".
    """
    statuses = [
        value.strip().lower()
        for key, sep, value in (line.partition(":") for line in output.splitlines())
        if sep and key.strip().lower() == "status"
    ]
    if any("error" in s for s in statuses):
        return "error"
    if any("done" in s for s in statuses):
        return "done"
    return "running"


class ReadinessProbe:
    """Polls one instance through the readiness phases.

    Args:
        gateway: Provider used for the status cross-check.
        target: Instance, address, node type and SSH settings.
        shell_factory: Builds the remote shell from ``target.ssh``.
        settings: Per-phase polling bounds.
        reachable: Network reachability check.
        sleep: Blocking wait between attempts.
        diagnostics_dir: Where remote diagnostics are saved.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        target: ProbeTarget,
        *,
        shell_factory: ShellFactory = ParamikoShell,
        settings: ProbeSettings | None = None,
        reachable: Reachability = reachable,
        sleep: Sleep = time.sleep,
        diagnostics_dir: Path | None = None,
    ) -> None:
        self._gateway = gateway
        self._target = target
        self._shell_factory = shell_factory
        self._settings = settings or ProbeSettings()
        self._reachable = reachable
        self._sleep = sleep
        self._diagnostics_dir = diagnostics_dir
        self._shell: RemoteShell | None = None

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def network(self) -> PhaseResult:
        host = self._target.host
        log.info("Waiting for {host} to become reachable", host=host)

        def check(state: ProbeState) -> None:
            if not self._reachable(host):
                raise _NotReadyError(f"{host} unreachable")

        return self._poll(Phase.NETWORK, check)

    def shell_access(self) -> PhaseResult:
        log.info("Waiting for SSH on {host}", host=self._target.host)

        def check(state: ProbeState) -> None:
            try:
                result = self._run("echo ok")
            except (OSError, paramiko.SSHException, EOFError) as e:
                self._save_diagnostic("ssh-attempts", f"attempt {state.attempts}: {e!r}\n", append=True)
                raise _NotReadyError(str(e)) from e
            if not result.ok:
                self._save_diagnostic(
                    "ssh-attempts",
                    f"attempt {state.attempts}: exit {result.exit_status}: {result.stderr}\n",
                    append=True,
                )
                raise _NotReadyError(f"exit status {result.exit_status}")

        return self._poll(Phase.SHELL, check)

    def bootstrap(self) -> PhaseResult:
        service = self._target.node.service
        command = (
            "cloud-init status 2>/dev/null; "
            f"echo \"service: $(systemctl is-active {service} 2>/dev/null)\""
        )
        log.info("Monitoring node setup (service {service})", service=service)

        def check(state: ProbeState) -> None:
            result = self._remote(command)
            init_status = cloud_init_state(result.stdout)
            service_status = _parse_key_values(result.stdout).get("service") or "unknown"
            state.last_remote = f"cloud-init={init_status} {service}={service_status}"
            log.debug("Setup status: {remote}", remote=state.last_remote)

            if init_status == "error":
                self._capture_cloud_init_log()
                raise _FatalError("cloud-init reported an error during node setup")
            if init_status == "done" and service_status == "active":
                return
            raise _NotReadyError(state.last_remote)

        return self._poll(Phase.BOOTSTRAP, check)

    def health(self, threshold: float) -> PhaseResult:
        node = self._target.node
        log.info(
            "Waiting for {field} >= {threshold}", field=node.progress_field, threshold=threshold
        )
        progress: float | None = None

        def check(state: ProbeState) -> None:
            nonlocal progress
            result = self._remote(node.status_command)
            if not result.ok:
                raise _NotReadyError(f"status command exited {result.exit_status}")
            try:
                progress = float(json.loads(result.stdout)[node.progress_field])
            except (ValueError, KeyError, TypeError) as e:
                raise _NotReadyError(f"unparseable status output: {e}") from e
            state.last_remote = f"{node.progress_field}={progress:.4f}"
            log.info("Sync progress: {pct:.2f}%", pct=progress * 100)
            if progress < threshold:
                raise _NotReadyError(state.last_remote)

        result = self._poll(Phase.HEALTH, check)
        return PhaseResult(
            phase=result.phase,
            verdict=result.verdict,
            reason=result.reason,
            attempts=result.attempts,
            last_status=result.last_status,
            last_remote=result.last_remote,
            progress=progress,
        )

    def run(self, phases: Sequence[Phase]) -> ProbeReport:
        """Run ``phases`` (health excluded) in order, stopping at the first non-success."""
        runners = {
            Phase.NETWORK: self.network,
            Phase.SHELL: self.shell_access,
            Phase.BOOTSTRAP: self.bootstrap,
        }
        results: list[PhaseResult] = []
        for phase in phases:
            result = runners[phase]()
            results.append(result)
            if not result.ok:
                break
        return ProbeReport(tuple(results))

    def node_report(self) -> str | None:
        """Output of the node's report command, or None if it fails."""
        try:
            result = self._run(self._target.node.report_command)
        except (OSError, paramiko.SSHException, EOFError, _NotReadyError) as e:
            log.warning("Could not fetch node report: {err}", err=e)
            return None
        return result.stdout if result.ok else None

    def close(self) -> None:
        if self._shell is not None:
            self._shell.close()
            self._shell = None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _poll(self, phase: Phase, check: Callable[[ProbeState], None]) -> PhaseResult:
        settings = self._settings.for_phase(phase)
        state = ProbeState()

        if settings.initial_delay:
            log.debug("Waiting {delay}s before {phase} checks", delay=settings.initial_delay, phase=phase)
            self._sleep(settings.initial_delay)

        def attempt() -> None:
            state.attempts += 1
            self._check_provider(state)
            check(state)

        def result(verdict: Verdict, reason: str = "") -> PhaseResult:
            return PhaseResult(
                phase=phase,
                verdict=verdict,
                reason=reason,
                attempts=state.attempts,
                last_status=state.last_status,
                last_remote=state.last_remote,
            )

        retrying = Retrying(
            stop=settings.stop(),
            wait=wait_fixed(settings.interval),
            retry=retry_if_exception_type(_NotReadyError),
            sleep=self._sleep,
        )
        try:
            retrying(attempt)
        except _FatalError as e:
            log.error("{phase} phase failed: {reason}", phase=phase, reason=e.reason)
            return result(Verdict.FATAL, e.reason)
        except RetryError:
            reason = f"{phase} phase timed out after {state.attempts} attempts ({state.elapsed:.0f}s)"
            log.warning(reason)
            return result(Verdict.TIMED_OUT, reason)

        log.info("{phase} phase complete after {n} attempts", phase=phase, n=state.attempts)
        return result(Verdict.SUCCESS)

    def _check_provider(self, state: ProbeState) -> None:
        instance_id = self._target.instance_id
        try:
            status = self._gateway.describe_status(instance_id)
        except ProviderError as e:
            raise _NotReadyError(str(e)) from e
        state.last_status = status
        if status not in RUNNING_FAMILY:
            raise _FatalError(f"instance {instance_id} is {status}")

    def _run(self, command: str) -> CommandResult:
        if self._shell is None:
            if self._target.ssh is None:
                raise _NotReadyError("no SSH credentials for this instance")
            self._shell = self._shell_factory(self._target.ssh)
        return self._shell.run(command)

    def _remote(self, command: str) -> CommandResult:
        """Run ``command``, treating connection failures as not-ready."""
        try:
            return self._run(command)
        except (OSError, paramiko.SSHException, EOFError) as e:
            log.debug("Remote command failed: {err}", err=e)
            raise _NotReadyError(str(e)) from e

    def _capture_cloud_init_log(self) -> None:
        try:
            result = self._run(f"sudo tail -n 500 {CLOUD_INIT_OUTPUT_LOG}")
        except (OSError, paramiko.SSHException, EOFError, _NotReadyError) as e:
            log.warning("Could not fetch cloud-init log: {err}", err=e)
            return
        self._save_diagnostic("cloud-init-output", result.stdout)

    def _save_diagnostic(self, name: str, content: str, *, append: bool = False) -> None:
        if self._diagnostics_dir is None:
            return
        path = self._diagnostics_dir / f"{self._target.instance_id}-{name}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a" if append else "w") as f:
            f.write(content)
        if not append:
            log.info("Saved {name} diagnostics to {path}", name=name, path=path)


class DryRunProbe:
    """Probe that reports every phase as immediately successful."""

    def __init__(self, target: ProbeTarget) -> None:
        self._target = target

    def _success(self, phase: Phase) -> PhaseResult:
        log.info("[DRY RUN] Would run {phase} checks against {host}", phase=phase, host=self._target.host)
        return PhaseResult(phase=phase, verdict=Verdict.SUCCESS, attempts=1, last_status="running")

    def network(self) -> PhaseResult:
        return self._success(Phase.NETWORK)

    def shell_access(self) -> PhaseResult:
        return self._success(Phase.SHELL)

    def bootstrap(self) -> PhaseResult:
        return self._success(Phase.BOOTSTRAP)

    def health(self, threshold: float) -> PhaseResult:
        result = self._success(Phase.HEALTH)
        return PhaseResult(
            phase=result.phase, verdict=result.verdict, attempts=1, last_status="running", progress=1.0
        )

    def run(self, phases: Sequence[Phase]) -> ProbeReport:
        return ProbeReport(tuple(self._success(phase) for phase in phases))

    def node_report(self) -> str | None:
        return f"[dry run] {self._target.node.name} node {self._target.instance_id}"

    def close(self) -> None:
        pass
