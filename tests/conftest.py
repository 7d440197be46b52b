from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from pathlib import Path

import pytest

from chainward.constants import InstanceState
from chainward.errors import ProviderError
from chainward.nodes import BITCOIN_TESTNET
from chainward.probe import PhaseSettings, ProbeSettings
from chainward.shell import CommandResult, SSHConfig
from chainward.state import OutputLayout
from chainward.types import KeyPair, LaunchSpec, ProvisionRequest, ResourceKind, ResourceRecord, SecurityRule
from chainward.workflow import ProvisionContext

MUTATIONS = frozenset(
    {
        "create-key-pair",
        "create-security-group",
        "launch-instance",
        "terminate-instance",
        "delete-security-group",
        "delete-key-pair",
    }
)


class FakeGateway:
    """In-memory ProviderGateway recording every call.

    Args:
        statuses: Successive ``describe_status`` answers; the last one repeats.
        fail: Operation names that raise ``ProviderError``.
        failing_deletes: Operation names whose best-effort delete reports False.
        key_exists: Simulate a key pair that already exists remotely.
        local_key: Whether the existing key has a local private key file.
        address: Public address returned after launch.
    """

    def __init__(
        self,
        *,
        statuses: Sequence[str] = (InstanceState.RUNNING,),
        fail: Iterable[str] = (),
        failing_deletes: Iterable[str] = (),
        key_exists: bool = False,
        local_key: bool = True,
        address: str | None = "203.0.113.10",
    ) -> None:
        self.calls: list[tuple[str, str]] = []
        self._statuses = list(statuses)
        self._fail = set(fail)
        self._failing_deletes = set(failing_deletes)
        self._key_exists = key_exists
        self._local_key = local_key
        self._address = address

    @property
    def name(self) -> str:
        return "fake"

    @property
    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [(op, arg) for op, arg in self.calls if op in MUTATIONS]

    def _call(self, op: str, arg: str) -> None:
        self.calls.append((op, arg))
        if op in self._fail:
            raise ProviderError(op, "simulated failure", "Simulated")

    def verify_credentials(self) -> None:
        self._call("verify-credentials", "")

    def ensure_key_pair(self, name, key_dir: Path, on_created) -> KeyPair:
        if self._key_exists:
            self._call("describe-key-pair", name)
            path = key_dir / f"{name}.pem" if self._local_key else None
            return KeyPair(name=name, path=path, created=False)
        self._call("create-key-pair", name)
        on_created(name)
        if "write-key" in self._fail:
            from chainward.errors import KeyMaterialError

            raise KeyMaterialError("cannot write key")
        return KeyPair(name=name, path=key_dir / f"{name}.pem", created=True)

    def ensure_security_group(self, name, rules: Sequence[SecurityRule], tags: Mapping[str, str], on_created) -> str:
        self.rules = tuple(rules)
        self.tags = dict(tags)
        self._call("create-security-group", name)
        on_created("sg-123")
        return "sg-123"

    def launch_instance(self, spec: LaunchSpec, user_data: str, on_created) -> str:
        self.spec = spec
        self.user_data = user_data
        self._call("launch-instance", spec.name)
        on_created("i-123")
        if "wait-running" in self._fail:
            raise ProviderError("ec2:WaitInstanceRunning", "waiter failed")
        return "i-123"

    def get_public_address(self, instance_id: str) -> str | None:
        self._call("get-public-address", instance_id)
        return self._address

    def describe_status(self, instance_id: str) -> str:
        self._call("describe-status", instance_id)
        if len(self._statuses) > 1:
            return self._statuses.pop(0)
        return self._statuses[0]

    def terminate_instance(self, instance_id: str) -> bool:
        self.calls.append(("terminate-instance", instance_id))
        return "terminate-instance" not in self._failing_deletes

    def delete_security_group(self, group_id: str) -> bool:
        self.calls.append(("delete-security-group", group_id))
        return "delete-security-group" not in self._failing_deletes

    def delete_key_pair(self, name: str) -> bool:
        self.calls.append(("delete-key-pair", name))
        return "delete-key-pair" not in self._failing_deletes

    def recovery_command(self, record: ResourceRecord) -> str:
        return f"fake-cli delete {record.kind} {record.id}"


class FakeShell:
    """RemoteShell answering commands from a script of responses.

    ``responses`` maps a substring of the command to a list of results; each
    call consumes the next one and the last one repeats. Exceptions in the
    list are raised instead of returned.
    """

    def __init__(self, responses: Mapping[str, list[CommandResult | Exception]] | None = None) -> None:
        self._responses = {k: list(v) for k, v in (responses or {}).items()}
        self.commands: list[str] = []
        self.closed = False

    def run(self, command: str, timeout: int = 30) -> CommandResult:
        self.commands.append(command)
        for fragment, results in self._responses.items():
            if fragment in command:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, Exception):
                    raise result
                return result
        return CommandResult(0, "ok\n")

    def close(self) -> None:
        self.closed = True


def bootstrap_output(init: str, service: str) -> CommandResult:
    return CommandResult(0, f"status: {init}\nservice: {service}\n")


def no_sleep(seconds: float) -> None:
    pass


FAST_PROBE = ProbeSettings(
    network=PhaseSettings(interval=0, max_attempts=5),
    shell=PhaseSettings(interval=0, max_attempts=5, initial_delay=30),
    bootstrap=PhaseSettings(interval=0, max_attempts=5),
    health=PhaseSettings(interval=0, max_attempts=5),
)


@pytest.fixture
def layout(tmp_path: Path) -> OutputLayout:
    return OutputLayout(tmp_path / "home")


@pytest.fixture
def request_() -> ProvisionRequest:
    return ProvisionRequest(
        provider="fake",
        node_type="bitcoin",
        region="us-east-1",
        instance_size="m5.xlarge",
        disk_size=500,
        instance_name="chainward-fake-bitcoin",
        key_name="chainward-fake-key",
        security_group_name="chainward-fake-sg",
        image_id="ami-0c7217cdde317cfec",
    )


@pytest.fixture
def make_context(layout: OutputLayout, request_: ProvisionRequest):
    """Build a ProvisionContext around a fake gateway and shell."""

    def build(
        gateway: FakeGateway | None = None,
        shell: FakeShell | None = None,
        *,
        reachable: bool | Sequence[bool] = True,
        **changes,
    ) -> ProvisionContext:
        answers = [reachable] if isinstance(reachable, bool) else list(reachable)

        def check(host: str) -> bool:
            return answers.pop(0) if len(answers) > 1 else answers[0]

        shell = shell or FakeShell({"cloud-init status": [bootstrap_output("done", "active")]})

        def shell_factory(config: SSHConfig) -> FakeShell:
            return shell

        return ProvisionContext(
            request=replace(request_, **changes),
            gateway=gateway or FakeGateway(),
            layout=layout,
            node=BITCOIN_TESTNET,
            shell_factory=shell_factory,
            probe_settings=FAST_PROBE,
            reachable=check,
            sleep=no_sleep,
            required_tools=(),
        )

    return build


def records(*pairs: tuple[ResourceKind, str]) -> list[ResourceRecord]:
    return [ResourceRecord(kind, "fake", rid) for kind, rid in pairs]
