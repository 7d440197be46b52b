import signal
from dataclasses import replace
from pathlib import Path

import pytest

from chainward import workflow as workflow_module
from chainward.constants import DRY_RUN_ADDRESS, InstanceState
from chainward.errors import ProviderError
from chainward.nodes import BITCOIN_TESTNET
from chainward.providers import DryRunGateway, ProviderEntry, ProviderRegistry, default_registry
from chainward.shell import CommandResult
from chainward.state import OutputLayout, read_record
from chainward.tracker import ResourceTracker
from chainward.types import OutcomeKind, ProvisionRequest, ResourceKind, TeardownReport
from chainward.workflow import ProvisionContext, ProvisioningWorkflow, WorkflowState, teardown_resources
from tests.conftest import FakeGateway, FakeShell, bootstrap_output

pytestmark = [pytest.mark.unit]

CREATES = {
    ResourceKind.KEY: ("create-key-pair", "delete-key-pair"),
    ResourceKind.SECURITY_GROUP: ("create-security-group", "delete-security-group"),
    ResourceKind.INSTANCE: ("launch-instance", "terminate-instance"),
}


def run(context: ProvisionContext, **kwargs) -> tuple[ProvisioningWorkflow, object]:
    workflow = ProvisioningWorkflow(context, handle_signals=False, **kwargs)
    return workflow, workflow.run()


class TestSuccess:
    def test_reaches_done_with_all_resources(self, make_context, layout: OutputLayout):
        context = make_context()
        workflow, outcome = run(context)

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.instance_id == "i-123"
        assert outcome.public_address == "203.0.113.10"
        assert [r.kind for r in outcome.created] == [
            ResourceKind.KEY,
            ResourceKind.SECURITY_GROUP,
            ResourceKind.INSTANCE,
        ]
        assert workflow.history == [
            WorkflowState.INIT,
            WorkflowState.KEY_READY,
            WorkflowState.SECURITY_GROUP_READY,
            WorkflowState.INSTANCE_LAUNCHED,
            WorkflowState.NETWORK_VERIFIED,
            WorkflowState.DONE,
        ]

    def test_leaves_resources_in_place(self, make_context):
        gateway = FakeGateway()
        _, outcome = run(make_context(gateway))
        assert outcome.ok
        assert not [op for op in gateway.operations if op.startswith(("delete", "terminate"))]

    def test_security_group_rules_and_tags(self, make_context):
        gateway = FakeGateway()
        run(make_context(gateway))
        ports = [(r.protocol, r.from_port) for r in gateway.rules]
        assert ports == [("tcp", 22), ("tcp", 18333), ("icmp", -1)]
        assert gateway.tags["chainward:managed"] == "true"
        assert gateway.tags["Project"] == "chainward"

    def test_launch_spec_and_rendered_payload(self, make_context):
        gateway = FakeGateway()
        run(make_context(gateway))
        assert gateway.spec.security_group_id == "sg-123"
        assert gateway.spec.disk_size == 500
        assert "{{" not in gateway.user_data
        assert "chainward-fake-bitcoin" in gateway.user_data

    def test_persists_record_and_teardown_script(self, make_context, layout: OutputLayout):
        run(make_context())
        record = read_record(layout, "chainward-fake-bitcoin")
        assert record.instance_id == "i-123"
        assert record.security_group_id == "sg-123"
        assert record.key_created is True
        assert record.outcome == "success"

        script = layout.script_path("chainward-fake-bitcoin").read_text()
        assert "teardown chainward-fake-bitcoin" in script
        assert "--dry-run" not in script

    def test_unwritable_output_still_returns_outcome(self, make_context, monkeypatch: pytest.MonkeyPatch):
        def disk_full(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(workflow_module, "write_record", disk_full)
        monkeypatch.setattr(workflow_module, "write_teardown_script", disk_full)
        gateway = FakeGateway()
        workflow, outcome = run(make_context(gateway))

        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.instance_id == "i-123"
        assert workflow.state is WorkflowState.DONE
        assert not [op for op in gateway.operations if op.startswith(("delete", "terminate"))]

    def test_wait_for_sync_runs_health_phase(self, make_context):
        shell = FakeShell(
            {
                "cloud-init status": [bootstrap_output("done", "active")],
                "chainward-status": [
                    CommandResult(0, '{"verificationprogress": 0.5}'),
                    CommandResult(0, '{"verificationprogress": 0.999}'),
                ],
            }
        )
        _, outcome = run(make_context(shell=shell, wait_for_sync=True))
        assert outcome.kind is OutcomeKind.SUCCESS
        assert sum("chainward-status" in c for c in shell.commands) == 2


class TestRollback:
    @pytest.mark.parametrize(
        ("failure", "expected_deletes"),
        [
            ("verify-credentials", []),
            ("create-key-pair", []),
            ("write-key", [("delete-key-pair", "chainward-fake-key")]),
            ("create-security-group", [("delete-key-pair", "chainward-fake-key")]),
            (
                "wait-running",
                [
                    ("terminate-instance", "i-123"),
                    ("delete-security-group", "sg-123"),
                    ("delete-key-pair", "chainward-fake-key"),
                ],
            ),
        ],
    )
    def test_every_created_resource_is_deleted_in_reverse(self, make_context, failure, expected_deletes):
        gateway = FakeGateway(fail=[failure])
        _, outcome = run(make_context(gateway))

        deletes = [
            (op, arg) for op, arg in gateway.calls if op.startswith(("delete", "terminate"))
        ]
        assert outcome.kind is OutcomeKind.FAILED
        assert deletes == expected_deletes
        for record in outcome.created:
            create, delete = CREATES[record.kind]
            assert (delete, record.id) in deletes
        assert len(outcome.destroyed) == len(expected_deletes)

    def test_failure_names_the_state(self, make_context):
        _, outcome = run(make_context(FakeGateway(fail=["create-security-group"])))
        assert outcome.reason.startswith("[key-ready]")

    def test_missing_public_address_is_fatal(self, make_context):
        gateway = FakeGateway(address=None)
        _, outcome = run(make_context(gateway))
        assert outcome.kind is OutcomeKind.FAILED
        assert "no public address" in outcome.reason
        assert ("terminate-instance", "i-123") in gateway.calls

    def test_instance_terminated_during_probe_rolls_back(self, make_context):
        gateway = FakeGateway(statuses=[InstanceState.TERMINATED])
        _, outcome = run(make_context(gateway, reachable=False))
        assert outcome.kind is OutcomeKind.FAILED
        assert len(outcome.destroyed) == 3

    def test_bootstrap_error_rolls_back(self, make_context):
        shell = FakeShell({"cloud-init status": [bootstrap_output("error", "inactive")]})
        gateway = FakeGateway()
        _, outcome = run(make_context(gateway, shell))
        assert outcome.kind is OutcomeKind.FAILED
        assert "cloud-init" in outcome.reason
        assert ("terminate-instance", "i-123") in gateway.calls

    def test_failed_deletion_reported_with_recovery_command(self, make_context):
        gateway = FakeGateway(fail=["wait-running"], failing_deletes=["delete-security-group"])
        _, outcome = run(make_context(gateway))
        assert [r.id for r in outcome.failed_deletions] == ["sg-123"]
        assert outcome.recovery_commands == ("fake-cli delete security-group sg-123",)
        assert ("delete-key-pair", "chainward-fake-key") in gateway.calls

    def test_no_record_written_on_failure(self, make_context, layout: OutputLayout):
        run(make_context(FakeGateway(fail=["wait-running"])))
        assert not layout.record_path("chainward-fake-bitcoin").exists()

    def test_injected_teardown_is_used(self, make_context):
        seen: list[list[str]] = []

        def teardown(gateway, tracker: ResourceTracker) -> TeardownReport:
            seen.append([r.id for r in tracker])
            return TeardownReport()

        run(make_context(FakeGateway(fail=["create-security-group"])), teardown=teardown)
        assert seen == [["chainward-fake-key"]]


class TestTeardownIdempotence:
    def test_second_teardown_is_a_noop(self, make_context):
        gateway = FakeGateway(fail=["wait-running"])
        workflow, _ = run(make_context(gateway))
        calls = len(gateway.calls)

        assert workflow.teardown() == TeardownReport()
        assert len(gateway.calls) == calls

    def test_empty_tracker_makes_no_calls(self):
        gateway = FakeGateway()
        assert teardown_resources(gateway, ResourceTracker()) == TeardownReport()
        assert gateway.calls == []

    def test_records_forgotten_even_when_delete_fails(self):
        gateway = FakeGateway(failing_deletes=["terminate-instance"])
        tracker = ResourceTracker()
        tracker.register(ResourceKind.INSTANCE, "fake", "i-1")
        first = teardown_resources(gateway, tracker)
        second = teardown_resources(gateway, tracker)
        assert [r.id for r in first.failed] == ["i-1"]
        assert second == TeardownReport()

    def test_provider_error_during_delete_does_not_stop_teardown(self):
        class Exploding(FakeGateway):
            def terminate_instance(self, instance_id: str) -> bool:
                raise ProviderError("ec2:TerminateInstances", "boom")

        gateway = Exploding()
        tracker = ResourceTracker()
        tracker.register(ResourceKind.SECURITY_GROUP, "fake", "sg-1")
        tracker.register(ResourceKind.INSTANCE, "fake", "i-1")
        report = teardown_resources(gateway, tracker)
        assert [r.id for r in report.failed] == ["i-1"]
        assert [r.id for r in report.destroyed] == ["sg-1"]


class TestPartialSuccess:
    def test_network_timeout_keeps_resources(self, make_context, layout: OutputLayout):
        gateway = FakeGateway()
        _, outcome = run(make_context(gateway, reachable=False))

        assert outcome.kind is OutcomeKind.PARTIAL_SUCCESS
        assert "timed out" in outcome.reason
        assert not [op for op in gateway.operations if op.startswith(("delete", "terminate"))]
        assert read_record(layout, "chainward-fake-bitcoin").outcome == "partial-success"

    def test_bootstrap_timeout(self, make_context):
        shell = FakeShell({"cloud-init status": [bootstrap_output("running", "inactive")]})
        _, outcome = run(make_context(shell=shell))
        assert outcome.kind is OutcomeKind.PARTIAL_SUCCESS
        assert outcome.ok

    def test_missing_local_key_skips_shell_phases(self, make_context):
        gateway = FakeGateway(key_exists=True, local_key=False)
        shell = FakeShell()
        _, outcome = run(make_context(gateway, shell))

        assert outcome.kind is OutcomeKind.PARTIAL_SUCCESS
        assert outcome.reason == "private key unavailable"
        assert shell.commands == []
        assert ResourceKind.KEY not in [r.kind for r in outcome.created]


class TestInterrupts:
    def test_signal_during_launch_tears_down(self, make_context):
        class Interrupted(FakeGateway):
            def launch_instance(self, spec, user_data, on_created) -> str:
                on_created("i-999")
                signal.raise_signal(signal.SIGTERM)
                return "i-999"

        gateway = Interrupted()
        previous = signal.getsignal(signal.SIGTERM)
        outcome = ProvisioningWorkflow(make_context(gateway)).run()

        assert outcome.kind is OutcomeKind.FAILED
        assert "signal" in outcome.reason
        assert ("terminate-instance", "i-999") in gateway.calls
        assert signal.getsignal(signal.SIGTERM) is previous

    def test_signal_during_teardown_is_deferred(self, make_context):
        def teardown(gateway, tracker: ResourceTracker) -> TeardownReport:
            signal.raise_signal(signal.SIGINT)
            return teardown_resources(gateway, tracker)

        gateway = FakeGateway(fail=["create-security-group"])
        outcome = ProvisioningWorkflow(make_context(gateway), teardown=teardown).run()

        assert outcome.kind is OutcomeKind.FAILED
        assert ("delete-key-pair", "chainward-fake-key") in gateway.calls


class TestDryRun:
    def test_end_to_end_without_real_gateway(self, layout: OutputLayout):
        built: list[str] = []

        def factory(region: str):
            built.append(region)
            raise AssertionError("real gateway must not be built in dry-run")

        registry = ProviderRegistry(ProviderEntry("aws", factory, default_registry().defaults("aws")))
        request = ProvisionRequest(
            provider="aws",
            node_type="bitcoin",
            region="us-east-1",
            instance_size="m5.xlarge",
            disk_size=500,
            instance_name="chainward-aws-bitcoin",
            key_name="chainward-aws-key",
            security_group_name="chainward-aws-sg",
            image_id="ami-0c7217cdde317cfec",
            dry_run=True,
        )
        context = ProvisionContext.build(request, registry, layout)
        workflow = ProvisioningWorkflow(context, handle_signals=False)
        outcome = workflow.run()

        assert built == []
        assert isinstance(context.gateway, DryRunGateway)
        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.instance_id == "i-dry-run-chainward-aws-bitcoin"
        assert outcome.public_address == DRY_RUN_ADDRESS
        assert len(outcome.created) == 3
        assert WorkflowState.NETWORK_VERIFIED in workflow.history

        script = layout.script_path("chainward-aws-bitcoin").read_text()
        assert "chainward-aws-bitcoin" in script
        assert "--dry-run" in script
        assert not layout.record_path("chainward-aws-bitcoin").exists()
        assert not Path(layout.keys / "chainward-aws-key.pem").exists()


class TestPreflight:
    def test_missing_tool_fails_before_any_resource(self, make_context):
        gateway = FakeGateway()
        context = replace(make_context(gateway), required_tools=("chainward-no-such-tool",))
        _, outcome = run(context)

        assert outcome.kind is OutcomeKind.FAILED
        assert "chainward-no-such-tool" in outcome.reason
        assert gateway.calls == []

    def test_unresolved_placeholder_fails_before_any_resource(self, make_context):
        gateway = FakeGateway()
        node = replace(BITCOIN_TESTNET, build_payload=lambda: "echo {{NOT_CONFIGURED}}")
        _, outcome = run(replace(make_context(gateway), node=node))

        assert outcome.kind is OutcomeKind.FAILED
        assert "NOT_CONFIGURED" in outcome.reason
        assert gateway.mutations == []

    def test_credential_failure(self, make_context):
        gateway = FakeGateway(fail=["verify-credentials"])
        _, outcome = run(make_context(gateway))
        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.created == ()
