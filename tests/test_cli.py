from __future__ import annotations

import json
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from chainward import api as api_module
from chainward.cli import build_parser, main
from chainward.providers import ProviderEntry, ProviderRegistry
from chainward.state import DeploymentRecord, OutputLayout, read_record, write_record
from tests.conftest import FakeGateway

pytestmark = [pytest.mark.unit]


def make_console() -> Console:
    return Console(file=StringIO(), width=200, color_system=None)


def output(console: Console) -> str:
    return console.file.getvalue()  # type: ignore[attr-defined]


def fake_registry(gateway: FakeGateway) -> ProviderRegistry:
    return ProviderRegistry(
        ProviderEntry(
            "fake",
            lambda region: gateway,
            {"region": "r1", "instance_size": "small", "disk_size": 10, "image_id": "img"},
        )
    )


def recorded(layout: OutputLayout) -> DeploymentRecord:
    record = DeploymentRecord(
        name="node-1",
        provider="fake",
        node_type="bitcoin",
        region="r1",
        instance_id="i-1",
        public_address="198.51.100.7",
        key_name="k",
        key_created=True,
        security_group_id="sg-1",
        outcome="success",
    )
    write_record(layout, record)
    layout.script_path(record.name).parent.mkdir(parents=True, exist_ok=True)
    layout.script_path(record.name).write_text("#!/bin/bash\n")
    return record


class TestParser:
    def test_deploy_flags(self) -> None:
        args = build_parser().parse_args(
            ["deploy", "-p", "aws", "-t", "bitcoin", "-r", "eu-west-1", "-v", "250", "-d"]
        )
        assert (args.provider, args.node_type, args.region, args.disk_size, args.dry_run) == (
            "aws", "bitcoin", "eu-west-1", 250, True,
        )

    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestDeploy:
    def test_dry_run_end_to_end(self, tmp_path: Path) -> None:
        console = make_console()
        code = main(
            ["deploy", "-p", "aws", "-t", "bitcoin", "-d", "--output-dir", str(tmp_path)],
            console=console,
        )
        text = output(console)

        assert code == 0
        assert "i-dry-run-chainward-aws-bitcoin" in text
        assert (tmp_path / "scripts" / "teardown-chainward-aws-bitcoin.sh").is_file()
        assert list((tmp_path / "logs").glob("chainward-*.log"))

    def test_config_error_exits_nonzero(self, tmp_path: Path) -> None:
        console = make_console()
        code = main(["deploy", "-t", "bitcoin", "--output-dir", str(tmp_path)], console=console)
        assert code == 1
        assert "Provider is required" in output(console)


class TestTeardown:
    def test_deletes_recorded_resources_in_reverse(self, tmp_path: Path) -> None:
        layout = OutputLayout(tmp_path)
        recorded(layout)
        gateway = FakeGateway()

        code = main(
            ["teardown", "node-1", "--output-dir", str(tmp_path)],
            registry=fake_registry(gateway),
            console=make_console(),
        )

        assert code == 0
        assert gateway.calls == [
            ("terminate-instance", "i-1"),
            ("delete-security-group", "sg-1"),
            ("delete-key-pair", "k"),
        ]
        assert not layout.record_path("node-1").exists()
        assert not layout.script_path("node-1").exists()

    def test_failed_deletion_keeps_record(self, tmp_path: Path) -> None:
        layout = OutputLayout(tmp_path)
        recorded(layout)
        gateway = FakeGateway(failing_deletes=["delete-security-group"])
        console = make_console()

        code = main(
            ["teardown", "node-1", "--output-dir", str(tmp_path)],
            registry=fake_registry(gateway),
            console=console,
        )

        assert code == 1
        assert "fake-cli delete security-group sg-1" in output(console)
        assert read_record(layout, "node-1").instance_id == "i-1"

    def test_dry_run_keeps_record(self, tmp_path: Path) -> None:
        layout = OutputLayout(tmp_path)
        recorded(layout)
        code = main(
            ["teardown", "node-1", "-d", "--output-dir", str(tmp_path)],
            registry=fake_registry(FakeGateway()),
            console=make_console(),
        )
        assert code == 0
        assert layout.record_path("node-1").exists()

    def test_dry_run_without_record_is_noop(self, tmp_path: Path) -> None:
        code = main(["teardown", "ghost", "-d", "--output-dir", str(tmp_path)], console=make_console())
        assert code == 0

    def test_missing_record(self, tmp_path: Path) -> None:
        code = main(["teardown", "ghost", "--output-dir", str(tmp_path)], console=make_console())
        assert code == 1

    def test_provider_mismatch(self, tmp_path: Path) -> None:
        recorded(OutputLayout(tmp_path))
        gateway = FakeGateway()
        code = main(
            ["teardown", "node-1", "--provider", "aws", "--output-dir", str(tmp_path)],
            registry=fake_registry(gateway),
            console=make_console(),
        )
        assert code == 1
        assert gateway.calls == []


class TestInspect:
    def test_list_and_status(self, tmp_path: Path) -> None:
        recorded(OutputLayout(tmp_path))
        registry = fake_registry(FakeGateway())

        console = make_console()
        assert main(["list", "--output-dir", str(tmp_path)], registry=registry, console=console) == 0
        assert "node-1" in output(console)

        console = make_console()
        assert main(["status", "node-1", "--output-dir", str(tmp_path)], registry=registry, console=console) == 0
        assert "running" in output(console)

    def test_status_when_provider_unreachable(self, tmp_path: Path) -> None:
        recorded(OutputLayout(tmp_path))
        console = make_console()
        code = main(
            ["status", "node-1", "--output-dir", str(tmp_path)],
            registry=fake_registry(FakeGateway(fail=["describe-status"])),
            console=console,
        )
        assert code == 0
        assert "node-1" in output(console)

    def test_wait_sync_requires_local_key(self, tmp_path: Path) -> None:
        recorded(OutputLayout(tmp_path))
        console = make_console()
        code = main(
            ["wait-sync", "node-1", "--output-dir", str(tmp_path)],
            registry=fake_registry(FakeGateway()),
            console=console,
        )
        assert code == 1
        assert "not available locally" in output(console)


class TestApiCommand:
    def test_invalid_json(self, tmp_path: Path) -> None:
        console = make_console()
        assert main(["api", "deploy", "{not json", "--output-dir", str(tmp_path)], console=console) == 1
        assert json.loads(output(console))["status"] == "error"

    def test_list_empty(self, tmp_path: Path) -> None:
        console = make_console()
        assert main(["api", "list", "--output-dir", str(tmp_path)], console=console) == 0
        assert json.loads(output(console)) == []

    def test_status_unknown(self, tmp_path: Path) -> None:
        console = make_console()
        assert main(["api", "status", "deploy-x", "--output-dir", str(tmp_path)], console=console) == 1

    def test_deploy_hands_off_to_detached_process(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        launched: list[tuple[list[str], dict]] = []

        class Popen:
            pid = 4242

            def __init__(self, argv, **kwargs) -> None:
                launched.append((argv, kwargs))

        monkeypatch.setattr(api_module.subprocess, "Popen", Popen)
        payload = json.dumps({"provider": "aws", "node_type": "bitcoin", "dry_run": True})

        console = make_console()
        assert main(["api", "deploy", payload, "--output-dir", str(tmp_path)], console=console) == 0
        deploy_id = json.loads(output(console))["deploy_id"]

        argv, kwargs = launched[0]
        assert kwargs["start_new_session"] is True
        assert argv[1:6] == ["-m", "chainward", "api", "run", deploy_id]
        assert (tmp_path / "ui" / f"{deploy_id}.pending").is_file()

        # the invoking command has returned; the child finishes from argv alone
        assert main(argv[3:], console=make_console()) == 0

        status = make_console()
        main(["api", "status", deploy_id, "--output-dir", str(tmp_path)], console=status)
        result = json.loads(output(status))
        assert result["status"] == "success"
        assert result["instance_id"] == "i-dry-run-chainward-aws-bitcoin"
        assert not (tmp_path / "ui" / f"{deploy_id}.pending").exists()
        assert list((tmp_path / "logs").glob("*.log"))
