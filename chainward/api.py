"""JSON request/response adapter for web callers.

``deploy`` answers immediately with a pending acknowledgment and hands the
work to a spawner. In-process callers use a background thread; the command
line starts a detached ``chainward api run DEPLOY_ID`` process that reads the
pending request back, so the deployment outlives the invoking command. The
outcome is only recoverable by reading the result file back with ``status``;
there is no handle to join on.

Files under ``<home>/ui/``:

    <deploy_id>.pending   request parameters, present while running
    <deploy_id>.json      final result
"""

from __future__ import annotations

import json
import re
import subprocess
import sys
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

from loguru import logger

from chainward.config import ConfigResolver
from chainward.errors import ChainwardError
from chainward.state import OutputLayout
from chainward.types import ProvisionOutcome, ProvisionRequest
from chainward.workflow import provision

log = logger.bind(component="api")

type Task = Callable[[], None]
type Spawner = Callable[[str, Task], None]
type Runner = Callable[[ProvisionRequest], ProvisionOutcome]
type Response = dict[str, Any]

DEPLOY_ID_PATTERN = re.compile(r"^deploy-[A-Za-z0-9-]+$")


def thread_spawner(deploy_id: str, task: Task) -> None:
    """Run ``task`` on a daemon thread; it dies with the calling process."""
    threading.Thread(target=task, name=f"chainward-{deploy_id}", daemon=True).start()


def process_spawner(layout: OutputLayout) -> Spawner:
    """Spawner that re-runs the accepted request in a detached ``chainward`` process.

    The child starts its own session so it survives the parent exiting and
    terminal hangups. It ignores ``task`` and reads the pending request from
    ``layout`` instead.
    """

    def spawn(deploy_id: str, task: Task) -> None:
        argv = [sys.executable, "-m", "chainward", "api", "run", deploy_id, "--output-dir", str(layout.root)]
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        log.debug("Spawned pid {pid} for {id}", pid=process.pid, id=deploy_id)

    return spawn


def _error(message: str, **extra: Any) -> Response:
    return {**extra, "status": "error", "error": message}


def _normalize(params: Mapping[str, Any]) -> dict[str, Any]:
    return {k.replace("-", "_"): v for k, v in params.items()}


class DeploymentAPI:
    """Deploy/status/list over JSON-compatible dictionaries.

    Args:
        layout: Output directories; results live under ``layout.ui``.
        resolver: Turns request parameters into a ``ProvisionRequest``.
        runner: Runs one provisioning attempt. Defaults to ``provision``
            with signal handling disabled.
        spawner: Starts the work for a deploy id in the background. Defaults
            to a daemon thread; see ``process_spawner`` for a detached process.
    """

    def __init__(
        self,
        layout: OutputLayout,
        *,
        resolver: ConfigResolver | None = None,
        runner: Runner | None = None,
        spawner: Spawner = thread_spawner,
    ) -> None:
        self._layout = layout
        self._resolver = resolver or ConfigResolver()
        self._runner = runner or partial(provision, layout=layout, handle_signals=False)
        self._spawner = spawner

    def deploy(self, params: Mapping[str, Any]) -> Response:
        values = _normalize(params)
        if not values.get("provider") or not values.get("node_type"):
            return _error("provider and node_type are required")
        try:
            request = self._resolver.resolve(values)
        except ChainwardError as e:
            return _error(str(e))

        deploy_id = f"deploy-{datetime.now(UTC):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"
        self._layout.ui.mkdir(parents=True, exist_ok=True)
        self._pending_path(deploy_id).write_text(json.dumps(dict(params), default=str))
        log.info("Accepted {id} for {name}", id=deploy_id, name=request.instance_name)

        try:
            self._spawner(deploy_id, partial(self._execute, deploy_id, request))
        except OSError as e:
            log.error("Could not start {id}: {err}", id=deploy_id, err=e)
            self._write_result(deploy_id, _error(f"Could not start deployment: {e}", deploy_id=deploy_id))
            return self.status(deploy_id)
        return {"deploy_id": deploy_id, "status": "pending"}

    def run(self, deploy_id: str) -> Response:
        """Execute an accepted request in this process and return its result.

        A request that already finished is left alone.
        """
        if not DEPLOY_ID_PATTERN.match(deploy_id):
            return _error(f"Invalid deploy_id: {deploy_id!r}")
        pending = self._pending_path(deploy_id)
        if not pending.is_file():
            return self.status(deploy_id)

        try:
            params = json.loads(pending.read_text())
            request = self._resolver.resolve(_normalize(params))
        except (ValueError, ChainwardError) as e:
            log.error("Cannot run {id}: {err}", id=deploy_id, err=e)
            self._write_result(deploy_id, _error(str(e), deploy_id=deploy_id))
        else:
            self._execute(deploy_id, request)
        return self.status(deploy_id)

    def status(self, deploy_id: str) -> Response:
        if not DEPLOY_ID_PATTERN.match(deploy_id):
            return _error(f"Invalid deploy_id: {deploy_id!r}")
        result = self._result_path(deploy_id)
        if result.is_file():
            return json.loads(result.read_text())
        if self._pending_path(deploy_id).is_file():
            return {"deploy_id": deploy_id, "status": "pending"}
        return _error(f"Unknown deploy_id: {deploy_id}", deploy_id=deploy_id)

    def list(self) -> list[Response]:
        ui = self._layout.ui
        if not ui.is_dir():
            return []
        ids = {p.stem for p in ui.glob("deploy-*.json")} | {p.stem for p in ui.glob("deploy-*.pending")}
        return [self.status(deploy_id) for deploy_id in sorted(ids)]

    # -------------------------------------------------------------------------

    def _execute(self, deploy_id: str, request: ProvisionRequest) -> None:
        try:
            outcome = self._runner(request)
        except Exception as e:
            log.exception("Deployment {id} crashed", id=deploy_id)
            response = _error(str(e), deploy_id=deploy_id, instance_name=request.instance_name)
        else:
            response = {
                "deploy_id": deploy_id,
                "status": outcome.kind,
                "instance_name": request.instance_name,
                "instance_id": outcome.instance_id,
                "public_address": outcome.public_address,
            }
            if outcome.reason:
                response["reason"] = outcome.reason
        self._write_result(deploy_id, response)

    def _write_result(self, deploy_id: str, response: Response) -> None:
        path = self._result_path(deploy_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(response, indent=2, default=str))
        tmp.replace(path)
        self._pending_path(deploy_id).unlink(missing_ok=True)
        log.info("Deployment {id} finished: {status}", id=deploy_id, status=response["status"])

    def _result_path(self, deploy_id: str) -> Path:
        return self._layout.ui / f"{deploy_id}.json"

    def _pending_path(self, deploy_id: str) -> Path:
        return self._layout.ui / f"{deploy_id}.pending"
