"""Remote command execution over SSH."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import paramiko
from loguru import logger

from chainward.constants import SSH_COMMAND_TIMEOUT, SSH_CONNECT_TIMEOUT, SSH_PORT

log = logger.bind(component="ssh")


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration."""

    host: str
    username: str
    key_path: Path
    port: int = SSH_PORT


class RemoteShell(Protocol):
    """Runs one command on a remote host.

    Connection failures surface as ``OSError`` or ``paramiko.SSHException``;
    a command that runs but fails is reported through ``exit_status``.
    """

    def run(self, command: str, timeout: int = SSH_COMMAND_TIMEOUT) -> CommandResult: ...

    def close(self) -> None: ...


type ShellFactory = Callable[[SSHConfig], RemoteShell]


class ParamikoShell:
    """``RemoteShell`` over a lazily opened paramiko client.

    A dropped transport is detected before each command and reopened, so a
    single instance survives instance reboots during bootstrap.
    """

    __slots__ = ("_config", "_client")

    def __init__(self, config: SSHConfig) -> None:
        self._config = config
        self._client: paramiko.SSHClient | None = None

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            transport = self._client.get_transport()
            if transport is not None and transport.is_active():
                return self._client
            self.close()

        config = self._config
        log.debug("Connecting to {user}@{host}:{port}", user=config.username, host=config.host, port=config.port)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=config.host,
                port=config.port,
                username=config.username,
                key_filename=str(config.key_path),
                timeout=SSH_CONNECT_TIMEOUT,
                banner_timeout=SSH_CONNECT_TIMEOUT,
                auth_timeout=SSH_CONNECT_TIMEOUT,
                allow_agent=False,
                look_for_keys=False,
            )
        except BaseException:
            client.close()
            raise
        self._client = client
        return client

    def run(self, command: str, timeout: int = SSH_COMMAND_TIMEOUT) -> CommandResult:
        client = self._connect()
        preview = command[:80] + "..." if len(command) > 80 else command
        log.debug("exec: {cmd}", cmd=preview)
        _, stdout, stderr = client.exec_command(command, timeout=timeout)
        code = stdout.channel.recv_exit_status()
        log.debug("exec: exit_code={code}", code=code)
        return CommandResult(
            exit_status=code,
            stdout=stdout.read().decode(errors="replace"),
            stderr=stderr.read().decode(errors="replace"),
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

