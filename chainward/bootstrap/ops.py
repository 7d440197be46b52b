"""Core bootstrap operations.

Declarative operations for node setup: packages, files, users, services.
Each operation is a function returning an Op (string or callable).
"""

from __future__ import annotations

from .compose import Op, resolve

# =============================================================================
# Package Operations
# =============================================================================


def apt(*packages: str, upgrade: bool = False) -> Op:
    """Install APT packages.

    Waits for dpkg lock to be released (handles unattended-upgrades).

    Example:
        >>> apt("jq", "bc")()
        'while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1; do sleep 5; done\\napt-get update -qq\\napt-get install -y -qq jq bc'
    """
    if not packages:
        return lambda: "# No APT packages to install"

    def generate() -> str:
        lines = [
            "while fuser /var/lib/dpkg/lock-frontend >/dev/null 2>&1; do sleep 5; done",
            "apt-get update -qq",
        ]
        if upgrade:
            lines.append("apt-get upgrade -y -qq")
        lines.append(f"apt-get install -y -qq {' '.join(packages)}")
        return "\n".join(lines)

    return generate


def download(url: str, dest: str) -> Op:
    """Download a file with wget.

    Example:
        >>> download("https://example.com/a.tar.gz", "/tmp/a.tar.gz")()
        'wget -q -O /tmp/a.tar.gz https://example.com/a.tar.gz'
    """
    return lambda: f"wget -q -O {dest} {url}"


def install_binaries(archive: str, bin_dir: str, target: str = "/usr/local/bin") -> Op:
    """Extract a tarball and install the binaries found in ``bin_dir``."""

    def generate() -> str:
        return "\n".join(
            [
                f"tar -xzf {archive} -C /tmp",
                f"install -m 0755 -o root -g root -t {target} /tmp/{bin_dir}/*",
            ]
        )

    return generate


# =============================================================================
# File Operations
# =============================================================================


def mkdir(path: str, owner: str | None = None) -> Op:
    """Create directory (with parents)."""

    def generate() -> str:
        lines = [f"mkdir -p {path}"]
        if owner:
            lines.append(f"chown -R {owner} {path}")
        return "\n".join(lines)

    return generate


def file(
    path: str,
    content: str,
    mode: str | None = None,
    owner: str | None = None,
    expand: bool = False,
) -> Op:
    """Write content to a file using heredoc.

    Args:
        path: File path to write.
        content: File content.
        mode: Optional chmod mode (e.g., "0755").
        owner: Optional chown owner (e.g., "root:root").
        expand: Let the shell expand ``$VARS`` inside the content.

    Example:
        >>> file("/etc/test.conf", "key=value")()
        "cat > /etc/test.conf << 'EOF'\\nkey=value\\nEOF"
    """
    delimiter = "EOF" if expand else "'EOF'"

    def generate() -> str:
        lines = [f"cat > {path} << {delimiter}", content, "EOF"]
        if mode:
            lines.append(f"chmod {mode} {path}")
        if owner:
            lines.append(f"chown {owner} {path}")
        return "\n".join(lines)

    return generate


def marker(path: str) -> Op:
    """Touch a completion marker file."""
    return lambda: f"touch {path}"


# =============================================================================
# Users and Services
# =============================================================================


def system_user(name: str) -> Op:
    """Create a dedicated service account (idempotent)."""
    return lambda: f"id -u {name} >/dev/null 2>&1 || useradd -m -s /bin/bash {name}"


def systemd_unit(
    name: str,
    exec_start: str,
    user: str,
    description: str,
    service_type: str = "simple",
    restart: str = "always",
    stop_timeout: int = 300,
) -> Op:
    """Install a systemd unit for a supervised service."""
    unit = "\n".join(
        [
            "[Unit]",
            f"Description={description}",
            "After=network-online.target",
            "Wants=network-online.target",
            "",
            "[Service]",
            f"User={user}",
            f"Group={user}",
            f"Type={service_type}",
            f"ExecStart={exec_start}",
            f"Restart={restart}",
            f"TimeoutStopSec={stop_timeout}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
        ]
    )
    return file(f"/etc/systemd/system/{name}.service", unit, mode="0644")


def enable_service(name: str) -> Op:
    """Reload units, then enable and start a service."""

    def generate() -> str:
        return "\n".join(
            [
                "systemctl daemon-reload",
                f"systemctl enable {name}",
                f"systemctl start {name}",
            ]
        )

    return generate


# =============================================================================
# Shell Operations
# =============================================================================


def shell(cmd: str) -> Op:
    """Execute a raw shell command.

    Example:
        >>> shell("echo hello")()
        'echo hello'
    """
    return lambda: cmd


def capture(name: str, cmd: str) -> Op:
    """Capture command output into a shell variable.

    Example:
        >>> capture("RPC_PASSWORD", "openssl rand -hex 32")()
        'RPC_PASSWORD=$(openssl rand -hex 32)'
    """
    return lambda: f"{name}=$({cmd})"


def step(message: str, *ops: Op) -> Op:
    """Log a progress line, then run the given operations."""

    def generate() -> str:
        body = "\n".join(resolve(op) for op in ops if op is not None)
        header = f'step "{message}"'
        return f"{header}\n{body}" if body else header

    return generate
