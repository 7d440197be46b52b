"""Bootstrap payload for Bitcoin Core verifier nodes.

The returned script still contains ``{{KEY}}`` placeholders; the workflow
renders it against the resolved request and node-type values.
"""

from __future__ import annotations

from typing import Final

from ..constants import MONITOR_HELPER, SETUP_COMPLETE_MARKER, STATUS_HELPER
from .compose import bootstrap
from .ops import (
    apt,
    capture,
    download,
    enable_service,
    file,
    install_binaries,
    marker,
    mkdir,
    shell,
    step,
    system_user,
    systemd_unit,
)

BITCOIN_USER: Final = "bitcoin"
DATA_DIR: Final = f"/home/{BITCOIN_USER}/.bitcoin"
ARCHIVE: Final = "/tmp/bitcoin-{{BITCOIN_VERSION}}.tar.gz"
RELEASE_URL: Final = (
    "https://bitcoincore.org/bin/bitcoin-core-{{BITCOIN_VERSION}}/"
    "bitcoin-{{BITCOIN_VERSION}}-x86_64-linux-gnu.tar.gz"
)
CLI: Final = f"sudo -u {BITCOIN_USER} /usr/local/bin/bitcoin-cli -datadir={DATA_DIR} {{{{BITCOIN_CLI_FLAGS}}}}"

BITCOIN_CONF: Final = """# Managed by chainward
{{BITCOIN_CHAIN_CONF}}

# JSON-RPC, local only
server=1
rpcuser={{RPC_USER}}
rpcpassword=${RPC_PASSWORD}
rpcallowip=127.0.0.1

# Index all transactions (needed for verification)
txindex=1

dbcache={{DB_CACHE}}
maxmempool=500
maxconnections=40"""

STATUS_SCRIPT: Final = f"""#!/bin/bash
# Prints the chain sync state as JSON
exec {CLI} getblockchaininfo"""

MONITOR_SCRIPT: Final = f"""#!/bin/bash
echo "===== {{{{PROJECT}}}} node status: {{{{INSTANCE_NAME}}}} ====="
echo "Date: $(date)"
echo ""
echo "Uptime: $(uptime)"
echo "Memory: $(free -h | grep Mem)"
echo "Disk: $(df -h / | tail -1)"
echo ""
if systemctl is-active bitcoind > /dev/null; then
    echo "Bitcoin daemon: RUNNING"
    INFO=$({STATUS_HELPER} 2>/dev/null)
    if [ $? -eq 0 ]; then
        BLOCKS=$(echo "$INFO" | jq .blocks)
        HEADERS=$(echo "$INFO" | jq .headers)
        PROGRESS=$(echo "$INFO" | jq .verificationprogress)
        echo "Current block: $BLOCKS / $HEADERS"
        echo "Sync progress: $(echo "$PROGRESS * 100" | bc -l | xargs printf "%.2f")%"
        CONNECTIONS=$({CLI} getconnectioncount 2>/dev/null)
        [ -n "$CONNECTIONS" ] && echo "Connections: $CONNECTIONS"
        MEMPOOL=$({CLI} getmempoolinfo 2>/dev/null)
        [ -n "$MEMPOOL" ] && echo "Mempool transactions: $(echo "$MEMPOOL" | jq .size)"
    else
        echo "Bitcoin CLI not responding. Node may still be starting."
    fi
else
    echo "Bitcoin daemon: NOT RUNNING"
    systemctl status bitcoind --no-pager
fi"""


def bitcoin_user_data() -> str:
    """Bootstrap template for a Bitcoin Core node."""
    return bootstrap(
        step(
            "Installing dependencies",
            apt("ca-certificates", "wget", "jq", "bc", "openssl", upgrade=True),
        ),
        step(
            "Installing Bitcoin Core {{BITCOIN_VERSION}}",
            download(RELEASE_URL, ARCHIVE),
            install_binaries(ARCHIVE, "bitcoin-{{BITCOIN_VERSION}}/bin"),
        ),
        step(
            "Creating service account",
            system_user(BITCOIN_USER),
            mkdir(DATA_DIR),
        ),
        step(
            "Writing bitcoin.conf",
            capture("RPC_PASSWORD", "openssl rand -hex 32"),
            file(f"{DATA_DIR}/bitcoin.conf", BITCOIN_CONF, mode="0600", expand=True),
            shell(f"chown -R {BITCOIN_USER}:{BITCOIN_USER} {DATA_DIR}"),
        ),
        step(
            "Installing bitcoind service",
            systemd_unit(
                "bitcoind",
                exec_start=f"/usr/local/bin/bitcoind -daemon -datadir={DATA_DIR}",
                user=BITCOIN_USER,
                description="Bitcoin daemon",
                service_type="forking",
            ),
        ),
        step(
            "Installing status helpers",
            file(STATUS_HELPER, STATUS_SCRIPT, mode="0755"),
            file(MONITOR_HELPER, MONITOR_SCRIPT, mode="0755"),
        ),
        step("Starting bitcoind", enable_service("bitcoind")),
        marker(SETUP_COMPLETE_MARKER),
        'step "Node setup complete"',
    )
