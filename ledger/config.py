"""Ledger configuration loaded from environment variables."""

import logging
import os
import sys

from pythonjsonlogger import jsonlogger

# ---------------------------------------------------------------------------
# ClickHouse connection
# ---------------------------------------------------------------------------
CLICKHOUSE_HOST = os.environ.get("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT = int(os.environ.get("CLICKHOUSE_PORT", "8443"))
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "token_ledger")
CLICKHOUSE_SECURE = os.environ.get("CLICKHOUSE_SECURE", "true").lower() == "true"

# ---------------------------------------------------------------------------
# Tracked token
# ---------------------------------------------------------------------------
TOKEN_ADDRESS = os.environ.get(
    "TOKEN_ADDRESS", "0xdcc0f2d8f90fde85b10ac1c8ab57dc0ae946a543"
).lower()
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
START_BLOCK = int(os.environ.get("START_BLOCK", "0"))

# ---------------------------------------------------------------------------
# Upstream data sources
# ---------------------------------------------------------------------------
EXPLORER_API_URL = os.environ.get("EXPLORER_API_URL", "https://api.fraxscan.com/api")
EXPLORER_API_KEY = os.environ.get("EXPLORER_API_KEY", "")
EXPLORER_CHAIN_ID = os.environ.get("EXPLORER_CHAIN_ID", "")  # Etherscan v2 only
RPC_URL = os.environ.get("RPC_URL", "")
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "30.0"))

# "explorer" (transaction-history API) or "rpc" (node event logs / eth_call)
TRANSFER_SOURCE = os.environ.get("TRANSFER_SOURCE", "explorer").lower()
BALANCE_SOURCE = os.environ.get("BALANCE_SOURCE", "explorer").lower()

# "incremental" (delta accounting) or "authoritative" (re-resolve balances)
SYNC_STRATEGY = os.environ.get("SYNC_STRATEGY", "incremental").lower()

# ---------------------------------------------------------------------------
# Sync tuning
# ---------------------------------------------------------------------------
BLOCK_CHUNK_SIZE = int(os.environ.get("BLOCK_CHUNK_SIZE", "100000"))
CHUNK_DELAY = 0.2                # Seconds between chunks
EXPLORER_PAGE_SIZE = 10_000      # Max rows per tokentx call
EXPLORER_PAGE_DELAY = 0.2        # Seconds between tokentx pages
LOG_BLOCK_SPAN = int(os.environ.get("LOG_BLOCK_SPAN", "10000"))  # Blocks per eth_getLogs

# ---------------------------------------------------------------------------
# Balance resolver tuning
# ---------------------------------------------------------------------------
RPC_BALANCE_BATCH_SIZE = 100     # eth_call entries per JSON-RPC batch
EXPLORER_BALANCE_BATCH_SIZE = 5  # tokenbalance calls per batch
BALANCE_CONCURRENCY = 5          # Batches in flight at once
BALANCE_GROUP_DELAY = 1.0        # Seconds between batch groups

# ---------------------------------------------------------------------------
# Writer settings
# ---------------------------------------------------------------------------
WRITER_MAX_RETRIES = 3
WRITER_BASE_BACKOFF = 1.0        # Seconds, doubles per retry

# ---------------------------------------------------------------------------
# Schedules (seconds)
# ---------------------------------------------------------------------------
SYNC_INTERVAL = int(os.environ.get("SYNC_INTERVAL", "10"))
RECONCILE_INTERVAL = int(os.environ.get("RECONCILE_INTERVAL", "600"))
GATE_POLL_INTERVAL = 1.0         # Reconciliation re-checks the sync flag this often

# ---------------------------------------------------------------------------
# HTTP server
# ---------------------------------------------------------------------------
HTTP_PORT = int(os.environ.get("PORT", "3000"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
