"""Constants for the AeroNyx monitor client."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final

# Domain
DOMAIN: Final = "aeronyx"

# HTTP base & paths
API_BASE: Final = "https://api.aeronyx.network"
SIGNATURE_MESSAGE_PATH: Final = "/api/aeronyx/generate-signature-message/"
NODES_OVERVIEW_PATH: Final = "/api/aeronyx/user/nodes-overview/"
NODE_DETAILED_STATUS_PATH: Final = "/api/aeronyx/user/node-detailed-status/"

# Realtime channel
WS_URL: Final = "wss://api.aeronyx.network/ws/aeronyx/user-monitor/"

USER_AGENT: Final = "aeronyx-monitor/1.0 (+python-aiohttp)"
DEFAULT_WALLET_TYPE: Final = "ethereum"

# Timing (seconds)
CONNECT_TIMEOUT: Final = 10.0
PING_INTERVAL: Final = 30.0
STALE_FACTOR: Final = 3.0
RECONNECT_BASE_DELAY: Final = 3.0
RECONNECT_MAX_DELAY: Final = 30.0
MAX_RECONNECT_ATTEMPTS: Final = 5
REQUEST_TIMEOUT: Final = 30.0
HTTP_TIMEOUT: Final = 25.0
READY_TIMEOUT: Final = 60.0

SIGNATURE_TTL: Final = 10 * 60
SIGNING_TIMEOUT: Final = 120.0
SESSION_TTL: Final = 30 * 60

REMOTE_TOKEN_TTL: Final = 59 * 60
REMOTE_AUTH_TIMEOUT: Final = 10.0
REMOTE_AUTH_RETRY_DELAYS: Final = (1.0, 3.0, 5.0)

# Remote terminal
TERMINAL_READY_DELAY: Final = 1.0
TERMINAL_IDLE_TIMEOUT: Final = 30 * 60
TERMINAL_CLEANUP_INTERVAL: Final = 5 * 60
TERMINAL_HISTORY_SIZE: Final = 10_000
TERMINAL_ROWS: Final = 24
TERMINAL_COLS: Final = 80

# Websocket close codes
WS_CLOSE_NORMAL: Final = 1000

# Server error codes that invalidate the primary session/signature
SESSION_ERROR_CODES: Final = frozenset(
    {
        "SESSION_INVALID",
        "SESSION_EXPIRED",
        "INVALID_SESSION",
        "INVALID_SIGNATURE",
        "SIGNATURE_EXPIRED",
        "AUTH_FAILED",
        "AUTHENTICATION_FAILED",
    }
)

# Server error codes that reject a remote management token
REMOTE_AUTH_ERROR_CODES: Final = frozenset(
    {
        "REMOTE_NOT_ENABLED",
        "INVALID_JWT",
        "REMOTE_AUTH_FAILED",
        "AUTH_FAILED",
        "INVALID_TOKEN",
        "TOKEN_EXPIRED",
    }
)

# Remote command timeouts (seconds)
DEFAULT_COMMAND_TIMEOUT: Final = 30.0
COMMAND_TIMEOUTS: Final[Mapping[str, float]] = {
    "upload": 120.0,
    "download": 120.0,
    "delete": 30.0,
    "rename": 10.0,
    "copy": 60.0,
    "move": 60.0,
    "list": 30.0,
    "create_directory": 10.0,
    "delete_directory": 60.0,
    "search": 60.0,
    "compress": 180.0,
    "extract": 180.0,
    "chmod": 10.0,
    "chown": 10.0,
    "batch_delete": 120.0,
    "batch_move": 120.0,
    "batch_copy": 120.0,
    "system_info": 30.0,
    "execute": 60.0,
}

MAX_PATH_LENGTH: Final = 4096


def get_command_timeout(command_type: str) -> float:
    """Return the reply timeout for a remote command type."""

    return COMMAND_TIMEOUTS.get(command_type, DEFAULT_COMMAND_TIMEOUT)


def session_storage_key(wallet_address: str) -> str:
    """Return the session storage key for a wallet."""

    return f"{DOMAIN}_ws_session:{wallet_address.strip().lower()}"
