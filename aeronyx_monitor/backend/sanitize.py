"""Shared sanitisation helpers for log output."""

from __future__ import annotations

from collections.abc import Mapping
import re
from typing import Any

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
_TOKEN_QUERY_RE = re.compile(
    r"(?i)(token|session_token|jwt_token|signature)=([^&\s]+)"
)
_JSON_SECRET_RE = re.compile(
    r'(?i)"(session_token|jwt_token|token|signature)"\s*:\s*"[^"]*"'
)
_WALLET_RE = re.compile(r"0x[a-fA-F0-9]{40}")

_SECRET_KEYS = frozenset({"session_token", "jwt_token", "token", "signature"})


def mask_identifier(value: str | None) -> str:
    """Return a masked identifier suitable for log output."""

    if value is None:
        return ""
    trimmed = str(value).strip()
    if not trimmed:
        return ""
    if len(trimmed) <= 4:
        return "***"
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    prefix = trimmed[:6]
    suffix = trimmed[-4:]
    return f"{prefix}...{suffix}"


def redact_token_fragment(value: str | None) -> str:
    """Return a shortened representation of a token-like string."""

    if value is None:
        return ""
    trimmed = str(value).strip()
    if not trimmed:
        return ""
    if len(trimmed) <= 4:
        return "***"
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}***{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def redact_text(value: str | None) -> str:
    """Return ``value`` with bearer tokens, secrets and wallet addresses masked."""

    if not value:
        return ""
    text = str(value)
    redacted = _BEARER_RE.sub("Bearer ***", text)
    redacted = _TOKEN_QUERY_RE.sub(lambda match: f"{match.group(1)}=***", redacted)
    redacted = _JSON_SECRET_RE.sub(lambda match: f'"{match.group(1)}":"***"', redacted)
    return _WALLET_RE.sub(lambda match: mask_identifier(match.group(0)), redacted)


def redact_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of ``payload`` with secret values shortened."""

    redacted: dict[str, Any] = {}
    for key, value in payload.items():
        if key in _SECRET_KEYS and isinstance(value, str):
            redacted[key] = redact_token_fragment(value)
        elif key == "wallet_address" and isinstance(value, str):
            redacted[key] = mask_identifier(value)
        else:
            redacted[key] = value
    return redacted


__all__ = [
    "mask_identifier",
    "redact_payload",
    "redact_text",
    "redact_token_fragment",
]
