"""REST client for the AeroNyx dashboard API."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import logging
from typing import Any

import aiohttp

from .backend.sanitize import mask_identifier, redact_text
from .const import (
    API_BASE,
    HTTP_TIMEOUT,
    NODE_DETAILED_STATUS_PATH,
    NODES_OVERVIEW_PATH,
    SIGNATURE_MESSAGE_PATH,
    USER_AGENT,
)
from .domain.nodes import NodeRecord, SourceKind
from .domain.state import Credential, normalize_wallet
from .errors import AuthRejected, RateLimited, ServerError
from .nodes import normalize

_LOGGER = logging.getLogger(__name__)

# Toggle to preview bodies in debug logs (redacted). Leave False by default.
API_LOG_PREVIEW = False


class RESTClient:
    """Thin async client for the AeroNyx REST endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        api_base: str = API_BASE,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        """Initialise the client around a shared aiohttp session."""
        self._session = session
        self._api_base = api_base.rstrip("/") if api_base else API_BASE
        self._timeout = timeout

    @property
    def api_base(self) -> str:
        """Return the API base URL."""

        return self._api_base

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """Perform an HTTP request.

        Return JSON when possible, otherwise text. Errors are logged without
        secrets.
        """
        headers = kwargs.pop("headers", {})
        headers.setdefault("User-Agent", USER_AGENT)
        headers.setdefault("Accept", "application/json")
        timeout = kwargs.pop("timeout", aiohttp.ClientTimeout(total=self._timeout))

        url = path if path.startswith("http") else f"{self._api_base}{path}"
        _LOGGER.debug("HTTP %s %s", method, url)

        try:
            async with self._session.request(
                method, url, headers=headers, timeout=timeout, **kwargs
            ) as resp:
                ctype = resp.headers.get("Content-Type", "")
                body_text: str | None
                try:
                    body_text = await resp.text()
                except (aiohttp.ClientError, UnicodeDecodeError):
                    body_text = "<no body>"

                if resp.status >= 400:
                    _LOGGER.error(
                        "HTTP error %s %s -> %s; body=%s",
                        method,
                        url,
                        resp.status,
                        redact_text(body_text),
                    )
                elif API_LOG_PREVIEW:
                    _LOGGER.debug(
                        "HTTP %s -> %s, ctype=%s, body[0:200]=%r",
                        url,
                        resp.status,
                        ctype,
                        (redact_text(body_text) or "")[:200],
                    )
                else:
                    _LOGGER.debug("HTTP %s -> %s, ctype=%s", url, resp.status, ctype)

                if resp.status in (401, 403):
                    raise AuthRejected(
                        f"request rejected with HTTP {resp.status}", code=str(resp.status)
                    )
                if resp.status == 429:
                    raise RateLimited("Rate limited")
                if resp.status >= 400:
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=body_text or "",
                        headers=resp.headers,
                    )

                if "application/json" in ctype or (
                    body_text and body_text[:1] in ("{", "[")
                ):
                    try:
                        return await resp.json(content_type=None)
                    except ValueError:
                        return body_text
                return body_text

        except (AuthRejected, RateLimited):
            raise
        except aiohttp.ClientResponseError as err:
            _LOGGER.error(
                "Request %s %s failed (sanitized): %s",
                method,
                url,
                redact_text(str(err)),
            )
            raise
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.error(
                "Request %s %s failed (sanitized): %s",
                method,
                url,
                redact_text(str(err)),
            )
            raise

    async def _post_envelope(self, path: str, body: Mapping[str, Any]) -> Any:
        """POST ``body`` and unwrap a ``{success, data, message}`` envelope."""

        payload = await self._request("POST", path, json=dict(body))
        if not isinstance(payload, Mapping):
            raise ServerError(None, f"unexpected response from {path}")
        if payload.get("success") is False:
            raise ServerError(
                _str_or_none(payload.get("code") or payload.get("error_code")),
                str(payload.get("message") or "request failed"),
            )
        return payload.get("data")

    # ----------------- Endpoints -----------------

    async def signature_message(self, wallet_address: str) -> str:
        """Return a fresh challenge for ``wallet_address``."""

        wallet = normalize_wallet(wallet_address)
        data = await self._post_envelope(SIGNATURE_MESSAGE_PATH, {"wallet_address": wallet})
        message = data.get("message") if isinstance(data, Mapping) else data
        if not isinstance(message, str) or not message:
            raise ServerError(None, "no signature message in response")
        _LOGGER.debug("Fetched signature message for %s", mask_identifier(wallet))
        return message

    async def challenge_source(self, wallet_address: str) -> str:
        """Challenge source for the signature cache."""

        return await self.signature_message(wallet_address)

    async def nodes_overview(self, credential: Credential) -> Any:
        """Return the raw nodes overview for the signed wallet."""

        return await self._post_envelope(NODES_OVERVIEW_PATH, _signed_body(credential))

    async def node_detailed_status(
        self, credential: Credential, reference_code: str
    ) -> Any:
        """Return the raw detailed status of one node."""

        if not reference_code:
            raise ValueError("reference_code is required")
        body = _signed_body(credential)
        body["reference_code"] = reference_code
        return await self._post_envelope(NODE_DETAILED_STATUS_PATH, body)

    async def fetch_nodes(self, credential: Credential) -> list[NodeRecord]:
        """Return the wallet's nodes as normalised records."""

        return normalize(await self.nodes_overview(credential), SourceKind.REST)


def _signed_body(credential: Credential) -> dict[str, Any]:
    return {
        "wallet_address": credential.wallet_address,
        "signature": credential.signature,
        "message": credential.challenge_message,
        "wallet_type": credential.wallet_type,
    }


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


__all__ = ["RESTClient"]
