"""Signed-challenge cache and wallet signers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

from .backend.sanitize import mask_identifier
from .const import DEFAULT_WALLET_TYPE, SIGNATURE_TTL
from .domain.state import Credential, normalize_wallet
from .errors import SigningDeclined

_LOGGER = logging.getLogger(__name__)

ChallengeSource = Callable[[str], Awaitable[str]]
SignatureListener = Callable[[str, Any], None]


class Signer(Protocol):
    """External signing capability (wallet extension, hardware key, ...)."""

    async def sign(self, message: str, address: str) -> str:
        """Return the signature of ``message`` by ``address``.

        Raise :class:`SigningDeclined` when the user refuses.
        """


class PrivateKeySigner:
    """Sign EIP-191 personal messages with a local private key."""

    def __init__(self, private_key: str) -> None:
        """Load the account for ``private_key``."""
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        """Return the checksummed address of the key."""

        return self._account.address

    async def sign(self, message: str, address: str) -> str:
        """Sign ``message`` when ``address`` matches the loaded key."""

        if address.strip().lower() != self._account.address.lower():
            raise SigningDeclined(
                f"key does not control wallet {mask_identifier(address)}"
            )
        signed = self._account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()


class SignatureCache:
    """Hold a single signed challenge for the active wallet.

    ``get_signature`` returns the cached credential while it is unexpired and
    belongs to the same wallet (and, when given, the same challenge text).
    Otherwise it signs once; concurrent callers asking for the same wallet and
    challenge share the in-flight signing task. Credentials live in memory
    only.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        challenge_source: ChallengeSource | None = None,
        ttl: float = SIGNATURE_TTL,
        wallet_type: str = DEFAULT_WALLET_TYPE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the cache around ``signer``."""
        self._signer = signer
        self._challenge_source = challenge_source
        self._ttl = ttl
        self._wallet_type = wallet_type
        self._clock = clock
        self._credential: Credential | None = None
        self._inflight: asyncio.Task[Credential] | None = None
        self._inflight_key: tuple[str, str | None] | None = None
        self._epoch = 0
        self._listeners: list[SignatureListener] = []

    def set_challenge_source(self, source: ChallengeSource | None) -> None:
        """Replace the source used when no challenge is supplied."""

        self._challenge_source = source

    @property
    def is_signing(self) -> bool:
        """Return True while a signing task is in flight."""

        return self._inflight is not None and not self._inflight.done()

    def peek(self, wallet: str) -> Credential | None:
        """Return the cached credential for ``wallet`` without signing."""

        return self._cached(normalize_wallet(wallet), None)

    def remaining_time(self, wallet: str) -> float:
        """Return seconds before the cached credential expires (0 if none)."""

        credential = self.peek(wallet)
        if credential is None:
            return 0.0
        return credential.remaining(self._clock())

    async def get_signature(
        self, wallet: str, *, challenge: str | None = None
    ) -> Credential:
        """Return a valid credential for ``wallet``, signing only if needed."""

        wallet_key = normalize_wallet(wallet)
        cached = self._cached(wallet_key, challenge)
        if cached is not None:
            _LOGGER.debug("Using cached signature for %s", mask_identifier(wallet_key))
            return cached
        return await self._sign(wallet_key, challenge)

    async def refresh(self, wallet: str, *, challenge: str | None = None) -> Credential:
        """Discard the cached credential and sign again."""

        wallet_key = normalize_wallet(wallet)
        self._credential = None
        return await self._sign(wallet_key, challenge)

    def clear(self) -> None:
        """Invalidate the cached credential unconditionally."""

        self._credential = None
        self._inflight = None
        self._inflight_key = None
        self._epoch += 1
        self._notify("cleared", None)

    def add_listener(self, listener: SignatureListener) -> Callable[[], None]:
        """Register ``listener(event, data)`` and return a remover."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ----------------- Internals -----------------

    def _cached(self, wallet_key: str, challenge: str | None) -> Credential | None:
        credential = self._credential
        if credential is None:
            return None
        if credential.wallet_address != wallet_key:
            _LOGGER.debug("Wallet changed; dropping cached signature")
            self._credential = None
            return None
        if not credential.is_valid(self._clock()):
            _LOGGER.debug("Cached signature expired")
            self._credential = None
            return None
        if challenge is not None and credential.challenge_message != challenge:
            return None
        return credential

    async def _sign(self, wallet_key: str, challenge: str | None) -> Credential:
        key = (wallet_key, challenge)
        task = self._inflight
        if task is not None and not task.done() and self._inflight_key == key:
            _LOGGER.debug("Waiting for in-flight signature")
            return await asyncio.shield(task)

        task = asyncio.get_running_loop().create_task(
            self._generate(wallet_key, challenge, self._epoch)
        )
        task.add_done_callback(self._on_task_done)
        self._inflight = task
        self._inflight_key = key
        return await asyncio.shield(task)

    def _on_task_done(self, task: asyncio.Task[Credential]) -> None:
        if not task.cancelled():
            task.exception()
        if self._inflight is task:
            self._inflight = None
            self._inflight_key = None

    async def _generate(
        self, wallet_key: str, challenge: str | None, epoch: int
    ) -> Credential:
        self._notify("generating", wallet_key)
        try:
            message = challenge
            if message is None:
                if self._challenge_source is None:
                    raise SigningDeclined("no challenge available to sign")
                message = await self._challenge_source(wallet_key)
            try:
                signature = await self._signer.sign(message, wallet_key)
            except SigningDeclined:
                raise
            except Exception as err:
                raise SigningDeclined(f"signing failed: {err}") from err
            if not signature:
                raise SigningDeclined("signer returned an empty signature")
        except Exception as err:
            _LOGGER.info(
                "Signature for %s not obtained (%s: %s)",
                mask_identifier(wallet_key),
                type(err).__name__,
                err,
            )
            self._notify("error", err)
            raise

        now = self._clock()
        credential = Credential(
            wallet_address=wallet_key,
            signature=signature,
            challenge_message=message,
            issued_at=now,
            expires_at=now + self._ttl,
            wallet_type=self._wallet_type,
        )
        if epoch == self._epoch:
            self._credential = credential
        _LOGGER.debug(
            "New signature for %s valid for %.0fs", mask_identifier(wallet_key), self._ttl
        )
        self._notify("generated", credential)
        return credential

    def _notify(self, event: str, data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                _LOGGER.exception("Signature listener failed for %s", event)


__all__ = [
    "ChallengeSource",
    "PrivateKeySigner",
    "SignatureCache",
    "SignatureListener",
    "Signer",
]
