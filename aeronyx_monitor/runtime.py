"""Per-wallet composition of caches, connection and helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import suppress
import logging
from typing import Any

import aiohttp

from .api import RESTClient
from .backend.sanitize import mask_identifier
from .backend.ws_client import ConnectionManager
from .codecs.frames import AuthSuccessFrame, StatusUpdateFrame
from .config import MonitorConfig, load_config
from .const import READY_TIMEOUT
from .correlator import RequestCorrelator
from .dispatcher import Listener, MessageDispatcher, MonitorEvent
from .domain.nodes import AggregateStats, NodeRecord, SourceKind
from .domain.state import ConnectionState, NodeAuthToken, normalize_wallet
from .errors import NotConnected, TransportError
from .nodes import normalize, summarize
from .remote_auth import RemoteAuthManager, TokenProvider
from .remote_commands import RemoteCommandClient
from .session import SessionCache, SessionStore
from .signature import SignatureCache, Signer
from .terminal import TerminalManager

_LOGGER = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[Any]]


class MonitorRuntime:
    """Everything one wallet needs to watch and manage its nodes.

    The runtime owns the dispatcher and wires every helper to it: the
    correlator and remote auth layer listen for their frames, and the latest
    node list is kept from ``auth_success`` and ``status_update`` frames.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: MonitorConfig,
        *,
        signer: Signer,
        session_store: SessionStore | None = None,
        token_provider: TokenProvider | None = None,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        """Build the runtime for ``config.wallet_address``."""
        self.config = config
        self.wallet_address = normalize_wallet(config.wallet_address)
        self.dispatcher = MessageDispatcher()
        self.rest = RESTClient(session, api_base=config.api_base)
        self.signatures = SignatureCache(
            signer,
            challenge_source=self.rest.challenge_source,
            ttl=config.signature_ttl,
            wallet_type=config.wallet_type,
        )
        self.sessions = SessionCache(session_store, default_ttl=config.session_ttl)
        self.connection = ConnectionManager(
            session,
            config,
            signatures=self.signatures,
            sessions=self.sessions,
            dispatcher=self.dispatcher,
            sleep=sleep,
        )
        self.correlator = RequestCorrelator(
            self.connection.send, default_timeout=config.request_timeout
        )
        self.remote_auth = RemoteAuthManager(
            self.connection,
            self.dispatcher,
            token_provider=token_provider,
            token_ttl=config.remote_token_ttl,
            auth_timeout=config.remote_auth_timeout,
            sleep=sleep,
        )
        self.commands = RemoteCommandClient(self.correlator, self.remote_auth)
        self.terminals = TerminalManager(self.connection, self.dispatcher, self.remote_auth)
        self._nodes: list[NodeRecord] = []
        self._unsubscribers = [
            self.dispatcher.subscribe(self.correlator.handle_event),
            self.dispatcher.subscribe(
                self._on_nodes_frame,
                frame_types=(AuthSuccessFrame.frame_type, StatusUpdateFrame.frame_type),
                include_state=False,
            ),
        ]

    @property
    def state(self) -> ConnectionState:
        """Return the connection state."""

        return self.connection.state

    @property
    def nodes(self) -> list[NodeRecord]:
        """Return the most recent node records."""

        return list(self._nodes)

    @property
    def stats(self) -> AggregateStats:
        """Return totals for the most recent node records."""

        return summarize(self._nodes)

    def subscribe(
        self,
        listener: Listener,
        *,
        frame_types: Iterable[str] | None = None,
        include_state: bool = True,
    ) -> Callable[[], None]:
        """Subscribe to connection events; see :meth:`MessageDispatcher.subscribe`."""

        return self.dispatcher.subscribe(
            listener, frame_types=frame_types, include_state=include_state
        )

    async def ensure_connected(self, timeout: float = READY_TIMEOUT) -> ConnectionState:
        """Connect if needed and return once authenticated.

        Raises the connection's ``last_error`` when the runner stops first and
        :class:`RequestTimeout` when ``timeout`` elapses.
        """

        if self.connection.is_authenticated:
            return self.connection.state

        self.connection.connect()
        runner = self.connection.runner_task
        waiter = asyncio.ensure_future(
            self.connection.wait_for_state(
                ConnectionState.AUTHENTICATED, ConnectionState.MONITORING, timeout=timeout
            )
        )
        tasks: set[asyncio.Future[Any]] = {waiter}
        if runner is not None:
            tasks.add(runner)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()
                with suppress(asyncio.CancelledError):
                    await waiter

        if waiter in done:
            return waiter.result()
        error = self.connection.last_error
        if error is not None:
            raise error
        raise NotConnected(f"connection ended in state {self.connection.state.value}")

    async def authorize_node(
        self, node_reference: str, jwt_token: str | None = None
    ) -> NodeAuthToken:
        """Authorise remote management, signing a credential when no JWT is given."""

        if jwt_token:
            return await self.remote_auth.authorize(node_reference, jwt_token)
        credential = await self.signatures.get_signature(self.wallet_address)
        return await self.remote_auth.authorize(node_reference, credential)

    async def refresh_nodes(self) -> list[NodeRecord]:
        """Fetch the node list over REST and keep it as the latest records."""

        credential = await self.signatures.get_signature(self.wallet_address)
        self._nodes = await self.rest.fetch_nodes(credential)
        return self.nodes

    def snapshot(self) -> dict[str, Any]:
        """Return a serialisable view of the runtime."""

        return {
            "connection": self.connection.snapshot(),
            "pending_requests": self.correlator.pending_count,
            "signature_remaining": self.signatures.remaining_time(self.wallet_address),
            "has_session": self.sessions.get(self.wallet_address) is not None,
            "authorized_nodes": self.remote_auth.authorized_nodes(),
            "terminal_sessions": len(self.terminals),
            "listeners": self.dispatcher.listener_count,
            "nodes": len(self._nodes),
        }

    async def async_shutdown(self) -> None:
        """Disconnect and release every helper."""

        _LOGGER.debug("Shutting down runtime for %s", mask_identifier(self.wallet_address))
        await self.terminals.async_shutdown()
        await self.connection.disconnect()
        self.correlator.reject_all(TransportError("runtime shut down"))
        self.remote_auth.close()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.dispatcher.clear()

    def _on_nodes_frame(self, event: MonitorEvent) -> None:
        frame = event.frame
        nodes = getattr(frame, "nodes", None)
        if nodes is None:
            return
        self._nodes = normalize({"nodes": nodes}, SourceKind.REALTIME)
        _LOGGER.debug(
            "Node list updated for %s (%d nodes)",
            mask_identifier(self.wallet_address),
            len(self._nodes),
        )


class ConnectionRegistry:
    """Keep exactly one :class:`MonitorRuntime` per wallet."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        signer_factory: Callable[[str], Signer],
        session_store: SessionStore | None = None,
        token_provider: TokenProvider | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise an empty registry."""
        self._session = session
        self._signer_factory = signer_factory
        self._session_store = session_store
        self._token_provider = token_provider
        self._defaults = dict(defaults or {})
        self._runtimes: dict[str, MonitorRuntime] = {}

    def __len__(self) -> int:
        return len(self._runtimes)

    def wallets(self) -> list[str]:
        """Return the wallets with a runtime."""

        return list(self._runtimes)

    def get(self, wallet_address: str) -> MonitorRuntime | None:
        """Return the runtime for ``wallet_address`` if one exists."""

        return self._runtimes.get(normalize_wallet(wallet_address))

    def acquire(self, wallet_address: str, **overrides: Any) -> MonitorRuntime:
        """Return the wallet's runtime, creating it on first use.

        ``overrides`` only apply when the runtime is created.
        """

        key = normalize_wallet(wallet_address)
        runtime = self._runtimes.get(key)
        if runtime is not None:
            return runtime
        config = load_config({**self._defaults, **overrides, "wallet_address": key})
        runtime = MonitorRuntime(
            self._session,
            config,
            signer=self._signer_factory(key),
            session_store=self._session_store,
            token_provider=self._token_provider,
        )
        self._runtimes[key] = runtime
        _LOGGER.debug("Created runtime for %s", mask_identifier(key))
        return runtime

    async def release(self, wallet_address: str) -> bool:
        """Shut down and forget the wallet's runtime."""

        runtime = self._runtimes.pop(normalize_wallet(wallet_address), None)
        if runtime is None:
            return False
        await runtime.async_shutdown()
        return True

    async def async_shutdown(self) -> None:
        """Shut down every runtime."""

        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        for runtime in runtimes:
            await runtime.async_shutdown()


__all__ = ["ConnectionRegistry", "MonitorRuntime"]
