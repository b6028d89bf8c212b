"""
Connection state machine.

Single source of truth for the connection lifecycle. Drives the discovery
race, then sequences the trust store and tunnel requests around its result:

    disconnected/failed --connect--> connecting --activated--> connected
    connecting --race failed / step declined--> failed
    connected --disconnect--> disconnecting --tunnel stopped--> disconnected
    failed --reset--> disconnected

The active proxy is only ever set while connecting (once resolved) or
connected, and is cleared by every other transition.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from .errors import ProxyLinkError, TrustOrTunnelDenied
from .models.connection import (
    ConnectionSnapshot,
    ConnectionState,
    ConnectSource,
    ProxyConfiguration,
)
from .race import DiscoveryRace
from .schemas.payload import CandidatePayload, decode_connect_url
from .shim import IntegrationShim
from .store import MemoryProxyStore, ProxyStore

logger = structlog.get_logger(__name__)

StateCallback = Callable[[ConnectionSnapshot], Awaitable[None]]
PayloadSource = Callable[[], CandidatePayload]

PROXY_STATES = frozenset({ConnectionState.CONNECTING, ConnectionState.CONNECTED})

ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
    }),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
    }),
    ConnectionState.CONNECTED: frozenset({
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.DISCONNECTING: frozenset({
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.FAILED: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    }),
}


class ConnectionStateMachine:
    """
    Owns the connection state and the active proxy.

    All mutation happens on the event loop that drives this object; readers
    get immutable snapshots.
    """

    def __init__(
        self,
        race: DiscoveryRace,
        shim: IntegrationShim,
        store: Optional[ProxyStore] = None
    ):
        """
        Initialize the state machine.

        Args:
            race: Discovery race used to resolve payloads
            shim: Platform integration for trust store and tunnel
            store: Holder of the last connected proxy (in-memory if not provided)
        """
        self.race = race
        self.shim = shim
        self.store = store or MemoryProxyStore()
        self._state = ConnectionState.DISCONNECTED
        self._proxy: Optional[ProxyConfiguration] = None
        self._last_error: Optional[str] = None
        self._state_callback: Optional[StateCallback] = None

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def proxy(self) -> Optional[ProxyConfiguration]:
        """Get the active proxy, if connecting (resolved) or connected."""
        return self._proxy

    @property
    def last_error(self) -> Optional[str]:
        """Get the reason the last attempt failed."""
        return self._last_error

    def snapshot(self) -> ConnectionSnapshot:
        """Get a read-only view of the current state."""
        return ConnectionSnapshot(state=self._state, proxy=self._proxy, error=self._last_error)

    def set_state_callback(self, callback: Optional[StateCallback]) -> None:
        """Set callback for state changes."""
        self._state_callback = callback

    async def initialize(self) -> ConnectionState:
        """
        Reconstruct the state from the platform.

        An already running tunnel means connected; anything else means
        disconnected.
        """
        active = await self.shim.active_tunnel()
        if active is not None:
            await self._transition(ConnectionState.CONNECTED, proxy=active)
        else:
            logger.debug("No active tunnel found")
        return self._state

    async def connect(
        self,
        payload: CandidatePayload,
        source: ConnectSource = ConnectSource.SCAN
    ) -> bool:
        """
        Connect to the proxy described by a payload.

        Args:
            payload: Decoded connect payload
            source: Where the request came from

        Returns:
            True if connected, False if ignored, declined or failed
        """
        return await self._start(source, lambda: payload)

    async def connect_from_url(
        self,
        url: str,
        source: ConnectSource = ConnectSource.LINK
    ) -> bool:
        """
        Connect to the proxy described by a connect URL.

        A URL that does not decode fails the attempt like any other
        invalid payload.
        """
        return await self._start(source, lambda: decode_connect_url(url))

    async def reconnect(self) -> bool:
        """
        Reconnect to the last connected proxy.

        The proxy is verified again by a full race against its last address
        and its certificate's fingerprint. If that attempt fails for any
        reason the stored proxy is discarded.

        Returns:
            True if connected, False otherwise
        """
        if not self._accepts_connect():
            logger.info("Ignoring reconnect request", state=self._state.value)
            return False

        last = await self.store.load()
        if last is None:
            logger.info("No previous proxy to reconnect to")
            return False

        payload = CandidatePayload(
            addresses=(last.address,),
            port=last.port,
            cert_fingerprint=last.fingerprint,
        )
        connected = await self._start(ConnectSource.RECONNECT, lambda: payload)
        if not connected and self._state is ConnectionState.FAILED:
            logger.warning("Reconnect failed, forgetting last proxy", proxy=str(last))
            await self.store.clear()
        return connected

    async def disconnect(self) -> bool:
        """
        Request tunnel teardown.

        The machine stays disconnecting until handle_tunnel_stopped()
        confirms the tunnel is gone.

        Returns:
            True if teardown was requested, False if not connected
        """
        if self._state is not ConnectionState.CONNECTED:
            logger.info("Ignoring disconnect request", state=self._state.value)
            return False

        await self._transition(ConnectionState.DISCONNECTING)
        await self.shim.teardown_tunnel()
        return True

    async def reset(self) -> bool:
        """Return from failed to disconnected."""
        if self._state is not ConnectionState.FAILED:
            return False
        await self._transition(ConnectionState.DISCONNECTED)
        return True

    async def handle_tunnel_started(self, config: ProxyConfiguration) -> None:
        """Record that the platform reports a running tunnel."""
        if self._state is ConnectionState.DISCONNECTING:
            logger.debug("Ignoring tunnel start while disconnecting")
            return
        await self._transition(ConnectionState.CONNECTED, proxy=config)

    async def handle_tunnel_stopped(self) -> None:
        """Record that the platform reports the tunnel has stopped."""
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
            logger.debug("Ignoring tunnel stop", state=self._state.value)
            return
        await self._transition(ConnectionState.DISCONNECTED)

    def _accepts_connect(self) -> bool:
        """Only a disconnected or failed machine starts a new attempt."""
        return self._state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED)

    async def _start(self, source: ConnectSource, payload_source: PayloadSource) -> bool:
        """Run one connection attempt, from request to connected or failed."""
        if not self._accepts_connect():
            logger.info("Ignoring connect request", state=self._state.value, source=source.value)
            return False

        if source is ConnectSource.LINK and not await self._confirm_link():
            return False

        # The confirmation prompt may have let another attempt start
        if not self._accepts_connect():
            return False

        await self._transition(ConnectionState.CONNECTING)
        logger.info("Connecting", source=source.value)

        try:
            config = await self.race.race(payload_source())
            await self._activate(config)
        except ProxyLinkError as e:
            await self._fail(e)
            return False
        except (Exception, asyncio.CancelledError) as e:
            await self._fail(e)
            raise

        await self.store.save(config)
        return True

    async def _confirm_link(self) -> bool:
        """Ask before a link silently reuses an already set up device."""
        last = await self.store.load()
        if last is None or not await self.shim.is_tunnel_provisioned():
            return True

        if await self.shim.confirm_interception():
            logger.info("Interception prompt confirmed")
            return True

        logger.info("Interception prompt cancelled")
        return False

    async def _activate(self, config: ProxyConfiguration) -> None:
        """Bring up trust and tunnel for a verified proxy."""
        await self._transition(ConnectionState.CONNECTING, proxy=config)

        trusted = await self.shim.is_certificate_trusted(config.certificate)
        provisioned = await self.shim.is_tunnel_provisioned()
        logger.debug("Setup preconditions", certificate_trusted=trusted, tunnel_provisioned=provisioned)

        if not trusted:
            await self.shim.explain_setup(needs_tunnel=not provisioned)
        if not provisioned:
            await self._require(
                await self.shim.provision_tunnel(),
                TrustOrTunnelDenied.TUNNEL_PROVISION
            )
        if not trusted:
            logger.info("Certificate not trusted, prompting to install")
            await self._require(
                await self.shim.install_certificate(config.certificate),
                TrustOrTunnelDenied.CERTIFICATE_INSTALL
            )
        else:
            logger.info("Certificate already trusted, continuing")

        await self._require(
            await self.shim.request_tunnel(config.address, config.port),
            TrustOrTunnelDenied.TUNNEL_ACTIVATION
        )

        await self._transition(ConnectionState.CONNECTED, proxy=config)

    @staticmethod
    async def _require(granted: bool, step: str) -> None:
        """Turn a declined step into a failure."""
        if not granted:
            logger.warning("Setup step declined", step=step)
            raise TrustOrTunnelDenied(step)

    async def _fail(self, error: BaseException) -> None:
        """Land in failed, recording why."""
        if self._state is not ConnectionState.CONNECTING:
            logger.warning("Attempt failed after leaving connecting", state=self._state.value, error=str(error))
            return
        logger.error("Connection attempt failed", error=str(error) or type(error).__name__)
        await self._transition(
            ConnectionState.FAILED,
            error=str(error) or type(error).__name__
        )

    async def _transition(
        self,
        state: ConnectionState,
        proxy: Optional[ProxyConfiguration] = None,
        error: Optional[str] = None
    ) -> None:
        """Apply a state change and notify the callback."""
        previous = self._state
        if state not in ALLOWED_TRANSITIONS[previous]:
            raise RuntimeError(f"Illegal connection transition: {previous.value} -> {state.value}")
        if state is ConnectionState.CONNECTED and proxy is None:
            raise RuntimeError("Connected state requires a proxy")

        self._state = state
        self._proxy = proxy if state in PROXY_STATES else None
        self._last_error = error if state is ConnectionState.FAILED else None

        logger.info(
            "Connection state changed",
            previous=previous.value,
            state=state.value,
            proxy=str(self._proxy) if self._proxy else None
        )

        if self._state_callback:
            await self._state_callback(self.snapshot())
