# =============================================================================
# Connectivity Monitor
# =============================================================================
# Tracks whether the network is usable and tells listeners when that changes.
#
# The application feeds it: either by calling set_connected() from whatever
# knows about the network, or by running probe() periodically, which tries
# a TCP connection to the mail server.
# =============================================================================

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Listener signature: called with the new state
ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    """
    Holds the current connectivity state.

    Usage:
        >>> monitor = ConnectivityMonitor()
        >>> monitor.add_listener(on_change)
        >>> await monitor.set_connected(False)
    """

    # How long a probe connection may take
    PROBE_TIMEOUT = 10  # seconds

    def __init__(self, connected: bool = True) -> None:
        self._connected = connected
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    async def set_connected(self, connected: bool) -> None:
        """Record the new state; listeners only hear about actual changes."""
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Connectivity {'restored' if connected else 'lost'}")
        for listener in self._listeners:
            await listener(connected)

    async def probe(self, host: str, port: int) -> bool:
        """
        Try to reach host:port and update the state from the outcome.

        Returns:
            True if the connection succeeded.
        """
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.PROBE_TIMEOUT
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe to {host}:{port} failed: {e}")
            await self.set_connected(False)
            return False

        writer.close()
        await writer.wait_closed()
        await self.set_connected(True)
        return True
