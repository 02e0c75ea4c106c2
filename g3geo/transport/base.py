"""
g3geo Transport Interfaces

The geo layer talks to two external collaborators:

    - P2PTransport: topic pub/sub plus direct peer messaging (libp2p in the
      browser client, an HTTP relay in `http_relay.py`)
    - SessionChannel: an event socket to the traffic session server

Both are abstracted so that:
    - Loopback implementations can be used for local development and tests
    - Several peers can share one in-process hub in multi-peer tests
    - All network calls go through `best_effort`, which makes the
      "may fail, never raises" contract visible at the call site

Example:
    hub = LoopbackHub()
    transport = LoopbackTransport(hub, peer_id="peer-a")
    result = await best_effort(transport.publish(topic, payload), "publish hazard")
    if not result.ok:
        ...  # already logged
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..errors import TransportUnavailable


logger = logging.getLogger(__name__)


MessageHandler = Callable[[bytes], Union[None, Awaitable[None]]]
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class BestEffort:
    """
    Result of a best-effort network call.

    Callers are allowed to ignore it; failures have already been logged.
    """
    ok: bool
    error: Optional[TransportUnavailable] = None

    def __bool__(self) -> bool:
        return self.ok


async def best_effort(call: Awaitable[Any], action: str) -> BestEffort:
    """
    Await a transport call, converting any failure into a logged result.

    A call that returns an explicit False is treated as a failure too.
    """
    try:
        outcome = await call
    except asyncio.CancelledError:
        raise
    except Exception as e:
        error = e if isinstance(e, TransportUnavailable) else TransportUnavailable(f"{action}: {e}")
        logger.warning(f"Best-effort {action} failed: {e}")
        return BestEffort(ok=False, error=error)

    if outcome is False:
        logger.debug(f"Best-effort {action} was not delivered")
        return BestEffort(ok=False, error=TransportUnavailable(f"{action}: not delivered"))
    return BestEffort(ok=True)


async def dispatch(handler: Callable[[Any], Any], payload: Any) -> None:
    """Invoke a sync or async handler."""
    result = handler(payload)
    if inspect.isawaitable(result):
        await result


# =============================================================================
# INTERFACES
# =============================================================================

class P2PTransport(ABC):
    """
    Topic-based pub/sub transport.

    All implementations should be safe to call when not initialized:
    publish/send_direct then return False rather than raising.
    """

    @abstractmethod
    def is_initialized(self) -> bool:
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: bytes) -> bool:
        """
        Publish to all subscribers of `topic`.

        Returns:
            True if the message was handed to the network
        """
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        pass

    @abstractmethod
    async def send_direct(self, peer_id: str, payload: bytes) -> bool:
        pass

    async def close(self) -> None:
        pass


class SessionChannel(ABC):
    """Event socket to the traffic session server."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def emit(self, event: str, payload: Any) -> None:
        """
        Send an event.

        Raises:
            TransportUnavailable: if the channel is not connected
        """
        pass

    @abstractmethod
    def on(self, event: str, handler: EventHandler) -> None:
        pass


# =============================================================================
# LOOPBACK IMPLEMENTATIONS
# =============================================================================

class LoopbackHub:
    """
    In-process message bus shared by loopback transports.

    Delivery is synchronous with the publishing coroutine, in subscription
    order. A publisher does not receive its own messages.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[tuple]] = {}
        self._peers: Dict[str, "LoopbackTransport"] = {}
        self._channels: List["LoopbackSessionChannel"] = []
        self.published: List[tuple] = []

    def register_peer(self, transport: "LoopbackTransport") -> None:
        self._peers[transport.peer_id] = transport

    def add_subscriber(self, topic: str, peer_id: str, handler: MessageHandler) -> None:
        self._subscribers.setdefault(topic, []).append((peer_id, handler))

    async def deliver(self, topic: str, sender: str, payload: bytes) -> int:
        self.published.append((topic, sender, payload))
        delivered = 0
        for peer_id, handler in list(self._subscribers.get(topic, [])):
            if peer_id == sender:
                continue
            await dispatch(handler, payload)
            delivered += 1
        return delivered

    async def deliver_direct(self, peer_id: str, payload: bytes) -> bool:
        peer = self._peers.get(peer_id)
        if peer is None:
            return False
        await peer.receive_direct(payload)
        return True

    def attach_channel(self, channel: "LoopbackSessionChannel") -> None:
        self._channels.append(channel)

    async def relay_event(self, sender: "LoopbackSessionChannel", event: str, payload: Any) -> None:
        for channel in list(self._channels):
            if channel is not sender:
                await channel.receive(event, payload)


class LoopbackTransport(P2PTransport):
    """P2PTransport backed by a LoopbackHub."""

    def __init__(self, hub: LoopbackHub, peer_id: str = "local", initialized: bool = True):
        self._hub = hub
        self.peer_id = peer_id
        self._initialized = initialized
        self._direct_handlers: List[MessageHandler] = []
        hub.register_peer(self)

    def is_initialized(self) -> bool:
        return self._initialized

    def set_initialized(self, value: bool) -> None:
        self._initialized = value

    async def publish(self, topic: str, payload: bytes) -> bool:
        if not self._initialized:
            return False
        await self._hub.deliver(topic, self.peer_id, payload)
        return True

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._hub.add_subscriber(topic, self.peer_id, handler)

    async def send_direct(self, peer_id: str, payload: bytes) -> bool:
        if not self._initialized:
            return False
        return await self._hub.deliver_direct(peer_id, payload)

    def on_direct(self, handler: MessageHandler) -> None:
        self._direct_handlers.append(handler)

    async def receive_direct(self, payload: bytes) -> None:
        for handler in list(self._direct_handlers):
            await dispatch(handler, payload)

    async def close(self) -> None:
        self._initialized = False


class LoopbackSessionChannel(SessionChannel):
    """
    SessionChannel that records emitted events.

    When attached to a hub, emitted events are forwarded to the other
    attached channels, which is enough to simulate the session server's
    fan-out in tests.
    """

    def __init__(self, hub: Optional[LoopbackHub] = None, connected: bool = True):
        self._hub = hub
        self._connected = connected
        self._handlers: Dict[str, List[EventHandler]] = {}
        self.emitted: List[tuple] = []
        if hub is not None:
            hub.attach_channel(self)

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, value: bool) -> None:
        self._connected = value

    async def emit(self, event: str, payload: Any) -> None:
        if not self._connected:
            raise TransportUnavailable(f"Session channel not connected (event {event})")
        self.emitted.append((event, payload))
        if self._hub is not None:
            await self._hub.relay_event(self, event, payload)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def receive(self, event: str, payload: Any) -> None:
        """Deliver an inbound event to registered handlers."""
        for handler in list(self._handlers.get(event, [])):
            await dispatch(handler, payload)
