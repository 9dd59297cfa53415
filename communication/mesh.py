"""
Peer transport for scope members.

A transport exposes three operations (connect to participants, disconnect,
best-effort send) and reports membership changes and incoming messages as
TransportEvents on an asyncio.Queue. Delivery is not guaranteed.

Implementations:
- LocalMesh / LocalPeerTransport: in-process hub for simulations and tests
- WebSocketPeerTransport: relays through the coordinator's /ws/scopes endpoint
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set

import websockets


logger = logging.getLogger(__name__)


# Event kinds
PEER_CONNECTED = "peer_connected"
PEER_DISCONNECTED = "peer_disconnected"
MESSAGE = "message"


@dataclass(frozen=True)
class TransportEvent:
    """Membership change or message from a peer."""
    kind: str
    peer_id: str
    payload: Optional[Any] = None


class PeerTransport(ABC):
    """Connection to the other members of a scope."""

    def __init__(self):
        self.events: asyncio.Queue = asyncio.Queue()
        self.worker_id: Optional[str] = None
        self.scope_id: Optional[str] = None

    @abstractmethod
    async def connect_to_participants(
        self,
        worker_id: str,
        scope_id: str,
        participants: Iterable[str]
    ):
        """
        Start connecting to every participant.

        Returns once connection attempts are initiated; peers appear later
        as PEER_CONNECTED events.
        """

    @abstractmethod
    async def disconnect_from_participants(self):
        """Drop all peer connections."""

    @abstractmethod
    async def send_to_participants(self, payload: Any) -> int:
        """
        Send a payload to every connected peer, best-effort.

        Returns:
            Number of peers the payload was handed to
        """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the transport is currently joined to its scope."""


class LocalMesh:
    """
    In-process hub that links LocalPeerTransports by scope.
    """

    def __init__(self):
        self._scopes: Dict[str, Dict[str, 'LocalPeerTransport']] = {}

    def transport(self) -> 'LocalPeerTransport':
        """Create a transport attached to this hub."""
        return LocalPeerTransport(self)

    def members(self, scope_id: str) -> Set[str]:
        return set(self._scopes.get(scope_id, {}))

    def _join(self, transport: 'LocalPeerTransport'):
        members = self._scopes.setdefault(transport.scope_id, {})
        for peer_id, peer in members.items():
            if peer_id in transport.participants:
                transport.events.put_nowait(TransportEvent(PEER_CONNECTED, peer_id))
            if transport.worker_id in peer.participants:
                peer.events.put_nowait(TransportEvent(PEER_CONNECTED, transport.worker_id))
        members[transport.worker_id] = transport

    def _leave(self, transport: 'LocalPeerTransport'):
        members = self._scopes.get(transport.scope_id, {})
        members.pop(transport.worker_id, None)
        for peer_id, peer in members.items():
            if transport.worker_id in peer.participants:
                peer.events.put_nowait(TransportEvent(PEER_DISCONNECTED, transport.worker_id))

    def _deliver(self, sender: 'LocalPeerTransport', payload: Any) -> int:
        delivered = 0
        for peer_id, peer in self._scopes.get(sender.scope_id, {}).items():
            if peer_id != sender.worker_id and peer_id in sender.participants:
                peer.events.put_nowait(TransportEvent(MESSAGE, sender.worker_id, payload))
                delivered += 1
        return delivered


class LocalPeerTransport(PeerTransport):
    """Transport bound to a LocalMesh."""

    def __init__(self, mesh: LocalMesh):
        super().__init__()
        self.mesh = mesh
        self.participants: Set[str] = set()
        self._connected = False

    async def connect_to_participants(self, worker_id, scope_id, participants):
        self.worker_id = worker_id
        self.scope_id = scope_id
        self.participants = set(participants) - {worker_id}
        self.mesh._join(self)
        self._connected = True
        logger.debug(f"{worker_id} joined local mesh for scope {scope_id}")

    async def disconnect_from_participants(self):
        if not self._connected:
            return
        self.mesh._leave(self)
        self._connected = False
        logger.debug(f"{self.worker_id} left local mesh")

    async def send_to_participants(self, payload: Any) -> int:
        if not self._connected:
            return 0
        return self.mesh._deliver(self, payload)

    @property
    def is_connected(self) -> bool:
        return self._connected


class WebSocketPeerTransport(PeerTransport):
    """
    Transport that relays through the coordinator.

    Connects to {base_url}/ws/scopes/{scope_id}/{worker_id}. The relay sends
    JSON events: {"event": "peer_connected"|"peer_disconnected", "worker_id"}
    and {"event": "message", "from": ..., "payload": ...}.
    """

    def __init__(self, base_url: str, open_timeout: float = 10.0):
        """
        Initialize WebSocket transport.

        Args:
            base_url: ws:// or wss:// base URL of the coordinator
            open_timeout: Seconds to wait for the connection handshake
        """
        super().__init__()
        self.base_url = base_url.rstrip('/')
        self.open_timeout = open_timeout
        self.participants: Set[str] = set()
        self._websocket = None
        self._reader: Optional[asyncio.Task] = None

    async def connect_to_participants(self, worker_id, scope_id, participants):
        self.worker_id = worker_id
        self.scope_id = scope_id
        self.participants = set(participants) - {worker_id}

        url = f"{self.base_url}/ws/scopes/{scope_id}/{worker_id}"
        logger.info(f"Connecting to mesh relay at {url}")
        self._websocket = await websockets.connect(url, open_timeout=self.open_timeout)
        self._reader = asyncio.create_task(self._read_loop())

    async def disconnect_from_participants(self):
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None
            logger.info("Disconnected from mesh relay")

    async def send_to_participants(self, payload: Any) -> int:
        if self._websocket is None:
            return 0
        try:
            await self._websocket.send(json.dumps({'event': MESSAGE, 'payload': payload}))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Send to participants failed: {e}")
            return 0
        return len(self.participants)

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    async def _read_loop(self):
        """Translate relay messages into TransportEvents."""
        try:
            async for message in self._websocket:
                self.handle_message(message)
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Mesh relay connection closed")
        finally:
            # The relay is gone; every peer is unreachable
            for peer_id in sorted(self.participants):
                self.events.put_nowait(TransportEvent(PEER_DISCONNECTED, peer_id))

    def handle_message(self, message: str):
        """
        Handle one relay message.

        Args:
            message: JSON message from the relay
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse relay message: {message}")
            return

        event = data.get('event')
        if event in (PEER_CONNECTED, PEER_DISCONNECTED):
            peer_id = data.get('worker_id')
            if peer_id and peer_id != self.worker_id:
                self.events.put_nowait(TransportEvent(event, peer_id))
        elif event == MESSAGE:
            self.events.put_nowait(TransportEvent(MESSAGE, data.get('from'), data.get('payload')))
        else:
            logger.debug(f"Ignoring relay event: {event}")
