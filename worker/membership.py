"""
Membership tracking for scope peers.

Consumes transport events in a background task, keeps the roster of peer
connection states, and forwards membership changes and peer messages to the
job's event channel. Round progress never waits on it.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

from communication.mesh import (
    PeerTransport,
    TransportEvent,
    PEER_CONNECTED,
    PEER_DISCONNECTED,
    MESSAGE,
)
from worker import events as job_events
from worker.events import EventChannel, PeerEvent


logger = logging.getLogger(__name__)


class PeerStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Roster:
    """
    Peer worker id -> connection status.

    Mutated only through connect/disconnect; readers get copies.
    """

    def __init__(self, peers: Iterable[str] = ()):
        self._peers: Dict[str, PeerStatus] = {p: PeerStatus.DISCONNECTED for p in peers}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._peers

    def connect(self, peer_id: str):
        self._peers[peer_id] = PeerStatus.CONNECTED

    def disconnect(self, peer_id: str):
        if peer_id in self._peers:
            self._peers[peer_id] = PeerStatus.DISCONNECTED

    def status(self, peer_id: str) -> Optional[PeerStatus]:
        return self._peers.get(peer_id)

    def connected(self) -> List[str]:
        return sorted(p for p, s in self._peers.items() if s == PeerStatus.CONNECTED)

    def snapshot(self) -> Dict[str, PeerStatus]:
        return dict(self._peers)


class MembershipTracker:
    """
    Background consumer of transport events.

    Usage:
        tracker = MembershipTracker(transport, events, own_id)
        tracker.seed(peer_ids)
        await tracker.start()
        ...
        await tracker.stop()
    """

    def __init__(
        self,
        transport: PeerTransport,
        events: Optional[EventChannel] = None,
        worker_id: Optional[str] = None
    ):
        """
        Initialize membership tracker.

        Args:
            transport: Peer transport to read events from
            events: Channel receiving peer_connected/peer_disconnected/message
            worker_id: Own worker id, never added to the roster
        """
        self.transport = transport
        self.events = events or EventChannel()
        self.worker_id = worker_id
        self.roster = Roster()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._total_events = 0

    def seed(self, peers: Iterable[str]):
        """Add known peers as disconnected."""
        self.roster = Roster(p for p in peers if p != self.worker_id)

    async def start(self):
        """Begin consuming transport events."""
        if self._running:
            logger.warning("Membership tracker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._event_loop())
        logger.info(f"Membership tracker started ({len(self.roster)} known peers)")

    async def stop(self):
        """Stop consuming events."""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Membership tracker stopped")

    async def _event_loop(self):
        """Main event loop."""
        while self._running:
            event = await self.transport.events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                # Handlers belong to the embedder; keep tracking membership
                logger.error(f"Error handling {event.kind} from {event.peer_id}: {e}")

    async def handle_event(self, event: TransportEvent):
        """
        Apply one transport event to the roster and forward it.

        Args:
            event: Event from the transport
        """
        self._total_events += 1

        if event.peer_id == self.worker_id:
            return

        if event.kind == PEER_CONNECTED:
            self.roster.connect(event.peer_id)
            logger.info(
                f"Peer connected: {event.peer_id} "
                f"({len(self.roster.connected())}/{len(self.roster)} connected)"
            )
            await self.events.emit(job_events.PEER_CONNECTED, PeerEvent(event.peer_id))

        elif event.kind == PEER_DISCONNECTED:
            self.roster.disconnect(event.peer_id)
            logger.info(f"Peer disconnected: {event.peer_id}")
            await self.events.emit(job_events.PEER_DISCONNECTED, PeerEvent(event.peer_id))

        elif event.kind == MESSAGE:
            logger.debug(f"Message from {event.peer_id}")
            await self.events.emit(job_events.MESSAGE, PeerEvent(event.peer_id, event.payload))

        else:
            logger.debug(f"Ignoring transport event: {event.kind}")

    def get_status(self) -> dict:
        """
        Get tracker status.

        Returns:
            Status dictionary with roster statistics
        """
        return {
            'running': self._running,
            'known_peers': len(self.roster),
            'connected_peers': self.roster.connected(),
            'total_events': self._total_events
        }

    def is_running(self) -> bool:
        return self._running
