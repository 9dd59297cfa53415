"""
Ordered event channel from a job to its embedding application.

Handlers run one at a time, in registration order, and emit() does not
return until the last handler has finished. This keeps notifications such
as batch_end strictly ordered with respect to the work that produced them.
"""

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.model import Model
from worker.config import ClientConfig
from worker.identity import WorkerIdentity


Handler = Callable[[Any], Any]


# Event names
STATE_CHANGED = "state_changed"
IDENTIFIED = "identified"
READY = "ready"
BATCH_END = "batch_end"
EPOCH_END = "epoch_end"
DONE = "done"
FAILED = "failed"
PEER_CONNECTED = "peer_connected"
PEER_DISCONNECTED = "peer_disconnected"
MESSAGE = "message"


@dataclass(frozen=True)
class IdentifiedEvent:
    identity: WorkerIdentity
    # True when the coordinator assigned ids the process did not supply
    assigned: bool


@dataclass(frozen=True)
class ReadyEvent:
    """Emitted on entering READY; the embedder supplies data and trains."""
    model: Model
    client_config: ClientConfig
    identity: WorkerIdentity
    participants: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchEndEvent:
    update: int
    batch: int
    epoch: int
    accuracy: float
    loss: float


@dataclass(frozen=True)
class EpochEndEvent:
    update: int
    batch: int
    epoch: int
    model: Model


@dataclass(frozen=True)
class StateChangedEvent:
    previous: str
    current: str


@dataclass(frozen=True)
class PeerEvent:
    peer_id: str
    payload: Optional[Any] = None


class EventChannel:
    """
    Named, ordered event dispatch.

    Handlers may be plain functions or coroutine functions.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        """
        Register a handler for an event.

        Returns the handler so this can be used as a decorator factory target.
        """
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler):
        """Remove a previously registered handler."""
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    async def emit(self, event: str, payload: Any = None):
        """
        Dispatch an event to every handler, awaiting each in turn.

        Handler exceptions propagate to the caller.
        """
        for handler in list(self._handlers.get(event, [])):
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
