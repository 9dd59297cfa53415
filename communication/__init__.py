"""
Communication module for meshfed federated learning.

Provides transport and wire formats for:
- Peer mesh: membership events and best-effort messages between scope members
- Tensor serialization: JSON-safe tensors for the coordinator and plan runtime
"""

from communication.mesh import (
    PeerTransport,
    TransportEvent,
    LocalMesh,
    LocalPeerTransport,
    WebSocketPeerTransport,
)
from communication.serialization import serialize_tensor, deserialize_tensor

__version__ = "0.1.0"

__all__ = [
    "PeerTransport",
    "TransportEvent",
    "LocalMesh",
    "LocalPeerTransport",
    "WebSocketPeerTransport",
    "serialize_tensor",
    "deserialize_tensor",
]
