"""
Worker identity within a collaboration scope.

The coordinator assigns a worker id and scope id on first contact when the
process does not supply them. The identity is immutable for the process
lifetime; IdentityStore lets an embedding application persist it so the
worker can rejoin the same scope after a restart.
"""

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Tuple


logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Role of a worker in its scope."""
    CREATOR = "creator"
    PARTICIPANT = "participant"


@dataclass(frozen=True)
class WorkerIdentity:
    """Resolved worker identity."""
    worker_id: str
    scope_id: str
    role: Role

    @property
    def is_creator(self) -> bool:
        return self.role == Role.CREATOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            'worker_id': self.worker_id,
            'scope_id': self.scope_id,
            'role': self.role.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkerIdentity':
        """
        Create identity from a handshake response.

        Raises:
            ValueError: If a field is missing or the role is unknown
        """
        try:
            return cls(
                worker_id=str(data['worker_id']),
                scope_id=str(data['scope_id']),
                role=Role(data['role'])
            )
        except KeyError as e:
            raise ValueError(f"Identity missing field: {e.args[0]}")


class IdentityStore:
    """
    Persists worker/scope ids to a JSON file so a worker can rejoin.
    """

    def __init__(self, path: str):
        """
        Initialize identity store.

        Args:
            path: Path of the JSON identity file
        """
        self.path = path

    def load(self) -> Tuple[Optional[str], Optional[str]]:
        """
        Load a previously saved identity.

        Returns:
            (worker_id, scope_id), each None when not stored
        """
        if not os.path.exists(self.path):
            return None, None

        with open(self.path, 'r') as f:
            data = json.load(f)

        logger.info(f"Loaded identity from {self.path}: {data.get('worker_id')}@{data.get('scope_id')}")
        return data.get('worker_id'), data.get('scope_id')

    def save(self, identity: WorkerIdentity):
        """Save an identity, replacing any previous one."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(self.path, 'w') as f:
            json.dump(identity.to_dict(), f, indent=2)

        logger.info(f"Saved identity to {self.path}")

    def clear(self):
        """Remove the stored identity, if any."""
        if os.path.exists(self.path):
            os.remove(self.path)
