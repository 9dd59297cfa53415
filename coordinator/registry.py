"""
Scope registry for the coordinator.

Provides high-level operations for managing collaboration scopes:
- Scope creation with pre-allocated participant slots
- Joining and rejoining a scope
- Leaving a scope
- Roster lookups for assignments and the mesh relay

State is held in memory; restarting the coordinator forgets all scopes.
"""

from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime
import logging
import uuid


logger = logging.getLogger(__name__)


CREATOR = "creator"
PARTICIPANT = "participant"


def new_id() -> str:
    """Random short identifier for workers and scopes."""
    return uuid.uuid4().hex[:12]


@dataclass
class ScopeMember:
    """One slot of a scope."""
    worker_id: str
    role: str
    joined: bool = False
    hostname: Optional[str] = None
    joined_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'worker_id': self.worker_id,
            'role': self.role,
            'joined': self.joined,
            'hostname': self.hostname,
            'joined_at': self.joined_at.isoformat() if self.joined_at else None
        }


@dataclass
class Scope:
    """A collaboration scope and its member slots."""
    scope_id: str
    model_id: str
    creator_id: str
    members: Dict[str, ScopeMember] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def participants(self) -> Dict[str, str]:
        """Every slot's worker id and role."""
        return {m.worker_id: m.role for m in self.members.values()}

    def joined_members(self) -> List[str]:
        return sorted(m.worker_id for m in self.members.values() if m.joined)

    def free_slot(self) -> Optional[ScopeMember]:
        """First participant slot nobody has claimed."""
        for member in self.members.values():
            if member.role == PARTICIPANT and not member.joined:
                return member
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope_id': self.scope_id,
            'model_id': self.model_id,
            'creator_id': self.creator_id,
            'members': [m.to_dict() for m in self.members.values()],
            'created_at': self.created_at.isoformat()
        }


class ScopeRegistry:
    """
    In-memory scope registry.

    A scope is created by its first worker (the creator) with a fixed number
    of participant slots. Later workers claim a slot by joining with the
    scope id, optionally naming the slot's worker id to rejoin.
    """

    def __init__(self):
        self.scopes: Dict[str, Scope] = {}

    def create_scope(
        self,
        model_id: str,
        num_workers: int,
        worker_id: Optional[str] = None,
        hostname: Optional[str] = None
    ) -> Scope:
        """
        Create a scope with the caller as creator.

        Args:
            model_id: Model the scope trains
            num_workers: Total slots including the creator
            worker_id: Creator's worker id (generated if None)
            hostname: Creator's hostname

        Returns:
            The new scope
        """
        creator_id = worker_id or new_id()
        scope = Scope(scope_id=new_id(), model_id=model_id, creator_id=creator_id)

        scope.members[creator_id] = ScopeMember(
            worker_id=creator_id,
            role=CREATOR,
            joined=True,
            hostname=hostname,
            joined_at=datetime.now()
        )
        for _ in range(num_workers - 1):
            slot_id = new_id()
            scope.members[slot_id] = ScopeMember(worker_id=slot_id, role=PARTICIPANT)

        self.scopes[scope.scope_id] = scope
        logger.info(
            f"Scope created: {scope.scope_id} by {creator_id} "
            f"({num_workers} slots, model {model_id})"
        )
        return scope

    def join_scope(
        self,
        scope_id: str,
        worker_id: Optional[str] = None,
        hostname: Optional[str] = None
    ) -> Optional[ScopeMember]:
        """
        Claim a slot in an existing scope.

        Args:
            scope_id: Scope identifier
            worker_id: Slot to claim or rejoin (next free slot if None)
            hostname: Worker hostname

        Returns:
            The claimed member, or None if the scope or slot is unavailable
        """
        scope = self.scopes.get(scope_id)
        if scope is None:
            logger.warning(f"Join for unknown scope: {scope_id}")
            return None

        if worker_id is None:
            member = scope.free_slot()
            if member is None:
                logger.warning(f"Scope {scope_id} is full")
                return None
        else:
            member = scope.members.get(worker_id)
            if member is None:
                logger.warning(f"Worker {worker_id} has no slot in scope {scope_id}")
                return None

        rejoin = member.joined
        member.joined = True
        member.hostname = hostname or member.hostname
        member.joined_at = datetime.now()

        logger.info(
            f"Worker {'rejoined' if rejoin else 'joined'}: {member.worker_id} "
            f"as {member.role} in scope {scope_id}"
        )
        return member

    def leave_scope(self, scope_id: str, worker_id: str) -> bool:
        """
        Release a worker's slot.

        Returns:
            True if the worker was a joined member
        """
        member = self.get_member(scope_id, worker_id)
        if member is None or not member.joined:
            logger.warning(f"Leave from unknown member: {worker_id}@{scope_id}")
            return False

        member.joined = False
        logger.info(f"Worker left: {worker_id} from scope {scope_id}")
        return True

    def get_scope(self, scope_id: str) -> Optional[Scope]:
        return self.scopes.get(scope_id)

    def get_member(self, scope_id: str, worker_id: str) -> Optional[ScopeMember]:
        """
        Get a scope member.

        Returns:
            ScopeMember or None if the scope or worker is unknown
        """
        scope = self.scopes.get(scope_id)
        if scope is None:
            return None
        return scope.members.get(worker_id)

    def get_all_scopes(self) -> List[Scope]:
        return list(self.scopes.values())

    def get_scope_count(self) -> Dict[str, int]:
        """
        Get scope and member counts.

        Returns:
            Dictionary with counts: {'scopes': N, 'joined_workers': M}
        """
        joined = sum(len(s.joined_members()) for s in self.scopes.values())
        return {
            'scopes': len(self.scopes),
            'joined_workers': joined
        }
