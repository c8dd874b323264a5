"""
Canopy Membership Model — permission grants attached to an item path.

Permission levels are ordered: read < write < admin. A grant on an item is
inherited by every item below it; the nearest grant (deepest path) wins.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from canopy.items.paths import ItemPath


class PermissionLevel(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: object) -> bool:
        if isinstance(other, PermissionLevel):
            return self.rank < other.rank
        return NotImplemented

    def __le__(self, other: object) -> bool:
        if isinstance(other, PermissionLevel):
            return self.rank <= other.rank
        return NotImplemented

    def __gt__(self, other: object) -> bool:
        if isinstance(other, PermissionLevel):
            return self.rank > other.rank
        return NotImplemented

    def __ge__(self, other: object) -> bool:
        if isinstance(other, PermissionLevel):
            return self.rank >= other.rank
        return NotImplemented


_RANKS = {PermissionLevel.READ: 1, PermissionLevel.WRITE: 2, PermissionLevel.ADMIN: 3}


def at_least(level: Optional[PermissionLevel], required: PermissionLevel) -> bool:
    """True if ``level`` (None = no access) satisfies ``required``."""
    return level is not None and level >= required


class ItemMembership(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    item_path: ItemPath
    permission: PermissionLevel
    creator: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MembershipGrant(BaseModel):
    """A grant to create: who, where, what level, created by whom."""

    account_id: str
    item_path: ItemPath
    permission: PermissionLevel
    creator: Optional[str] = None


@dataclass(frozen=True)
class MembershipMatch:
    """Predicate for bulk deletes: the grant of ``account_id`` at ``item_path``."""

    account_id: str
    item_path: ItemPath


@dataclass
class MembershipChanges:
    """Deltas that keep the inheritance invariant after a move."""

    inserts: List[MembershipGrant] = field(default_factory=list)
    deletes: List[MembershipMatch] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.inserts or self.deletes)
