"""
Canopy Services — stores and limits shared by every operation handler,
plus the load-and-authorize helpers the handlers start with.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from canopy.engine.config import LimitsConfig
from canopy.engine.errors import (
    ItemNotFound,
    MemberCannotAdminItem,
    MemberCannotReadItem,
    MemberCannotWriteItem,
)
from canopy.items.models import Item
from canopy.items.store import ItemStore
from canopy.memberships.store import MembershipStore


@dataclass
class Services:
    items: ItemStore = field(default_factory=ItemStore)
    memberships: MembershipStore = field(default_factory=MembershipStore)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    def load_item(self, session: Session, item_id: str) -> Item:
        item = self.items.get(session, item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return item

    def require_read(self, session: Session, actor_id: str, item: Item) -> None:
        if not self.memberships.can_read(session, actor_id, item):
            raise MemberCannotReadItem(item.id)

    def require_write(self, session: Session, actor_id: str, item: Item) -> None:
        if not self.memberships.can_write(session, actor_id, item):
            raise MemberCannotWriteItem(item.id)

    def require_admin(self, session: Session, actor_id: str, item: Item) -> None:
        if not self.memberships.can_admin(session, actor_id, item):
            raise MemberCannotAdminItem(item.id)
