"""
Canopy Tables — items and item memberships.

1. items            — Materialized-path tree; ``path`` is unique and used for
                      prefix (subtree) and IN-list (ancestor) queries.
2. item_memberships — Permission grants keyed by (item_path, account_id);
                      FK to items.path cascades on delete and on update, so a
                      move's prefix rewrite carries the grants along.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)

from canopy.db.base import Base, TimestampMixin


class ItemRow(Base, TimestampMixin):
    __tablename__ = "items"

    id = Column(String(36), primary_key=True)
    path = Column(String(2048), unique=True, nullable=False, index=True)
    type = Column(String(50), nullable=False, default="folder")
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    extra = Column(JSON, default=dict, nullable=False)
    settings = Column(JSON, default=dict, nullable=False)
    creator = Column(String(36), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<ItemRow(id='{self.id}', path='{self.path}', type='{self.type}')>"


class ItemMembershipRow(Base, TimestampMixin):
    __tablename__ = "item_memberships"

    id = Column(String(36), primary_key=True)
    account_id = Column(String(36), nullable=False)
    item_path = Column(
        String(2048),
        ForeignKey("items.path", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    permission = Column(String(10), nullable=False)
    creator = Column(String(36), nullable=True)

    __table_args__ = (
        UniqueConstraint("item_path", "account_id", name="uq_item_membership"),
        CheckConstraint(
            "permission IN ('read', 'write', 'admin')",
            name="ck_item_memberships_permission",
        ),
        Index("idx_im_account_id", "account_id"),
        Index("idx_im_item_path", "item_path"),
    )

    def __repr__(self) -> str:
        return (
            f"<ItemMembershipRow(account_id='{self.account_id}', "
            f"item_path='{self.item_path}', permission='{self.permission}')>"
        )
