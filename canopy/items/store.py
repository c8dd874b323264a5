"""
Canopy Item Store — persistence and tree queries for items.

All queries take the caller's Session; the store never commits. Subtree
queries are prefix matches on the encoded path, ancestor queries are IN-lists
of the ancestor paths computed from the ``ItemPath``.
"""

from __future__ import annotations

import logging
import zlib
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, literal, or_, select, text, update
from sqlalchemy.orm import Session

from canopy.db.models import ItemRow
from canopy.items.models import Item
from canopy.items.paths import DELIMITER, ItemPath

logger = logging.getLogger("canopy.items.store")

# depth of a stored path = number of delimiters + 1
_DEPTH = func.length(ItemRow.path) - func.length(func.replace(ItemRow.path, DELIMITER, "")) + 1


def _subtree(path: ItemPath, include_self: bool = True):
    encoded = path.encode()
    below = ItemRow.path.startswith(encoded + DELIMITER, autoescape=True)
    return or_(ItemRow.path == encoded, below) if include_self else below


def _to_item(row: ItemRow) -> Item:
    return Item(
        id=row.id,
        path=ItemPath.decode(row.path),
        type=row.type,
        name=row.name,
        description=row.description,
        extra=dict(row.extra or {}),
        settings=dict(row.settings or {}),
        creator=row.creator,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ItemStore:
    """Database's first layer of abstraction for items."""

    def get(self, session: Session, item_id: str) -> Optional[Item]:
        row = session.get(ItemRow, item_id)
        return _to_item(row) if row is not None else None

    def get_many(self, session: Session, item_ids: Iterable[str]) -> List[Item]:
        ids = list(item_ids)
        if not ids:
            return []
        rows = session.scalars(select(ItemRow).where(ItemRow.id.in_(ids))).all()
        return [_to_item(r) for r in rows]

    def get_matching_path(self, session: Session, path: ItemPath) -> Optional[Item]:
        row = session.scalars(select(ItemRow).where(ItemRow.path == path.encode())).first()
        return _to_item(row) if row is not None else None

    def get_children(self, session: Session, item: Item) -> List[Item]:
        return self.get_descendants(session, item, levels=1)

    def get_descendants(
        self,
        session: Session,
        item: Item,
        direction: str = "ASC",
        levels: Optional[int] = None,
    ) -> List[Item]:
        """
        Item's descendants ordered by depth.

        ``direction``: ``ASC`` shallow first, ``DESC`` deepest first.
        ``levels``: how far down to go (1 = children); all levels if None.
        """
        stmt = select(ItemRow).where(_subtree(item.path, include_self=False))
        if levels is not None:
            stmt = stmt.where(_DEPTH <= item.depth + levels)
        depth_order = _DEPTH.desc() if direction.upper() == "DESC" else _DEPTH.asc()
        stmt = stmt.order_by(depth_order, ItemRow.created_at, ItemRow.path)
        return [_to_item(r) for r in session.scalars(stmt).all()]

    def get_number_of_children(self, session: Session, item: Item) -> int:
        stmt = (
            select(func.count())
            .select_from(ItemRow)
            .where(_subtree(item.path, include_self=False), _DEPTH == item.depth + 1)
        )
        return session.scalar(stmt) or 0

    def get_number_of_descendants(self, session: Session, item: Item) -> int:
        stmt = select(func.count()).select_from(ItemRow).where(_subtree(item.path, include_self=False))
        return session.scalar(stmt) or 0

    def get_number_of_levels_to_farthest_child(self, session: Session, item: Item) -> int:
        """0 for a leaf, 1 if the deepest descendant is a child, and so on."""
        stmt = select(func.max(_DEPTH)).where(_subtree(item.path, include_self=False))
        deepest = session.scalar(stmt)
        return deepest - item.depth if deepest else 0

    def create(self, session: Session, item: Item) -> Item:
        row = ItemRow(
            id=item.id,
            path=item.path.encode(),
            type=item.type,
            name=item.name,
            description=item.description,
            extra=item.extra,
            settings=item.settings,
            creator=item.creator,
        )
        session.add(row)
        session.flush()
        return _to_item(row)

    def update(self, session: Session, item_id: str, changes: Dict[str, Any]) -> Optional[Item]:
        row = session.get(ItemRow, item_id)
        if row is None:
            return None
        for key, value in changes.items():
            setattr(row, key, value)
        session.flush()
        return _to_item(row)

    def move(self, session: Session, item: Item, parent: Optional[Item] = None) -> Item:
        """
        Move ``item`` and its subtree below ``parent`` (or to root) by
        rewriting the path prefix of every node in one statement.

        Membership paths follow through the ``ON UPDATE CASCADE`` foreign key.
        """
        old_prefix = item.path.encode()
        new_path = ItemPath.for_new_item(item.id, parent.path if parent else None)
        new_prefix = new_path.encode()

        stmt = (
            update(ItemRow)
            .where(_subtree(item.path))
            .values(path=literal(new_prefix) + func.substr(ItemRow.path, len(old_prefix) + 1))
            .execution_options(synchronize_session=False)
        )
        session.execute(stmt)
        session.expire_all()
        logger.debug(f"Moved subtree {old_prefix} -> {new_prefix}")
        return self.get(session, item.id)

    def delete(self, session: Session, item_id: str) -> Optional[Item]:
        row = session.get(ItemRow, item_id)
        if row is None:
            return None
        item = _to_item(row)
        session.delete(row)
        session.flush()
        return item

    def delete_tree(self, session: Session, item: Item) -> int:
        """Delete the item and every descendant in one statement."""
        stmt = delete(ItemRow).where(_subtree(item.path)).execution_options(synchronize_session=False)
        result = session.execute(stmt)
        session.expire_all()
        return result.rowcount or 0

    def lock_tree(self, session: Session, *items: Optional[Item]) -> None:
        """
        Serialize structural changes on the trees the given items belong to.

        PostgreSQL: transaction-scoped advisory lock keyed by the root id.
        Other engines already serialize writers; nothing to do.
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        root_ids = sorted({i.path.root_id for i in items if i is not None})
        for root_id in root_ids:
            key = zlib.crc32(root_id.encode("utf-8"))
            session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
