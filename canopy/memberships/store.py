"""
Canopy Membership Store — permission grants and inheritance resolution.

"Inherited" permission of an account on an item = the grant on the nearest
item among the item itself and its ancestors. Ancestor lookups are IN-lists
of the ancestor paths; subtree lookups are prefix matches.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session

from canopy.db.models import ItemMembershipRow
from canopy.items.models import Item
from canopy.items.paths import DELIMITER, ItemPath
from canopy.memberships.models import (
    ItemMembership,
    MembershipChanges,
    MembershipGrant,
    MembershipMatch,
    PermissionLevel,
    at_least,
)

logger = logging.getLogger("canopy.memberships.store")


def _to_membership(row: ItemMembershipRow) -> ItemMembership:
    return ItemMembership(
        id=row.id,
        account_id=row.account_id,
        item_path=ItemPath.decode(row.item_path),
        permission=PermissionLevel(row.permission),
        creator=row.creator,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _ancestors_or_self(path: ItemPath):
    return ItemMembershipRow.item_path.in_([p.encode() for p in path.ancestors()])


def _strictly_below(path: ItemPath):
    return ItemMembershipRow.item_path.startswith(path.encode() + DELIMITER, autoescape=True)


class MembershipStore:
    """Database's first layer of abstraction for item memberships."""

    # -- reads --------------------------------------------------------------

    def get(self, session: Session, membership_id: str) -> Optional[ItemMembership]:
        row = session.get(ItemMembershipRow, membership_id)
        return _to_membership(row) if row is not None else None

    def get_inherited(
        self,
        session: Session,
        account_id: str,
        item: Item,
        exclude_own: bool = False,
    ) -> Optional[ItemMembership]:
        """
        Nearest grant for ``account_id`` at or above ``item``.
        With ``exclude_own``, a grant exactly at the item is ignored.
        """
        stmt = select(ItemMembershipRow).where(
            ItemMembershipRow.account_id == account_id,
            _ancestors_or_self(item.path),
        )
        if exclude_own:
            stmt = stmt.where(ItemMembershipRow.item_path != item.path.encode())
        stmt = stmt.order_by(func.length(ItemMembershipRow.item_path).desc()).limit(1)
        row = session.scalars(stmt).first()
        return _to_membership(row) if row is not None else None

    def get_permission_level(self, session: Session, account_id: str, item: Item) -> Optional[PermissionLevel]:
        membership = self.get_inherited(session, account_id, item)
        return membership.permission if membership is not None else None

    def can_read(self, session: Session, account_id: str, item: Item) -> bool:
        return at_least(self.get_permission_level(session, account_id, item), PermissionLevel.READ)

    def can_write(self, session: Session, account_id: str, item: Item) -> bool:
        return at_least(self.get_permission_level(session, account_id, item), PermissionLevel.WRITE)

    def can_admin(self, session: Session, account_id: str, item: Item) -> bool:
        return at_least(self.get_permission_level(session, account_id, item), PermissionLevel.ADMIN)

    def get_for_member_at_item(self, session: Session, account_id: str, item: Item) -> Optional[ItemMembership]:
        """The account's own grant exactly at the item, if any."""
        stmt = select(ItemMembershipRow).where(
            ItemMembershipRow.account_id == account_id,
            ItemMembershipRow.item_path == item.path.encode(),
        )
        row = session.scalars(stmt).first()
        return _to_membership(row) if row is not None else None

    def get_all_below(self, session: Session, account_id: str, item: Item) -> List[ItemMembership]:
        """The account's grants strictly below the item, deepest first."""
        stmt = (
            select(ItemMembershipRow)
            .where(ItemMembershipRow.account_id == account_id, _strictly_below(item.path))
            .order_by(func.length(ItemMembershipRow.item_path).desc())
        )
        return [_to_membership(r) for r in session.scalars(stmt).all()]

    def get_inherited_for_all(self, session: Session, item: Item) -> List[ItemMembership]:
        """The nearest grant at or above ``item`` for every account with access."""
        stmt = select(ItemMembershipRow).where(_ancestors_or_self(item.path))
        nearest: Dict[str, ItemMembership] = {}
        for row in session.scalars(stmt).all():
            membership = _to_membership(row)
            current = nearest.get(membership.account_id)
            if current is None or membership.item_path.depth > current.item_path.depth:
                nearest[membership.account_id] = membership
        return sorted(nearest.values(), key=lambda m: (m.item_path.depth, m.account_id))

    def get_in_tree(self, session: Session, item: Item) -> List[ItemMembership]:
        """Every grant at the item or below it."""
        stmt = select(ItemMembershipRow).where(
            or_(ItemMembershipRow.item_path == item.path.encode(), _strictly_below(item.path))
        )
        return [_to_membership(r) for r in session.scalars(stmt).all()]

    # -- writes -------------------------------------------------------------

    def create(self, session: Session, grant: MembershipGrant) -> ItemMembership:
        return self.create_many(session, [grant])[0]

    def create_many(self, session: Session, grants: Iterable[MembershipGrant]) -> List[ItemMembership]:
        rows = [
            ItemMembershipRow(
                id=ItemMembership.model_fields["id"].default_factory(),
                account_id=g.account_id,
                item_path=g.item_path.encode(),
                permission=g.permission.value,
                creator=g.creator,
            )
            for g in grants
        ]
        if not rows:
            return []
        session.add_all(rows)
        session.flush()
        return [_to_membership(r) for r in rows]

    def update(self, session: Session, membership_id: str, permission: PermissionLevel) -> Optional[ItemMembership]:
        row = session.get(ItemMembershipRow, membership_id)
        if row is None:
            return None
        row.permission = permission.value
        session.flush()
        return _to_membership(row)

    def delete(self, session: Session, membership_id: str) -> Optional[ItemMembership]:
        row = session.get(ItemMembershipRow, membership_id)
        if row is None:
            return None
        membership = _to_membership(row)
        session.delete(row)
        session.flush()
        return membership

    def delete_many_matching(self, session: Session, matches: Iterable[MembershipMatch]) -> int:
        """Delete every grant matching one of the (account, item path) pairs."""
        conditions = [
            and_(
                ItemMembershipRow.account_id == m.account_id,
                ItemMembershipRow.item_path == m.item_path.encode(),
            )
            for m in matches
        ]
        if not conditions:
            return 0
        result = session.execute(
            delete(ItemMembershipRow)
            .where(or_(*conditions))
            .execution_options(synchronize_session=False)
        )
        session.expire_all()
        return result.rowcount or 0

    # -- move housekeeping --------------------------------------------------

    def _nearest_by_account(self, session: Session, path: Optional[ItemPath]) -> Dict[str, PermissionLevel]:
        """Inherited permission per account at ``path`` (nothing for None)."""
        if path is None:
            return {}
        rows = session.scalars(
            select(ItemMembershipRow).where(
                ItemMembershipRow.item_path.in_([p.encode() for p in path.ancestors()])
            )
        ).all()
        nearest: Dict[str, tuple] = {}
        for row in rows:
            depth = ItemPath.decode(row.item_path).depth
            current = nearest.get(row.account_id)
            if current is None or depth > current[0]:
                nearest[row.account_id] = (depth, PermissionLevel(row.permission))
        return {account: level for account, (_, level) in nearest.items()}

    def move_housekeeping(
        self,
        session: Session,
        item: Item,
        actor_id: str,
        new_parent: Optional[Item] = None,
    ) -> MembershipChanges:
        """
        Grants to insert and delete so that, once ``item`` sits under
        ``new_parent``, every account keeps the access it had on the moved
        subtree and no grant is weaker than or equal to what it inherits.

        Must run before the move; returned paths are post-move paths.
        """
        if new_parent is None:
            return self._detached_move_housekeeping(session, item, actor_id)

        new_path = new_parent.path.child(item.id)
        at_destination = self._nearest_by_account(session, new_parent.path)
        at_origin = self._nearest_by_account(session, item.path.parent)
        own = self.get_in_tree(session, item)
        own_at_item = {m.account_id for m in own if m.item_path == item.path}

        changes = MembershipChanges()
        for account_id, permission in sorted(at_origin.items()):
            if account_id in own_at_item:
                continue
            inherited = at_destination.get(account_id)
            if inherited is None or permission > inherited:
                changes.inserts.append(
                    MembershipGrant(
                        account_id=account_id,
                        item_path=new_path,
                        permission=permission,
                        creator=actor_id,
                    )
                )

        for membership in own:
            inherited = at_destination.get(membership.account_id)
            if inherited is not None and membership.permission <= inherited:
                changes.deletes.append(
                    MembershipMatch(
                        account_id=membership.account_id,
                        item_path=membership.item_path.rebase(item.path, new_path),
                    )
                )
        return changes

    def _detached_move_housekeeping(self, session: Session, item: Item, actor_id: str) -> MembershipChanges:
        """Moving to root: materialize at the new root what was inherited from above."""
        new_path = ItemPath((item.id,))
        changes = MembershipChanges()
        own_at_item = {
            m.account_id for m in self.get_in_tree(session, item) if m.item_path == item.path
        }
        for account_id, permission in sorted(self._nearest_by_account(session, item.path).items()):
            if account_id in own_at_item:
                continue
            changes.inserts.append(
                MembershipGrant(
                    account_id=account_id,
                    item_path=new_path,
                    permission=permission,
                    creator=actor_id,
                )
            )
        return changes
