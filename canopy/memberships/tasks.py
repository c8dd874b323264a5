"""
Canopy Membership Operations — grant, change, revoke and list permissions.

Creating or upgrading a grant purges the account's grants further down that
are now redundant (same or weaker level). The purge and the write run as
delegated subtasks in the caller's transaction, so they commit together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar, List, Optional

from sqlalchemy.orm import Session

from canopy.engine.errors import (
    InvalidMembership,
    InvalidPermissionLevel,
    ItemMembershipNotFound,
    ItemNotFound,
    ModifyExisting,
    TooManyMemberships,
)
from canopy.engine.interpreter import register_handler
from canopy.engine.task import Delegation, Operation, Task, TaskContext
from canopy.items.models import Item
from canopy.memberships.models import ItemMembership, MembershipGrant, PermissionLevel
from canopy.services import Services

logger = logging.getLogger("canopy.memberships.tasks")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass
class CreateItemMembership(Operation):
    name: ClassVar[str] = "create-item-membership"

    item_id: str
    account_id: str
    permission: PermissionLevel

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class UpdateItemMembership(Operation):
    name: ClassVar[str] = "update-item-membership"

    membership_id: str
    permission: PermissionLevel

    @property
    def target_id(self) -> Optional[str]:
        return self.membership_id


@dataclass
class DeleteItemMembership(Operation):
    name: ClassVar[str] = "delete-item-membership"

    membership_id: str
    purge_below: bool = False

    @property
    def target_id(self) -> Optional[str]:
        return self.membership_id


@dataclass
class GetItemMemberships(Operation):
    name: ClassVar[str] = "get-item-memberships"

    item_id: str

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


# Subtasks share the hook channel of the operation that delegates them.

@dataclass
class CreateMembershipNode(Operation):
    name: ClassVar[str] = "create-item-membership"

    grant: MembershipGrant

    @property
    def target_id(self) -> Optional[str]:
        return self.grant.account_id


@dataclass
class UpdateMembershipNode(Operation):
    name: ClassVar[str] = "update-item-membership"

    membership: ItemMembership
    permission: PermissionLevel

    @property
    def target_id(self) -> Optional[str]:
        return self.membership.id


@dataclass
class DeleteMembershipNode(Operation):
    name: ClassVar[str] = "delete-item-membership"

    membership: ItemMembership

    @property
    def target_id(self) -> Optional[str]:
        return self.membership.id


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_membership(services: Services, session: Session, membership_id: str) -> ItemMembership:
    membership = services.memberships.get(session, membership_id)
    if membership is None:
        raise ItemMembershipNotFound(membership_id)
    return membership


def _item_of(services: Services, session: Session, membership: ItemMembership) -> Item:
    item = services.items.get_matching_path(session, membership.item_path)
    if item is None:
        raise ItemNotFound(membership.item_path.last_id)
    return item


def _redundant_below(
    services: Services,
    session: Session,
    account_id: str,
    item: Item,
    permission: PermissionLevel,
) -> List[ItemMembership]:
    """Grants of the account below ``item`` made redundant by ``permission`` at ``item``."""
    below = [
        m for m in services.memberships.get_all_below(session, account_id, item)
        if m.permission <= permission
    ]
    if len(below) > services.limits.max_memberships_for_delete:
        raise TooManyMemberships(item.id)
    return below


def _purge_then(ctx: TaskContext, purge: List[ItemMembership], last: Operation) -> Delegation:
    subtasks: List[Task] = [ctx.subtask(DeleteMembershipNode(m)) for m in purge]
    subtasks.append(ctx.subtask(last))
    return Delegation(subtasks, collect=lambda tasks: tasks[-1].result)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

@register_handler(CreateItemMembership)
def create_item_membership(op: CreateItemMembership, ctx: TaskContext):
    services: Services = ctx.services
    session = ctx.session
    permission = PermissionLevel(op.permission)

    item = services.load_item(session, op.item_id)
    services.require_admin(session, ctx.actor.id, item)

    purge: List[ItemMembership] = []
    own = services.memberships.get_for_member_at_item(session, op.account_id, item)
    if own is not None:
        if own.permission >= permission:
            raise ModifyExisting(own.id)
        # upgrade: the weaker grant at the item is replaced
        purge.append(own)

    inherited = services.memberships.get_inherited(session, op.account_id, item, exclude_own=True)
    if inherited is not None and inherited.permission >= permission:
        raise InvalidMembership(
            {"account_id": op.account_id, "item_id": item.id, "permission": permission.value}
        )

    purge.extend(_redundant_below(services, session, op.account_id, item, permission))
    grant = MembershipGrant(
        account_id=op.account_id,
        item_path=item.path,
        permission=permission,
        creator=ctx.actor.id,
    )
    if purge:
        return _purge_then(ctx, purge, CreateMembershipNode(grant))

    ctx.pre_hook(grant)
    membership = services.memberships.create(session, grant)
    ctx.post_hook(membership)
    return membership


@register_handler(UpdateItemMembership)
def update_item_membership(op: UpdateItemMembership, ctx: TaskContext):
    services: Services = ctx.services
    session = ctx.session
    permission = PermissionLevel(op.permission)

    membership = _load_membership(services, session, op.membership_id)
    item = _item_of(services, session, membership)
    services.require_admin(session, ctx.actor.id, item)

    inherited = services.memberships.get_inherited(session, membership.account_id, item, exclude_own=True)
    if inherited is not None:
        if permission == inherited.permission:
            # same as inherited: the grant is redundant
            return Delegation(
                [ctx.subtask(DeleteMembershipNode(membership))],
                collect=lambda tasks: tasks[0].result,
            )
        if permission < inherited.permission:
            raise InvalidPermissionLevel(membership.id)

    purge = _redundant_below(services, session, membership.account_id, item, permission)
    if purge:
        return _purge_then(ctx, purge, UpdateMembershipNode(membership, permission))

    ctx.pre_hook({"id": membership.id, "permission": permission})
    updated = services.memberships.update(session, membership.id, permission)
    ctx.post_hook(updated)
    return updated


@register_handler(DeleteItemMembership)
def delete_item_membership(op: DeleteItemMembership, ctx: TaskContext):
    services: Services = ctx.services
    session = ctx.session

    membership = _load_membership(services, session, op.membership_id)
    item = _item_of(services, session, membership)
    if membership.account_id != ctx.actor.id:
        services.require_admin(session, ctx.actor.id, item)

    if op.purge_below:
        below = services.memberships.get_all_below(session, membership.account_id, item)
        if len(below) > services.limits.max_memberships_for_delete:
            raise TooManyMemberships(item.id)
        if below:
            subtasks = [ctx.subtask(DeleteMembershipNode(m)) for m in below]
            subtasks.append(ctx.subtask(DeleteMembershipNode(membership)))
            return Delegation(subtasks, collect=lambda tasks: tasks[-1].result)

    ctx.pre_hook(membership)
    services.memberships.delete(session, membership.id)
    ctx.post_hook(membership)
    return membership


@register_handler(GetItemMemberships)
def get_item_memberships(op: GetItemMemberships, ctx: TaskContext) -> List[ItemMembership]:
    services: Services = ctx.services
    item = services.load_item(ctx.session, op.item_id)
    services.require_read(ctx.session, ctx.actor.id, item)
    memberships = services.memberships.get_inherited_for_all(ctx.session, item)
    ctx.post_hook(memberships)
    return memberships


@register_handler(CreateMembershipNode)
def create_membership_node(op: CreateMembershipNode, ctx: TaskContext) -> ItemMembership:
    ctx.pre_hook(op.grant)
    membership = ctx.services.memberships.create(ctx.session, op.grant)
    ctx.post_hook(membership)
    return membership


@register_handler(UpdateMembershipNode)
def update_membership_node(op: UpdateMembershipNode, ctx: TaskContext) -> ItemMembership:
    ctx.pre_hook({"id": op.membership.id, "permission": op.permission})
    membership = ctx.services.memberships.update(ctx.session, op.membership.id, op.permission)
    ctx.post_hook(membership)
    return membership


@register_handler(DeleteMembershipNode)
def delete_membership_node(op: DeleteMembershipNode, ctx: TaskContext) -> ItemMembership:
    ctx.pre_hook(op.membership)
    ctx.services.memberships.delete(ctx.session, op.membership.id)
    ctx.post_hook(op.membership)
    return op.membership
