"""
Canopy Item Operations — tree mutations and reads as task variants.

Every handler follows the same order: load → authorize → check limits →
pre-hook → write → post-hook. Copy and small deletes delegate one subtask
per node so listeners on ``copy-item`` / ``delete-item`` fire per node.

Hook payloads:
    create-item         pre: new Item (not yet stored)      post: created Item
    get-item            post: Item
    get-item-children   post: List[Item]
    update-item         pre: Item before                    post: updated Item
    move-item           pre: {"source", "destination"}      post: {..., "moved"}
    copy-item           pre: {"original", "copy"}           post: {"original", "copy"}
    delete-item         pre: Item                           post: deleted Item
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional

from sqlalchemy.orm import Session

from canopy.engine.errors import (
    HierarchyTooDeep,
    InvalidMoveTarget,
    TooManyChildren,
    TooManyDescendants,
    TooManyMemberships,
)
from canopy.engine.interpreter import register_handler
from canopy.engine.task import Delegation, Operation, TaskContext
from canopy.items.models import (
    FOLDER_TYPE,
    Item,
    ItemChanges,
    ItemData,
    new_item_id,
    remap_children_order,
    with_children_order,
)
from canopy.items.paths import ItemPath, parent_id
from canopy.memberships.models import MembershipGrant, PermissionLevel, at_least
from canopy.services import Services

logger = logging.getLogger("canopy.items.tasks")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass
class CreateItem(Operation):
    name: ClassVar[str] = "create-item"

    data: ItemData
    parent_id: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.parent_id


@dataclass
class GetItem(Operation):
    name: ClassVar[str] = "get-item"

    item_id: str

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class GetItemChildren(Operation):
    name: ClassVar[str] = "get-item-children"

    item_id: str
    ordered: bool = True

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class UpdateItem(Operation):
    name: ClassVar[str] = "update-item"

    item_id: str
    changes: ItemChanges

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class MoveItem(Operation):
    name: ClassVar[str] = "move-item"

    item_id: str
    parent_id: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class CopyItem(Operation):
    name: ClassVar[str] = "copy-item"

    item_id: str
    parent_id: Optional[str] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class CopyItemNode(Operation):
    """
    Store one prepared copy. The copy root attaches to the destination; every
    other copy inserts itself into its parent copy's ordering once stored.
    """

    name: ClassVar[str] = "copy-item"

    original: Item
    copy: Item
    create_membership: bool = False
    attach_to_parent: bool = False
    # planned ordering of the parent copy's children, None for the copy root
    sibling_order: Optional[List[str]] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.original.id


@dataclass
class DeleteItem(Operation):
    name: ClassVar[str] = "delete-item"

    item_id: str

    @property
    def target_id(self) -> Optional[str]:
        return self.item_id


@dataclass
class DeleteItemNode(Operation):
    name: ClassVar[str] = "delete-item"

    item: Item
    detach_from_parent: bool = False

    @property
    def target_id(self) -> Optional[str]:
        return self.item.id


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _append_child(services: Services, session: Session, parent: Optional[Item], child_id: str) -> None:
    if parent is None or not parent.is_folder:
        return
    order = parent.children_order()
    if child_id in order:
        return
    order.append(child_id)
    services.items.update(session, parent.id, {"extra": with_children_order(parent.extra, order)})


def _remove_child(services: Services, session: Session, item: Item) -> None:
    pid = parent_id(item)
    if pid is None:
        return
    parent = services.items.get(session, pid)
    if parent is None or not parent.is_folder:
        return
    order = parent.children_order()
    if item.id not in order:
        return
    order.remove(item.id)
    services.items.update(session, parent.id, {"extra": with_children_order(parent.extra, order)})


def _place_child(
    services: Services,
    session: Session,
    parent: Optional[Item],
    child_id: str,
    planned: List[str],
) -> None:
    """Insert ``child_id`` into the parent's ordering at its position in ``planned``."""
    if parent is None or not parent.is_folder:
        return
    rank = {cid: i for i, cid in enumerate(planned)}
    order = [cid for cid in parent.children_order() if cid != child_id]
    order.append(child_id)
    order.sort(key=lambda cid: rank.get(cid, len(planned)))
    services.items.update(session, parent.id, {"extra": with_children_order(parent.extra, order)})


def _check_destination(services: Services, session: Session, destination: Item, levels_below: int) -> None:
    """Depth and fan-out limits for placing a subtree ``levels_below`` deep under ``destination``."""
    limits = services.limits
    if destination.depth + 1 + levels_below > limits.max_tree_levels:
        raise HierarchyTooDeep(destination.id)
    if services.items.get_number_of_children(session, destination) + 1 > limits.max_number_of_children:
        raise TooManyChildren(destination.id)


def _needs_admin_grant(services: Services, session: Session, actor_id: str, parent: Optional[Item]) -> bool:
    """A new tree root, or a parent where the actor is not admin, gets an explicit admin grant."""
    if parent is None:
        return True
    inherited = services.memberships.get_permission_level(session, actor_id, parent)
    return not at_least(inherited, PermissionLevel.ADMIN)


def _grant_admin(services: Services, session: Session, actor_id: str, item: Item) -> None:
    services.memberships.create(
        session,
        MembershipGrant(
            account_id=actor_id,
            item_path=item.path,
            permission=PermissionLevel.ADMIN,
            creator=actor_id,
        ),
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

@register_handler(CreateItem)
def create_item(op: CreateItem, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    session = ctx.session
    actor_id = ctx.actor.id

    parent = None
    if op.parent_id is not None:
        parent = services.load_item(session, op.parent_id)
        services.require_write(session, actor_id, parent)
        _check_destination(services, session, parent, 0)

    item_id = new_item_id()
    fields = op.data.model_dump()
    if fields["type"] == FOLDER_TYPE and FOLDER_TYPE not in fields["extra"]:
        fields["extra"] = with_children_order(fields["extra"], [])
    item = Item(
        id=item_id,
        path=ItemPath.for_new_item(item_id, parent.path if parent else None),
        creator=actor_id,
        **fields,
    )

    ctx.pre_hook(item)
    created = services.items.create(session, item)
    _append_child(services, session, parent, created.id)
    if _needs_admin_grant(services, session, actor_id, parent):
        _grant_admin(services, session, actor_id, created)
    ctx.post_hook(created)
    return created


@register_handler(GetItem)
def get_item(op: GetItem, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    item = services.load_item(ctx.session, op.item_id)
    services.require_read(ctx.session, ctx.actor.id, item)
    ctx.post_hook(item)
    return item


@register_handler(GetItemChildren)
def get_item_children(op: GetItemChildren, ctx: TaskContext) -> List[Item]:
    services: Services = ctx.services
    item = services.load_item(ctx.session, op.item_id)
    services.require_read(ctx.session, ctx.actor.id, item)

    children = services.items.get_children(ctx.session, item)
    if op.ordered and item.is_folder:
        order = item.children_order()
        position = {child_id: i for i, child_id in enumerate(order)}
        # stable: unlisted children keep tree order, after the listed ones
        children.sort(key=lambda child: position.get(child.id, len(order)))
    ctx.post_hook(children)
    return children


@register_handler(UpdateItem)
def update_item(op: UpdateItem, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    session = ctx.session
    item = services.load_item(session, op.item_id)
    services.require_write(session, ctx.actor.id, item)

    changes = op.changes.model_dump(exclude_unset=True)
    if changes.get("extra") is not None:
        changes["extra"] = {**item.extra, **changes["extra"]}
    if changes.get("settings") is not None:
        changes["settings"] = {**item.settings, **changes["settings"]}
    changes = {k: v for k, v in changes.items() if v is not None or k == "description"}

    ctx.pre_hook(item)
    updated = services.items.update(session, item.id, changes)
    ctx.post_hook(updated)
    return updated


@register_handler(MoveItem)
def move_item(op: MoveItem, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    session = ctx.session
    actor_id = ctx.actor.id
    limits = services.limits

    item = services.load_item(session, op.item_id)
    services.require_admin(session, actor_id, item)

    parent = None
    if op.parent_id is None:
        if item.path.is_root:
            raise InvalidMoveTarget(item.id, message="Item is already at the root")
    else:
        parent = services.load_item(session, op.parent_id)
        if item.path.contains(parent.path):
            raise InvalidMoveTarget(parent.id, message="Cannot move an item into itself or its subtree")
        if item.parent_path == parent.path:
            raise InvalidMoveTarget(parent.id, message="Item is already in this parent")
        services.require_write(session, actor_id, parent)
        levels = services.items.get_number_of_levels_to_farthest_child(session, item)
        _check_destination(services, session, parent, levels)

    if services.items.get_number_of_descendants(session, item) > limits.max_descendants_for_move:
        raise TooManyDescendants(item.id)

    services.items.lock_tree(session, item, parent)
    changes = services.memberships.move_housekeeping(session, item, actor_id, parent)
    if len(changes.deletes) > limits.max_memberships_for_delete:
        raise TooManyMemberships(item.id)

    ctx.pre_hook({"source": item, "destination": parent})
    _remove_child(services, session, item)
    moved = services.items.move(session, item, parent)
    _append_child(services, session, parent, moved.id)
    services.memberships.delete_many_matching(session, changes.deletes)
    services.memberships.create_many(session, changes.inserts)
    logger.debug(
        f"Moved {item.id}: {len(changes.inserts)} grants added, {len(changes.deletes)} removed"
    )
    ctx.post_hook({"source": item, "destination": parent, "moved": moved})
    return moved


@register_handler(CopyItem)
def copy_item(op: CopyItem, ctx: TaskContext) -> Delegation:
    services: Services = ctx.services
    session = ctx.session
    actor_id = ctx.actor.id

    item = services.load_item(session, op.item_id)
    services.require_read(session, actor_id, item)

    if services.items.get_number_of_descendants(session, item) > services.limits.max_descendants_for_copy:
        raise TooManyDescendants(item.id)

    parent = None
    if op.parent_id is not None:
        parent = services.load_item(session, op.parent_id)
        services.require_write(session, actor_id, parent)
        levels = services.items.get_number_of_levels_to_farthest_child(session, item)
        _check_destination(services, session, parent, levels)

    services.items.lock_tree(session, parent)

    descendants = services.items.get_descendants(session, item, direction="ASC")
    tree = [item] + descendants
    old_to_new: Dict[str, str] = {node.id: new_item_id() for node in tree}
    children_of: Dict[str, List[str]] = {node.id: [] for node in tree}
    for node in descendants:
        children_of[node.path.parent.last_id].append(node.id)

    prefix = parent.path.ids if parent is not None else ()
    start = item.depth - 1
    copies: List[Item] = []
    planned: Dict[str, List[str]] = {}
    for node in tree:
        extra = remap_children_order(node.extra, old_to_new, children_of[node.id])
        if FOLDER_TYPE in extra:
            # children fill the ordering in as their copies get stored
            planned[old_to_new[node.id]] = extra[FOLDER_TYPE]["childrenOrder"]
            extra = with_children_order(extra, [])
        copies.append(
            Item(
                id=old_to_new[node.id],
                path=ItemPath(prefix + tuple(old_to_new[i] for i in node.path.ids[start:])),
                type=node.type,
                name=node.name,
                description=node.description,
                extra=extra,
                settings=copy.deepcopy(node.settings),
                creator=actor_id,
            )
        )

    grant = _needs_admin_grant(services, session, actor_id, parent)
    subtasks = [
        ctx.subtask(
            CopyItemNode(
                original=original,
                copy=clone,
                create_membership=grant and index == 0,
                attach_to_parent=index == 0 and parent is not None,
                sibling_order=planned.get(clone.path.parent.last_id) if index > 0 else None,
            )
        )
        for index, (original, clone) in enumerate(zip(tree, copies))
    ]
    # reloaded: its ordering was filled in by the later subtasks
    return Delegation(
        subtasks,
        partial=True,
        collect=lambda tasks: services.items.get(session, tasks[0].result.id),
    )


@register_handler(CopyItemNode)
def copy_item_node(op: CopyItemNode, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    session = ctx.session

    ctx.pre_hook({"original": op.original, "copy": op.copy})
    created = services.items.create(session, op.copy)
    if op.attach_to_parent:
        _append_child(services, session, services.items.get(session, parent_id(created)), created.id)
    elif op.sibling_order is not None:
        _place_child(
            services, session, services.items.get(session, parent_id(created)), created.id, op.sibling_order
        )
    if op.create_membership:
        _grant_admin(services, session, ctx.actor.id, created)
    ctx.post_hook({"original": op.original, "copy": created})
    return created


@register_handler(DeleteItem)
def delete_item(op: DeleteItem, ctx: TaskContext):
    services: Services = ctx.services
    session = ctx.session
    limits = services.limits

    item = services.load_item(session, op.item_id)
    services.require_admin(session, ctx.actor.id, item)

    descendants = services.items.get_descendants(session, item, direction="DESC")
    if len(descendants) > limits.max_descendants_for_delete:
        raise TooManyDescendants(item.id)

    services.items.lock_tree(session, item)

    if len(descendants) + 1 <= limits.delete_subtasks_threshold:
        subtasks = [ctx.subtask(DeleteItemNode(node)) for node in descendants]
        subtasks.append(ctx.subtask(DeleteItemNode(item, detach_from_parent=True)))
        return Delegation(subtasks, collect=lambda tasks: tasks[-1].result)

    ctx.pre_hook(item)
    _remove_child(services, session, item)
    removed = services.items.delete_tree(session, item)
    logger.debug(f"Deleted tree of {item.id} ({removed} items)")
    ctx.post_hook(item)
    return item


@register_handler(DeleteItemNode)
def delete_item_node(op: DeleteItemNode, ctx: TaskContext) -> Item:
    services: Services = ctx.services
    session = ctx.session

    ctx.pre_hook(op.item)
    if op.detach_from_parent:
        _remove_child(services, session, op.item)
    services.items.delete(session, op.item.id)
    ctx.post_hook(op.item)
    return op.item
