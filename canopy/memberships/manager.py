"""Canopy Item Membership Task Manager — builds membership tasks for callers."""

from __future__ import annotations

from typing import Union

from canopy.engine.task import Actor, Task
from canopy.memberships.models import PermissionLevel
from canopy.memberships.tasks import (
    CreateItemMembership,
    DeleteItemMembership,
    GetItemMemberships,
    UpdateItemMembership,
)


class ItemMembershipTaskManager:

    def get_create_task_name(self) -> str:
        return CreateItemMembership.name

    def get_update_task_name(self) -> str:
        return UpdateItemMembership.name

    def get_delete_task_name(self) -> str:
        return DeleteItemMembership.name

    def get_get_of_item_task_name(self) -> str:
        return GetItemMemberships.name

    def create_create_task(
        self,
        actor: Actor,
        item_id: str,
        account_id: str,
        permission: Union[PermissionLevel, str],
    ) -> Task:
        return Task(
            CreateItemMembership(
                item_id=item_id,
                account_id=account_id,
                permission=PermissionLevel(permission),
            ),
            actor,
        )

    def create_update_task(
        self,
        actor: Actor,
        membership_id: str,
        permission: Union[PermissionLevel, str],
    ) -> Task:
        return Task(
            UpdateItemMembership(membership_id=membership_id, permission=PermissionLevel(permission)),
            actor,
        )

    def create_delete_task(self, actor: Actor, membership_id: str, purge_below: bool = False) -> Task:
        return Task(DeleteItemMembership(membership_id=membership_id, purge_below=purge_below), actor)

    def create_get_of_item_task(self, actor: Actor, item_id: str) -> Task:
        return Task(GetItemMemberships(item_id=item_id), actor)
