"""
Canopy Item Task Manager — builds item tasks for callers.

Callers never call handlers directly: they ask the manager for a task and
hand it to a ``TaskRunner``.

Usage:
    task = items.create_move_task(actor, item_id, parent_id=target_id)
    moved = runtime.runner.run_single(task)
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from canopy.engine.task import Actor, Task
from canopy.items.models import ItemChanges, ItemData
from canopy.items.tasks import (
    CopyItem,
    CreateItem,
    DeleteItem,
    GetItem,
    GetItemChildren,
    MoveItem,
    UpdateItem,
)


class ItemTaskManager:

    # hook channel names, for ``runner.set_task_*_hook_handler``
    def get_create_task_name(self) -> str:
        return CreateItem.name

    def get_get_task_name(self) -> str:
        return GetItem.name

    def get_get_children_task_name(self) -> str:
        return GetItemChildren.name

    def get_update_task_name(self) -> str:
        return UpdateItem.name

    def get_move_task_name(self) -> str:
        return MoveItem.name

    def get_copy_task_name(self) -> str:
        return CopyItem.name

    def get_delete_task_name(self) -> str:
        return DeleteItem.name

    # task factories
    def create_create_task(
        self,
        actor: Actor,
        data: Union[ItemData, Dict[str, Any]],
        parent_id: Optional[str] = None,
    ) -> Task:
        if not isinstance(data, ItemData):
            data = ItemData.model_validate(data)
        return Task(CreateItem(data=data, parent_id=parent_id), actor)

    def create_get_task(self, actor: Actor, item_id: str) -> Task:
        return Task(GetItem(item_id=item_id), actor)

    def create_get_children_task(self, actor: Actor, item_id: str, ordered: bool = True) -> Task:
        return Task(GetItemChildren(item_id=item_id, ordered=ordered), actor)

    def create_update_task(
        self,
        actor: Actor,
        item_id: str,
        changes: Union[ItemChanges, Dict[str, Any]],
    ) -> Task:
        if not isinstance(changes, ItemChanges):
            changes = ItemChanges.model_validate(changes)
        return Task(UpdateItem(item_id=item_id, changes=changes), actor)

    def create_move_task(self, actor: Actor, item_id: str, parent_id: Optional[str] = None) -> Task:
        return Task(MoveItem(item_id=item_id, parent_id=parent_id), actor)

    def create_copy_task(self, actor: Actor, item_id: str, parent_id: Optional[str] = None) -> Task:
        return Task(CopyItem(item_id=item_id, parent_id=parent_id), actor)

    def create_delete_task(self, actor: Actor, item_id: str) -> Task:
        return Task(DeleteItem(item_id=item_id), actor)
