"""
Canopy Item Model — Pydantic definition of a tree node.

Folders keep their child ordering in ``extra["folder"]["childrenOrder"]``;
the helpers below read and rewrite it.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from canopy.items.paths import ItemPath

FOLDER_TYPE = "folder"


def new_item_id() -> str:
    return str(uuid.uuid4())


class Item(BaseModel):
    """
    One node of the tree.

    ``path`` is assigned at creation from the parent and only changes when the
    item (or one of its ancestors) is moved.
    """

    id: str = Field(default_factory=new_item_id)
    path: ItemPath
    type: str = Field(default=FOLDER_TYPE, max_length=50)
    name: str = Field(max_length=500)
    description: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    creator: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def depth(self) -> int:
        return self.path.depth

    @property
    def parent_path(self) -> Optional[ItemPath]:
        return self.path.parent

    @property
    def is_folder(self) -> bool:
        return self.type == FOLDER_TYPE

    def children_order(self) -> List[str]:
        return list(self.extra.get(FOLDER_TYPE, {}).get("childrenOrder", []))


class ItemData(BaseModel):
    """User-supplied fields for creating or updating an item."""

    name: str = Field(max_length=500)
    type: str = Field(default=FOLDER_TYPE, max_length=50)
    description: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)


class ItemChanges(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    name: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None


def with_children_order(extra: Mapping[str, Any], order: List[str]) -> Dict[str, Any]:
    """Return a copy of a folder's ``extra`` with a new child ordering."""
    updated = copy.deepcopy(dict(extra))
    folder = dict(updated.get(FOLDER_TYPE) or {})
    folder["childrenOrder"] = list(order)
    updated[FOLDER_TYPE] = folder
    return updated


def remap_children_order(
    extra: Mapping[str, Any],
    old_to_new: Mapping[str, str],
    child_ids: List[str],
) -> Dict[str, Any]:
    """
    Rewrite a copied folder's ordering to the new ids.

    Entries that are not direct children of the folder are dropped, and any
    child missing from the ordering is appended in tree order, so the result
    lists each copied child exactly once.
    """
    if FOLDER_TYPE not in extra:
        return copy.deepcopy(dict(extra))

    old_order = list((extra.get(FOLDER_TYPE) or {}).get("childrenOrder", []))
    children = set(child_ids)
    seen = set()
    order: List[str] = []
    for old_id in old_order + child_ids:
        if old_id in children and old_id not in seen:
            seen.add(old_id)
            order.append(old_to_new[old_id])
    return with_children_order(extra, order)
