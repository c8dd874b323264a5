"""Canopy Items — path codec, item model, store and tree operations."""

from canopy.items.models import Item, ItemChanges, ItemData  # noqa: F401
from canopy.items.paths import ItemPath  # noqa: F401

__all__ = ["Item", "ItemChanges", "ItemData", "ItemPath"]
