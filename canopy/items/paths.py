"""
Canopy Path Codec — materialized paths as structured values.

An item's path is the ordered list of its ancestors' ids, itself included.
Inside the engine it is an ``ItemPath`` (a tuple of raw ids); it becomes a
string only at the storage boundary:

    ("3f6c-...", "a1b2-...")  <->  "3f6c_....a1b2_..."

Each id is turned into a label by one reversible substitution (``-`` → ``_``)
so the column stays compatible with label-based tree columns such as
PostgreSQL ``ltree``. Ids that contain ``_`` or the ``.`` delimiter are
rejected, which makes the mapping lossless and collision-free.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator, List, Optional, Tuple, Union

from canopy.engine.errors import InvalidItemId

DELIMITER = "."
_ID_CHAR = "-"
_LABEL_CHAR = "_"


def validate_id(item_id: Any) -> str:
    if not isinstance(item_id, str) or not item_id:
        raise InvalidItemId(item_id, message="Item id must be a non-empty string")
    if DELIMITER in item_id or _LABEL_CHAR in item_id:
        raise InvalidItemId(item_id)
    return item_id


def id_to_segment(item_id: str) -> str:
    """Encode an item id as one path label."""
    return validate_id(item_id).replace(_ID_CHAR, _LABEL_CHAR)


def path_to_id(segment: str) -> str:
    """Decode one path label back to the item id."""
    if not segment or DELIMITER in segment or _ID_CHAR in segment:
        raise InvalidItemId(segment, message="Not a valid path segment")
    return segment.replace(_LABEL_CHAR, _ID_CHAR)


class ItemPath:
    """Immutable ordered ancestry of an item: root first, the item last."""

    __slots__ = ("_ids",)

    def __init__(self, ids: Iterable[str]):
        ids = tuple(ids)
        if not ids:
            raise InvalidItemId(ids, message="A path needs at least one id")
        for item_id in ids:
            validate_id(item_id)
        self._ids: Tuple[str, ...] = ids

    # -- construction / serialization ---------------------------------------

    @classmethod
    def decode(cls, value: str) -> "ItemPath":
        if not value:
            raise InvalidItemId(value, message="Empty path")
        return cls(path_to_id(segment) for segment in value.split(DELIMITER))

    def encode(self) -> str:
        return DELIMITER.join(id_to_segment(item_id) for item_id in self._ids)

    @classmethod
    def for_new_item(cls, item_id: str, parent: Optional["ItemPath"] = None) -> "ItemPath":
        return parent.child(item_id) if parent is not None else cls((item_id,))

    # -- tree arithmetic ----------------------------------------------------

    @property
    def ids(self) -> Tuple[str, ...]:
        return self._ids

    @property
    def depth(self) -> int:
        return len(self._ids)

    @property
    def last_id(self) -> str:
        return self._ids[-1]

    @property
    def root_id(self) -> str:
        return self._ids[0]

    @property
    def parent(self) -> Optional["ItemPath"]:
        if len(self._ids) == 1:
            return None
        return ItemPath(self._ids[:-1])

    @property
    def is_root(self) -> bool:
        return len(self._ids) == 1

    def child(self, item_id: str) -> "ItemPath":
        return ItemPath(self._ids + (item_id,))

    def ancestors(self, include_self: bool = True) -> List["ItemPath"]:
        """All ancestor paths, root first."""
        end = len(self._ids) if include_self else len(self._ids) - 1
        return [ItemPath(self._ids[: i + 1]) for i in range(end)]

    def contains(self, other: "ItemPath") -> bool:
        """True if ``other`` is this path or lies in its subtree."""
        return other._ids[: len(self._ids)] == self._ids

    def is_ancestor_of(self, other: "ItemPath") -> bool:
        return len(other._ids) > len(self._ids) and self.contains(other)

    def rebase(self, old_root: "ItemPath", new_root: "ItemPath") -> "ItemPath":
        """Rewrite the ``old_root`` prefix of this path to ``new_root``."""
        if not old_root.contains(self):
            raise ValueError(f"{self} is not within {old_root}")
        return ItemPath(new_root._ids + self._ids[len(old_root._ids):])

    # -- dunder -------------------------------------------------------------

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ItemPath):
            return self._ids == other._ids
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._ids)

    def __str__(self) -> str:
        return self.encode()

    def __repr__(self) -> str:
        return f"ItemPath({self.encode()!r})"

    # -- pydantic -----------------------------------------------------------

    @classmethod
    def _coerce(cls, value: Any) -> "ItemPath":
        if isinstance(value, ItemPath):
            return value
        try:
            if isinstance(value, str):
                return cls.decode(value)
            if isinstance(value, (list, tuple)):
                return cls(value)
        except InvalidItemId as e:
            raise ValueError(e.message) from e
        raise ValueError(f"Cannot build an ItemPath from {type(value).__name__}")

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> Any:
        from pydantic_core import core_schema

        return core_schema.no_info_plain_validator_function(
            cls._coerce,
            serialization=core_schema.plain_serializer_function_ser_schema(lambda p: p.encode()),
        )


PathLike = Union[ItemPath, Any]


def _path_of(item: PathLike) -> ItemPath:
    return item if isinstance(item, ItemPath) else item.path


def item_depth(item: PathLike) -> int:
    """Number of segments in the item's path (a root item has depth 1)."""
    return _path_of(item).depth


def parent_path(item: PathLike) -> Optional[ItemPath]:
    """The item's parent path, or None for a root item."""
    return _path_of(item).parent


def parent_id(item: PathLike) -> Optional[str]:
    parent = parent_path(item)
    return parent.last_id if parent is not None else None
