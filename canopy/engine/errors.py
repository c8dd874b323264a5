"""
Canopy Error Hierarchy — Structured exceptions for the tree engine.

Domain errors carry a stable ``code`` so callers can react precisely;
anything else raised inside a task is "unexpected" and is replaced by the
runner with an opaque ``UnexpectedError`` before it leaves the engine.

Hierarchy:
    CanopyError
    ├── CanopyConfigError          — Invalid canopy.yaml / limits
    └── DomainError                — Stable code, passed through by the runner
        ├── ItemNotFound               GERR001
        ├── MemberCannotReadItem       GERR002
        ├── MemberCannotWriteItem      GERR003
        ├── MemberCannotAdminItem      GERR004
        ├── InvalidMembership          GERR005
        ├── ItemMembershipNotFound     GERR006
        ├── ModifyExisting             GERR007
        ├── InvalidPermissionLevel     GERR008
        ├── HierarchyTooDeep           GERR009
        ├── TooManyChildren            GERR010
        ├── TooManyDescendants         GERR011
        ├── InvalidMoveTarget          GERR012
        ├── TooManyMemberships         GERR015
        ├── InvalidItemId              GERR017
        └── UnexpectedError            GERR999
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class CanopyError(Exception):
    """
    Base error for all Canopy engine failures.
    All context is serializable to JSON for the audit log.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.actor_id: Optional[str] = context.get("actor_id")
        self.task_name: Optional[str] = context.get("task_name")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "actor_id": self.actor_id,
            "task_name": self.task_name,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("actor_id", "task_name")
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.task_name:
            parts.append(f"task={self.task_name}")
        if self.actor_id:
            parts.append(f"actor_id={self.actor_id}")
        return " | ".join(parts)


class CanopyConfigError(CanopyError):
    """Configuration error — invalid canopy.yaml or limits."""
    pass


class DomainError(CanopyError):
    """
    Error with a stable, transport-agnostic meaning.

    ``data`` is whatever identifies the offending object (an id, a payload);
    it is kept as-is so callers can inspect it.
    """

    code: str = "GERR000"
    default_message: str = "Domain error"

    def __init__(self, data: Any = None, message: Optional[str] = None, **context: Any):
        self.data = data
        super().__init__(message or self.default_message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["code"] = self.code
        d["data"] = self.data
        return d

    def __repr__(self) -> str:
        return f"{self.code} {super().__repr__()}"


class ItemNotFound(DomainError):
    code = "GERR001"
    default_message = "Item not found"


class MemberCannotReadItem(DomainError):
    code = "GERR002"
    default_message = "Member cannot read item"


class MemberCannotWriteItem(DomainError):
    code = "GERR003"
    default_message = "Member cannot write item"


class MemberCannotAdminItem(DomainError):
    code = "GERR004"
    default_message = "Member cannot administrate item"


class InvalidMembership(DomainError):
    code = "GERR005"
    default_message = "Membership with this permission level cannot be created for this member"


class ItemMembershipNotFound(DomainError):
    code = "GERR006"
    default_message = "Item membership not found"


class ModifyExisting(DomainError):
    code = "GERR007"
    default_message = "Cannot create membership for member in item; should modify existing one"


class InvalidPermissionLevel(DomainError):
    code = "GERR008"
    default_message = "Cannot change to a worse permission level than the one inherited"


class HierarchyTooDeep(DomainError):
    code = "GERR009"
    default_message = "Hierarchy too deep"


class TooManyChildren(DomainError):
    code = "GERR010"
    default_message = "Too many children"


class TooManyDescendants(DomainError):
    code = "GERR011"
    default_message = "Too many descendants"


class InvalidMoveTarget(DomainError):
    code = "GERR012"
    default_message = "Invalid item to move to"


class TooManyMemberships(DomainError):
    code = "GERR015"
    default_message = "Too many memberships would be affected"


class InvalidItemId(DomainError):
    code = "GERR017"
    default_message = "Item id cannot be used as a path segment"


class UnexpectedError(DomainError):
    """Opaque replacement for non-domain failures; details stay in the logs."""

    code = "GERR999"
    default_message = "Unexpected error"
