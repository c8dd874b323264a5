"""
Canopy Task Model — units of work bound to an actor.

A ``Task`` wraps one ``Operation`` (a tagged dataclass variant: CreateItem,
MoveItem, ...). The interpreter runs the handler registered for the
operation's type; the handler either returns a result or a ``Delegation``
listing subtasks for the runner to execute.

Lifecycle:
    NEW → RUNNING → OK | FAIL | DELEGATED
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional

from sqlalchemy.orm import Session

from canopy.db.session import TransactionScope


@dataclass(frozen=True)
class Actor:
    """Whoever a task acts on behalf of."""

    id: str
    name: str = ""


class TaskStatus(str, enum.Enum):
    NEW = "NEW"
    RUNNING = "RUNNING"
    OK = "OK"
    FAIL = "FAIL"
    DELEGATED = "DELEGATED"


@dataclass
class Operation:
    """
    Base for operation variants.

    ``name`` is the hook channel of the operation; subclasses override it as a
    class attribute.
    """

    name: ClassVar[str] = "operation"

    @property
    def target_id(self) -> Optional[str]:
        return None


@dataclass
class HookContext:
    """What a hook listener receives besides the payload and the actor."""

    log: logging.Logger
    scope: TransactionScope

    @property
    def session(self) -> Session:
        return self.scope.session


# listener(payload, actor, hook_context)
HookHandler = Callable[[Any, Actor, HookContext], None]


@dataclass(eq=False)
class Task:
    operation: Operation
    actor: Actor
    status: TaskStatus = TaskStatus.NEW
    result: Any = None
    message: Optional[str] = None
    partial_subtasks: bool = False
    skip: bool = False
    get_input: Optional[Callable[[], Dict[str, Any]]] = None
    pre_hook_handler: Optional[HookHandler] = None
    post_hook_handler: Optional[HookHandler] = None
    subtasks: List["Task"] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.operation.name

    @property
    def target_id(self) -> Optional[str]:
        return self.operation.target_id

    def apply_input(self) -> None:
        """Pull input from earlier tasks of a sequence onto the operation."""
        if self.get_input is None:
            return
        for key, value in (self.get_input() or {}).items():
            setattr(self.operation, key, value)

    def __repr__(self) -> str:
        return f"<Task {self.name} actor={self.actor.id} target={self.target_id} status={self.status.value}>"


@dataclass
class Delegation:
    """
    Handler outcome asking the runner to execute ``subtasks``.

    ``partial``: run each subtask in its own savepoint and keep whatever
    succeeded before the first failure. ``collect`` turns the finished
    subtasks into the parent task's result.
    """

    subtasks: List[Task]
    partial: bool = False
    collect: Optional[Callable[[List[Task]], Any]] = None


class TaskContext:
    """Handed to an operation handler: the open scope, the logger, the services."""

    def __init__(
        self,
        task: Task,
        scope: TransactionScope,
        log: logging.Logger,
        services: Any = None,
    ):
        self.task = task
        self.scope = scope
        self.log = log
        self.services = services

    @property
    def session(self) -> Session:
        return self.scope.session

    @property
    def actor(self) -> Actor:
        return self.task.actor

    def pre_hook(self, payload: Any) -> None:
        if self.task.pre_hook_handler is not None:
            self.task.pre_hook_handler(payload, self.task.actor, HookContext(self.log, self.scope))

    def post_hook(self, payload: Any) -> None:
        if self.task.post_hook_handler is not None:
            self.task.post_hook_handler(payload, self.task.actor, HookContext(self.log, self.scope))

    def subtask(self, operation: Operation) -> Task:
        """A new task for the same actor."""
        return Task(operation=operation, actor=self.task.actor)
