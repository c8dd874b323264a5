"""
Canopy Interpreter — one entry point that executes any task.

Handlers register for an operation type with ``@register_handler``. The
interpreter owns the task state machine so handlers only deal with their
operation:

    RUNNING → handler → OK + result
                      → DELEGATED + subtasks
                      → FAIL + message (error re-raised)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Type, Union

from canopy.db.session import TransactionScope
from canopy.engine.task import Delegation, Operation, Task, TaskContext, TaskStatus

logger = logging.getLogger("canopy.engine.interpreter")

Handler = Callable[[Any, TaskContext], Union[Any, Delegation]]

_handlers: Dict[Type[Operation], Handler] = {}


def register_handler(operation_type: Type[Operation]) -> Callable[[Handler], Handler]:
    """
    Decorator binding a handler to an operation type.

    Usage:
        @register_handler(MoveItem)
        def move_item(op: MoveItem, ctx: TaskContext) -> Item: ...
    """

    def decorator(fn: Handler) -> Handler:
        if operation_type in _handlers and _handlers[operation_type] is not fn:
            logger.warning(f"Replacing handler for {operation_type.__name__}")
        _handlers[operation_type] = fn
        return fn

    return decorator


def unregister_handler(operation_type: Type[Operation]) -> None:
    _handlers.pop(operation_type, None)


def handler_for(operation: Operation) -> Handler:
    for klass in type(operation).__mro__:
        handler = _handlers.get(klass)
        if handler is not None:
            return handler
    raise LookupError(f"No handler registered for {type(operation).__name__}")


def execute(
    task: Task,
    scope: TransactionScope,
    log: logging.Logger,
    services: Any = None,
) -> Optional[Delegation]:
    """
    Run ``task`` inside ``scope``.

    Returns the ``Delegation`` when the handler delegated, None otherwise.
    Errors leave the task in FAIL and propagate.
    """
    task.status = TaskStatus.RUNNING
    try:
        handler = handler_for(task.operation)
        outcome = handler(task.operation, TaskContext(task, scope, log, services))
    except Exception as e:
        task.status = TaskStatus.FAIL
        task.message = getattr(e, "message", None) or str(e)
        raise

    if isinstance(outcome, Delegation):
        task.status = TaskStatus.DELEGATED
        task.subtasks = list(outcome.subtasks)
        task.partial_subtasks = outcome.partial
        return outcome

    task.status = TaskStatus.OK
    task.result = outcome
    return None
