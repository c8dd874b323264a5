"""
Canopy Task Runner — executes tasks inside transactions.

Execution policies:
    run_single              one task, own transaction
    run_multiple            one transaction per task, failures isolated per slot
    run_single_sequence     tasks in order, one shared transaction
    run_multiple_sequences  one transaction per sequence, failures isolated

Subtasks delegated by a task run either in the parent's transaction
(all-or-nothing) or, with ``partial`` delegation, each in its own savepoint:
a failure at subtask i keeps 0..i-1, skips the rest, and is re-raised only
when i == 0.

Domain errors reach the caller unchanged. Anything else is logged with its
traceback and replaced by ``UnexpectedError``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Sequence, Union

from sqlalchemy.orm import sessionmaker

from canopy.db.session import TransactionMode, TransactionScope, transaction_scope
from canopy.engine.errors import CanopyError, DomainError, UnexpectedError
from canopy.engine.hooks import HookManager
from canopy.engine.interpreter import execute
from canopy.engine.logging import audit, log_task_finished, log_unexpected_error
from canopy.engine.task import Delegation, HookHandler, Task, TaskStatus

logger = logging.getLogger("canopy.engine.runner")

Outcome = Union[Any, DomainError]


def _result_ids(result: Any) -> Optional[List[str]]:
    if result is None:
        return None
    values = result if isinstance(result, (list, tuple)) else [result]
    ids = [getattr(v, "id", None) for v in values]
    ids = [str(i) for i in ids if i is not None]
    return ids or None


class TaskRunner:
    """
    Runs tasks against one database.

    Args:
        session_factory: sessionmaker from ``canopy.db.session.init_db``.
        services:        Handed to every operation handler (stores, limits).
        hooks:           Hook registry; a private one is created if omitted.
        log:             Logger handed to handlers and hook listeners.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        services: Any = None,
        hooks: Optional[HookManager] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._session_factory = session_factory
        self.services = services
        self.hooks = hooks if hooks is not None else HookManager()
        self.log = log or logger

    # -----------------------------------------------------------------------
    # Hook registration
    # -----------------------------------------------------------------------

    def set_task_pre_hook_handler(self, task_name: str, handler: HookHandler) -> None:
        self.hooks.set_pre_hook_handler(task_name, handler)

    def set_task_post_hook_handler(self, task_name: str, handler: HookHandler) -> None:
        self.hooks.set_post_hook_handler(task_name, handler)

    def unset_task_pre_hook_handler(self, task_name: str, handler: HookHandler) -> None:
        self.hooks.unset_pre_hook_handler(task_name, handler)

    def unset_task_post_hook_handler(self, task_name: str, handler: HookHandler) -> None:
        self.hooks.unset_post_hook_handler(task_name, handler)

    # -----------------------------------------------------------------------
    # Execution policies
    # -----------------------------------------------------------------------

    def run_single(self, task: Task) -> Any:
        """Run one task in its own transaction and return its result."""
        self._guard(lambda scope: self._run_task(task, scope), task)
        return task.result

    def run_multiple(self, tasks: Iterable[Task]) -> List[Outcome]:
        """Run each task in its own transaction; each slot is a result or an error."""
        outcomes: List[Outcome] = []
        for task in tasks:
            try:
                outcomes.append(self.run_single(task))
            except DomainError as e:
                outcomes.append(e)
        return outcomes

    def run_single_sequence(self, tasks: Sequence[Task]) -> Any:
        """
        Run tasks in order in one shared transaction.

        A task with ``skip`` set is bypassed; ``get_input`` is evaluated right
        before the task runs. Returns the last task's result.
        """
        if not tasks:
            return None

        def body(scope: TransactionScope) -> None:
            for task in tasks:
                if task.skip:
                    continue
                task.apply_input()
                self._run_task(task, scope)

        self._guard(body, tasks[0])
        return tasks[-1].result

    def run_multiple_sequences(self, sequences: Iterable[Sequence[Task]]) -> List[Outcome]:
        outcomes: List[Outcome] = []
        for tasks in sequences:
            try:
                outcomes.append(self.run_single_sequence(tasks))
            except DomainError as e:
                outcomes.append(e)
        return outcomes

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _guard(self, body, task: Task) -> None:
        """Run ``body`` in a root transaction and normalize what escapes it."""
        try:
            with transaction_scope(self._session_factory) as scope:
                body(scope)
        except DomainError:
            raise
        except Exception as e:
            self.log.exception(f"{task.name}: unexpected error for actor '{task.actor.id}'")
            audit(log_unexpected_error(task.name, task.actor.id, e))
            raise UnexpectedError(
                data=task.target_id,
                task_name=task.name,
                actor_id=task.actor.id,
            ) from None

    def _run_task(self, task: Task, scope: TransactionScope) -> None:
        self.hooks.inject(task)
        try:
            delegation = execute(task, scope, self.log, self.services)
        except Exception as e:
            if isinstance(e, CanopyError) and e.task_name is None:
                e.task_name = task.name
                e.actor_id = task.actor.id
            self._handle_task_finish(task, e)
            raise

        self._handle_task_finish(task)
        if delegation is None:
            return

        try:
            self._run_subtasks(task, delegation, scope)
        except Exception:
            task.status = TaskStatus.FAIL
            raise
        if delegation.collect is not None:
            task.result = delegation.collect(task.subtasks)

    def _run_subtasks(self, task: Task, delegation: Delegation, scope: TransactionScope) -> None:
        mode = TransactionMode.OWN if delegation.partial else TransactionMode.SHARED
        total = len(delegation.subtasks)
        for index, subtask in enumerate(delegation.subtasks):
            try:
                with scope.enter(mode) as subtask_scope:
                    self._run_task(subtask, subtask_scope)
            except Exception as e:
                if mode is TransactionMode.SHARED or index == 0:
                    raise
                self.log.warning(
                    f"{task.name}: subtask {index + 1}/{total} failed, "
                    f"keeping {index} done, skipping {total - index - 1}: {e}"
                )
                break

    def _handle_task_finish(self, task: Task, error: Optional[BaseException] = None) -> None:
        message = f"{task.name}: actor '{task.actor.id}', target '{task.target_id}', status '{task.status.value}'"
        result_ids = _result_ids(task.result)
        if result_ids:
            message += f", result {result_ids}"
        if error is not None:
            message += f", error {error!r}"

        if task.status is TaskStatus.FAIL:
            self.log.error(message)
        else:
            self.log.info(message)

        audit(
            log_task_finished(
                task.name,
                task.actor.id,
                task.status.value,
                target_id=task.target_id,
                result_ids=result_ids,
                error=error.to_dict() if isinstance(error, CanopyError) else (
                    {"error_type": type(error).__name__, "message": str(error)} if error else None
                ),
            )
        )
