"""
Tests for canopy.engine.runner / interpreter — execution policies, subtask
semantics, hook ordering and error normalization, using small operations
defined here and a real SQLite transaction underneath.
"""

from dataclasses import dataclass, field
from typing import ClassVar, List
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from canopy.db.models import ItemRow
from canopy.db.session import TransactionMode, TransactionScope, transaction_scope
from canopy.engine.errors import ItemNotFound, UnexpectedError
from canopy.engine.interpreter import execute, register_handler
from canopy.engine.task import Delegation, Operation, Task, TaskContext, TaskStatus
from canopy.items.models import Item
from canopy.items.paths import ItemPath


@dataclass
class WriteRoot(Operation):
    """Store a root item named ``label``; ``fail`` raises a domain error after the write."""

    name: ClassVar[str] = "write-root"

    label: str
    fail: bool = False
    boom: bool = False

    @property
    def target_id(self):
        return self.label


@dataclass
class WriteMany(Operation):
    name: ClassVar[str] = "write-many"

    labels: List[str] = field(default_factory=list)
    partial: bool = False


@dataclass
class Unhandled(Operation):
    name: ClassVar[str] = "unhandled"


@register_handler(WriteRoot)
def write_root(op: WriteRoot, ctx: TaskContext) -> Item:
    ctx.pre_hook(op.label)
    item_id = f"id-{op.label.strip('!')}"
    item = ctx.services.items.create(ctx.session, Item(id=item_id, path=ItemPath([item_id]), name=op.label))
    if op.fail:
        raise ItemNotFound(op.label)
    if op.boom:
        raise RuntimeError("secret internals")
    ctx.post_hook(item)
    return item


@register_handler(WriteMany)
def write_many(op: WriteMany, ctx: TaskContext) -> Delegation:
    subtasks = [ctx.subtask(WriteRoot(label, fail=label.startswith("!"))) for label in op.labels]
    return Delegation(subtasks, partial=op.partial, collect=lambda tasks: [t.result for t in tasks])


@pytest.fixture
def stored_names(query):
    def _names():
        return sorted(query(lambda s: s.scalars(select(ItemRow.name)).all()))

    return _names


def _task(op, actor):
    return Task(op, actor)


class TestInterpreter:

    def test_state_machine_ok(self, runtime, alice):
        task = _task(WriteRoot("a"), alice)
        runtime.runner.run_single(task)
        assert task.status is TaskStatus.OK
        assert task.result.name == "a"

    def test_missing_handler(self, alice):
        task = _task(Unhandled(), alice)
        with pytest.raises(LookupError):
            execute(task, scope=None, log=None)
        assert task.status is TaskStatus.FAIL


class TestRunSingle:

    def test_returns_result_and_commits(self, runner, alice, stored_names):
        item = runner.run_single(_task(WriteRoot("a"), alice))
        assert item.id == "id-a"
        assert stored_names() == ["a"]

    def test_domain_error_passes_through_and_rolls_back(self, runner, alice, stored_names):
        task = _task(WriteRoot("a", fail=True), alice)
        with pytest.raises(ItemNotFound) as exc_info:
            runner.run_single(task)
        assert exc_info.value.task_name == "write-root"
        assert exc_info.value.actor_id == "alice"
        assert task.status is TaskStatus.FAIL
        assert stored_names() == []

    def test_unexpected_error_is_replaced(self, runner, alice, stored_names, caplog):
        task = _task(WriteRoot("a", boom=True), alice)
        with caplog.at_level("ERROR", logger="canopy"):
            with pytest.raises(UnexpectedError) as exc_info:
                runner.run_single(task)
        err = exc_info.value
        assert err.code == "GERR999"
        assert "secret internals" not in err.message
        assert err.__cause__ is None
        assert "secret internals" in caplog.text
        assert stored_names() == []

    def test_missing_handler_is_unexpected(self, runner, alice):
        with pytest.raises(UnexpectedError):
            runner.run_single(_task(Unhandled(), alice))

    def test_finish_is_logged(self, runner, alice, caplog):
        with caplog.at_level("INFO", logger="canopy"):
            runner.run_single(_task(WriteRoot("a"), alice))
        assert "write-root: actor 'alice', target 'a', status 'OK'" in caplog.text


class TestSubtasks:

    def test_atomic_failure_rolls_back_everything(self, runner, alice, stored_names):
        task = _task(WriteMany(["a", "b", "!c"]), alice)
        with pytest.raises(ItemNotFound):
            runner.run_single(task)
        assert task.status is TaskStatus.FAIL
        assert stored_names() == []

    def test_atomic_success(self, runner, alice, stored_names):
        results = runner.run_single(_task(WriteMany(["a", "b"]), alice))
        assert [r.name for r in results] == ["a", "b"]
        assert stored_names() == ["a", "b"]

    def test_partial_keeps_done_and_skips_rest(self, runner, alice, stored_names):
        task = _task(WriteMany(["a", "!b", "c"], partial=True), alice)
        runner.run_single(task)

        assert stored_names() == ["a"]
        statuses = [t.status for t in task.subtasks]
        assert statuses == [TaskStatus.OK, TaskStatus.FAIL, TaskStatus.NEW]
        assert task.status is TaskStatus.DELEGATED
        assert task.result[0].name == "a"

    def test_partial_first_failure_is_raised(self, runner, alice, stored_names):
        task = _task(WriteMany(["!a", "b"], partial=True), alice)
        with pytest.raises(ItemNotFound):
            runner.run_single(task)
        assert stored_names() == []


class TestBatches:

    def test_run_multiple_isolates_failures(self, runner, alice, stored_names):
        outcomes = runner.run_multiple(
            [
                _task(WriteRoot("a"), alice),
                _task(WriteRoot("b", fail=True), alice),
                _task(WriteRoot("c", boom=True), alice),
                _task(WriteRoot("d"), alice),
            ]
        )
        assert outcomes[0].name == "a"
        assert isinstance(outcomes[1], ItemNotFound)
        assert isinstance(outcomes[2], UnexpectedError)
        assert outcomes[3].name == "d"
        assert stored_names() == ["a", "d"]

    def test_sequence_shares_transaction(self, runner, alice, stored_names):
        with pytest.raises(ItemNotFound):
            runner.run_single_sequence([_task(WriteRoot("a"), alice), _task(WriteRoot("b", fail=True), alice)])
        assert stored_names() == []

    def test_sequence_skip_and_get_input(self, runner, alice, stored_names):
        first = _task(WriteRoot("a"), alice)
        skipped = _task(WriteRoot("never"), alice)
        skipped.skip = True
        last = _task(WriteRoot("placeholder"), alice)
        last.get_input = lambda: {"label": first.result.name + "2"}

        result = runner.run_single_sequence([first, skipped, last])
        assert result.name == "a2"
        assert skipped.status is TaskStatus.NEW
        assert stored_names() == ["a", "a2"]

    def test_empty_sequence(self, runner):
        assert runner.run_single_sequence([]) is None

    def test_run_multiple_sequences_isolated(self, runner, alice, stored_names):
        outcomes = runner.run_multiple_sequences(
            [
                [_task(WriteRoot("a"), alice), _task(WriteRoot("b"), alice)],
                [_task(WriteRoot("c"), alice), _task(WriteRoot("d", fail=True), alice)],
            ]
        )
        assert outcomes[0].name == "b"
        assert isinstance(outcomes[1], ItemNotFound)
        assert stored_names() == ["a", "b"]


class TestHooks:

    def test_pre_hooks_run_in_order_before_body(self, runner, alice, query):
        seen = []

        def h1(payload, actor, ctx):
            seen.append(("h1", payload))

        def h2(payload, actor, ctx):
            count = ctx.session.scalar(select(func.count()).select_from(ItemRow))
            seen.append(("h2", count))

        runner.set_task_pre_hook_handler("write-root", h1)
        runner.set_task_pre_hook_handler("write-root", h2)
        runner.run_single(_task(WriteRoot("a"), alice))
        assert seen == [("h1", "a"), ("h2", 0)]

    def test_failing_pre_hook_aborts(self, runner, alice, stored_names):
        h2_calls = []

        def h1(payload, actor, ctx):
            raise ItemNotFound("vetoed")

        runner.set_task_pre_hook_handler("write-root", h1)
        runner.set_task_pre_hook_handler("write-root", lambda p, a, c: h2_calls.append(p))

        task = _task(WriteRoot("a"), alice)
        with pytest.raises(ItemNotFound):
            runner.run_single(task)
        assert h2_calls == []
        assert task.status is TaskStatus.FAIL
        assert stored_names() == []

    def test_failing_post_hook_is_fatal(self, runner, alice, stored_names, caplog):
        def explode(payload, actor, ctx):
            raise RuntimeError("listener bug")

        runner.set_task_post_hook_handler("write-root", explode)
        with caplog.at_level("ERROR", logger="canopy"):
            with pytest.raises(UnexpectedError):
                runner.run_single(_task(WriteRoot("a"), alice))
        assert "post-hook failed" in caplog.text
        assert stored_names() == []

    def test_post_hook_receives_result(self, runner, alice):
        received = []
        runner.set_task_post_hook_handler("write-root", lambda p, a, c: received.append((p.name, a.id)))
        runner.run_single(_task(WriteRoot("a"), alice))
        assert received == [("a", "alice")]

    def test_subtasks_get_hooks(self, runner, alice):
        received = []
        runner.set_task_post_hook_handler("write-root", lambda p, a, c: received.append(p.name))
        runner.run_single(_task(WriteMany(["a", "b"]), alice))
        assert received == ["a", "b"]

    def test_unset_hook(self, runner, alice):
        received = []

        def listener(p, a, c):
            received.append(p)

        runner.set_task_pre_hook_handler("write-root", listener)
        runner.unset_task_pre_hook_handler("write-root", listener)
        runner.run_single(_task(WriteRoot("a"), alice))
        assert received == []


class TestTransactionModes:

    def test_enter_shared_and_own(self, runtime):
        with transaction_scope(runtime.session_factory) as scope:
            with scope.enter(TransactionMode.SHARED) as shared:
                assert shared is scope
            with scope.enter(TransactionMode.OWN) as own:
                assert own.depth == scope.depth + 1
                assert own.session is scope.session

    def test_subtasks_enter_scope_by_delegation_policy(self, runner, alice):
        modes = []
        enter = TransactionScope.enter

        def recording_enter(scope, mode):
            modes.append(mode)
            return enter(scope, mode)

        with patch.object(TransactionScope, "enter", recording_enter):
            runner.run_single(_task(WriteMany(["a", "b"]), alice))
            runner.run_single(_task(WriteMany(["c"], partial=True), alice))
        assert modes == [TransactionMode.SHARED, TransactionMode.SHARED, TransactionMode.OWN]
