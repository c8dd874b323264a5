"""Unit tests for canopy.engine.hooks — HookManager registry and fan-out."""

import logging
from unittest.mock import MagicMock

import pytest

from canopy.engine.hooks import POST, PRE, HookManager
from canopy.engine.task import Actor, HookContext, Operation, Task

ACTOR = Actor(id="alice")


def _context():
    return HookContext(log=logging.getLogger("canopy.test"), scope=MagicMock())


class Ping(Operation):
    name = "ping"


class TestRegistration:

    def test_handlers_in_registration_order(self):
        hooks = HookManager()
        h1, h2 = MagicMock(), MagicMock()
        hooks.set_pre_hook_handler("ping", h1)
        hooks.set_pre_hook_handler("ping", h2)
        assert hooks.handlers("ping", PRE) == [h1, h2]
        assert hooks.handlers("ping", POST) == []

    def test_unset(self):
        hooks = HookManager()
        h1 = MagicMock()
        hooks.set_post_hook_handler("ping", h1)
        hooks.unset_post_hook_handler("ping", h1)
        assert hooks.handlers("ping", POST) == []

    def test_unset_unknown_is_noop(self):
        HookManager().unset_pre_hook_handler("ping", MagicMock())

    def test_managers_do_not_share_state(self):
        a, b = HookManager(), HookManager()
        a.set_pre_hook_handler("ping", MagicMock())
        assert b.handlers("ping", PRE) == []


class TestFanout:

    def test_calls_every_listener_in_order(self):
        hooks = HookManager()
        calls = []
        hooks.set_pre_hook_handler("ping", lambda p, a, c: calls.append(("h1", p, a.id)))
        hooks.set_pre_hook_handler("ping", lambda p, a, c: calls.append(("h2", p, a.id)))

        hooks.fanout("ping", PRE)("payload", ACTOR, _context())
        assert calls == [("h1", "payload", "alice"), ("h2", "payload", "alice")]

    def test_fanout_is_built_once(self):
        hooks = HookManager()
        assert hooks.fanout("ping", PRE) is hooks.fanout("ping", PRE)
        assert hooks.fanout("ping", PRE) is not hooks.fanout("ping", POST)

    def test_failing_listener_stops_fanout(self):
        hooks = HookManager()
        h2 = MagicMock()
        hooks.set_pre_hook_handler("ping", MagicMock(side_effect=RuntimeError("no")))
        hooks.set_pre_hook_handler("ping", h2)

        with pytest.raises(RuntimeError, match="no"):
            hooks.fanout("ping", PRE)("payload", ACTOR, _context())
        h2.assert_not_called()

    def test_registration_after_fanout_built_is_seen(self):
        hooks = HookManager()
        fanout = hooks.fanout("ping", POST)
        late = MagicMock()
        hooks.set_post_hook_handler("ping", late)
        fanout("payload", ACTOR, _context())
        late.assert_called_once()

    def test_registration_during_fanout_waits_for_next_call(self):
        hooks = HookManager()
        late = MagicMock()

        def registers_late(payload, actor, ctx):
            hooks.set_pre_hook_handler("ping", late)

        hooks.set_pre_hook_handler("ping", registers_late)
        fanout = hooks.fanout("ping", PRE)

        fanout("first", ACTOR, _context())
        late.assert_not_called()

        hooks.unset_pre_hook_handler("ping", registers_late)
        fanout("second", ACTOR, _context())
        late.assert_called_once()


class TestInject:

    def test_injects_only_listened_channels(self):
        hooks = HookManager()
        hooks.set_pre_hook_handler("ping", MagicMock())
        task = hooks.inject(Task(Ping(), ACTOR))
        assert task.pre_hook_handler is hooks.fanout("ping", PRE)
        assert task.post_hook_handler is None

    def test_no_listeners_no_injection(self):
        task = HookManager().inject(Task(Ping(), ACTOR))
        assert task.pre_hook_handler is None
        assert task.post_hook_handler is None


class TestLocking:
    """Every read or write of the listener table happens under the manager's lock."""

    def _with_spy_lock(self):
        hooks = HookManager()
        lock = MagicMock()
        hooks._lock = lock
        return hooks, lock

    def test_register_and_unregister_lock(self):
        hooks, lock = self._with_spy_lock()
        listener = MagicMock()
        hooks.set_pre_hook_handler("ping", listener)
        assert lock.__enter__.call_count == 1
        hooks.unset_pre_hook_handler("ping", listener)
        assert lock.__enter__.call_count == 2
        assert lock.__exit__.call_count == 2

    def test_handlers_lock(self):
        hooks, lock = self._with_spy_lock()
        hooks.handlers("ping", PRE)
        assert lock.__enter__.call_count == 1

    def test_inject_locks_and_does_not_deadlock(self):
        hooks = HookManager()
        hooks.set_post_hook_handler("ping", MagicMock())
        task = hooks.inject(Task(Ping(), ACTOR))
        assert task.post_hook_handler is hooks.fanout("ping", POST)
        assert not hooks._lock.locked()

    def test_concurrent_registration(self):
        import threading

        hooks = HookManager()
        listeners = [MagicMock() for _ in range(200)]

        def register(chunk):
            for listener in chunk:
                hooks.set_pre_hook_handler("ping", listener)
                hooks.inject(Task(Ping(), ACTOR))

        threads = [threading.Thread(target=register, args=(listeners[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(hooks.handlers("ping", PRE)) == 200
