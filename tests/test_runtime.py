"""Tests for canopy.runtime — lifecycle, singleton and audit log wiring."""

import pytest

from canopy.engine.config import CanopyConfig, DatabaseConfig, LoggingConfig
from canopy.engine.errors import ItemNotFound, UnexpectedError
from canopy.engine.logging import FileLogger, get_audit_queue
from canopy.runtime import CanopyRuntime, get_runtime, init_runtime


@pytest.fixture
def file_config(tmp_path):
    return CanopyConfig(
        environment="test",
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'canopy.db'}"),
        logging=LoggingConfig(directory=str(tmp_path / "logs"), audit=True),
    )


class TestLifecycle:

    def test_startup_and_shutdown(self, file_config):
        rt = CanopyRuntime(file_config, create_tables=True)
        assert not rt.started
        rt.startup()
        assert rt.started
        assert rt.runner is not None
        assert rt.services.limits == file_config.limits
        assert get_audit_queue() is rt.log_queue
        rt.shutdown()
        assert not rt.started
        assert get_audit_queue() is None

    def test_double_startup_is_noop(self, file_config):
        rt = CanopyRuntime(file_config, create_tables=True)
        rt.startup()
        runner = rt.runner
        rt.startup()
        assert rt.runner is runner
        rt.shutdown()

    def test_shutdown_before_startup(self, file_config):
        CanopyRuntime(file_config).shutdown()

    def test_context_manager(self, file_config, alice):
        with CanopyRuntime(file_config, create_tables=True) as rt:
            item = rt.runner.run_single(rt.items.create_create_task(alice, {"name": "root"}))
            assert item.depth == 1
        assert not rt.started

    def test_data_survives_restart(self, file_config, alice):
        with CanopyRuntime(file_config, create_tables=True) as rt:
            item = rt.runner.run_single(rt.items.create_create_task(alice, {"name": "root"}))
        with CanopyRuntime(file_config) as rt:
            again = rt.runner.run_single(rt.items.create_get_task(alice, item.id))
        assert again.name == "root"


class TestAuditLog:

    def test_task_outcomes_written(self, file_config, alice):
        with CanopyRuntime(file_config, create_tables=True) as rt:
            item = rt.runner.run_single(rt.items.create_create_task(alice, {"name": "root"}))
            with pytest.raises(ItemNotFound):
                rt.runner.run_single(rt.items.create_get_task(alice, "missing"))

        entries = FileLogger(log_dir=file_config.logging.directory).query("tasks")
        by_status = {e["status"]: e for e in entries}
        assert by_status["OK"]["task"] == "create-item"
        assert by_status["OK"]["result_ids"] == [item.id]
        assert by_status["FAIL"]["task"] == "get-item"
        assert by_status["FAIL"]["actor_id"] == "alice"

    def test_unexpected_errors_written(self, file_config, alice):
        def explode(payload, actor, ctx):
            raise RuntimeError("listener bug")

        with CanopyRuntime(file_config, create_tables=True) as rt:
            rt.runner.set_task_pre_hook_handler(rt.items.get_create_task_name(), explode)
            with pytest.raises(UnexpectedError):
                rt.runner.run_single(rt.items.create_create_task(alice, {"name": "root"}))

        logs = FileLogger(log_dir=file_config.logging.directory)
        assert logs.query("hooks")[0]["moment"] == "pre"
        errors = logs.query("errors")
        assert errors[0]["error_type"] == "RuntimeError"


class TestSingleton:

    def test_get_before_init(self, monkeypatch):
        import canopy.runtime as runtime_mod

        monkeypatch.setattr(runtime_mod, "_runtime", None)
        with pytest.raises(RuntimeError):
            get_runtime()

    def test_init_then_get(self, monkeypatch, file_config):
        import canopy.runtime as runtime_mod

        monkeypatch.setattr(runtime_mod, "_runtime", None)
        rt = init_runtime(config=file_config)
        assert get_runtime() is rt
        assert not rt.started
