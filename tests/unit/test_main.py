"""
Unit tests for the expiration daemon entry point.

Tests cover:
- Loading entity modules into the process-wide registry
- Forcing the listener to start with the daemon
- Daemon run and shutdown
- Exit codes for configuration and import failures
"""

import asyncio

import pytest

from kvmap.kvmap_engine import main as daemon_main
from kvmap.kvmap_engine.config import EngineConfig, ExpirationConfig, StoreBackend
from kvmap.kvmap_engine.expiry.listener import ListenerMode, ListenerState
from kvmap.kvmap_engine.main import Daemon, load_entity_modules
from kvmap.kvmap_engine.mapping.registry import get_registry, reset_registry


@pytest.fixture(autouse=True)
def fresh_registry():
    reset_registry()
    yield
    reset_registry()


def memory_config(mode):
    return EngineConfig(
        store_backend=StoreBackend.MEMORY,
        expiration=ExpirationConfig(listener_mode=mode),
    )


class TestLoadEntityModules:
    """Tests for load_entity_modules."""

    def test_registers_declared_types(self):
        """Test every declared entity of the listed modules is resolved."""
        count = load_entity_modules("tests.domain, ")

        registry = get_registry()
        assert count == len(list(registry.entities()))
        assert registry.get_by_keyspace("persons") is not None
        assert registry.get_by_keyspace("sessions").ttl == 60
        assert registry.get_by_keyspace("tickets") is not None

    def test_empty_list(self):
        """Test no modules registers nothing."""
        assert load_entity_modules("") == 0
        assert list(get_registry().entities()) == []

    def test_missing_module(self):
        """Test unknown modules raise ImportError."""
        with pytest.raises(ImportError):
            load_entity_modules("no_such_module_for_kvmap")


class TestDaemon:
    """Tests for Daemon."""

    @pytest.mark.parametrize("mode", [ListenerMode.NEVER, ListenerMode.ON_DEMAND])
    def test_listener_forced_on_startup(self, mode):
        """Test the daemon always runs the listener."""
        daemon = Daemon(memory_config(mode))

        assert daemon.engine.config.expiration.listener_mode == ListenerMode.ON_STARTUP
        assert daemon.engine.listener.mode == ListenerMode.ON_STARTUP
        assert daemon.engine.registry is get_registry()

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self):
        """Test run starts the engine and returns on shutdown request."""
        daemon = Daemon(memory_config(ListenerMode.ON_STARTUP))
        task = asyncio.create_task(daemon.run())

        async def running():
            while not daemon.engine.is_running:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(running(), 1.0)
        assert daemon.engine.listener.is_running

        daemon.request_shutdown()
        await asyncio.wait_for(task, 1.0)
        await daemon.stop()

        assert daemon.engine.listener.state == ListenerState.STOPPED
        assert not daemon.engine.is_running


class TestMain:
    """Tests for main() failure exits."""

    def test_configuration_error_exits(self, monkeypatch):
        """Test invalid configuration exits with status 1."""
        monkeypatch.setenv("KVMAP_STORE_BACKEND", "etcd")

        with pytest.raises(SystemExit) as exc_info:
            daemon_main.main()
        assert exc_info.value.code == 1

    def test_unknown_entity_module_exits(self, monkeypatch):
        """Test an unimportable entity module exits with status 1."""
        monkeypatch.setenv("KVMAP_STORE_BACKEND", "memory")
        monkeypatch.setenv("KVMAP_ENTITY_MODULES", "no_such_module_for_kvmap")
        monkeypatch.setattr(daemon_main, "setup_logging", lambda config: None)

        with pytest.raises(SystemExit) as exc_info:
            daemon_main.main()
        assert exc_info.value.code == 1
