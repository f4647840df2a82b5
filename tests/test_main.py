import asyncio

import pytest

import main
from bridge_server import get_bridge
from command_queue import CommandStatus
from conftest import wait_until

ENV_VARS = [
    "BRIDGE_HOST", "BRIDGE_PORT", "BRIDGE_MAX_PORT_ATTEMPTS", "BRIDGE_URL", "BRIDGE_MODE",
    "COMMAND_RETENTION_SECONDS", "COMMAND_RETENTION_MAX", "COMMAND_LEASE_SECONDS",
    "EXECUTOR_POLL_INTERVAL", "EXECUTOR_FORGET_DELAY", "EXECUTOR_USE_LEASES",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    def test_defaults(self, clean_env):
        settings = main.get_config([])
        assert settings.host == "localhost"
        assert settings.port == 3847
        assert settings.mode == "bridge"
        assert settings.retention_seconds == 600.0
        assert settings.retention_max == 1000
        assert settings.use_leases is False
        assert settings.executor_url == "http://localhost:3847"

    def test_environment(self, clean_env):
        clean_env.setenv("BRIDGE_PORT", "4100")
        clean_env.setenv("BRIDGE_MODE", "all")
        clean_env.setenv("COMMAND_RETENTION_MAX", "0")
        clean_env.setenv("EXECUTOR_USE_LEASES", "true")
        settings = main.get_config([])
        assert settings.port == 4100
        assert settings.mode == "all"
        assert settings.retention_max is None
        assert settings.use_leases is True

    def test_cli_overrides_environment(self, clean_env):
        clean_env.setenv("BRIDGE_PORT", "4100")
        settings = main.get_config([
            "--port=4200", "--host=127.0.0.1", "--mode=executor",
            "--bridge-url=http://10.0.0.5:3847", "--use-leases",
        ])
        assert settings.port == 4200
        assert settings.host == "127.0.0.1"
        assert settings.mode == "executor"
        assert settings.use_leases is True
        assert settings.executor_url == "http://10.0.0.5:3847"

    def test_invalid_number_falls_back(self, clean_env):
        clean_env.setenv("EXECUTOR_POLL_INTERVAL", "fast")
        assert main.get_config([]).poll_interval == 1.0

    def test_unknown_mode_exits(self, clean_env):
        with pytest.raises(SystemExit):
            main.get_config(["--mode=sideways"])

    def test_executor_url_for_wildcard_host(self, clean_env):
        settings = main.get_config(["--host=0.0.0.0", "--port=4000"])
        assert settings.executor_url == "http://localhost:4000"


def test_discover_tools():
    names = {t.name for t in main.discover_tools()}
    assert names == {
        "queue_design_command", "queue_design_batch", "get_design_command_status",
        "get_pending_design_commands", "get_design_command_queue",
        "clear_design_commands", "get_bridge_status",
    }


def test_export_plugin_skips_service(clean_env, tmp_path, monkeypatch):
    monkeypatch.setattr("sys.argv", ["main", f"--export-plugin={tmp_path / 'out'}", "--port=4000"])
    main.main()
    assert (tmp_path / "out" / "manifest.json").exists()


async def test_service_relays_to_local_executor(clean_env):
    settings = main.get_config(["--mode=all", "--host=127.0.0.1", "--port=0"])
    settings.poll_interval = 0.02
    service = main.BridgeService(settings)
    task = asyncio.create_task(service.run())
    try:
        await wait_until(lambda: service.executor is not None and service.executor.is_connected)
        command = get_bridge().queue.enqueue({"type": "create_page", "params": {"name": "Docs"}})
        await wait_until(lambda: get_bridge().queue.get(command.id).status == CommandStatus.COMPLETED)
        assert service.document.find_page(name="Docs") is not None
    finally:
        service.shutdown()
        await asyncio.wait_for(task, timeout=5)

    assert not service.bridge.is_running
    with pytest.raises(RuntimeError):
        get_bridge()
