"""Tests for the producer-side helpers behind the agent tools."""

import json

import pytest

from bridge_server import set_bridge
from design_tools import (
    DESIGN_TOOLS,
    ToolExecutionError,
    _to_json_string,
    bridge_status,
    command_status,
    queue_batch,
    queue_command,
)


@pytest.fixture
def no_bridge():
    set_bridge(None)
    yield
    set_bridge(None)


class TestQueueCommand:
    def test_queues_pending_command(self, registered_bridge):
        data = queue_command("create_frame", {"name": "Hero", "width": 400, "height": 200})
        assert data["success"] is True
        assert data["command"]["type"] == "create_frame"
        assert data["command"]["status"] == "pending"
        stored = registered_bridge.queue.get(data["command"]["id"])
        assert stored.params == {"name": "Hero", "width": 400, "height": 200}

    def test_invalid_type(self, registered_bridge):
        with pytest.raises(ToolExecutionError) as exc:
            queue_command("explode", {})
        assert exc.value.code == "invalid_command_spec"
        assert exc.value.tool == "queue_design_command"
        assert len(registered_bridge.queue) == 0

    def test_bridge_not_running(self, no_bridge):
        with pytest.raises(ToolExecutionError) as exc:
            queue_command("create_page", {"name": "Docs"})
        assert exc.value.code == "bridge_not_running"


class TestQueueBatch:
    def test_batch_keeps_order_and_file_key(self, registered_bridge):
        data = queue_batch([
            {"type": "create_page", "params": {"name": "Docs"}},
            {"type": "create_frame", "params": {"name": "Hero"}},
        ], file_key="FILE123")
        assert [c["type"] for c in data["commands"]] == ["create_page", "create_frame"]
        assert data["file_key"] == "FILE123"
        assert registered_bridge.queue.file_key == "FILE123"

    def test_invalid_entry_rejects_all(self, registered_bridge):
        with pytest.raises(ToolExecutionError, match="missing 'type'"):
            queue_batch([{"type": "create_page"}, {"params": {}}])
        assert len(registered_bridge.queue) == 0


class TestStatus:
    def test_command_status_follows_completion(self, registered_bridge):
        queued = queue_command("create_page", {"name": "Docs"})
        command_id = queued["command"]["id"]
        assert command_status(command_id)["status"] == "pending"

        registered_bridge.queue.complete(command_id, result={"pageId": "1:0"})
        status = command_status(command_id)
        assert status["status"] == "completed"
        assert status["result"] == {"pageId": "1:0"}

    def test_unknown_command(self, registered_bridge):
        with pytest.raises(ToolExecutionError) as exc:
            command_status("cmd_missing")
        assert exc.value.code == "command_not_found"
        assert exc.value.details == {"command_id": "cmd_missing"}

    def test_bridge_status_before_start(self, registered_bridge):
        registered_bridge.queue.enqueue({"type": "create_page"})
        status = bridge_status()
        assert status["running"] is False
        assert status["plugin_url"] is None
        assert status["counts"]["pending"] == 1

    async def test_bridge_status_while_running(self, registered_bridge):
        port = await registered_bridge.start(0)
        try:
            status = bridge_status()
            assert status["running"] is True
            assert status["port"] == port
            assert status["plugin_url"] == f"http://localhost:{port}/plugin"
        finally:
            await registered_bridge.stop()


class TestToolTable:
    def test_tool_names(self):
        assert [t.name for t in DESIGN_TOOLS] == [
            "queue_design_command",
            "queue_design_batch",
            "get_design_command_status",
            "get_pending_design_commands",
            "get_design_command_queue",
            "clear_design_commands",
            "get_bridge_status",
        ]

    def test_batch_schema_lists_command_types(self):
        tool = next(t for t in DESIGN_TOOLS if t.name == "queue_design_batch")
        assert "create_frame" in json.dumps(tool.params_json_schema)

    def test_json_string_passthrough(self):
        assert _to_json_string("already") == "already"
        assert json.loads(_to_json_string({"name": "Página"})) == {"name": "Página"}
