"""Tests for the HTTP relay."""

import json
import socket

import pytest

from bridge_server import BridgePortError, CommandBridge, get_bridge, set_bridge


def frame_spec(name="Hero"):
    return {"type": "create_frame", "params": {"name": name, "width": 400, "height": 200}}


def assert_cors(response):
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "GET, POST, DELETE, OPTIONS"
    assert response.headers["Access-Control-Allow-Headers"] == "Content-Type"


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    async def test_frame_lifecycle(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())

        resp = await client.get("/commands")
        assert resp.status == 200
        data = await resp.json()
        assert [c["id"] for c in data["commands"]] == [command.id]
        assert data["commands"][0]["status"] == "pending"
        assert data["commands"][0]["params"] == {"name": "Hero", "width": 400, "height": 200}

        resp = await client.post(f"/commands/{command.id}/complete", json={"result": {"nodeId": "1:23"}})
        assert resp.status == 200
        assert await resp.json() == {"success": True}

        resp = await client.get("/commands")
        assert (await resp.json())["commands"] == []

        resp = await client.get("/commands/all")
        everything = await resp.json()
        stored = everything["commands"][0]
        assert stored["status"] == "completed"
        assert stored["result"] == {"nodeId": "1:23"}
        assert stored["completedAt"] is not None

    async def test_clear_after_five(self, client, bridge):
        bridge.queue.enqueue_batch("FILE123", [frame_spec(str(i)) for i in range(5)])

        resp = await client.delete("/commands")
        assert resp.status == 200
        assert await resp.json() == {"success": True}

        resp = await client.get("/commands/all")
        assert await resp.json() == {"fileKey": None, "commands": []}


# ---------------------------------------------------------------------------
# Completion reports
# ---------------------------------------------------------------------------

class TestComplete:
    async def test_unknown_id_is_404(self, client, bridge):
        bridge.queue.enqueue(frame_spec())
        before = bridge.queue.list_all()

        resp = await client.post("/commands/does-not-exist/complete", json={"result": {}})
        assert resp.status == 404
        assert await resp.json() == {"success": False}
        assert bridge.queue.list_all() == before

    async def test_malformed_json_is_400(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())
        resp = await client.post(
            f"/commands/{command.id}/complete",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON"
        assert_cors(resp)
        assert bridge.queue.get(command.id).status.value == "pending"

    async def test_non_object_body_is_400(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())
        resp = await client.post(f"/commands/{command.id}/complete", data=json.dumps([1, 2]))
        assert resp.status == 400

    async def test_error_report_marks_failed(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())
        resp = await client.post(f"/commands/{command.id}/complete", json={"error": "Node not found"})
        assert resp.status == 200
        stored = bridge.queue.get(command.id)
        assert stored.status.value == "failed"
        assert stored.error == "Node not found"

    async def test_empty_body_completes_without_result(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())
        resp = await client.post(f"/commands/{command.id}/complete")
        assert resp.status == 200
        assert bridge.queue.get(command.id).status.value == "completed"

    async def test_duplicate_report_is_flagged_and_ignored(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())
        await client.post(f"/commands/{command.id}/complete", json={"result": {"nodeId": "1:23"}})

        resp = await client.post(f"/commands/{command.id}/complete", json={"error": "late"})
        assert resp.status == 200
        assert await resp.json() == {"success": True, "alreadyCompleted": True}
        stored = bridge.queue.get(command.id)
        assert stored.status.value == "completed"
        assert stored.result == {"nodeId": "1:23"}


# ---------------------------------------------------------------------------
# Enqueue and claim over HTTP
# ---------------------------------------------------------------------------

class TestEnqueueRoute:
    async def test_single_command(self, client, bridge):
        resp = await client.post("/commands", json=frame_spec())
        assert resp.status == 201
        data = await resp.json()
        assert data["success"] is True
        assert data["commands"][0]["type"] == "create_frame"
        assert len(bridge.queue.list_pending()) == 1

    async def test_batch(self, client, bridge):
        resp = await client.post("/commands", json={
            "fileKey": "FILE123",
            "commands": [frame_spec("A"), {"type": "create_page", "params": {"name": "Docs"}}],
        })
        assert resp.status == 201
        assert bridge.queue.file_key == "FILE123"
        assert [c.type for c in bridge.queue.list_pending()] == ["create_frame", "create_page"]

    async def test_missing_type_is_400(self, client, bridge):
        resp = await client.post("/commands", json={"params": {"name": "x"}})
        assert resp.status == 400
        assert "missing 'type'" in (await resp.json())["error"]
        assert len(bridge.queue) == 0


class TestClaimRoute:
    async def test_claim_hides_from_pending_list(self, client, bridge):
        command = bridge.queue.enqueue(frame_spec())

        resp = await client.post("/commands/claim", json={"leaseSeconds": 5})
        data = await resp.json()
        assert [c["id"] for c in data["commands"]] == [command.id]
        assert data["commands"][0]["status"] == "executing"
        assert data["leaseId"] == data["commands"][0]["leaseId"]

        resp = await client.get("/commands")
        assert (await resp.json())["commands"] == []

        resp = await client.post("/commands/claim")
        assert (await resp.json())["commands"] == []

    async def test_invalid_lease_is_400(self, client):
        resp = await client.post("/commands/claim", json={"leaseSeconds": -1})
        assert resp.status == 400


# ---------------------------------------------------------------------------
# Health, plugin, routing, CORS
# ---------------------------------------------------------------------------

class TestHealthAndPlugin:
    async def test_health_counts(self, client, bridge):
        first, _ = bridge.queue.enqueue_batch(None, [frame_spec(), frame_spec()])
        bridge.queue.complete(first.id, result={})

        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "pendingCommands": 1, "totalCommands": 2}

    async def test_plugin_code(self, client):
        resp = await client.get("/plugin")
        assert resp.status == 200
        assert resp.content_type == "application/javascript"
        body = await resp.text()
        assert "executingCommands" in body
        assert f"http://localhost:{client.port}" in body

    async def test_plugin_ui_and_manifest(self, client):
        resp = await client.get("/plugin/ui.html")
        assert resp.content_type == "text/html"
        resp = await client.get("/plugin/manifest.json")
        manifest = json.loads(await resp.text())
        assert manifest["main"] == "code.js"
        assert manifest["ui"] == "ui.html"


class TestRoutingAndCors:
    async def test_unmatched_path_is_404(self, client):
        resp = await client.get("/nope")
        assert resp.status == 404
        assert await resp.json() == {"error": "Not found"}
        assert_cors(resp)

    async def test_unmatched_method_is_404(self, client):
        resp = await client.put("/commands")
        assert resp.status == 404
        assert await resp.json() == {"error": "Not found"}

    @pytest.mark.parametrize("path", ["/commands", "/commands/all", "/health", "/commands/abc/complete"])
    async def test_success_responses_carry_cors(self, client, bridge, path):
        command = bridge.queue.enqueue(frame_spec())
        if path.endswith("/complete"):
            resp = await client.post(f"/commands/{command.id}/complete", json={})
        else:
            resp = await client.get(path)
        assert resp.status == 200
        assert_cors(resp)

    @pytest.mark.parametrize("path", ["/commands", "/commands/xyz/complete", "/anything/at/all"])
    async def test_options_short_circuits(self, client, bridge, path):
        bridge.queue.enqueue(frame_spec())
        resp = await client.options(path)
        assert resp.status == 200
        assert await resp.text() == ""
        assert_cors(resp)
        # No route logic ran: nothing was cleared or completed
        assert len(bridge.queue.list_pending()) == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def _listening_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    return sock


class TestLifecycle:
    async def test_start_stop(self):
        bridge = CommandBridge(host="127.0.0.1")
        port = await bridge.start(0)
        try:
            assert port > 0
            assert bridge.current_port == port
            assert bridge.is_running
            assert await bridge.start(0) == port
        finally:
            await bridge.stop()
        assert bridge.current_port is None

    async def test_busy_port_moves_to_next(self):
        blocker = _listening_socket()
        busy = blocker.getsockname()[1]
        bridge = CommandBridge(host="127.0.0.1", max_port_attempts=5)
        try:
            port = await bridge.start(busy)
            assert busy < port < busy + 5
        finally:
            await bridge.stop()
            blocker.close()

    async def test_port_attempts_are_capped(self):
        blocker = _listening_socket()
        busy = blocker.getsockname()[1]
        bridge = CommandBridge(host="127.0.0.1", max_port_attempts=1)
        try:
            with pytest.raises(BridgePortError):
                await bridge.start(busy)
            assert bridge.current_port is None
        finally:
            blocker.close()

    async def test_bridges_do_not_share_state(self):
        first, second = CommandBridge(), CommandBridge()
        first.queue.enqueue(frame_spec())
        assert len(first.queue) == 1
        assert len(second.queue) == 0


class TestBridgeRegistry:
    def test_get_without_set_raises(self):
        set_bridge(None)
        with pytest.raises(RuntimeError, match="not initialized"):
            get_bridge()

    def test_set_and_get(self, registered_bridge):
        assert get_bridge() is registered_bridge
