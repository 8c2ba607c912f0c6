import asyncio
import importlib
import os
from pathlib import Path

from fastapi.testclient import TestClient

from change_hub import ChangeEvent, ChangeHub


def reload_main_with_temp_root(tmp_path: Path):
    os.environ["DOCVAULT_ROOT"] = str(tmp_path / "vault-root")

    import main  # type: ignore

    importlib.reload(main)
    return main


def test_change_event_uses_from_and_to_keys():
    event = ChangeEvent(type="file", action="moved", path="/workspace/b.md", from_path="/workspace/a.md", to_path="/workspace/b.md")

    assert event.to_message() == {
        "type": "file",
        "action": "moved",
        "path": "/workspace/b.md",
        "from": "/workspace/a.md",
        "to": "/workspace/b.md",
    }


def test_hub_delivers_to_subscribers_and_drops_when_full():
    async def scenario():
        hub = ChangeHub()
        subscription = hub.subscribe()
        assert len(hub) == 1

        hub.broadcast(ChangeEvent(type="file", action="created", path="/workspace/a.md", id=1))
        message = await asyncio.wait_for(subscription.next_message(), timeout=1)
        assert message == {"type": "file", "action": "created", "path": "/workspace/a.md", "id": 1}

        for _ in range(subscription.queue.maxsize + 5):
            subscription.offer({"action": "updated"})
        assert subscription.queue.qsize() == subscription.queue.maxsize

        hub.unsubscribe(subscription)
        assert len(hub) == 0

    asyncio.run(scenario())


def test_websocket_receives_document_events(tmp_path):
    main = reload_main_with_temp_root(tmp_path)

    client = TestClient(main.app)
    with client.websocket_connect("/ws") as websocket:
        resp = client.post("/v1/documents", json={"title": "todo", "type": "markdown", "parent_path": "notes"})
        assert resp.status_code == 200
        doc_id = resp.json()["data"]["id"]

        event = websocket.receive_json()
        assert event == {"type": "file", "action": "created", "path": "/workspace/notes/todo.md", "id": doc_id}

        client.post(f"/v1/documents/{doc_id}/rename", json={"new_name": "done"})
        event = websocket.receive_json()
        assert event["action"] == "renamed"
        assert event["from"] == "/workspace/notes/todo.md"
        assert event["to"] == "/workspace/notes/done.md"
        assert event["id"] == doc_id

        client.delete(f"/v1/documents/{doc_id}")
        event = websocket.receive_json()
        assert event["action"] == "deleted"
        assert event["path"] == "/workspace/notes/done.md"

    assert len(main.app.state.vault.hub) == 0
