from typing import Any

from fastapi.testclient import TestClient
import pytest

from conftest import ThreadGatedRenderer, poll_until
from framix_server.ws import ClientMessage, WebSocketObserver, parse_client_message


def _submit(client: TestClient, template_id: str) -> str:
    response = client.post("/api/render", json={"templateId": template_id})
    assert response.status_code == 202
    return response.json()["jobId"]


def test_query_subscription_streams_live_events(
    client: TestClient, gated_renderer: ThreadGatedRenderer
) -> None:
    _submit(client, "alpha")
    job_id = _submit(client, "bravo")
    poll_until(lambda: gated_renderer.calls == ["alpha"])

    with client.websocket_connect(f"/ws?jobId={job_id}") as websocket:
        assert websocket.receive_json() == {"type": "subscribed", "jobId": job_id}

        gated_renderer.release("alpha")
        assert websocket.receive_json() == {
            "type": "progress",
            "jobId": job_id,
            "frame": 0,
            "total": 10,
            "percent": 0,
            "eta": "calculating...",
        }

        gated_renderer.release("bravo")
        assert websocket.receive_json() == {
            "type": "complete",
            "jobId": job_id,
            "result": {"outputPath": "output/bravo.mp4"},
        }


def test_subscribing_to_finished_job_replays_result(
    client: TestClient, gated_renderer: ThreadGatedRenderer
) -> None:
    gated_renderer.release("alpha")
    job_id = _submit(client, "alpha")
    poll_until(lambda: client.get(f"/api/jobs/{job_id}").json()["status"] == "completed")

    with client.websocket_connect(f"/ws?jobId={job_id}") as websocket:
        assert websocket.receive_json() == {"type": "subscribed", "jobId": job_id}
        assert websocket.receive_json() == {
            "type": "progress",
            "jobId": job_id,
            "frame": 0,
            "total": 10,
            "percent": 0,
            "eta": "calculating...",
        }
        assert websocket.receive_json() == {
            "type": "complete",
            "jobId": job_id,
            "result": {"outputPath": "output/alpha.mp4"},
        }


def test_subscribe_message_after_malformed_input(
    client: TestClient, gated_renderer: ThreadGatedRenderer
) -> None:
    _submit(client, "alpha")
    job_id = _submit(client, "bravo")
    poll_until(lambda: gated_renderer.calls == ["alpha"])

    with client.websocket_connect("/ws") as websocket:
        websocket.send_text("not json")
        websocket.send_json({"type": "ping"})
        websocket.send_json({"type": "subscribe"})
        websocket.send_json({"type": "subscribe", "jobId": job_id})
        assert websocket.receive_json() == {"type": "subscribed", "jobId": job_id}

        response = client.delete(f"/api/jobs/{job_id}")
        assert response.status_code == 200
        assert websocket.receive_json() == {"type": "cancelled", "jobId": job_id}

    gated_renderer.release("alpha")


def test_unsubscribe_stops_delivery(
    client: TestClient, gated_renderer: ThreadGatedRenderer
) -> None:
    _submit(client, "alpha")
    dropped = _submit(client, "bravo")
    kept = _submit(client, "charlie")
    poll_until(lambda: gated_renderer.calls == ["alpha"])

    with client.websocket_connect(f"/ws?jobId={dropped}") as websocket:
        assert websocket.receive_json() == {"type": "subscribed", "jobId": dropped}
        websocket.send_json({"type": "unsubscribe", "jobId": dropped})
        websocket.send_json({"type": "subscribe", "jobId": kept})
        assert websocket.receive_json() == {"type": "subscribed", "jobId": kept}

        assert client.delete(f"/api/jobs/{dropped}").status_code == 200
        assert client.delete(f"/api/jobs/{kept}").status_code == 200
        assert websocket.receive_json() == {"type": "cancelled", "jobId": kept}

    gated_renderer.release("alpha")


def test_parse_client_message() -> None:
    assert parse_client_message('{"type": "subscribe", "jobId": "job-1"}') == ClientMessage(
        type="subscribe", jobId="job-1"
    )
    assert parse_client_message('{"type": "unsubscribe", "jobId": "job-1"}').type == "unsubscribe"
    assert parse_client_message('{"type": "subscribe", "jobId": ""}') is None
    assert parse_client_message('{"type": "subscribe", "jobId": 7}') is None
    assert parse_client_message('{"type": "ping", "jobId": "job-1"}') is None
    assert parse_client_message('{"type": "subscribe", "jobId": "job-1", "extra": 1}') is None
    assert parse_client_message('["subscribe", "job-1"]') is None
    assert parse_client_message("{broken") is None


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_observer_delivers_in_order_then_closes() -> None:
    socket = FakeSocket()
    observer = WebSocketObserver(socket, max_pending=4)  # type: ignore[arg-type]

    observer.deliver({"type": "subscribed", "jobId": "job-1"})
    observer.deliver({"type": "queued", "jobId": "job-1", "position": 0})
    observer.close()
    await observer.pump()

    assert [event["type"] for event in socket.sent] == ["subscribed", "queued"]
    assert socket.closed


@pytest.mark.anyio
async def test_observer_disconnects_client_that_falls_behind() -> None:
    socket = FakeSocket()
    observer = WebSocketObserver(socket, max_pending=2)  # type: ignore[arg-type]
    observer.deliver({"type": "progress", "jobId": "job-1", "frame": 1})
    observer.deliver({"type": "progress", "jobId": "job-1", "frame": 2})

    with pytest.raises(ConnectionError):
        observer.deliver({"type": "progress", "jobId": "job-1", "frame": 3})

    assert observer.closed
    with pytest.raises(ConnectionError):
        observer.deliver({"type": "complete", "jobId": "job-1", "result": {}})
    await observer.pump()
    assert socket.sent == []
    assert socket.closed
