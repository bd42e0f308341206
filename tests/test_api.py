"""
HTTP surface tests
Live stream, resume with Last-Event-ID, replay and error mapping, driven
in-process through httpx's ASGI transport
"""
import asyncio

import httpx
import pytest

from core.codec import FrameParser, decode_record
from core.services import ServerServices
from main import create_app
from models.requests import StreamRequest


class GatedRunner:
    """Four assistant outputs, then waits for the gate before the result"""

    def __init__(self):
        self.gate = asyncio.Event()

    async def run(self, request, session):
        for n in range(4):
            yield {"type": "assistant", "text": f"part {n}"}
        await self.gate.wait()
        yield {"type": "result", "subtype": "success"}


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://proxy") as http:
        yield http


@pytest.fixture
async def gated(server_settings):
    runner = GatedRunner()
    bundle = await ServerServices.create(server_settings, runner=runner)
    app = create_app(services=bundle)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://proxy") as http:
        yield http, bundle, runner
    runner.gate.set()
    await bundle.close()


def _parse(text):
    parser = FrameParser()
    events = parser.feed(text) + parser.flush()
    assert parser.dropped == 0
    return events


async def _wait_for_last_id(services, session_id, target):
    for _ in range(200):
        if await services.event_log.last_event_id(session_id) >= target:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"session {session_id} never reached event {target}")


@pytest.mark.asyncio
async def test_healthz_carries_proxy_headers(client):
    response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["x-proxy-version"] == "test-1"
    assert response.headers["x-proxy-started-at"]


@pytest.mark.asyncio
async def test_stream_new_turn(client):
    response = await client.post("/v1/agent/stream", json={"text": "hello there"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = _parse(response.text)
    assert [e.event_id for e in events] == list(range(1, len(events) + 1))
    assert [e.type for e in events] == ["user", "system", "assistant", "assistant", "result"]
    session_id = events[0].session_id
    assert session_id
    assert all(e.session_id == session_id for e in events)
    assert events[-1].is_terminal


@pytest.mark.asyncio
async def test_second_turn_continues_ids(client):
    first = _parse((await client.post("/v1/agent/stream", json={"text": "one"})).text)
    session_id = first[0].session_id

    second = _parse((await client.post(
        "/v1/agent/stream", json={"text": "two", "session_id": session_id}
    )).text)
    assert second[0].event_id == first[-1].event_id + 1


@pytest.mark.asyncio
async def test_replay_then_resume_live(gated):
    """Events 1..5 committed, client saw 1..3: replay gives 4,5 and live resumes after 5"""
    client, services, runner = gated
    session_id = services.driver.start_turn(StreamRequest(text="go", session_id="conv-1"))
    await _wait_for_last_id(services, session_id, 5)

    replay = await client.get(f"/v1/sessions/{session_id}/events", params={"since": 3})
    assert replay.status_code == 200
    assert replay.headers["content-type"].startswith("application/x-ndjson")
    replayed = [decode_record(line) for line in replay.text.splitlines()]
    assert [e.event_id for e in replayed] == [4, 5]

    attach = asyncio.create_task(client.post(
        "/v1/agent/stream",
        json={"session_id": session_id},
        headers={"Last-Event-ID": "5"},
    ))
    await asyncio.sleep(0.05)
    runner.gate.set()
    response = await attach

    live = _parse(response.text)
    assert [e.event_id for e in live] == [6]
    assert live[0].type == "result"


@pytest.mark.asyncio
async def test_resume_attach_replays_missed_events(client):
    events = _parse((await client.post("/v1/agent/stream", json={"text": "a b c"})).text)
    session_id = events[0].session_id

    response = await client.post(
        "/v1/agent/stream",
        json={"session_id": session_id},
        headers={"Last-Event-ID": "2"},
    )
    resumed = _parse(response.text)
    assert [e.event_id for e in resumed] == [e.event_id for e in events[2:]]


@pytest.mark.asyncio
async def test_turn_in_progress_is_409(gated):
    client, services, runner = gated
    services.driver.start_turn(StreamRequest(text="go", session_id="busy"))

    response = await client.post("/v1/agent/stream", json={"text": "again", "session_id": "busy"})
    assert response.status_code == 409
    assert response.json()["error"] == "TurnInProgress"


@pytest.mark.asyncio
async def test_last_event_id_without_session_is_400(client):
    response = await client.post("/v1/agent/stream", json={}, headers={"Last-Event-ID": "3"})
    assert response.status_code == 400
    assert response.json()["error"] == "MissingSessionId"


@pytest.mark.asyncio
async def test_bad_last_event_id_is_400(client):
    response = await client.post(
        "/v1/agent/stream",
        json={"session_id": "s1"},
        headers={"Last-Event-ID": "three"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_no_text_and_no_cursor_is_422(client):
    response = await client.post("/v1/agent/stream", json={"session_id": "s1"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    resume = await client.post(
        "/v1/agent/stream",
        json={"session_id": "nope"},
        headers={"Last-Event-ID": "1"},
    )
    assert resume.status_code == 404

    replay = await client.get("/v1/sessions/nope/events", params={"since": 0})
    assert replay.status_code == 404
    assert replay.json()["error"] == "SessionNotFound"

    info = await client.get("/v1/sessions/nope")
    assert info.status_code == 404


@pytest.mark.asyncio
async def test_session_info(client):
    events = _parse((await client.post(
        "/v1/agent/stream", json={"text": "hi", "cwd": "/work", "allowed_tools": ["Read"]}
    )).text)
    session_id = events[0].session_id

    response = await client.get(f"/v1/sessions/{session_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["session"]["session_id"] == session_id
    assert body["session"]["cwd"] == "/work"
    assert body["session"]["allowed_tools"] == ["Read"]
    assert body["last_event_id"] == events[-1].event_id
    assert body["turn_active"] is False


@pytest.mark.asyncio
async def test_negative_since_is_422(client):
    response = await client.get("/v1/sessions/s1/events", params={"since": -1})
    assert response.status_code == 422
