import asyncio
from datetime import timedelta

import pytest
from starlette.testclient import TestClient

from soundmachine.engine import SoundMachine
from soundmachine.timer import SleepTimer
from soundmachine.utils import iso, utcnow
from soundmachine.web import server
from soundmachine.web.server import create_app, sse_message
from soundmachine.web.state import Broadcaster

from conftest import FakeMixer, FakeSupervisor, spawn_failure


def _machine(capable=True):
    return SoundMachine(
        Broadcaster(), capable=capable,
        supervisor=FakeSupervisor(), mixer=FakeMixer(), timer=SleepTimer(),
    )


@pytest.fixture
def machine():
    return _machine()


@pytest.fixture
def client(machine):
    with TestClient(create_app(machine)) as c:
        yield c


def test_status(client):
    r = client.get("/api/status")
    assert r.status_code == 200
    data = r.json()
    assert data["isPlaying"] is False
    assert data["volume"] == 0.7
    assert data["isPi"] is True
    assert data["timer"] == {"isActive": False, "selectedSound": None, "stopTime": None}


def test_health(client):
    data = client.get("/api/health").json()
    assert data["status"] == "ok"
    assert data["isPi"] is True
    assert data["clients"] == 0


def test_play_and_stop(client):
    r = client.post("/api/play", json={"sound": "ocean"})
    assert r.json() == {"success": True, "playing": "ocean"}
    assert client.get("/api/status").json()["currentSound"] == "ocean"
    r = client.post("/api/stop")
    assert r.json() == {"success": True}
    assert client.get("/api/status").json()["isPlaying"] is False


def test_play_unknown_sound_is_400(client):
    r = client.post("/api/play", json={"sound": "rain"})
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert "rain" in r.json()["error"]


@pytest.mark.parametrize("sound", [["white"], {"a": 1}, 7])
def test_non_string_sound_is_400(client, sound):
    r = client.post("/api/play", json={"sound": sound})
    assert r.status_code == 400
    assert r.json()["success"] is False

    stop = utcnow() + timedelta(minutes=5)
    r = client.post("/api/timer/start", json={"sound": sound, "stopTime": iso(stop)})
    assert r.status_code == 400
    assert r.json()["success"] is False
    status = client.get("/api/status").json()
    assert status["timer"]["isActive"] is False
    assert status["isPlaying"] is False


def test_bad_json_is_400(client):
    r = client.post("/api/play", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400


def test_play_failure_is_500(client, machine, error_log):
    machine.supervisor.fail_with = spawn_failure()
    r = client.post("/api/play", json={"sound": "white"})
    assert r.status_code == 500
    assert r.json()["success"] is False
    assert client.get("/api/status").json()["isPlaying"] is False
    assert error_log.exists()


def test_client_mode_answers():
    with TestClient(create_app(_machine(capable=False))) as c:
        for path, body in (("/api/play", {"sound": "white"}), ("/api/stop", None)):
            r = c.post(path, json=body)
            assert r.status_code == 200
            assert r.json()["clientMode"] is True
            assert r.json()["success"] is False
        r = c.post("/api/volume", json={"volume": 0.4})
        assert r.json()["volume"] == 0.4
        assert r.json()["clientMode"] is True
        assert r.json()["systemVolumeSet"] is False


def test_volume_clamped(client):
    assert client.post("/api/volume", json={"volume": 1.5}).json()["volume"] == 1.0
    assert client.post("/api/volume", json={"volume": -0.2}).json()["volume"] == 0.0
    assert client.post("/api/volume", json={"volume": "x"}).status_code == 400


def test_tab(client):
    client.post("/api/play", json={"sound": "white"})
    r = client.post("/api/tab", json={"tab": "timer"})
    assert r.json() == {"success": True, "activeTab": "timer"}
    status = client.get("/api/status").json()
    assert status["activeTab"] == "timer"
    assert status["isPlaying"] is False
    assert client.post("/api/tab", json={"tab": "nope"}).status_code == 400


def test_timer_start_and_cancel(client):
    stop = utcnow() + timedelta(minutes=45)
    r = client.post("/api/timer/start", json={"sound": "brown", "stopTime": iso(stop), "volume": 0.3})
    assert r.status_code == 200
    timer = r.json()["timer"]
    assert timer["sound"] == "brown"
    assert timer["durationMinutes"] == 45
    status = client.get("/api/status").json()
    assert status["timer"]["isActive"] is True
    assert status["activeTab"] == "timer"
    assert status["volume"] == 0.3

    assert client.post("/api/timer/cancel").json() == {"success": True}
    assert client.post("/api/timer/cancel").json() == {"success": True}
    status = client.get("/api/status").json()
    assert status["timer"]["isActive"] is False
    assert status["isPlaying"] is False


@pytest.mark.parametrize("stop_time", [
    "2001-01-01T00:00:00Z",
    "soon",
    None,
])
def test_timer_start_rejects_bad_times(client, stop_time):
    r = client.post("/api/timer/start", json={"sound": "white", "stopTime": stop_time})
    assert r.status_code == 400
    assert client.get("/api/status").json()["timer"]["isActive"] is False


def test_timer_start_too_soon(client):
    soon = utcnow() + timedelta(milliseconds=500)
    r = client.post("/api/timer/start", json={"sound": "white", "stopTime": iso(soon)})
    assert r.status_code == 400
    assert "future" in r.json()["error"]


def test_timer_audio_failure_is_500_and_not_armed(client, machine):
    machine.supervisor.fail_with = spawn_failure()
    stop = utcnow() + timedelta(minutes=5)
    r = client.post("/api/timer/start", json={"sound": "white", "stopTime": iso(stop)})
    assert r.status_code == 500
    assert r.json()["error"].startswith("Failed")
    assert client.get("/api/status").json()["timer"]["isActive"] is False


def test_shutdown_stops_player(machine):
    with TestClient(create_app(machine)) as c:
        c.post("/api/play", json={"sound": "white"})
    assert machine.supervisor.killed
    assert machine.playback.is_playing is False


def test_sse_message_format():
    msg = sse_message({"isPlaying": True})
    assert msg == 'data: {"isPlaying": true}\n\n'


# ── Push stream ──────────────────────────────────────────────────────────────

class EventStream:
    """Drives GET /api/events straight through the ASGI app.

    The response never ends on its own, so it is read chunk by chunk from the
    send callable instead of through a buffering test client.
    """

    def __init__(self, app):
        self.app = app
        self.start = None
        self.chunks = []
        self.task = None
        self._requested = False
        self._disconnect = asyncio.Event()

    def open(self):
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/events",
            "raw_path": b"/api/events",
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"testserver")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        self.task = asyncio.create_task(self.app(scope, self._receive, self._send))

    def disconnect(self):
        self._disconnect.set()

    async def _receive(self):
        if not self._requested:
            self._requested = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self._disconnect.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message):
        if message["type"] == "http.response.start":
            self.start = message
        elif message.get("body"):
            self.chunks.append(message["body"].decode())

    async def wait_until(self, predicate, timeout=2.0):
        for _ in range(int(timeout / 0.01)):
            if predicate():
                return
            await asyncio.sleep(0.01)
        raise AssertionError(f"stream never got there: {self.chunks!r}")


def test_event_stream_sends_snapshot_keepalive_and_changes(monkeypatch):
    monkeypatch.setattr(server, "KEEPALIVE_INTERVAL", 0.05)

    async def runner():
        machine = _machine()
        stream = EventStream(create_app(machine))
        expected_first = sse_message(machine.get_snapshot())
        stream.open()

        await stream.wait_until(lambda: stream.chunks)
        assert stream.chunks[0] == expected_first
        headers = dict(stream.start["headers"])
        assert headers[b"content-type"].startswith(b"text/event-stream")
        assert machine.broadcaster.client_count == 1

        await stream.wait_until(lambda: ": keepalive\n\n" in stream.chunks)

        await machine.play("ocean")
        await stream.wait_until(lambda: any('"currentSound": "ocean"' in c for c in stream.chunks))

        stream.disconnect()
        await asyncio.wait_for(stream.task, timeout=2)
        assert machine.broadcaster.client_count == 0

    asyncio.run(runner())


def test_event_stream_ends_when_subscribers_are_closed():
    async def runner():
        machine = _machine()
        stream = EventStream(create_app(machine))
        stream.open()
        await stream.wait_until(lambda: stream.chunks)

        machine.broadcaster.close_all()
        await asyncio.wait_for(stream.task, timeout=2)
        assert len(stream.chunks) == 1
        assert machine.broadcaster.client_count == 0

    asyncio.run(runner())
