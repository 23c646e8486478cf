"""Tests for the FastAPI app: TwiML webhooks, joke APIs and admin sessions."""

import asyncio
from xml.etree.ElementTree import fromstring

import pytest
from fastapi.testclient import TestClient

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from jokeline import app as app_module
from jokeline.app import create_app
from jokeline.config import Settings
from jokeline.elo import RankingOutcome
from jokeline.errors import IncompleteJokeError
from jokeline.session import register_session, unregister_session
from jokeline.store import SqliteJokeStore
from jokeline.store.base import Joke


class FakeSettings:
    def __init__(self, admin_api_key="", debug=False):
        self.admin_api_key = admin_api_key
        self.debug = debug


class FakeClient:
    """Stands in for the transcriber and judge; only needs aclose()."""

    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


class FakeSession:
    stream_sid = "MZ123"

    def to_dict(self):
        return {"session_id": self._session_id, "stream_sid": self.stream_sid}


@pytest.fixture
def store():
    s = SqliteJokeStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def client(store):
    app = create_app(store=store, config=Settings(_env_file=None))
    with TestClient(app) as c:
        yield c


def say_texts(body: str) -> list[str]:
    root = fromstring(body)
    return [el.text for el in root.iter("Say")]


# ── Health & voice webhook ─────────────────────────────────────────


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["uptime"] >= 0


class TestTwilioVoice:
    def test_connects_stream_to_host(self, client):
        resp = client.post("/twilio/voice")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/xml")

        root = fromstring(resp.text)
        stream = root.find("Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://testserver/twilio/stream"


# ── Recorded-call webhook ──────────────────────────────────────────


class TestTwilioRecording:
    def test_prompts_when_no_recording(self, client):
        resp = client.post("/twilio/recording")
        assert resp.status_code == 200

        root = fromstring(resp.text)
        record = root.find("Record")
        assert record is not None
        assert record.get("maxLength") == "30"
        assert record.get("action") == "/twilio/recording"
        texts = say_texts(resp.text)
        assert texts[0] == app_module.RECORDING_PROMPT
        assert texts[-1] == app_module.NO_RECORDING

    def test_ranks_recording(self, client, monkeypatch):
        fakes = []

        def make_fake(cfg):
            fake = FakeClient()
            fakes.append(fake)
            return fake

        async def fake_process(url, http, transcriber, ranker, auth=None):
            assert url == "https://api.twilio.com/rec/RE1"
            joke = Joke(id=2, content="knock knock who's there boo", elo_rating=1516.0)
            best = Joke(id=2, content="knock knock who's there boo", elo_rating=1516.0)
            return RankingOutcome(joke=joke, comparisons=1, best=best)

        monkeypatch.setattr(app_module, "_create_transcriber", make_fake)
        monkeypatch.setattr(app_module, "_create_judge", make_fake)
        monkeypatch.setattr(app_module, "process_recording", fake_process)

        resp = client.post("/twilio/recording", data={"RecordingUrl": "https://api.twilio.com/rec/RE1"})

        texts = say_texts(resp.text)
        assert texts[0] == "Thank you! Your joke has been rated 1516.0."
        assert texts[1].startswith("The current best joke is: knock knock who's there boo.")
        assert texts[-1] == "Goodbye!"
        assert all(f.closed for f in fakes)

    def test_apologises_when_no_joke(self, client, monkeypatch):
        async def fake_process(url, http, transcriber, ranker, auth=None):
            raise IncompleteJokeError("no knock knock joke found")

        monkeypatch.setattr(app_module, "_create_transcriber", lambda cfg: FakeClient())
        monkeypatch.setattr(app_module, "_create_judge", lambda cfg: FakeClient())
        monkeypatch.setattr(app_module, "process_recording", fake_process)

        resp = client.post("/twilio/recording?RecordingUrl=https://api.twilio.com/rec/RE1")

        assert say_texts(resp.text) == [app_module.APOLOGY_TEXT]


# ── Joke API ───────────────────────────────────────────────────────


class TestJokeApi:
    def test_best_joke_empty(self, client):
        resp = client.get("/best-joke")
        assert resp.status_code == 200
        assert resp.json() == {"error": "No jokes found"}

    def test_best_joke(self, client, store):
        asyncio.run(store.create("knock knock low rated"))
        top = asyncio.run(store.create("knock knock high rated"))
        asyncio.run(store.update_rating(top.id, 1600.0))

        data = client.get("/best-joke").json()
        assert data == {"joke": "knock knock high rated", "rating": 1600.0, "id": top.id}

    def test_jokes_ordered_and_limited(self, client, store):
        for i in range(3):
            joke = asyncio.run(store.create(f"knock knock number {i}"))
            asyncio.run(store.update_rating(joke.id, 1500.0 + i))

        data = client.get("/jokes", params={"limit": 2}).json()
        assert [j["content"] for j in data] == ["knock knock number 2", "knock knock number 1"]
        assert data[0]["elo_rating"] == 1502.0

    def test_jokes_limit_validated(self, client):
        assert client.get("/jokes", params={"limit": 0}).status_code == 422


# ── Admin sessions ─────────────────────────────────────────────────


class TestAdminSessions:
    def test_requires_token(self, client, monkeypatch):
        monkeypatch.setattr("jokeline.auth.settings", FakeSettings(admin_api_key="secret"))
        assert client.get("/api/sessions").status_code == 401

    def test_locked_without_key(self, client, monkeypatch):
        monkeypatch.setattr("jokeline.auth.settings", FakeSettings())
        assert client.get("/api/sessions").status_code == 403

    def test_lists_sessions(self, client, monkeypatch):
        monkeypatch.setattr("jokeline.auth.settings", FakeSettings(admin_api_key="secret"))
        sid = register_session(FakeSession())
        try:
            resp = client.get("/api/sessions", headers={"Authorization": "Bearer secret"})
            assert resp.status_code == 200
            data = resp.json()
            assert data["count"] == 1
            assert data["sessions"][0]["session_id"] == sid

            one = client.get(f"/api/sessions/{sid}", headers={"Authorization": "Bearer secret"})
            assert one.json()["stream_sid"] == "MZ123"
        finally:
            unregister_session(sid)

    def test_unknown_session(self, client, monkeypatch):
        monkeypatch.setattr("jokeline.auth.settings", FakeSettings(debug=True))
        assert client.get("/api/sessions/nope").status_code == 404
