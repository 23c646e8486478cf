"""Tests for CartesiaSynthesizer against a fake WebSocket."""

import asyncio
import base64
import json

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from jokeline.errors import SynthesisConnectionError
from jokeline.tts.cartesia import (
    OUTPUT_FORMAT,
    AudioChunk,
    BackendError,
    CartesiaSynthesizer,
    GenerationDone,
    Unrecognized,
    parse_synthesis_message,
)


def audio_message(data: bytes) -> str:
    return json.dumps({"data": base64.b64encode(data).decode("ascii"), "done": False})


class FakeSocket:
    """Async-iterable socket; ``reply`` maps each sent request to frames to push back."""

    def __init__(self, reply=None, fail_requests=False):
        self.sent = []
        self.closed = False
        self.reply = reply
        self.fail_requests = fail_requests
        self._incoming = asyncio.Queue()

    async def send(self, raw):
        msg = json.loads(raw)
        if self.fail_requests and msg.get("transcript"):
            raise OSError("broken pipe")
        self.sent.append(msg)
        if self.reply and msg.get("transcript"):
            for frame in self.reply(msg):
                self.push(frame)

    def push(self, frame):
        self._incoming.put_nowait(frame)

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    def __init__(self, *results):
        self.results = list(results)
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def make_tts(connector, **kwargs):
    kwargs.setdefault("quiet_interval", 0.05)
    kwargs.setdefault("retry_backoff", 0)
    return CartesiaSynthesizer(
        api_key="test-key",
        model_id="sonic-3",
        voice_id="voice-123",
        connector=connector,
        **kwargs,
    )


def two_chunks(msg):
    return [audio_message(b"\x01" * 160), audio_message(b"\x02" * 160), json.dumps({"done": True})]


# ── Message parsing ─────────────────────────────────────────────


class TestParseSynthesisMessage:
    def test_audio_chunk(self):
        msg = parse_synthesis_message(audio_message(b"abc"))
        assert msg == AudioChunk(data=b"abc")

    def test_done(self):
        msg = parse_synthesis_message('{"done": true, "context_id": "context-1"}')
        assert msg == GenerationDone(context_id="context-1")

    def test_error(self):
        msg = parse_synthesis_message('{"type": "error", "error": "bad voice"}')
        assert msg == BackendError(message="bad voice")

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"type": "timestamps"}', b"\xff\xfe"])
    def test_unrecognized(self, raw):
        assert isinstance(parse_synthesis_message(raw), Unrecognized)


# ── Connection ──────────────────────────────────────────────────


class TestConnect:
    async def test_connect_sends_priming_message(self):
        sock = FakeSocket()
        connector = FakeConnector(sock)
        tts = make_tts(connector)

        await tts.connect()

        assert tts.is_connected
        assert "api_key=test-key" in connector.urls[0]
        assert "cartesia_version=2024-11-13" in connector.urls[0]
        assert sock.sent == [{
            "model_id": "sonic-3",
            "transcript": "",
            "voice": {"mode": "id", "id": "voice-123"},
            "output_format": OUTPUT_FORMAT,
        }]
        await tts.disconnect()

    async def test_connect_is_idempotent(self):
        connector = FakeConnector(FakeSocket())
        tts = make_tts(connector)
        await tts.connect()
        await tts.connect()
        assert len(connector.urls) == 1
        await tts.disconnect()

    async def test_handshake_failure_raises_connection_error(self):
        tts = make_tts(FakeConnector(OSError("refused")))
        with pytest.raises(SynthesisConnectionError) as exc_info:
            await tts.connect()
        assert isinstance(exc_info.value, ConnectionError)
        assert not tts.is_connected


# ── Synthesis ───────────────────────────────────────────────────


class TestStreamText:
    async def test_request_shape_and_stable_context(self):
        sock = FakeSocket()
        tts = make_tts(FakeConnector(sock))
        await tts.connect()

        await tts.stream_text("Who's there?", continue_context=True)
        await tts.stream_text("Dave who?", continue_context=True)

        first, second = sock.sent[1], sock.sent[2]
        assert first["transcript"] == "Who's there?"
        assert first["continue"] is True
        assert first["model_id"] == "sonic-3"
        assert first["voice"] == {"mode": "id", "id": "voice-123"}
        assert first["output_format"]["encoding"] == "pcm_mulaw"
        assert first["output_format"]["sample_rate"] == 8000
        assert first["context_id"].startswith("context-")
        assert second["context_id"] == first["context_id"]
        await tts.disconnect()

    async def test_reconnects_when_not_connected(self):
        sock = FakeSocket()
        connector = FakeConnector(OSError("down"), OSError("still down"), sock)
        tts = make_tts(connector)

        await tts.stream_text("hello")

        assert len(connector.urls) == 3
        assert sock.sent[-1]["transcript"] == "hello"
        await tts.disconnect()

    async def test_gives_up_after_max_retries(self):
        connector = FakeConnector(OSError("a"), OSError("b"), OSError("c"))
        tts = make_tts(connector)
        with pytest.raises(SynthesisConnectionError):
            await tts.stream_text("hello")
        assert len(connector.urls) == 3

    async def test_send_failure_reconnects_on_fresh_socket(self):
        broken = FakeSocket(fail_requests=True)
        healthy = FakeSocket()
        tts = make_tts(FakeConnector(broken, healthy))
        await tts.connect()

        await tts.stream_text("hello")

        assert broken.closed
        assert healthy.sent[-1]["transcript"] == "hello"
        await tts.disconnect()

    async def test_closed_client_abandons_retries(self):
        connector = FakeConnector(FakeSocket())
        tts = make_tts(connector)
        await tts.connect()
        await tts.disconnect()

        with pytest.raises(SynthesisConnectionError):
            await tts.stream_text("too late")
        assert len(connector.urls) == 1


# ── Audio collection ────────────────────────────────────────────


class TestAudioCollection:
    async def test_wait_then_drain_once(self):
        tts = make_tts(FakeConnector(FakeSocket(reply=two_chunks)))
        await tts.connect()
        await tts.stream_text("Goodbye!")

        assert await tts.wait_for_audio(timeout=1.0) is True
        chunks = tts.get_audio_chunks()
        assert chunks == [b"\x01" * 160, b"\x02" * 160]
        assert tts.get_audio_chunks() == []
        await tts.disconnect()

    async def test_no_audio_times_out(self):
        tts = make_tts(FakeConnector(FakeSocket()))
        await tts.connect()
        await tts.stream_text("silence")
        assert await tts.wait_for_audio(timeout=0.1) is False
        await tts.disconnect()

    async def test_new_request_discards_stale_audio(self):
        sock = FakeSocket()
        tts = make_tts(FakeConnector(sock))
        await tts.connect()
        sock.push(audio_message(b"stale"))
        await asyncio.sleep(0.01)
        assert tts.buffered_chunks == 1

        await tts.stream_text("fresh")
        assert tts.buffered_chunks == 0
        await tts.disconnect()

    async def test_backend_error_is_not_audio(self):
        sock = FakeSocket()
        tts = make_tts(FakeConnector(sock))
        await tts.connect()
        sock.push(json.dumps({"type": "error", "error": "quota"}))
        sock.push("garbage")
        await asyncio.sleep(0.01)
        assert tts.buffered_chunks == 0
        assert tts.is_connected
        await tts.disconnect()


# ── Teardown ────────────────────────────────────────────────────


class TestDisconnect:
    async def test_disconnect_is_idempotent(self):
        sock = FakeSocket()
        tts = make_tts(FakeConnector(sock))
        await tts.connect()
        await tts.stream_text("hi")

        await tts.disconnect()
        await tts.disconnect()

        assert sock.closed
        assert not tts.is_connected
        assert tts.context_id is None
        assert tts.buffered_chunks == 0

    async def test_disconnect_without_connect(self):
        tts = make_tts(FakeConnector())
        await tts.disconnect()
