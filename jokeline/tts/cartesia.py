"""Cartesia streaming TTS client.

One instance per call.  Text goes out over a persistent WebSocket; audio comes
back as base64 mulaw 8kHz chunks, already in Twilio's line format, so chunks
can be forwarded to the caller without transcoding.

Protocol (JSON text frames):

  → {"model_id", "transcript", "voice": {"mode": "id", "id"}, "context_id",
     "continue", "output_format": {"container": "raw", "encoding": "pcm_mulaw",
     "sample_rate": 8000}}
  ← {"data": "<base64 audio>", ...}      audio chunk
  ← {"done": true, ...}                  generation finished
  ← {"type": "error", "error": "..."}    backend error

The ``done`` marker is not a reliable end-of-utterance signal (it can arrive
before the last chunk is flushed to us), so ``wait_for_audio`` treats a quiet
gap after the last chunk as completion instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from jokeline.errors import SynthesisConnectionError

log = logging.getLogger("jokeline.tts.cartesia")

OUTPUT_FORMAT = {
    "container": "raw",
    "encoding": "pcm_mulaw",
    "sample_rate": 8000,
}

DEFAULT_URL = "wss://api.cartesia.ai/tts/websocket"
DEFAULT_VERSION = "2024-11-13"
DEFAULT_QUIET_INTERVAL = 0.3
MAX_RETRIES = 3
RETRY_BACKOFF = 1.0


# ── Inbound message variants ─────────────────────────────────────


@dataclass(frozen=True)
class AudioChunk:
    data: bytes


@dataclass(frozen=True)
class GenerationDone:
    context_id: str = ""


@dataclass(frozen=True)
class BackendError:
    message: str


@dataclass(frozen=True)
class Unrecognized:
    raw: str


SynthesisMessage = Union[AudioChunk, GenerationDone, BackendError, Unrecognized]


def parse_synthesis_message(raw: str | bytes) -> SynthesisMessage:
    """Classify one backend frame. Never raises."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        return Unrecognized(raw=text[:200])

    if not isinstance(msg, dict):
        return Unrecognized(raw=text[:200])

    data = msg.get("data")
    if isinstance(data, str) and data:
        try:
            return AudioChunk(data=base64.b64decode(data))
        except (binascii.Error, ValueError):
            return Unrecognized(raw=text[:200])

    if msg.get("done"):
        return GenerationDone(context_id=str(msg.get("context_id", "")))

    if msg.get("type") == "error" or "error" in msg:
        return BackendError(message=str(msg.get("error") or msg.get("message") or msg))

    return Unrecognized(raw=text[:200])


# ── Client ────────────────────────────────────────────────────────


Connector = Callable[[str], Awaitable[Any]]


class CartesiaSynthesizer:
    """Per-session streaming synthesis connection.

    Usage::

        tts = CartesiaSynthesizer(api_key=..., voice_id=...)
        await tts.connect()
        await tts.stream_text("Who's there?", continue_context=True)
        if await tts.wait_for_audio(timeout=2.0):
            for chunk in tts.get_audio_chunks():
                ...
        await tts.disconnect()
    """

    def __init__(
        self,
        api_key: str,
        model_id: str = "sonic-3",
        voice_id: str = "",
        url: str = DEFAULT_URL,
        version: str = DEFAULT_VERSION,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF,
        connector: Connector = websockets.connect,
    ) -> None:
        self._api_key = api_key
        self._model_id = model_id
        self._voice_id = voice_id
        self._url = url
        self._version = version
        self.quiet_interval = quiet_interval
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._connector = connector

        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._connected = False
        self._closed = False
        self._context_id: str | None = None
        self._audio: list[bytes] = []
        self._chunk_event = asyncio.Event()

    # ── State ────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    @property
    def context_id(self) -> str | None:
        return self._context_id

    @property
    def buffered_chunks(self) -> int:
        return len(self._audio)

    # ── Connection ───────────────────────────────────────────────

    def _voice(self) -> dict[str, str]:
        return {"mode": "id", "id": self._voice_id}

    def _endpoint(self) -> str:
        query = urlencode({"api_key": self._api_key, "cartesia_version": self._version})
        return f"{self._url}?{query}"

    async def connect(self) -> None:
        """Open the socket and prime it. No-op if already connected."""
        if self.is_connected:
            return
        self._closed = False
        await self._open()

    async def _open(self) -> None:
        if self._ws is not None:
            await self._close_socket()

        try:
            ws = await self._connector(self._endpoint())
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._connected = False
            raise SynthesisConnectionError(f"Cartesia handshake failed: {e}") from e

        self._ws = ws
        self._connected = True

        priming = {
            "model_id": self._model_id,
            "transcript": "",
            "voice": self._voice(),
            "output_format": OUTPUT_FORMAT,
        }
        try:
            await ws.send(json.dumps(priming))
        except (OSError, WebSocketException) as e:
            self._connected = False
            raise SynthesisConnectionError(f"Cartesia priming failed: {e}") from e

        self._reader = asyncio.create_task(self._read_loop(ws))
        log.info("Connected to Cartesia TTS (model=%s)", self._model_id)

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_message(parse_synthesis_message(raw))
        except ConnectionClosed as e:
            log.info("Cartesia socket closed: %s", e)
        finally:
            if self._ws is ws:
                self._connected = False

    def _handle_message(self, message: SynthesisMessage) -> None:
        if isinstance(message, AudioChunk):
            self._audio.append(message.data)
            self._chunk_event.set()
            log.debug("Audio chunk: %d bytes (total: %d chunks)",
                      len(message.data), len(self._audio))
        elif isinstance(message, GenerationDone):
            log.debug("Audio generation complete (context=%s)", message.context_id)
        elif isinstance(message, BackendError):
            log.error("Cartesia error: %s", message.message)
        else:
            log.debug("Ignoring unrecognized Cartesia message: %s", message.raw)

    # ── Synthesis ────────────────────────────────────────────────

    async def stream_text(self, text: str, continue_context: bool = False) -> None:
        """Send one synthesis request, reconnecting with linear backoff.

        Raises SynthesisConnectionError when the retry budget is spent or
        the client has been disconnected for good.
        """
        last_error: Exception | None = None

        for attempt in range(1, self._max_retries + 1):
            if self._closed:
                raise SynthesisConnectionError("Synthesizer is closed")

            if not self.is_connected:
                log.info("Cartesia not connected, reconnecting (attempt %d/%d)",
                         attempt, self._max_retries)
                try:
                    await self._open()
                except SynthesisConnectionError as e:
                    last_error = e
                    if attempt < self._max_retries:
                        await asyncio.sleep(self._retry_backoff * attempt)
                    continue

            try:
                await self._send_request(text, continue_context)
                return
            except (OSError, WebSocketException) as e:
                self._connected = False
                last_error = e
                log.warning("Cartesia send failed (attempt %d/%d): %s",
                            attempt, self._max_retries, e)
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_backoff * attempt)

        raise SynthesisConnectionError(
            f"Cartesia not connected after {self._max_retries} attempts"
        ) from last_error

    async def _send_request(self, text: str, continue_context: bool) -> None:
        if self._context_id is None:
            self._context_id = f"context-{int(time.time() * 1000)}"

        # Never mix chunks from the previous utterance into this one
        self._audio = []
        self._chunk_event.clear()

        message = {
            "model_id": self._model_id,
            "transcript": text,
            "voice": self._voice(),
            "context_id": self._context_id,
            "continue": continue_context,
            "output_format": OUTPUT_FORMAT,
        }
        log.info("Synthesizing: %r", text)
        await self._ws.send(json.dumps(message))

    async def wait_for_audio(self, timeout: float = 2.0) -> bool:
        """Wait until generation looks finished.

        Returns True once audio has arrived and no new chunk has come in for
        ``quiet_interval`` seconds.  When ``timeout`` passes, returns whether
        any audio arrived at all.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            wait = min(self.quiet_interval, remaining) if self._audio else remaining
            self._chunk_event.clear()
            try:
                await asyncio.wait_for(self._chunk_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                if self._audio and wait >= self.quiet_interval:
                    log.debug("Audio complete: %d chunks", len(self._audio))
                    return True

        if self._audio:
            log.info("Audio received (timeout): %d chunks", len(self._audio))
            return True
        log.warning("No audio received within %.1fs", timeout)
        return False

    def get_audio_chunks(self) -> list[bytes]:
        """Take everything buffered so far; each chunk is delivered once."""
        chunks, self._audio = self._audio, []
        return chunks

    # ── Teardown ─────────────────────────────────────────────────

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        self._connected = False

        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                log.debug("Cartesia socket already closed: %s", e)

    async def disconnect(self) -> None:
        """Release the connection. Safe to call multiple times."""
        self._closed = True
        await self._close_socket()
        self._context_id = None
        self._audio = []
        log.info("Cartesia TTS disconnected")
