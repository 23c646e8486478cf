"""Per-call session: one actor that drives a knock-knock conversation.

Each inbound Twilio stream gets a CallSession.  Everything that touches the
conversation context or the audio buffer happens on the session's own event
loop, one event at a time:

  pump task    channel.events()  ──▶ MediaReceived / StreamStopped
  ticker task  every tick_interval ──▶ Tick (at most one pending)
  turn task    transcription       ──▶ TranscriptReady
  playback     synthesize + send   ──▶ PlaybackDone
  finalize     rank + announce     ──▶ FinalizationDone

The I/O runs in short-lived tasks that report back through the queue, so a
slow transcription or a long playback never stalls inbound audio.  While a
turn (transcribe, then maybe reply) is in flight no new utterance is taken.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from jokeline.channels.base import MediaReceived, StreamStopped, VoiceChannel
from jokeline.config import Settings, settings as default_settings
from jokeline.conversation import (
    ConversationContext,
    compose_joke_text,
    create_conversation_context,
    get_response_for_state,
    update_conversation_state,
)
from jokeline.elo import EloRanker, RankingOutcome
from jokeline.errors import IncompleteJokeError, SynthesisConnectionError, TranscriptionError
from jokeline.segmenter import UtteranceSegmenter
from jokeline.stt.whisper import WhisperTranscriber
from jokeline.tts.cartesia import CartesiaSynthesizer

log = logging.getLogger("jokeline.session")

FRIENDLY = "<emotion value='friendly'/>"

GREETING = FRIENDLY + "Hi! Tell me your best knock knock joke. Go ahead!"
LAUGH = "<emotion value='excited'/>Ha ha! That's funny!"
PROCESSING = "Processing your joke..."
GOODBYE = "Goodbye!"
APOLOGY_TEXT = "Sorry, I couldn't process your joke. Please try again."
APOLOGY = "<emotion value='apologetic'/>" + APOLOGY_TEXT


def rating_message(rating: float) -> str:
    return f"Thank you! Your joke has been rated {rating:.1f}."


def best_joke_message(content: str, rating: float) -> str:
    return f"The current best joke is: {content}. It has a rating of {rating:.1f}."


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


# ── Session registry ─────────────────────────────────────────────

_active_sessions: dict[str, "CallSession"] = {}


def register_session(session: "CallSession") -> str:
    """Register a session and return its unique ID."""
    session_id = secrets.token_urlsafe(18)
    session._session_id = session_id
    session._started_at = time.time()
    _active_sessions[session_id] = session
    log.info("Session registered: %s (stream=%s)", session_id, session.stream_sid)
    return session_id


def unregister_session(session_id: str) -> None:
    """Remove a session from the registry."""
    _active_sessions.pop(session_id, None)
    log.info("Session unregistered: %s", session_id)


def get_active_sessions() -> dict[str, "CallSession"]:
    """Return all active sessions."""
    return _active_sessions


def get_session(session_id: str) -> "CallSession | None":
    """Look up a session by ID."""
    return _active_sessions.get(session_id)


# ── Internal events ──────────────────────────────────────────────


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class TranscriptReady:
    text: str


@dataclass(frozen=True)
class PlaybackDone:
    frames_sent: int = 0


@dataclass(frozen=True)
class FinalizationDone:
    outcome: Optional[RankingOutcome] = None


SessionEvent = Union[
    MediaReceived, StreamStopped, Tick, TranscriptReady, PlaybackDone, FinalizationDone,
]


class CallSession:
    """One caller's knock-knock joke, from greeting to goodbye.

    Typical lifecycle::

        session = CallSession(stream_sid, channel, synthesizer, transcriber, ranker)
        session.start(await channel.get_caller_info())
        register_session(session)
        try:
            await session.run()     # returns once the stream stops
        finally:
            unregister_session(session.session_id)
    """

    def __init__(
        self,
        stream_sid: str,
        channel: VoiceChannel,
        synthesizer: CartesiaSynthesizer,
        transcriber: WhisperTranscriber,
        ranker: EloRanker,
        config: Settings | None = None,
        segmenter: UtteranceSegmenter | None = None,
    ) -> None:
        cfg = config or default_settings
        self.stream_sid = stream_sid
        self._channel = channel
        self._tts = synthesizer
        self._stt = transcriber
        self._ranker = ranker
        self._segmenter = segmenter or UtteranceSegmenter(
            silence_threshold=cfg.silence_threshold,
            max_wait=cfg.max_wait,
            min_utterance_bytes=cfg.min_utterance_bytes,
        )

        self._tick_interval = cfg.tick_interval
        self._audio_timeout = cfg.tts_audio_timeout
        self._frame_interval = cfg.playback_frame_interval
        self._disconnect_delay = cfg.disconnect_delay

        # Registry metadata (set by register_session)
        self._session_id: str = ""
        self._started_at: float = 0.0
        self._caller_number: str = ""
        self._call_sid: str = ""

        self._context = create_conversation_context()
        self.processing = False
        self._sequence = 0

        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self._ticker_task: asyncio.Task | None = None
        self._turn_task: asyncio.Task | None = None
        self._playback_task: asyncio.Task | None = None
        self._finalize_task: asyncio.Task | None = None

        self._tick_pending = False
        self._turn_in_flight = False
        self._stopping = False
        self._done = False
        self._last_outcome: RankingOutcome | None = None

    # ── Public API ────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def context(self) -> ConversationContext:
        return self._context

    @property
    def segmenter(self) -> UtteranceSegmenter:
        return self._segmenter

    @property
    def is_done(self) -> bool:
        return self._done

    @property
    def last_outcome(self) -> RankingOutcome | None:
        return self._last_outcome

    def to_dict(self) -> dict[str, Any]:
        """Serialize session state for the admin API."""
        return {
            "session_id": self._session_id,
            "stream_sid": self.stream_sid,
            "caller": redact_pii(self._caller_number),
            "started_at": self._started_at,
            "state": self._context.state.value,
            "name": self._context.name,
            "punchline": self._context.punchline,
            "processing": self.processing,
            "frames_sent": self._sequence,
            "buffered_bytes": self._segmenter.buffered_bytes,
            "is_done": self._done,
        }

    def start(self, caller_info: dict[str, Any] | None = None) -> None:
        """Record caller metadata."""
        if caller_info:
            self._call_sid = caller_info.get("call_sid", "")
            self._caller_number = caller_info.get("phone_number", "")
        log.info(
            "Session started: stream=%s phone=%s",
            self.stream_sid,
            redact_pii(self._caller_number),
        )

    def submit(self, event: SessionEvent) -> None:
        """Queue an event for the actor loop."""
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Greet the caller and process events until the stream stops."""
        try:
            self._pump_task = asyncio.create_task(self._pump())
            await self.greet()
            if not self._stopping:
                self._start_ticker()

            while not self._done:
                event = await self._queue.get()
                try:
                    await self._dispatch(event)
                except Exception:
                    log.exception("Error handling %s", type(event).__name__)
        finally:
            await self._teardown()

    async def greet(self) -> None:
        try:
            await self._tts.connect()
        except SynthesisConnectionError as e:
            # stream_text reconnects on its own; keep the call alive
            log.error("Cartesia connect failed: %s", e)
        await self.say(GREETING, continue_context=False)

    # ── Background tasks ──────────────────────────────────────

    async def _pump(self) -> None:
        stopped = False
        try:
            async for event in self._channel.events():
                if isinstance(event, (MediaReceived, StreamStopped)):
                    self.submit(event)
                    stopped = isinstance(event, StreamStopped)
        except Exception:
            log.exception("Transport receive failed (stream=%s)", self.stream_sid)
        if not stopped:
            self.submit(StreamStopped(reason="closed"))

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            if not self._tick_pending:
                self._tick_pending = True
                self.submit(Tick())

    def _start_ticker(self) -> None:
        if self._ticker_task is None:
            self._ticker_task = asyncio.create_task(self._ticker())

    def _stop_ticker(self) -> None:
        task, self._ticker_task = self._ticker_task, None
        if task is not None and not task.done():
            task.cancel()

    # ── Event handling ────────────────────────────────────────

    async def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, MediaReceived):
            self._segmenter.add_chunk(event.frame.payload, at=event.frame.received_at)
        elif isinstance(event, Tick):
            self._tick_pending = False
            self._on_tick()
        elif isinstance(event, TranscriptReady):
            await self._on_transcript(event.text)
        elif isinstance(event, PlaybackDone):
            await self._on_playback_done()
        elif isinstance(event, FinalizationDone):
            await self._on_finalization_done(event.outcome)
        elif isinstance(event, StreamStopped):
            await self._on_stop(event.reason)

    def _on_tick(self) -> None:
        if self._turn_in_flight or self.processing or self._stopping:
            return
        if self._context.is_complete:
            return
        if not self._segmenter.should_fire():
            return

        audio = self._segmenter.utterance()
        self._turn_in_flight = True
        self._turn_task = asyncio.create_task(self._transcribe_turn(audio))

    async def _transcribe_turn(self, audio: bytes) -> None:
        text = ""
        try:
            text = await self.transcribe(audio)
        except Exception:
            log.exception("Transcription turn failed (stream=%s)", self.stream_sid)
        self.submit(TranscriptReady(text))

    async def _on_transcript(self, text: str) -> None:
        text = text.strip()
        if not text:
            self._turn_in_flight = False
            await self._maybe_finish_stop()
            return

        log.info("Transcript [%s]: %r", self._context.state.value, text)

        reply = get_response_for_state(self._context, text)
        if reply is not None:
            # the turn stays in flight until the reply has been played
            self._playback_task = asyncio.create_task(self._play_reply(reply))
            return

        update_conversation_state(self._context, text)
        self._turn_in_flight = False

        if self._context.is_complete and not self.processing:
            self._stop_ticker()
            self.processing = True
            self._finalize_task = asyncio.create_task(self._run_finalization())

        await self._maybe_finish_stop()

    async def _play_reply(self, reply: str) -> None:
        sent = 0
        try:
            sent = await self.say(reply, continue_context=True)
        finally:
            self.submit(PlaybackDone(frames_sent=sent))

    async def _on_playback_done(self) -> None:
        self._segmenter.reset()
        self._turn_in_flight = False
        await self._maybe_finish_stop()

    async def _run_finalization(self) -> None:
        outcome = None
        try:
            outcome = await self.finalize_joke()
        finally:
            self.submit(FinalizationDone(outcome))

    async def _on_finalization_done(self, outcome: RankingOutcome | None) -> None:
        self.processing = False
        await self._maybe_finish_stop()

    async def _on_stop(self, reason: str) -> None:
        if self._stopping:
            return
        log.info("Stream stopped (%s): stream=%s state=%s",
                 reason, self.stream_sid, self._context.state.value)
        self._stopping = True
        self._stop_ticker()
        await self._maybe_finish_stop()

    async def _maybe_finish_stop(self) -> None:
        """Run the final pass once stop was requested and no turn is pending."""
        if not self._stopping or self._turn_in_flight or self._done:
            return

        try:
            if not self.processing and not self._context.is_complete:
                text = await self.transcribe(self._segmenter.utterance())
                self._segmenter.reset()
                if text:
                    log.info("Final transcript: %r", text)
                    update_conversation_state(self._context, text)
                    if self._context.is_complete:
                        self.processing = True
                        try:
                            await self.finalize_joke()
                        finally:
                            self.processing = False
        except Exception:
            log.exception("Final pass failed (stream=%s)", self.stream_sid)
        finally:
            self._done = True

    # ── Speech I/O ────────────────────────────────────────────

    def _next_sequence(self) -> int:
        seq = self._sequence
        self._sequence += 1
        return seq

    async def transcribe(self, audio: bytes) -> str:
        """Transcribe one utterance. Short or failed audio gives ""."""
        if not self._segmenter.is_substantial(audio):
            return ""
        try:
            return (await self._stt.transcribe_mulaw(audio)).strip()
        except TranscriptionError as e:
            log.warning("Transcription failed: %s", e)
            return ""

    async def say(self, text: str, continue_context: bool = True) -> int:
        """Synthesize ``text`` and play it to the caller. Returns frames sent."""
        try:
            await self._tts.stream_text(text, continue_context=continue_context)
        except SynthesisConnectionError as e:
            log.error("Could not synthesize %r: %s", text, e)
            return 0

        if not await self._tts.wait_for_audio(timeout=self._audio_timeout):
            return 0

        sent = 0
        for chunk in self._tts.get_audio_chunks():
            if not await self._channel.send_media(chunk, self._next_sequence()):
                log.warning("Playback aborted after %d frames", sent)
                break
            sent += 1
            await asyncio.sleep(self._frame_interval)
        return sent

    # ── Finalization ──────────────────────────────────────────

    async def finalize_joke(self) -> RankingOutcome | None:
        """Rank the captured joke and read the result back to the caller."""
        try:
            joke_text = compose_joke_text(self._context)
            log.info("Joke complete: %r", joke_text)

            await self.say(LAUGH)
            await self.say(PROCESSING)

            outcome = await self._ranker.rank_new_joke(joke_text)
            self._last_outcome = outcome
            await self.say(FRIENDLY + rating_message(outcome.joke.elo_rating))

            if outcome.comparisons and outcome.best is not None:
                await self.say(best_joke_message(outcome.best.content, outcome.best.elo_rating))

            await self.say(GOODBYE)
            return outcome
        except IncompleteJokeError as e:
            log.warning("Cannot finalize: %s", e)
        except Exception:
            log.exception("Error processing joke (stream=%s)", self.stream_sid)

        await self.say(APOLOGY)
        return None

    # ── Teardown ──────────────────────────────────────────────

    async def _teardown(self) -> None:
        self._stop_ticker()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()

        try:
            await asyncio.sleep(self._disconnect_delay)
            pending = [
                t for t in (self._turn_task, self._playback_task, self._finalize_task)
                if t is not None and not t.done()
            ]
            if pending:
                log.info("Waiting for %d in-flight task(s) before disconnect", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            await self._tts.disconnect()
            self._done = True
            log.info("Session closed: stream=%s state=%s",
                     self.stream_sid, self._context.state.value)
