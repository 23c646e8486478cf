"""FastAPI application: Twilio webhooks, the Media Stream socket and joke APIs.

Endpoints:

  GET  /health            Health check
  POST /twilio/voice      Twilio webhook: returns TwiML to connect a Media Stream
  WS   /twilio/stream     Twilio Media Stream WebSocket (mulaw 8kHz audio)
  POST /twilio/recording  Recorded-call webhook: prompt, then rank the recording
  GET  /best-joke         Highest-rated joke
  GET  /jokes             Top jokes by rating
  GET  /api/sessions      Active call sessions (admin)

The live flow:
  1. Incoming call hits POST /twilio/voice
  2. We return TwiML with <Connect><Stream> pointing to /twilio/stream
  3. Twilio opens a WebSocket to /twilio/stream with mulaw audio
  4. A CallSession runs the knock-knock conversation until the stream stops
"""

from __future__ import annotations

# Load .env into os.environ before anything reads configuration
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from xml.etree.ElementTree import Element, SubElement, tostring

from jokeline.config import Settings, settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

import httpx
from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from jokeline.auth import require_admin_token
from jokeline.channels.twilio_channel import TwilioMediaStreamChannel
from jokeline.elo import EloRanker
from jokeline.errors import IncompleteJokeError, TranscriptionError
from jokeline.judging import JokeJudge
from jokeline.recording import process_recording
from jokeline.session import (
    APOLOGY_TEXT,
    CallSession,
    best_joke_message,
    get_active_sessions,
    get_session,
    rating_message,
    redact_pii,
    register_session,
    unregister_session,
)
from jokeline.store import JokeStore, SqliteJokeStore
from jokeline.stt.whisper import WhisperTranscriber
from jokeline.tts.cartesia import CartesiaSynthesizer

log = logging.getLogger("jokeline.app")

_START_TIME = time.time()

RECORDING_PROMPT = "Hi! Tell me a knock knock joke when you are ready."
NO_RECORDING = "I did not receive a recording. Goodbye."
RECORDING_MAX_LENGTH = 30


def _twiml(response_el: Element) -> Response:
    twiml = tostring(response_el, encoding="unicode", xml_declaration=True)
    return Response(content=twiml, media_type="application/xml")


def _say(parent: Element, text: str) -> None:
    say_el = SubElement(parent, "Say")
    say_el.set("voice", "alice")
    say_el.text = text


def create_app(store: JokeStore | None = None, config: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass ``store`` to share an existing joke store (tests use an in-memory
    one); otherwise a SQLite store at ``database_path`` is opened on startup.
    """
    cfg = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if getattr(app.state, "store", None) is None:
            owned = SqliteJokeStore(cfg.database_path, initial_rating=cfg.elo_initial_rating)
            app.state.store = owned
            log.info("Joke store opened at %s", cfg.database_path)
        try:
            yield
        finally:
            if owned is not None:
                owned.close()

    app = FastAPI(
        title="Jokeline",
        description="Knock-knock jokes over the phone, ranked by Elo",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.settings = cfg

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check: confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Twilio voice webhook ───────────────────────────────────

    @app.post("/twilio/voice")
    async def twilio_voice(request: Request) -> Response:
        """Twilio webhook for incoming calls.

        Returns TwiML that tells Twilio to open a Media Stream
        WebSocket back to our /twilio/stream endpoint.  Twilio requires
        wss://, including behind local tunnels.
        """
        host = request.headers.get("host", f"localhost:{cfg.port}")
        stream_url = f"wss://{host}/twilio/stream"

        response_el = Element("Response")
        connect_el = SubElement(response_el, "Connect")
        stream_el = SubElement(connect_el, "Stream")
        stream_el.set("url", stream_url)

        log.info("Twilio voice webhook: connecting stream to %s", stream_url)
        return _twiml(response_el)

    # ── Twilio Media Stream WebSocket ──────────────────────────

    @app.websocket("/twilio/stream")
    async def twilio_stream(websocket: WebSocket) -> None:
        """Run one CallSession for the lifetime of the Media Stream."""
        await websocket.accept()
        log.info("Twilio Media Stream WebSocket connected")

        channel = TwilioMediaStreamChannel(websocket)
        sid = None
        transcriber = None
        judge = None

        try:
            stream_sid = await channel.initialize()

            caller_info = await channel.get_caller_info()
            log.info(
                "Call from %s (call_sid=%s)",
                redact_pii(caller_info.get("phone_number", "")),
                caller_info.get("call_sid", "unknown"),
            )

            transcriber = _create_transcriber(cfg)
            judge = _create_judge(cfg)
            session = CallSession(
                stream_sid,
                channel,
                synthesizer=_create_synthesizer(cfg),
                transcriber=transcriber,
                ranker=_create_ranker(app.state.store, judge, cfg),
                config=cfg,
            )
            session.start(caller_info)
            sid = register_session(session)

            await session.run()

        except WebSocketDisconnect:
            log.info("Twilio stream closed before start")
        except Exception as e:
            log.error("Twilio stream error: %s", e, exc_info=True)
        finally:
            if sid:
                unregister_session(sid)
            if transcriber is not None:
                await transcriber.aclose()
            if judge is not None:
                await judge.aclose()
            await channel.close()
            log.info("Twilio Media Stream ended")

    # ── Recorded-call webhook ──────────────────────────────────

    @app.post("/twilio/recording")
    async def twilio_recording(request: Request) -> Response:
        """Prompt for a recorded joke, or rank the recording Twilio posts back."""
        form = await request.form()
        recording_url = form.get("RecordingUrl") or request.query_params.get("RecordingUrl")

        response_el = Element("Response")

        if not recording_url:
            _say(response_el, RECORDING_PROMPT)
            record_el = SubElement(response_el, "Record")
            record_el.set("maxLength", str(RECORDING_MAX_LENGTH))
            record_el.set("action", "/twilio/recording")
            _say(response_el, NO_RECORDING)
            return _twiml(response_el)

        log.info("Processing recording %s", recording_url)
        transcriber = _create_transcriber(cfg)
        judge = _create_judge(cfg)
        try:
            async with httpx.AsyncClient(timeout=30.0) as http:
                outcome = await process_recording(
                    str(recording_url),
                    http,
                    transcriber,
                    _create_ranker(app.state.store, judge, cfg),
                    auth=_twilio_auth(cfg),
                )
        except (IncompleteJokeError, TranscriptionError) as e:
            log.warning("Could not rank recording: %s", e)
            _say(response_el, APOLOGY_TEXT)
            return _twiml(response_el)
        except Exception as e:
            log.error("Recording processing failed: %s", e, exc_info=True)
            _say(response_el, APOLOGY_TEXT)
            return _twiml(response_el)
        finally:
            await transcriber.aclose()
            await judge.aclose()

        _say(response_el, rating_message(outcome.joke.elo_rating))
        if outcome.comparisons and outcome.best is not None:
            _say(response_el, best_joke_message(outcome.best.content, outcome.best.elo_rating))
        _say(response_el, "Goodbye!")
        return _twiml(response_el)

    # ── Joke API ───────────────────────────────────────────────

    @app.get("/best-joke")
    async def best_joke() -> JSONResponse:
        joke = await app.state.store.best()
        if joke is None:
            return JSONResponse({"error": "No jokes found"})
        return JSONResponse({"joke": joke.content, "rating": joke.elo_rating, "id": joke.id})

    @app.get("/jokes")
    async def list_jokes(limit: int = Query(default=10, ge=1, le=100)) -> JSONResponse:
        jokes = await app.state.store.top(limit)
        return JSONResponse([j.model_dump(mode="json") for j in jokes])

    # ── Admin API ──────────────────────────────────────────────

    @app.get("/api/sessions", dependencies=[Depends(require_admin_token)])
    async def list_sessions() -> JSONResponse:
        """Return a summary of all active call sessions."""
        sessions = get_active_sessions()
        return JSONResponse({
            "sessions": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
        })

    @app.get("/api/sessions/{session_id}", dependencies=[Depends(require_admin_token)])
    async def get_call_session(session_id: str) -> JSONResponse:
        session = get_session(session_id)
        if not session:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return JSONResponse(session.to_dict())

    return app


# ── Helper functions ──────────────────────────────────────────────


def _create_synthesizer(cfg: Settings) -> CartesiaSynthesizer:
    return CartesiaSynthesizer(
        api_key=cfg.cartesia_api_key,
        model_id=cfg.cartesia_model_id,
        voice_id=cfg.cartesia_voice_id,
        url=cfg.cartesia_url,
        version=cfg.cartesia_version,
        quiet_interval=cfg.tts_quiet_interval,
    )


def _create_transcriber(cfg: Settings) -> WhisperTranscriber:
    return WhisperTranscriber(
        api_key=cfg.openai_api_key,
        model=cfg.transcription_model,
        language=cfg.transcription_language,
        base_url=cfg.openai_base_url,
    )


def _create_judge(cfg: Settings) -> JokeJudge:
    return JokeJudge(
        api_key=cfg.openai_api_key,
        model=cfg.openai_model,
        base_url=cfg.openai_base_url,
    )


def _create_ranker(store: JokeStore, judge: JokeJudge, cfg: Settings) -> EloRanker:
    return EloRanker(
        store,
        judge,
        k_factor=cfg.elo_k_factor,
        sample_size=cfg.comparison_sample_size,
    )


def _twilio_auth(cfg: Settings) -> tuple[str, str] | None:
    if cfg.twilio_account_sid and cfg.twilio_auth_token:
        return (cfg.twilio_account_sid, cfg.twilio_auth_token)
    return None


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    for warning in settings.validate_startup():
        log.warning(warning)

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "jokeline.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
