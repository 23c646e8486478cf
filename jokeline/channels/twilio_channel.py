"""TwilioMediaStreamChannel: VoiceChannel for Twilio Media Streams.

Twilio Media Streams deliver audio over a WebSocket as base64-encoded
mulaw (G.711 u-law) at 8kHz mono, in 20ms frames.

Protocol reference:
  https://www.twilio.com/docs/voice/media-streams/websocket-messages

WebSocket message flow:
  ← {"event":"connected", "protocol":"Call", "version":"1.0.0"}
  ← {"event":"start",     "start":{"streamSid":"...","callSid":"...","from":"+1..."}}
  ← {"event":"media",     "media":{"payload":"<base64 mulaw>","timestamp":"..."}}
  ← {"event":"stop"}

  → {"event":"media", "streamSid":"...", "media":{"payload":"<base64 mulaw>"},
     "sequenceNumber":"0"}
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, AsyncIterator

from fastapi import WebSocket, WebSocketDisconnect

from jokeline.channels.base import (
    AudioFrame,
    Connected,
    InboundEvent,
    MediaReceived,
    StreamStarted,
    StreamStopped,
    Unrecognized,
    VoiceChannel,
)

log = logging.getLogger("jokeline.twilio_channel")


def parse_twilio_message(raw: str) -> InboundEvent:
    """Parse one Twilio frame into an InboundEvent. Never raises."""
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return Unrecognized(event="<invalid json>")

    if not isinstance(msg, dict):
        return Unrecognized(event="<not an object>")

    event = msg.get("event")

    if event == "connected":
        return Connected(
            protocol=str(msg.get("protocol", "")),
            version=str(msg.get("version", "")),
        )

    if event == "start":
        start = msg.get("start")
        if not isinstance(start, dict) or not start.get("streamSid"):
            return Unrecognized(event="start")
        return StreamStarted(
            stream_sid=str(start["streamSid"]),
            call_sid=str(start.get("callSid", "")),
            caller=str(start.get("from", "")),
            metadata=start,
        )

    if event == "media":
        media = msg.get("media")
        payload = media.get("payload") if isinstance(media, dict) else None
        if not isinstance(payload, str):
            return Unrecognized(event="media")
        try:
            return MediaReceived(frame=AudioFrame(payload=base64.b64decode(payload)))
        except (binascii.Error, ValueError):
            return Unrecognized(event="media")

    if event == "stop":
        return StreamStopped(reason="stop")

    # mark, dtmf, and anything newer
    return Unrecognized(event=str(event))


class TwilioMediaStreamChannel(VoiceChannel):
    """VoiceChannel implementation for Twilio Media Streams over WebSocket.

    Usage::

        @app.websocket("/twilio/stream")
        async def twilio_stream(ws: WebSocket):
            await ws.accept()
            channel = TwilioMediaStreamChannel(ws)
            stream_sid = await channel.initialize()  # wait for 'start'

            async for event in channel.events():
                ...
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._stream_sid: str = ""
        self._call_sid: str = ""
        self._caller_number: str = ""
        self._start_metadata: dict[str, Any] = {}
        self._connected = False
        self._stopped = False
        self._closed = False

    @property
    def stream_sid(self) -> str:
        return self._stream_sid

    async def initialize(self) -> str:
        """Wait for the Twilio 'connected' and 'start' events.

        Must be called after the WebSocket is accepted and before
        calling events().  Populates stream/call SID and caller metadata.
        """
        while not self._stream_sid:
            event = parse_twilio_message(await self._ws.receive_text())

            if isinstance(event, Connected):
                log.info(
                    "Twilio connected: protocol=%s version=%s",
                    event.protocol,
                    event.version,
                )
                self._connected = True

            elif isinstance(event, StreamStarted):
                self._stream_sid = event.stream_sid
                self._call_sid = event.call_sid
                self._caller_number = event.caller
                self._start_metadata = event.metadata
                log.info(
                    "Twilio stream started: stream_sid=%s call_sid=%s",
                    self._stream_sid,
                    self._call_sid,
                )

            elif isinstance(event, StreamStopped):
                raise WebSocketDisconnect(code=1000, reason="Stream stopped before start")

        return self._stream_sid

    async def events(self) -> AsyncIterator[InboundEvent]:
        """Yield media frames until 'stop' or the WebSocket closes."""
        while not self._stopped:
            try:
                raw = await self._ws.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                log.info("Twilio WebSocket closed")
                self._stopped = True
                yield StreamStopped(reason="closed")
                return

            event = parse_twilio_message(raw)

            if isinstance(event, MediaReceived):
                yield event
            elif isinstance(event, StreamStopped):
                log.info("Twilio stream stopped")
                self._stopped = True
                yield event
                return
            elif isinstance(event, Unrecognized):
                log.debug("Ignoring Twilio event: %s", event.event)

    async def send_media(self, payload: bytes, sequence_number: int) -> bool:
        """Send one mulaw frame back to Twilio."""
        if not self._stream_sid:
            log.warning("Cannot send audio: stream not initialized")
            return False
        if self._closed:
            return False

        message = {
            "event": "media",
            "streamSid": self._stream_sid,
            "media": {"payload": base64.b64encode(payload).decode("ascii")},
            "sequenceNumber": str(sequence_number),
        }
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            log.warning("Failed to send audio to Twilio: %s", e)
            return False
        return True

    async def get_caller_info(self) -> dict[str, Any]:
        """Return Twilio call metadata."""
        return {
            "phone_number": self._caller_number,
            "call_sid": self._call_sid,
            "stream_sid": self._stream_sid,
            "transport": "twilio",
            "metadata": self._start_metadata,
        }

    async def close(self) -> None:
        """Close the Twilio Media Stream WebSocket."""
        if self._closed:
            return
        self._closed = True
        self._stopped = True
        try:
            await self._ws.close()
        except RuntimeError:
            pass  # Already closed
        log.info("Twilio channel closed (call_sid=%s)", self._call_sid)
