"""VoiceChannel ABC and the inbound event variants it produces.

A channel wraps one duplex telephony transport.  Inbound traffic is parsed
into a small set of tagged variants; anything the channel does not
understand becomes ``Unrecognized`` rather than an exception, so one odd
message can never take a call down.

Audio stays in the line format (mulaw 8kHz) in both directions: the
synthesis backend already produces mulaw, and the codec only expands it to
PCM when an utterance is uploaded for transcription.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union


@dataclass(frozen=True)
class AudioFrame:
    """One inbound 20ms mulaw frame and when it arrived (monotonic seconds)."""

    payload: bytes
    received_at: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> float:
        return len(self.payload) / 8  # 8 mulaw bytes per ms at 8kHz


@dataclass(frozen=True)
class Connected:
    protocol: str = ""
    version: str = ""


@dataclass(frozen=True)
class StreamStarted:
    stream_sid: str
    call_sid: str = ""
    caller: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MediaReceived:
    frame: AudioFrame


@dataclass(frozen=True)
class StreamStopped:
    reason: str = "stop"


@dataclass(frozen=True)
class Unrecognized:
    event: str = ""


InboundEvent = Union[Connected, StreamStarted, MediaReceived, StreamStopped, Unrecognized]


class VoiceChannel(ABC):
    """Abstract voice channel for one live call."""

    @abstractmethod
    async def initialize(self) -> str:
        """Consume the transport's opening messages and return the stream id."""

    @abstractmethod
    def events(self) -> AsyncIterator[InboundEvent]:
        """Yield inbound events until the stream stops.

        The last event yielded is always a ``StreamStopped``, whether the
        caller hung up cleanly or the transport dropped.
        """

    @abstractmethod
    async def send_media(self, payload: bytes, sequence_number: int) -> bool:
        """Send one outbound mulaw frame. Returns False if the send failed."""

    @abstractmethod
    async def get_caller_info(self) -> dict[str, Any]:
        """Return caller metadata (stream id, call id, phone number)."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the transport. Safe to call multiple times."""
