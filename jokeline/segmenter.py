"""Utterance segmentation for continuous telephony audio.

Twilio streams caller audio continuously, so there is no explicit
"end of speech" signal.  The segmenter buffers raw mulaw frames and, on each
periodic tick driven by the session, decides whether the buffer holds a
complete utterance worth transcribing:

  - silence:  no frame for longer than ``silence_threshold`` seconds, or
  - max wait: ``max_wait`` seconds since the last time it fired

Either rule requires a non-empty buffer.  Firing does not clear the buffer;
the session resets it explicitly after it has acted on the transcript.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

log = logging.getLogger("jokeline.segmenter")

DEFAULT_SILENCE_THRESHOLD = 0.8
DEFAULT_MAX_WAIT = 1.5
DEFAULT_MIN_UTTERANCE_BYTES = 100


class UtteranceSegmenter:
    """Buffers inbound audio and decides when it forms an utterance."""

    def __init__(
        self,
        silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
        max_wait: float = DEFAULT_MAX_WAIT,
        min_utterance_bytes: int = DEFAULT_MIN_UTTERANCE_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.silence_threshold = silence_threshold
        self.max_wait = max_wait
        self.min_utterance_bytes = min_utterance_bytes
        self._clock = clock

        self._chunks: list[bytes] = []
        self._last_activity = clock()
        # max wait counts as already elapsed until the first firing
        self._last_trigger = float("-inf")

    @property
    def buffered_bytes(self) -> int:
        return sum(len(c) for c in self._chunks)

    @property
    def has_audio(self) -> bool:
        return bool(self._chunks)

    @property
    def silence_duration(self) -> float:
        """Seconds since the last inbound frame."""
        return self._clock() - self._last_activity

    def add_chunk(self, chunk: bytes, at: float | None = None) -> None:
        """Append one inbound frame and mark activity."""
        self._chunks.append(chunk)
        self._last_activity = self._clock() if at is None else at

    def should_fire(self, now: float | None = None) -> bool:
        """Return True if the buffer should be transcribed now.

        Re-stamps the trigger time when it fires.
        """
        if not self._chunks:
            return False

        if now is None:
            now = self._clock()

        if now - self._last_activity > self.silence_threshold:
            self._last_trigger = now
            return True

        if now - self._last_trigger >= self.max_wait:
            self._last_trigger = now
            return True

        return False

    def utterance(self) -> bytes:
        """Concatenated buffer contents (does not clear)."""
        return b"".join(self._chunks)

    def is_substantial(self, audio: bytes) -> bool:
        """Short buffers are line noise; they never reach transcription."""
        return len(audio) >= self.min_utterance_bytes

    def reset(self) -> None:
        """Drop buffered audio and restart the silence timer.

        The max-wait timer is cleared, so the next tick with audio fires.
        """
        dropped = self.buffered_bytes
        self._chunks = []
        self._last_activity = self._clock()
        self._last_trigger = float("-inf")
        if dropped:
            log.debug("Segmenter reset, dropped %d bytes", dropped)
