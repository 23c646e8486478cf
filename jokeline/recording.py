"""Recorded-call path: rank a joke from a finished Twilio recording.

Instead of the live conversation, the caller tells the whole joke in one go
and Twilio posts the recording URL back to us.  The transcript is searched
for a knock-knock joke, which is then ranked like any other.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx

from jokeline.elo import EloRanker, RankingOutcome
from jokeline.errors import IncompleteJokeError, TranscriptionError
from jokeline.stt.whisper import WhisperTranscriber

log = logging.getLogger("jokeline.recording")

MIN_JOKE_LENGTH = 20

_KNOCK_KNOCK_RE = re.compile(r"knock\s+knock[\s\S]*", re.IGNORECASE)


def extract_knock_knock_joke(transcript: str) -> Optional[str]:
    """Return the joke starting at the first "knock knock", or None."""
    normalized = transcript.lower().strip()
    if "knock knock" not in normalized:
        return None

    match = _KNOCK_KNOCK_RE.search(normalized)
    if not match:
        return None

    joke = match.group(0).strip()
    if len(joke) < MIN_JOKE_LENGTH:
        return None
    return joke


async def download_recording(
    recording_url: str,
    http: httpx.AsyncClient,
    auth: tuple[str, str] | None = None,
) -> bytes:
    """Fetch the recording audio (WAV is Twilio's default format)."""
    try:
        resp = await http.get(recording_url, auth=auth, follow_redirects=True)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise TranscriptionError(f"Recording download failed: {e}") from e
    log.info("Downloaded recording: %d bytes", len(resp.content))
    return resp.content


async def process_recording(
    recording_url: str,
    http: httpx.AsyncClient,
    transcriber: WhisperTranscriber,
    ranker: EloRanker,
    auth: tuple[str, str] | None = None,
) -> RankingOutcome:
    """Download, transcribe, extract and rank.

    Raises IncompleteJokeError when the transcript holds no usable joke, and
    TranscriptionError when the audio could not be fetched or transcribed.
    """
    audio = await download_recording(recording_url, http, auth=auth)
    transcript = await transcriber.transcribe_wav(audio)
    log.info("Recording transcript: %r", transcript)

    joke = extract_knock_knock_joke(transcript)
    if joke is None:
        raise IncompleteJokeError("Could not extract a valid knock knock joke from the recording")

    return await ranker.rank_new_joke(joke)
