"""Whisper transcription over the OpenAI HTTP API.

Buffered caller audio is uploaded as a WAV file (multipart/form-data) and
the recognised text comes back as ``{"text": "..."}``.
"""

from __future__ import annotations

import logging

import httpx

from jokeline.audio import mulaw_to_wav
from jokeline.errors import TranscriptionError

log = logging.getLogger("jokeline.stt.whisper")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class WhisperTranscriber:
    """Request/response transcription client."""

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        language: str = "en",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def transcribe_wav(self, wav_bytes: bytes) -> str:
        """Upload a WAV file and return the transcript.

        Raises TranscriptionError on HTTP or response-shape failures.
        """
        try:
            resp = await self._client.post(
                f"{self._base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                files={"file": ("audio.wav", wav_bytes, "audio/wav")},
                data={"model": self._model, "language": self._language},
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            raise TranscriptionError(
                f"Transcription failed: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e

        if not isinstance(body, dict):
            raise TranscriptionError("Transcription response is not an object")

        text = body.get("text") or ""
        return str(text).strip()

    async def transcribe_mulaw(self, mulaw_bytes: bytes) -> str:
        """Transcribe raw Twilio mulaw 8kHz audio."""
        return await self.transcribe_wav(mulaw_to_wav(mulaw_bytes))

    async def aclose(self) -> None:
        await self._client.aclose()
