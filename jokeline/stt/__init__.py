"""Speech-to-text clients."""

from .whisper import WhisperTranscriber

__all__ = ["WhisperTranscriber"]
