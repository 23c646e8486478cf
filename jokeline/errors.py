"""Error taxonomy for the call-session engine.

  SynthesisConnectionError  synthesis handshake/send failure after retries
  TranscriptionError        upload or response parsing failed; treated as no transcript
  JudgmentParseError        judge reply was not a valid verdict; degraded to a tie
  IncompleteJokeError       finalization without both a name and a punchline
"""


class JokelineError(Exception):
    """Base class for errors raised by jokeline."""


class SynthesisConnectionError(JokelineError, ConnectionError):
    """The speech synthesis socket could not be opened or used."""


class TranscriptionError(JokelineError):
    """The transcription backend failed or returned an unusable body."""


class JudgmentParseError(JokelineError, ValueError):
    """A judged comparison could not be parsed into a winner."""


class IncompleteJokeError(JokelineError, ValueError):
    """A joke was finalized before both name and punchline were captured."""
