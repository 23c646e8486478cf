"""Speech synthesis clients."""

from .cartesia import CartesiaSynthesizer, parse_synthesis_message

__all__ = ["CartesiaSynthesizer", "parse_synthesis_message"]
