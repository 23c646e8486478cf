"""Telephony transports."""

from .base import AudioFrame, InboundEvent, VoiceChannel
from .twilio_channel import TwilioMediaStreamChannel, parse_twilio_message

__all__ = [
    "AudioFrame",
    "InboundEvent",
    "TwilioMediaStreamChannel",
    "VoiceChannel",
    "parse_twilio_message",
]
