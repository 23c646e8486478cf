"""Knock-knock conversation FSM.

  WAITING_FOR_KNOCKKNOCK ──"knock knock"──▶ WAITING_FOR_NAME      reply "Who's there?"
  WAITING_FOR_NAME       ──<name>────────▶ WAITING_FOR_PUNCHLINE reply "<name> who?"
  WAITING_FOR_PUNCHLINE  ──<punchline>───▶ COMPLETED             no reply

WAITING_FOR_NAME stays put while the caller repeats "knock knock" or says
nothing.  COMPLETED is terminal.

``get_response_for_state`` only advances the context when it has a scripted
reply.  When it returns None the caller feeds the transcript to
``update_conversation_state`` instead (punchline capture, noise).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from jokeline.errors import IncompleteJokeError

log = logging.getLogger("jokeline.conversation")

WHO_IS_THERE = "Who's there?"

_KNOCK_FORMS = ("knock knock", "knockknock", "knock-knock")


class ConversationState(str, Enum):
    WAITING_FOR_KNOCKKNOCK = "waiting_for_knockknock"
    WAITING_FOR_NAME = "waiting_for_name"
    WAITING_FOR_PUNCHLINE = "waiting_for_punchline"
    COMPLETED = "completed"


class ConversationContext(BaseModel):
    """Mutable joke-capture state for a single call."""

    state: ConversationState = ConversationState.WAITING_FOR_KNOCKKNOCK
    name: Optional[str] = None
    punchline: Optional[str] = None
    full_transcript: str = ""

    @property
    def is_complete(self) -> bool:
        return self.state == ConversationState.COMPLETED


def create_conversation_context() -> ConversationContext:
    return ConversationContext()


def _normalize(text: str) -> str:
    return text.lower().strip()


def detect_knock_knock(text: str) -> bool:
    """True if the caller is (still) opening with "knock knock"."""
    normalized = _normalize(text)
    return (
        any(form in normalized for form in _KNOCK_FORMS)
        or normalized == "knock"
        or normalized.startswith("knock")
    )


def update_conversation_state(
    context: ConversationContext, transcript: str,
) -> ConversationContext:
    """Record the transcript and apply at most one transition."""
    context.full_transcript += " " + transcript
    normalized = _normalize(transcript)

    if context.state == ConversationState.WAITING_FOR_KNOCKKNOCK:
        if detect_knock_knock(transcript):
            context.state = ConversationState.WAITING_FOR_NAME

    elif context.state == ConversationState.WAITING_FOR_NAME:
        if normalized and not detect_knock_knock(transcript):
            context.name = transcript.strip()
            context.state = ConversationState.WAITING_FOR_PUNCHLINE
            log.info("Name captured: %r", context.name)

    elif context.state == ConversationState.WAITING_FOR_PUNCHLINE:
        if normalized:
            context.punchline = transcript.strip()
            context.state = ConversationState.COMPLETED
            log.info("Punchline captured: %r", context.punchline)

    return context


def get_response_for_state(
    context: ConversationContext, transcript: str,
) -> str | None:
    """Return the scripted reply for this transcript, advancing if there is one."""
    if context.state == ConversationState.WAITING_FOR_KNOCKKNOCK:
        if detect_knock_knock(transcript):
            update_conversation_state(context, transcript)
            return WHO_IS_THERE
        return None

    if context.state == ConversationState.WAITING_FOR_NAME:
        if _normalize(transcript) and not detect_knock_knock(transcript):
            update_conversation_state(context, transcript)
            return f"{context.name} who?"
        return None

    # WAITING_FOR_PUNCHLINE and COMPLETED have no scripted reply
    return None


def compose_joke_text(context: ConversationContext) -> str:
    """Render the captured joke as the text that gets stored and judged."""
    if not context.name or not context.punchline:
        raise IncompleteJokeError(
            f"Joke incomplete (name={context.name!r}, punchline={context.punchline!r})"
        )
    name = context.name
    return f"Knock knock. Who's there? {name}. {name} who? {context.punchline}"
