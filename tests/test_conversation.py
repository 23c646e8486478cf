"""Tests for the knock-knock conversation state machine."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from jokeline.conversation import (
    WHO_IS_THERE,
    ConversationState,
    compose_joke_text,
    create_conversation_context,
    detect_knock_knock,
    get_response_for_state,
    update_conversation_state,
)
from jokeline.errors import IncompleteJokeError


class TestDetectKnockKnock:
    @pytest.mark.parametrize("text", [
        "Knock knock",
        "knockknock",
        "KNOCK-KNOCK!",
        "knock",
        "Knock, knock.",
        "  knock knock, who wants a joke  ",
    ])
    def test_detects_openers(self, text):
        assert detect_knock_knock(text) is True

    @pytest.mark.parametrize("text", ["Dave", "who knocks", "", "Hello there"])
    def test_rejects_other_text(self, text):
        assert detect_knock_knock(text) is False


class TestScriptedReplies:
    def test_full_joke_flow(self):
        ctx = create_conversation_context()

        assert get_response_for_state(ctx, "Knock knock") == WHO_IS_THERE
        assert ctx.state == ConversationState.WAITING_FOR_NAME

        assert get_response_for_state(ctx, " Dave ") == "Dave who?"
        assert ctx.state == ConversationState.WAITING_FOR_PUNCHLINE
        assert ctx.name == "Dave"

        # No scripted reply for the punchline; the caller updates instead
        assert get_response_for_state(ctx, "Dave's not here, man.") is None
        assert ctx.state == ConversationState.WAITING_FOR_PUNCHLINE

        update_conversation_state(ctx, "Dave's not here, man.")
        assert ctx.state == ConversationState.COMPLETED
        assert ctx.punchline == "Dave's not here, man."
        assert ctx.is_complete

    def test_no_reply_leaves_context_untouched(self):
        ctx = create_conversation_context()
        assert get_response_for_state(ctx, "Hello?") is None
        assert ctx.state == ConversationState.WAITING_FOR_KNOCKKNOCK
        assert ctx.full_transcript == ""

    def test_repeated_knock_knock_while_waiting_for_name(self):
        ctx = create_conversation_context()
        get_response_for_state(ctx, "knock knock")

        assert get_response_for_state(ctx, "knock knock") is None
        update_conversation_state(ctx, "knock knock")
        assert ctx.state == ConversationState.WAITING_FOR_NAME
        assert ctx.name is None

    def test_completed_has_no_reply(self):
        ctx = create_conversation_context()
        get_response_for_state(ctx, "knock knock")
        get_response_for_state(ctx, "Lettuce")
        update_conversation_state(ctx, "Lettuce in, it's cold out here!")
        assert get_response_for_state(ctx, "knock knock") is None


class TestUpdateConversationState:
    def test_transcript_is_appended(self):
        ctx = create_conversation_context()
        update_conversation_state(ctx, "hello")
        update_conversation_state(ctx, "knock knock")
        assert ctx.full_transcript == " hello knock knock"

    def test_noise_before_opener_is_ignored(self):
        ctx = create_conversation_context()
        update_conversation_state(ctx, "um, hi")
        assert ctx.state == ConversationState.WAITING_FOR_KNOCKKNOCK

    def test_blank_name_is_ignored(self):
        ctx = create_conversation_context()
        update_conversation_state(ctx, "knock knock")
        update_conversation_state(ctx, "   ")
        assert ctx.state == ConversationState.WAITING_FOR_NAME

    def test_blank_punchline_is_ignored(self):
        ctx = create_conversation_context()
        update_conversation_state(ctx, "knock knock")
        update_conversation_state(ctx, "Boo")
        update_conversation_state(ctx, "  ")
        assert ctx.state == ConversationState.WAITING_FOR_PUNCHLINE

    def test_completed_is_terminal(self):
        ctx = create_conversation_context()
        for text in ("knock knock", "Boo", "Don't cry, it's just a joke!"):
            update_conversation_state(ctx, text)
        update_conversation_state(ctx, "something else entirely")

        assert ctx.state == ConversationState.COMPLETED
        assert ctx.punchline == "Don't cry, it's just a joke!"
        assert ctx.full_transcript.endswith("something else entirely")

    def test_returns_same_context(self):
        ctx = create_conversation_context()
        assert update_conversation_state(ctx, "knock knock") is ctx


class TestComposeJokeText:
    def test_composes_canonical_text(self):
        ctx = create_conversation_context()
        for text in ("knock knock", "Gopher", "Gopher a walk with me?"):
            update_conversation_state(ctx, text)
        assert compose_joke_text(ctx) == (
            "Knock knock. Who's there? Gopher. Gopher who? Gopher a walk with me?"
        )

    def test_incomplete_joke_raises(self):
        ctx = create_conversation_context()
        update_conversation_state(ctx, "knock knock")
        update_conversation_state(ctx, "Gopher")
        with pytest.raises(IncompleteJokeError):
            compose_joke_text(ctx)

    def test_incomplete_joke_is_a_value_error(self):
        with pytest.raises(ValueError):
            compose_joke_text(create_conversation_context())
