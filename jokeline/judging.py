"""Judged pairwise joke comparisons via an OpenAI chat model.

The judge is asked for strict JSON::

    {"winner": "joke1" | "joke2" | "tie", "reasoning": "..."}

Anything else (malformed JSON, unknown winner, an API failure) is scored as
a tie.  A single bad verdict must never abort ranking a caller's joke.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Literal, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel

from jokeline.errors import JudgmentParseError
from jokeline.store.base import Joke

log = logging.getLogger("jokeline.judging")

Winner = Literal["joke1", "joke2", "tie"]

_VALID_WINNERS = ("joke1", "joke2", "tie")

SYSTEM_PROMPT = "You are a judge of knockknock jokes. Respond only with valid JSON."


class ComparisonResult(BaseModel):
    """Outcome of one judged comparison. joke1 is always the new joke."""

    winner: Winner = "tie"
    reasoning: Optional[str] = None


TIE = ComparisonResult(winner="tie")


def build_prompt(joke1: str, joke2: str) -> str:
    return (
        "You are judging two knockknock jokes. Determine which one is funnier.\n\n"
        f'Joke 1: "{joke1}"\n\n'
        f'Joke 2: "{joke2}"\n\n'
        "Respond with ONLY a JSON object in this exact format:\n"
        "{\n"
        '  "winner": "joke1" | "joke2" | "tie",\n'
        '  "reasoning": "brief explanation"\n'
        "}"
    )


def parse_judgment(content: str | None) -> ComparisonResult:
    """Parse the judge's reply. Raises JudgmentParseError if it is not a verdict."""
    if not content:
        raise JudgmentParseError("Empty judgment")

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise JudgmentParseError(f"Judgment is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise JudgmentParseError(f"Judgment is not an object: {type(data).__name__}")

    winner = data.get("winner")
    if winner not in _VALID_WINNERS:
        raise JudgmentParseError(f"Unknown winner: {winner!r}")

    reasoning = data.get("reasoning")
    return ComparisonResult(
        winner=winner,
        reasoning=str(reasoning) if reasoning is not None else None,
    )


class JokeJudge:
    """Compares two jokes with a chat completion."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._temperature = temperature

    async def compare(self, joke1: str, joke2: str) -> ComparisonResult:
        """Judge joke1 against joke2. Never raises for a bad verdict."""
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(joke1, joke2)},
                ],
                response_format={"type": "json_object"},
                temperature=self._temperature,
            )
        except OpenAIError as e:
            log.warning("Judge request failed, scoring as tie: %s", e)
            return TIE

        content = response.choices[0].message.content if response.choices else None

        try:
            result = parse_judgment(content)
        except JudgmentParseError as e:
            log.warning("Unparseable judgment, scoring as tie: %s", e)
            return TIE

        log.debug("Judgment: %s (%s)", result.winner, result.reasoning)
        return result

    async def compare_against_many(
        self, new_joke: str, existing: list[Joke],
    ) -> list[tuple[Joke, ComparisonResult]]:
        """Judge the new joke against each existing one concurrently.

        Results come back in the same order as ``existing``.
        """
        results = await asyncio.gather(
            *(self.compare(new_joke, joke.content) for joke in existing)
        )
        return list(zip(existing, results))

    async def aclose(self) -> None:
        await self._client.close()
