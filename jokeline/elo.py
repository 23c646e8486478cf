"""Elo ratings for jokes from judged pairwise comparisons.

A new joke is ranked by judging it against a sample of the strongest
existing jokes.  The judging calls run concurrently, but updates are applied
one pair at a time in sample order: each pair uses the new joke's latest
rating, and both sides are persisted before the next pair is scored.  The
final rating therefore depends on comparison order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from jokeline.judging import JokeJudge, Winner
from jokeline.store.base import Joke, JokeStore

log = logging.getLogger("jokeline.elo")

DEFAULT_K_FACTOR = 32.0
DEFAULT_SAMPLE_SIZE = 5

_SCORES: dict[str, float] = {"joke1": 1.0, "joke2": 0.0, "tie": 0.5}


def expected_score(rating_a: float, rating_b: float) -> float:
    """Probability that A beats B."""
    return 1 / (1 + 10 ** ((rating_b - rating_a) / 400))


def round_rating(value: float) -> float:
    """Round to cents with halves going up (1500.125 -> 1500.13)."""
    return math.floor(value * 100 + 0.5) / 100


def calculate_elo(
    rating_a: float,
    rating_b: float,
    score_a: float,
    k_factor: float = DEFAULT_K_FACTOR,
) -> tuple[float, float]:
    """Return the new (A, B) ratings after one match, rounded to 2 places.

    ``score_a`` is 1 for a win, 0 for a loss, 0.5 for a tie.
    """
    expected_a = expected_score(rating_a, rating_b)
    expected_b = 1 - expected_a

    new_a = rating_a + k_factor * (score_a - expected_a)
    new_b = rating_b + k_factor * ((1 - score_a) - expected_b)
    return round_rating(new_a), round_rating(new_b)


def score_for_winner(winner: Winner) -> float:
    return _SCORES.get(winner, 0.5)


@dataclass
class RankingOutcome:
    """Result of ranking one new joke."""

    joke: Joke
    comparisons: int
    best: Optional[Joke] = None


class EloRanker:
    """Stores a new joke and rates it against existing ones."""

    def __init__(
        self,
        store: JokeStore,
        judge: JokeJudge,
        k_factor: float = DEFAULT_K_FACTOR,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> None:
        self._store = store
        self._judge = judge
        self._k_factor = k_factor
        self._sample_size = sample_size

    @property
    def store(self) -> JokeStore:
        return self._store

    async def rank_new_joke(self, text: str) -> RankingOutcome:
        """Store ``text`` as a joke, judge it, and apply the rating updates."""
        new_joke = await self._store.create(text)
        sample = await self._store.sample_for_comparison(
            self._sample_size, exclude_id=new_joke.id,
        )

        if not sample:
            log.info("No jokes to compare against; joke %d keeps %.1f",
                     new_joke.id, new_joke.elo_rating)
            return RankingOutcome(joke=new_joke, comparisons=0, best=await self._store.best())

        comparisons = await self._judge.compare_against_many(text, sample)

        rating = new_joke.elo_rating
        for existing, result in comparisons:
            score = score_for_winner(result.winner)
            new_rating, other_rating = calculate_elo(
                rating, existing.elo_rating, score, self._k_factor,
            )
            await self._store.update_rating(new_joke.id, new_rating)
            await self._store.update_rating(existing.id, other_rating)
            log.info(
                "Joke %d vs %d: %s → %.2f / %.2f",
                new_joke.id, existing.id, result.winner, new_rating, other_rating,
            )
            rating = new_rating

        updated = await self._store.find_by_id(new_joke.id) or new_joke
        return RankingOutcome(
            joke=updated,
            comparisons=len(comparisons),
            best=await self._store.best(),
        )
