"""Abstract base class for joke storage.

Defines the persistence contract the session engine consumes.  The core
only creates jokes, reads them, and writes ratings through this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_RATING = 1500.0


class Joke(BaseModel):
    """A stored joke and its current Elo rating."""

    id: int
    content: str
    elo_rating: float = DEFAULT_RATING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JokeStore(ABC):
    """Abstract joke store.

    Individual rating updates are assumed atomic; no multi-row
    transactions are required by callers.
    """

    @abstractmethod
    async def create(self, content: str) -> Joke:
        """Store a new joke at the initial rating and return it with its id."""

    @abstractmethod
    async def find_by_id(self, joke_id: int) -> Optional[Joke]:
        """Return the joke, or None if it does not exist."""

    @abstractmethod
    async def update_rating(self, joke_id: int, rating: float) -> None:
        """Overwrite a joke's Elo rating."""

    @abstractmethod
    async def sample_for_comparison(
        self, n: int, exclude_id: Optional[int] = None,
    ) -> list[Joke]:
        """Return up to ``n`` jokes ordered by rating, highest first.

        Args:
            n: Maximum number of jokes.
            exclude_id: A joke to leave out (the one being ranked).
        """

    @abstractmethod
    async def best(self) -> Optional[Joke]:
        """Return the highest-rated joke, or None if the store is empty."""

    @abstractmethod
    async def top(self, limit: int = 10) -> list[Joke]:
        """Return the ``limit`` highest-rated jokes."""
