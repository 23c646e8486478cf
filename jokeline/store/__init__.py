"""Joke storage abstractions and implementations."""

from .base import DEFAULT_RATING, Joke, JokeStore
from .sqlite import SqliteJokeStore

__all__ = ["DEFAULT_RATING", "Joke", "JokeStore", "SqliteJokeStore"]
