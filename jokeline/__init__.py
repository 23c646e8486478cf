"""Jokeline: a phone line that collects knock-knock jokes and ranks them."""

__version__ = "0.1.0"
