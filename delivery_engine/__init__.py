"""Rider assignment and delivery lifecycle engine."""

__version__ = "0.1.0"
