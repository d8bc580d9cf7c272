"""Bounded-concurrency batch launcher for the ATX transformation CLI."""

__version__ = "0.3.0"
