"""Command line interface for the revenue engine."""

__version__ = "0.1.0"
