"""Revenue API: HTTP surface and background sync scheduler for the revenue engine."""

__version__ = "0.1.0"
