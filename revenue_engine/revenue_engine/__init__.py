"""Revenue telemetry engine: provider adapters, normalization, vault, signing, and sync."""

__version__ = "0.1.0"
