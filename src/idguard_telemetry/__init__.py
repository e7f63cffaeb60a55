"""ID Guard telemetry ingestion and normalization core."""

__version__ = "0.3.0"
