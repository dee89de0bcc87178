"""Media ingestion and storage layer for the vehicle marketplace."""

__version__ = "0.1.0"
