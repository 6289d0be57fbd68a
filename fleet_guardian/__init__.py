"""Telemetry ingestion, ignition normalization, trip reconciliation and event detection for a GPS fleet."""

__version__ = "0.1.0"
