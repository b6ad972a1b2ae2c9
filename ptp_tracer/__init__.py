"""Passive PTP (IEEE 1588) network tracer."""

__version__ = "0.1.0"
