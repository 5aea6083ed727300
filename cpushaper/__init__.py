"""Adaptive CPU duty-cycle control, host sampling, metrics export and metadata helpers."""

__version__ = "0.1.0"