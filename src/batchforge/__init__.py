"""Queueless fan-out job system for combinatorial generation requests."""

__version__ = "0.1.0"
