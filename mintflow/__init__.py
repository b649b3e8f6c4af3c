"""Capture-to-ownership pipeline: record, pin, mint, confirm, gate access."""

__version__ = "0.1.0"
