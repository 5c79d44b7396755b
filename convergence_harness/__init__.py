"""Harness that drives an external reconciler and verifies what it leaves behind."""

__version__ = "0.1.0"
