"""Distributed photogrammetry job dispatch with status reconciliation."""

__version__ = "0.1.0"
