"""Reconstruction worker execution engine."""
