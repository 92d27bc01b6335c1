"""Authoritative and verbose status propagation."""
