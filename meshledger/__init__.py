"""Mesh Address Ledger - IP allocation and equipment liveness for mesh networks."""

__version__ = "1.0.0"
