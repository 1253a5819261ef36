"""HTTP API for the governance engine."""

__all__ = []
