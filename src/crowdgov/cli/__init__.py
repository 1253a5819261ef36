"""Command-line interface for crowdgov: the ``serve`` entry point and API client commands."""

__all__ = []
