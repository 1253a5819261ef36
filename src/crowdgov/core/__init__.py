"""
crowdgov Core Module

Shared building blocks for the governance components:
- Keyed record store with all-or-nothing transactions
- Logical clock and per-action context
- Asset transfer capability
- Audit event log
- Configuration, logging, metrics and the error taxonomy
"""

__all__ = []
