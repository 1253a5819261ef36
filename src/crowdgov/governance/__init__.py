"""Governance components: power ledger, funding escrow, proposal lifecycle."""

__all__ = []
