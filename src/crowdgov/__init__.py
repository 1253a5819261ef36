"""
crowdgov - Cross-Organization Governance

Account-held organizations (DAOs) register proposals, collect weighted votes
and optionally crowdfund a proposal's execution through an escrow.

Main Components:
- Power Ledger: per-organization voting power and delegation
- Funding Escrow: contributions, goal evaluation, withdrawal and refund
- Proposal Lifecycle: status machine, vote tally and finalization
- Governance Engine: atomic actions composed over the three components
- API / CLI: Flask HTTP surface and click command line client
"""

__version__ = "0.1.0"
__author__ = "crowdgov Development Team"

__all__ = []
