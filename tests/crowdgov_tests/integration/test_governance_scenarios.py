"""
End-to-end governance scenarios through the engine.
"""

import pytest

from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.governance_exceptions import InvalidStateError, TransferFailedError
from crowdgov.governance.funding_escrow import FundingWindow
from crowdgov.governance.proposal_lifecycle import ProposalStatus

DAO = "dao.alpha"

pytestmark = pytest.mark.integration


class TestWeightedApproval:
    def test_sixty_percent_approval_passes(self, dao_engine):
        """Three YES at 10 and two NO at 10 against a 51% threshold."""
        engine = dao_engine
        voters = {"y1": "yes", "y2": "yes", "y3": "yes", "n1": "no", "n2": "no"}
        for voter in voters:
            engine.update_token_power("alice", DAO, voter, 10)

        engine.register_proposal("alice", DAO, "Raise quorum", "", 1, 5, 51, proposal_id="p1")
        engine.activate("alice", "p1")
        engine.set_clock(1)
        for voter, kind in voters.items():
            engine.vote(voter, "p1", kind)

        engine.set_clock(5)
        result = engine.finalize("anyone", "p1")
        assert result.approval_percentage == 60
        assert result.status == ProposalStatus.PASSED

        with pytest.raises(InvalidStateError):
            engine.finalize("anyone", "p1")
        assert engine.execute("alice", "p1").status == ProposalStatus.EXECUTED


class TestFailedRaise:
    def test_refund_after_missed_minimum(self, dao_engine, assets):
        """Minimum 100, target 200; two funders give 40 each and the window closes."""
        engine = dao_engine
        engine.register_proposal("alice", DAO, "Audit", "", 0, 10, 51, proposal_id="p1")
        engine.initialize_funding("alice", "p1", FundingWindow(0, 10), 100, 200)
        for funder in ("f1", "f2"):
            assets.mint(funder, 40)
            engine.contribute(funder, "p1", 40)

        engine.set_clock(10)
        with pytest.raises(InvalidStateError):
            engine.withdraw(DAO, "p1", 80)

        assert engine.refund("f1", "p1") == 40
        assert engine.refund("f2", "p1") == 40
        assert assets.balance_of("f1") == 40
        assert assets.balance_of("crowdgov.escrow") == 0

        funding = engine.get_funding("p1")
        assert funding.total_raised == 0
        assert funding.funder_count == 0
        refunds = engine.events(kind=AuditEventKind.REFUNDED)
        assert [e.subject["funder"] for e in refunds] == ["f1", "f2"]


class TestFrozenDelegation:
    def test_delegation_amount_survives_balance_change(self, dao_engine):
        """A delegates 50 to B, then A's token power rises to 80."""
        engine = dao_engine
        engine.update_token_power("alice", DAO, "A", 50)
        engine.delegate("A", DAO, "B")
        engine.update_token_power("alice", DAO, "A", 80)

        assert engine.effective_power(DAO, "A") == 0
        assert engine.get_delegation(DAO, "A").amount == 50
        assert engine.effective_power(DAO, "B") == 50

        engine.revoke("A", DAO)
        assert engine.effective_power(DAO, "A") == 80
        assert engine.effective_power(DAO, "B") == 0


class TestAtomicity:
    def test_failed_transfer_leaves_no_trace(self, dao_engine):
        engine = dao_engine
        engine.register_proposal("alice", DAO, "Audit", "", 0, 10, 51, proposal_id="p1")
        engine.initialize_funding("alice", "p1", FundingWindow(0, 10), 100, 200)

        digest = engine.store.snapshot_digest()
        events = len(engine.event_log)
        with pytest.raises(TransferFailedError):
            engine.contribute("broke", "p1", 10)
        assert engine.store.snapshot_digest() == digest
        assert len(engine.event_log) == events
