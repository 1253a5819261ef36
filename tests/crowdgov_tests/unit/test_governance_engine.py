"""
Tests for the governance engine facade: cross-component actions.
"""

import pytest

from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.config import ConfigurationError
from crowdgov.core.governance_exceptions import (
    GoalNotReachedError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from crowdgov.governance.funding_escrow import FundingWindow
from crowdgov.governance.governance_engine import GovernanceEngine
from crowdgov.governance.proposal_lifecycle import ProposalStatus, VoteKind

DAO = "dao.alpha"


def _active_proposal(engine, proposal_id="p1", start=0, end=10, min_approval=51):
    engine.register_proposal("alice", DAO, "Upgrade", "", start, end, min_approval, proposal_id=proposal_id)
    engine.activate("alice", proposal_id)
    return proposal_id


class TestRegistration:
    def test_requires_registered_dao(self, engine):
        with pytest.raises(NotFoundError):
            engine.register_proposal("alice", "dao.none", "T", "", 0, 5, 50)

    def test_requires_active_dao(self, dao_engine):
        dao_engine.deactivate_dao("alice", DAO)
        with pytest.raises(InvalidStateError):
            dao_engine.register_proposal("alice", DAO, "T", "", 0, 5, 50)

    def test_list_by_status_string(self, dao_engine):
        _active_proposal(dao_engine)
        assert [p.proposal_id for p in dao_engine.list_proposals(status="active")] == ["p1"]
        with pytest.raises(InvalidInputError):
            dao_engine.list_proposals(status="bogus")


class TestVoting:
    def test_vote_uses_effective_power(self, dao_engine):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        _active_proposal(dao_engine)

        record = dao_engine.vote("bob", "p1", "yes")
        assert record.power == 25
        assert record.kind == VoteKind.YES
        assert dao_engine.get_tally("p1").yes == 25

    def test_vote_without_power(self, dao_engine):
        _active_proposal(dao_engine)
        with pytest.raises(InvalidInputError):
            dao_engine.vote("nobody", "p1", "yes")

    def test_unknown_vote_kind(self, dao_engine):
        _active_proposal(dao_engine)
        with pytest.raises(InvalidInputError) as exc_info:
            dao_engine.vote("bob", "p1", "maybe")
        assert exc_info.value.field == "kind"

    def test_delegator_cannot_vote(self, dao_engine):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        dao_engine.update_token_power("alice", DAO, "carol", 5)
        dao_engine.delegate("bob", DAO, "carol")
        _active_proposal(dao_engine)

        with pytest.raises(InvalidInputError):
            dao_engine.vote("bob", "p1", "no")
        assert dao_engine.vote("carol", "p1", "yes").power == 30

    def test_vote_expires_stale_delegation_first(self, dao_engine):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        dao_engine.update_token_power("alice", DAO, "carol", 5)
        dao_engine.delegate("bob", DAO, "carol", expiry=3)
        _active_proposal(dao_engine, end=20)
        dao_engine.set_clock(4)

        assert dao_engine.vote("carol", "p1", "yes").power == 5
        assert dao_engine.vote("bob", "p1", "no").power == 25
        kinds = [e.kind for e in dao_engine.events()]
        assert AuditEventKind.DELEGATION_EXPIRED in kinds

    def test_failed_vote_rolls_back_expiry(self, dao_engine):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        dao_engine.update_token_power("alice", DAO, "carol", 5)
        dao_engine.delegate("bob", DAO, "carol", expiry=3)
        _active_proposal(dao_engine, start=10, end=20)
        dao_engine.set_clock(4)

        with pytest.raises(InvalidStateError):
            dao_engine.vote("carol", "p1", "yes")  # window not open yet
        assert dao_engine.get_delegation(DAO, "bob") is not None


class TestDelegatedPowerCountedOnce:
    @pytest.fixture
    def voters(self, dao_engine):
        """A holds 50, B holds 0, C holds 60; p1 open over [0, 10)"""
        dao_engine.update_token_power("alice", DAO, "A", 50)
        dao_engine.update_token_power("alice", DAO, "C", 60)
        _active_proposal(dao_engine)
        return dao_engine

    def test_cannot_delegate_after_voting_on_open_proposal(self, voters):
        voters.vote("A", "p1", "yes")
        with pytest.raises(InvalidStateError) as exc_info:
            voters.delegate("A", DAO, "B")
        assert exc_info.value.field == "delegator"
        assert voters.get_delegation(DAO, "A") is None

        with pytest.raises(InvalidInputError):
            voters.vote("B", "p1", "yes")
        voters.vote("C", "p1", "no")
        voters.set_clock(10)

        result = voters.finalize("anyone", "p1")
        tally = voters.get_tally("p1")
        assert (tally.yes, tally.no, tally.total_voted) == (50, 60, 110)
        assert result.status == ProposalStatus.REJECTED

    def test_can_delegate_once_voting_closes(self, voters):
        voters.vote("A", "p1", "yes")
        voters.set_clock(10)
        assert voters.delegate("A", DAO, "B").amount == 50

    def test_delegator_cannot_vote_after_delegate_carried_power(self, voters):
        voters.update_token_power("alice", DAO, "B", 5)
        voters.delegate("A", DAO, "B")
        record = voters.vote("B", "p1", "yes")
        assert record.power == 55
        assert record.delegators == ["A"]

        voters.revoke("A", DAO)
        with pytest.raises(InvalidStateError) as exc_info:
            voters.vote("A", "p1", "no")
        assert exc_info.value.field == "voter"
        assert voters.get_tally("p1").total_voted == 55

    def test_redelegated_power_not_counted_twice(self, voters):
        voters.update_token_power("alice", DAO, "D", 1)
        voters.delegate("A", DAO, "B")
        voters.update_token_power("alice", DAO, "B", 5)
        voters.vote("B", "p1", "yes")
        voters.revoke("A", DAO)
        voters.delegate("A", DAO, "D")

        record = voters.vote("D", "p1", "no")
        assert record.power == 1
        assert record.delegators == []
        assert voters.get_tally("p1").total_voted == 56


class TestPowerAuthorization:
    def test_only_dao_manager_sets_power(self, dao_engine):
        with pytest.raises(UnauthorizedError):
            dao_engine.update_token_power("mallory", DAO, "mallory", 1000)
        dao_engine.update_currency_power(DAO, DAO, "bob", 3)
        assert dao_engine.effective_power(DAO, "bob") == 3

    def test_refresh_reads_balances(self, dao_engine, assets):
        assets.mint("bob", 40)
        assets.mint("bob", 9, "ALPHA")
        record = dao_engine.refresh_power("anyone", DAO, "bob")
        assert (record.currency_power, record.token_power) == (40, 9)


class TestExecution:
    def test_execute_requires_owner(self, dao_engine):
        _active_proposal(dao_engine, min_approval=0)
        dao_engine.set_clock(10)
        dao_engine.finalize("anyone", "p1")
        with pytest.raises(UnauthorizedError):
            dao_engine.execute("mallory", "p1")
        assert dao_engine.execute(DAO, "p1").status == ProposalStatus.EXECUTED

    def test_execute_gated_on_funding_goal(self, dao_engine, assets):
        _active_proposal(dao_engine, min_approval=0)
        dao_engine.initialize_funding("alice", "p1", FundingWindow(0, 10), 100, 100)
        assets.mint("fan", 60)
        dao_engine.contribute("fan", "p1", 60)
        dao_engine.set_clock(10)
        dao_engine.finalize("anyone", "p1")

        with pytest.raises(GoalNotReachedError):
            dao_engine.execute("alice", "p1")
        assert dao_engine.get_proposal("p1").status == ProposalStatus.PASSED

    def test_initialize_funding_requires_owner(self, dao_engine):
        _active_proposal(dao_engine)
        with pytest.raises(UnauthorizedError):
            dao_engine.initialize_funding("mallory", "p1", FundingWindow(0, 10), 1, 1)

    def test_beneficiary_defaults_to_organization(self, dao_engine):
        _active_proposal(dao_engine)
        record = dao_engine.initialize_funding("alice", "p1", FundingWindow(0, 10), 1, 2)
        assert record.beneficiary == DAO
        assert dao_engine.funding_summary("p1")["progress"] == 0


class TestPersistence:
    def test_state_roundtrip(self, dao_engine, config, tmp_path):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        _active_proposal(dao_engine)
        dao_engine.vote("bob", "p1", "yes")
        path = dao_engine.save_state(tmp_path / "state.json")

        restored = GovernanceEngine(config=config)
        restored.load_state(path)
        assert restored.get_tally("p1").yes == 25
        assert restored.get_dao(DAO).name == "Alpha"
        assert restored.store.snapshot_digest() == dao_engine.store.snapshot_digest()

    def test_event_sequence_continues_after_restore(self, dao_engine, config, tmp_path):
        dao_engine.update_token_power("alice", DAO, "bob", 25)
        _active_proposal(dao_engine)
        last = dao_engine.events()[-1].sequence
        path = dao_engine.save_state(tmp_path / "state.json")
        assert GovernanceEngine.events_path(path).exists()

        restored = GovernanceEngine(config=config)
        restored.load_state(path)
        assert [e.event_id for e in restored.events()] == [e.event_id for e in dao_engine.events()]

        restored.vote("bob", "p1", "yes")
        newer = restored.events(since=last)
        assert [e.sequence for e in newer] == [last + 1]
        assert newer[0].kind == AuditEventKind.VOTE_CAST

    def test_state_file_required(self, engine):
        with pytest.raises(ConfigurationError):
            engine.save_state()


class TestMetrics:
    def test_metrics_follow_committed_events(self, assets):
        from prometheus_client import REGISTRY

        from crowdgov.core.config import GovernanceConfig

        engine = GovernanceEngine(config=GovernanceConfig(metrics_enabled=True), assets=assets)
        engine.create_dao("alice", DAO, "Alpha")
        engine.update_token_power("alice", DAO, "bob", 7)
        _active_proposal(engine)

        before = REGISTRY.get_sample_value("crowdgov_vote_power_total", {"kind": "no"}) or 0
        engine.vote("bob", "p1", "no")
        with pytest.raises(InvalidInputError):
            engine.vote("nobody", "p1", "no")
        after = REGISTRY.get_sample_value("crowdgov_vote_power_total", {"kind": "no"})
        assert after - before == 7
