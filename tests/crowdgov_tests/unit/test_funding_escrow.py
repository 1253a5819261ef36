"""
Tests for the proposal funding escrow.
"""

import pytest

from crowdgov.core.audit_events import AuditEventKind
from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    GoalNotReachedError,
    GoalReachedError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    TransferFailedError,
    UnauthorizedError,
)
from crowdgov.governance.funding_escrow import FundingEscrow, FundingWindow

ESCROW = "crowdgov.escrow"


@pytest.fixture
def escrow(store, assets, at):
    """p1: window [10, 20), min 100, target 200, beneficiary dao.alpha"""
    escrow = FundingEscrow(store, assets, ESCROW)
    escrow.initialize(at("alice", 0), "p1", True, FundingWindow(10, 20), 100, 200, "dao.alpha")
    for funder in ("f1", "f2", "f3"):
        assets.mint(funder, 500)
        assets.mint(funder, 500, "USDX")
    return escrow


class TestInitialize:
    def test_double_initialize(self, escrow, at):
        with pytest.raises(AlreadyExistsError):
            escrow.initialize(at("alice"), "p1", True, FundingWindow(10, 20), 100, 200, "dao.alpha")

    @pytest.mark.parametrize(
        "min_goal, target_goal, window, field",
        [
            (0, 10, FundingWindow(0, 5), "min_goal"),
            (50, 10, FundingWindow(0, 5), "target_goal"),
            (10, 50, FundingWindow(5, 1), "window"),
        ],
    )
    def test_invalid_parameters(self, store, assets, at, min_goal, target_goal, window, field):
        escrow = FundingEscrow(store, assets, ESCROW)
        with pytest.raises(InvalidInputError) as exc_info:
            escrow.initialize(at("alice"), "p9", True, window, min_goal, target_goal, "dao.alpha")
        assert exc_info.value.field == field

    def test_initial_state(self, escrow):
        record = escrow.get_funding("p1")
        assert record.total_raised == 0
        assert record.funder_count == 0
        assert escrow.get_withdrawals("p1").withdrawn_amount == 0
        assert escrow.funding_progress("p1") == 0


class TestContribute:
    def test_contribution_moves_funds_into_escrow(self, escrow, assets, at):
        escrow.contribute(at("f1", 10), "p1", 40)
        escrow.contribute(at("f1", 12), "p1", 10)

        contribution = escrow.get_contribution("p1", "f1")
        assert contribution.stx_amount == 50
        assert contribution.contribution_count == 2
        assert contribution.first_contribution_at == 10
        assert contribution.last_contribution_at == 12
        assert escrow.get_funding("p1").funder_count == 1
        assert assets.balance_of(ESCROW) == 50
        assert assets.balance_of("f1") == 450

    @pytest.mark.parametrize("now", [9, 20])
    def test_outside_window(self, escrow, at, now):
        with pytest.raises(InvalidStateError):
            escrow.contribute(at("f1", now), "p1", 10)

    def test_not_fundable(self, store, assets, at):
        escrow = FundingEscrow(store, assets, ESCROW)
        escrow.initialize(at("alice"), "p2", False, FundingWindow(0, 10), 1, 1, "dao.alpha")
        with pytest.raises(InvalidStateError) as exc_info:
            escrow.contribute(at("f1", 1), "p2", 1)
        assert exc_info.value.field == "fundable"

    def test_zero_amount(self, escrow, at):
        with pytest.raises(InvalidInputError):
            escrow.contribute(at("f1", 10), "p1", 0)

    def test_unknown_proposal(self, escrow, at):
        with pytest.raises(NotFoundError):
            escrow.contribute(at("f1", 10), "nope", 5)

    def test_target_reached_closes_contributions(self, escrow, at):
        escrow.contribute(at("f1", 10), "p1", 200)
        with pytest.raises(GoalReachedError):
            escrow.contribute(at("f2", 11), "p1", 1)

    def test_failed_transfer_changes_nothing(self, escrow, store, at):
        digest = store.snapshot_digest()
        events = len(store.event_log)
        with pytest.raises(TransferFailedError):
            escrow.contribute(at("pauper", 10), "p1", 5)
        assert store.snapshot_digest() == digest
        assert len(store.event_log) == events
        assert escrow.get_contribution("p1", "pauper") is None

    def test_alternate_asset_is_fixed_by_first_use(self, escrow, assets, at):
        assets.mint("f1", 100, "OTHER")
        escrow.contribute(at("f1", 10), "p1", 30, asset="USDX")
        with pytest.raises(InvalidInputError) as exc_info:
            escrow.contribute(at("f1", 11), "p1", 30, asset="OTHER")
        assert exc_info.value.field == "asset"

        record = escrow.get_funding("p1")
        assert record.token_raised.asset == "USDX"
        assert record.token_raised.amount == 30
        assert record.total_raised == 30

    def test_contributed_event_carries_amount(self, escrow, store, at):
        escrow.contribute(at("f1", 10), "p1", 25, asset="USDX")
        event = store.event_log.events(kind=AuditEventKind.CONTRIBUTED)[-1]
        assert event.changes["asset"] == "USDX"
        assert event.changes["amount"] == 25


class TestWithdraw:
    @pytest.fixture
    def succeeded(self, escrow, at):
        escrow.contribute(at("f1", 10), "p1", 80)
        escrow.contribute(at("f2", 11), "p1", 40)
        escrow.contribute(at("f3", 12), "p1", 30, asset="USDX")
        return escrow

    def test_beneficiary_withdraws_after_close(self, succeeded, assets, at):
        record = succeeded.withdraw(at("dao.alpha", 20), "p1", 100)
        assert record.withdrawn_amount == 100
        assert record.withdrawal_count == 1
        assert succeeded.available_balance("p1") == 20
        assert assets.balance_of("dao.alpha") == 100

    def test_token_withdrawal_tracked_separately(self, succeeded, assets, at):
        succeeded.withdraw_token(at("dao.alpha", 20), "p1", 30)
        assert succeeded.available_token_balance("p1") == 0
        assert succeeded.available_balance("p1") == 120
        assert assets.balance_of("dao.alpha", "USDX") == 30

    def test_over_withdrawal(self, succeeded, at):
        with pytest.raises(InsufficientFundsError):
            succeeded.withdraw(at("dao.alpha", 20), "p1", 121)

    def test_only_beneficiary(self, succeeded, at):
        with pytest.raises(UnauthorizedError):
            succeeded.withdraw(at("f1", 20), "p1", 10)

    def test_window_must_be_closed(self, succeeded, at):
        with pytest.raises(InvalidStateError):
            succeeded.withdraw(at("dao.alpha", 19), "p1", 10)

    def test_refund_denied_when_goal_reached(self, succeeded, at):
        with pytest.raises(GoalReachedError):
            succeeded.refund(at("f1", 20), "p1")


class TestRefund:
    @pytest.fixture
    def missed(self, escrow, at):
        escrow.contribute(at("f1", 10), "p1", 40)
        escrow.contribute(at("f2", 11), "p1", 40)
        return escrow

    def test_withdraw_fails_with_state_error(self, missed, at):
        with pytest.raises(InvalidStateError) as exc_info:
            missed.withdraw(at("dao.alpha", 20), "p1", 10)
        assert isinstance(exc_info.value, GoalNotReachedError)

    def test_refund_returns_contribution(self, missed, assets, at):
        assert missed.refund(at("f1", 20), "p1") == 40
        assert assets.balance_of("f1") == 500
        assert missed.get_contribution("p1", "f1") is None

        record = missed.get_funding("p1")
        assert record.total_raised == 40
        assert record.stx_raised == 40
        assert record.funder_count == 1

    def test_refund_twice_fails(self, missed, at):
        missed.refund(at("f1", 20), "p1")
        with pytest.raises(NotFoundError):
            missed.refund(at("f1", 21), "p1")

    def test_refund_before_close(self, missed, at):
        with pytest.raises(InvalidStateError):
            missed.refund(at("f1", 19), "p1")

    def test_mixed_contribution_refunded_per_asset(self, missed, assets, at):
        missed.contribute(at("f3", 12), "p1", 5)
        missed.contribute(at("f3", 13), "p1", 10, asset="USDX")

        assert missed.refund_token(at("f3", 20), "p1") == 10
        contribution = missed.get_contribution("p1", "f3")
        assert (contribution.stx_amount, contribution.token_amount) == (5, 0)
        with pytest.raises(InsufficientFundsError):
            missed.refund_token(at("f3", 20), "p1")

        assert missed.refund(at("f3", 21), "p1") == 5
        assert missed.get_contribution("p1", "f3") is None
        assert assets.balance_of("f3") == 500
        assert assets.balance_of("f3", "USDX") == 500
        assert missed.get_funding("p1").funder_count == 2
