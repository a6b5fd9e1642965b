"""
Milestone Schedule, Voting & Payouts Test Suite

Coverage:
  schedule : instalment sum invariant, milestone lifecycle transitions,
             insertion with a donor milestone, savepoints
  voting   : start snapshot, partial / delegated votes, voting window, savepoints,
             quorum-then-threshold resolution with exact comparisons
  payouts  : instalment planning, pro-rata refunds with flooring,
             batch dispatch through the transfer collaborator
"""

import os
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stagefund.escrow.delegation import DelegationRegistry
from stagefund.escrow.ledger import ContributionLedger
from stagefund.escrow.payouts import (
    REASON_INSTALMENT,
    REASON_REFUND,
    Disbursement,
    RefundEngine,
    TransferInstruction,
    TransferOutbox,
    dispatch,
)
from stagefund.escrow.schedule import (
    Milestone,
    MilestoneSchedule,
    MilestoneSpec,
    MilestoneStatus,
)
from stagefund.escrow.voting import MilestoneTally, ProposalVoting
from stagefund.exceptions import (
    CapExceededError,
    InsufficientWeightError,
    InvalidAmountError,
    PhaseViolationError,
    ScheduleInvariantViolationError,
    TransferFailureError,
)


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

ALICE = "alice"
BOB = "bob"
CAROL = "carol"
TEAM = "project-team"

T0 = 1_700_000_000.0
DAY = 86400


def spec(instalment_bps=10_000, quorum_bps=5000, threshold_bps=6000, duration=DAY) -> MilestoneSpec:
    return MilestoneSpec(
        duration=duration,
        quorum_bps=quorum_bps,
        threshold_bps=threshold_bps,
        instalment_bps=instalment_bps,
    )


def make_schedule(*instalments) -> MilestoneSchedule:
    """Helper to create a schedule with the given instalment split."""
    return MilestoneSchedule([spec(instalment_bps=bps) for bps in instalments])


def funded_ledger(**amounts) -> ContributionLedger:
    ledger = ContributionLedger(hard_cap=10_000)
    for who, amount in amounts.items():
        ledger.contribute(who, amount)
    return ledger


def open_vote(ledger, quorum_bps=5000, threshold_bps=6000):
    """Start voting on a single 100% milestone; returns (voting, milestone)."""
    milestone = Milestone.from_spec(0, spec(quorum_bps=quorum_bps, threshold_bps=threshold_bps))
    voting = ProposalVoting()
    voting.start(milestone, ledger, current_index=0, now=T0)
    return voting, milestone


# ══════════════════════════════════════════════════════════════════════
#  SCHEDULE
# ══════════════════════════════════════════════════════════════════════

class TestMilestoneSpec:

    def test_validate_ok(self):
        assert spec().validate() == spec()

    def test_zero_duration(self):
        with pytest.raises(InvalidAmountError, match="duration"):
            spec(duration=0).validate()

    def test_bps_out_of_range(self):
        with pytest.raises(InvalidAmountError, match="quorum_bps"):
            spec(quorum_bps=10_001).validate()

    def test_from_dict(self):
        s = MilestoneSpec.from_dict(
            {"duration": 60, "quorum_bps": 1, "threshold_bps": 2, "instalment_bps": 3}
        )
        assert (s.duration, s.quorum_bps, s.threshold_bps, s.instalment_bps) == (60, 1, 2, 3)


class TestMilestoneLifecycle:

    def test_valid_path(self):
        m = Milestone.from_spec(0, spec())
        m.transition_to(MilestoneStatus.ACTIVE, now=T0)
        m.transition_to(MilestoneStatus.PASSED, now=T0 + 1)
        assert m.is_terminal
        assert [h["to"] for h in m.history] == ["ACTIVE", "PASSED"]

    def test_terminal_is_final(self):
        m = Milestone.from_spec(0, spec())
        m.transition_to(MilestoneStatus.ACTIVE)
        m.transition_to(MilestoneStatus.FAILED)
        with pytest.raises(PhaseViolationError, match="cannot move"):
            m.transition_to(MilestoneStatus.ACTIVE)

    def test_cannot_fail_without_vote(self):
        m = Milestone.from_spec(0, spec())
        with pytest.raises(PhaseViolationError):
            m.transition_to(MilestoneStatus.FAILED)


class TestScheduleInvariant:

    def test_sum_must_be_full(self):
        with pytest.raises(ScheduleInvariantViolationError, match="9999"):
            make_schedule(5000, 4999)

    def test_empty_rejected(self):
        with pytest.raises(ScheduleInvariantViolationError):
            MilestoneSchedule([])

    def test_valid_schedule(self):
        schedule = make_schedule(2000, 3000, 5000)
        assert len(schedule) == 3
        assert schedule.total_bps == 10_000
        assert [m.index for m in schedule] == [0, 1, 2]

    def test_out_of_range_lookup(self):
        with pytest.raises(PhaseViolationError, match="No milestone"):
            make_schedule(10_000)[1]

    def test_active_none(self):
        assert make_schedule(10_000).active() is None


class TestScheduleInsert:

    def test_savepoint_restores_milestone(self):
        schedule = make_schedule(4000, 6000)
        restore = schedule.savepoint(0)
        schedule[0].transition_to(MilestoneStatus.ACTIVE, "Voting opened", now=T0)
        schedule[0].favor_weight = 25
        restore()
        assert schedule[0].status == MilestoneStatus.NOT_STARTED
        assert schedule[0].favor_weight == 0
        assert schedule[0].history == []

    def test_insert_takes_from_donor(self):
        schedule = make_schedule(2000, 3000, 5000)
        inserted = schedule.insert(2, spec(instalment_bps=1000), donor_index=2, current_index=0, released_bps=0)
        assert inserted.index == 2
        assert [m.instalment_bps for m in schedule] == [2000, 3000, 1000, 4000]
        assert [m.index for m in schedule] == [0, 1, 2, 3]
        assert schedule.total_bps == 10_000

    def test_insert_at_end(self):
        schedule = make_schedule(5000, 5000)
        schedule.insert(2, spec(instalment_bps=5000), donor_index=1, current_index=0, released_bps=0)
        assert [m.instalment_bps for m in schedule] == [5000, 0, 5000]

    @pytest.mark.parametrize("index", [0, 1])
    def test_index_not_in_future(self, index):
        schedule = make_schedule(2000, 3000, 5000)
        with pytest.raises(ScheduleInvariantViolationError, match="current"):
            schedule.insert(index, spec(instalment_bps=1000), donor_index=2, current_index=1, released_bps=0)

    def test_index_check_precedes_spec_validation(self):
        schedule = make_schedule(5000, 5000)
        bad = spec(instalment_bps=10_000_000, duration=0)
        with pytest.raises(ScheduleInvariantViolationError):
            schedule.insert(0, bad, donor_index=1, current_index=0, released_bps=0)

    def test_index_past_end(self):
        schedule = make_schedule(5000, 5000)
        with pytest.raises(ScheduleInvariantViolationError, match="past the end"):
            schedule.insert(3, spec(instalment_bps=100), donor_index=1, current_index=0, released_bps=0)

    def test_donor_must_be_future(self):
        schedule = make_schedule(5000, 5000)
        with pytest.raises(ScheduleInvariantViolationError, match="Donor"):
            schedule.insert(1, spec(instalment_bps=100), donor_index=0, current_index=0, released_bps=0)

    def test_donor_too_small(self):
        schedule = make_schedule(9000, 1000)
        with pytest.raises(ScheduleInvariantViolationError, match="holds 1000"):
            schedule.insert(1, spec(instalment_bps=2000), donor_index=1, current_index=0, released_bps=0)
        assert [m.instalment_bps for m in schedule] == [9000, 1000]

    def test_exceeds_unreleased(self):
        schedule = make_schedule(5000, 5000)
        with pytest.raises(ScheduleInvariantViolationError, match="unreleased"):
            schedule.insert(1, spec(instalment_bps=6000), donor_index=1, current_index=0, released_bps=5000)

    def test_invalid_bps_in_spec(self):
        schedule = make_schedule(5000, 5000)
        with pytest.raises(InvalidAmountError):
            schedule.insert(1, spec(instalment_bps=100, quorum_bps=20_000), donor_index=1, current_index=0, released_bps=0)


# ══════════════════════════════════════════════════════════════════════
#  VOTING
# ══════════════════════════════════════════════════════════════════════

class TestVotingStart:

    def test_start_snapshots_votable(self):
        ledger = funded_ledger(alice=60, bob=40)
        voting, m = open_vote(ledger)
        assert m.status == MilestoneStatus.ACTIVE
        assert m.total_votable_snapshot == 100
        assert m.ends_at == T0 + DAY

    def test_start_non_current(self):
        ledger = funded_ledger(alice=1)
        m = Milestone.from_spec(1, spec())
        with pytest.raises(PhaseViolationError, match="not current"):
            ProposalVoting().start(m, ledger, current_index=0, now=T0)

    def test_start_twice(self):
        ledger = funded_ledger(alice=1)
        voting, m = open_vote(ledger)
        with pytest.raises(PhaseViolationError, match="already ACTIVE"):
            voting.start(m, ledger, current_index=0, now=T0)


class TestCastVote:

    def setup_method(self):
        self.ledger = funded_ledger(alice=60, bob=30, carol=10)
        self.voting, self.m = open_vote(self.ledger)

    def test_savepoint_drops_later_votes(self):
        self.voting.cast_vote(self.m, self.ledger, ALICE, 20, True, now=T0 + 1)
        restore = self.voting.savepoint(0)
        self.voting.cast_vote(self.m, self.ledger, BOB, 30, False, now=T0 + 2)
        restore()
        assert [v.voter for v in self.voting.get_votes(0)] == [ALICE]

    def test_savepoint_before_start(self):
        voting = ProposalVoting()
        restore = voting.savepoint(0)
        voting.start(Milestone.from_spec(0, spec()), self.ledger, current_index=0, now=T0)
        restore()
        assert voting.to_dict() == {"votes": {}}

    def test_partial_votes(self):
        self.voting.cast_vote(self.m, self.ledger, ALICE, 20, True, now=T0 + 1)
        self.voting.cast_vote(self.m, self.ledger, ALICE, 40, False, now=T0 + 2)
        assert self.m.favor_weight == 20
        assert self.m.oppose_weight == 40
        assert self.voting.voter_count(0) == 1
        assert len(self.voting.get_votes(0)) == 2

    def test_double_spend_rejected(self):
        self.voting.cast_vote(self.m, self.ledger, ALICE, 60, True, now=T0 + 1)
        with pytest.raises(InsufficientWeightError):
            self.voting.cast_vote(self.m, self.ledger, ALICE, 1, True, now=T0 + 2)
        assert self.m.favor_weight == 60

    def test_delegated_pool(self):
        ledger = funded_ledger(alice=60, bob=30)
        DelegationRegistry().delegate(ledger, ALICE, BOB, 20, now=T0)
        voting, m = open_vote(ledger)
        voting.cast_vote(m, ledger, BOB, 30, True, now=T0 + 1)
        voting.cast_vote(m, ledger, BOB, 20, True, via_delegated=True, now=T0 + 2)
        assert m.favor_weight == 50
        with pytest.raises(InsufficientWeightError):
            voting.cast_vote(m, ledger, BOB, 1, True, via_delegated=True, now=T0 + 3)

    def test_vote_at_end_time_rejected(self):
        with pytest.raises(PhaseViolationError, match="ended"):
            self.voting.cast_vote(self.m, self.ledger, ALICE, 1, True, now=T0 + DAY)

    def test_non_voter(self):
        with pytest.raises(InsufficientWeightError):
            self.voting.cast_vote(self.m, self.ledger, "mallory", 1, True, now=T0 + 1)

    def test_zero_weight(self):
        with pytest.raises(InvalidAmountError):
            self.voting.cast_vote(self.m, self.ledger, ALICE, 0, True, now=T0 + 1)

    def test_not_active(self):
        m = Milestone.from_spec(1, spec())
        with pytest.raises(PhaseViolationError, match="not open"):
            self.voting.cast_vote(m, self.ledger, ALICE, 1, True, now=T0 + 1)


class TestResolution:

    def _resolve(self, favor, oppose, quorum_bps=5000, threshold_bps=6000):
        ledger = funded_ledger(alice=60, bob=40)
        voting, m = open_vote(ledger, quorum_bps=quorum_bps, threshold_bps=threshold_bps)
        if favor:
            voting.cast_vote(m, ledger, ALICE, favor, True, now=T0 + 1)
        if oppose:
            voting.cast_vote(m, ledger, BOB, oppose, False, now=T0 + 1)
        return voting.end(m, now=T0 + DAY)

    def test_threshold_missed(self):
        tally = self._resolve(favor=50, oppose=10)
        assert tally.quorum_reached
        assert not tally.threshold_reached
        assert tally.status == MilestoneStatus.FAILED

    def test_passes(self):
        tally = self._resolve(favor=60, oppose=0)
        assert tally.status == MilestoneStatus.PASSED

    def test_quorum_missed(self):
        tally = self._resolve(favor=0, oppose=40, quorum_bps=5000, threshold_bps=0)
        assert not tally.quorum_reached
        assert tally.status == MilestoneStatus.FAILED

    def test_no_votes_zero_quorum_passes(self):
        tally = self._resolve(favor=0, oppose=0, quorum_bps=0, threshold_bps=0)
        assert tally.status == MilestoneStatus.PASSED

    def test_end_before_window(self):
        ledger = funded_ledger(alice=1)
        voting, m = open_vote(ledger)
        with pytest.raises(PhaseViolationError, match="still open"):
            voting.end(m, now=T0 + DAY - 1)
        assert m.is_active

    def test_exact_comparison_no_flooring(self):
        # 1 of 3 is 3333.33 bps: not enough for a 3334 bps threshold
        tally = MilestoneTally(
            milestone_index=0, status=MilestoneStatus.ACTIVE,
            favor_weight=1, oppose_weight=0, total_votable=3,
            quorum_bps=3333, threshold_bps=3334, instalment_bps=10_000,
        )
        assert tally.quorum_reached
        assert not tally.threshold_reached


# ══════════════════════════════════════════════════════════════════════
#  PAYOUTS
# ══════════════════════════════════════════════════════════════════════

class TestDisbursement:

    def test_instalment_amount_floors(self):
        m = Milestone.from_spec(0, spec(instalment_bps=3333))
        ins = Disbursement.plan(m, TEAM, total_raised=110, remaining_pool=110, released_bps=0)
        assert ins == TransferInstruction(TEAM, 36, REASON_INSTALMENT, 0)

    def test_over_hundred_percent(self):
        m = Milestone.from_spec(1, spec(instalment_bps=6000))
        with pytest.raises(CapExceededError):
            Disbursement.plan(m, TEAM, total_raised=100, remaining_pool=100, released_bps=5000)

    def test_pool_short(self):
        m = Milestone.from_spec(0, spec())
        with pytest.raises(TransferFailureError, match="remaining pool"):
            Disbursement.plan(m, TEAM, total_raised=100, remaining_pool=99, released_bps=0)


class TestRefunds:

    def test_pro_rata_shares_floor(self):
        ledger = funded_ledger(alice=1, bob=1, carol=1)
        batch = RefundEngine.plan(ledger, total_to_distribute=2, remaining_pool=2)
        # 1 * 2 / 3 floors to 0 for everyone
        assert batch == []

    def test_shares_in_registration_order(self):
        ledger = funded_ledger(bob=30, alice=70)
        batch = RefundEngine.plan(ledger, total_to_distribute=50, remaining_pool=50, milestone_index=1)
        assert [(i.recipient, i.amount) for i in batch] == [(BOB, 15), (ALICE, 35)]
        assert all(i.reason == REASON_REFUND and i.milestone_index == 1 for i in batch)

    def test_dust_stays_in_pool(self):
        ledger = funded_ledger(alice=1, bob=2)
        batch = RefundEngine.plan(ledger, total_to_distribute=10, remaining_pool=10)
        paid = RefundEngine.apply(ledger, batch)
        assert paid == 9  # 3 + 6
        assert ledger.get(BOB).refunded == 6

    def test_more_than_pool(self):
        ledger = funded_ledger(alice=10)
        with pytest.raises(TransferFailureError):
            RefundEngine.plan(ledger, total_to_distribute=11, remaining_pool=10)


class TestDispatch:

    def test_outbox_records_batches(self):
        outbox = TransferOutbox()
        dispatch(outbox, [TransferInstruction(ALICE, 5, REASON_REFUND)])
        dispatch(outbox, [])
        assert len(outbox) == 1
        assert outbox.total_to(ALICE) == 5

    def test_foreign_errors_wrapped(self):
        def broken(batch):
            raise RuntimeError("bank offline")

        with pytest.raises(TransferFailureError, match="bank offline"):
            dispatch(broken, [TransferInstruction(ALICE, 5, REASON_REFUND)])
