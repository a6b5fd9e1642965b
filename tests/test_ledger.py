"""
Contribution Ledger & Delegation Test Suite

Coverage:
  arith      : checked add / sub / mul, mul_div flooring, amount validation
  ledger     : principal accounting, weight derivation (multiply / divide),
               hard cap, per-milestone vote counters, refunds
  delegation : coalesced edges, pool bookkeeping, undelegation limits
  savepoints : ledger and registry rollback to a captured state
"""

import os
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stagefund.arith import (
    bps_of,
    checked_add,
    checked_mul,
    checked_sub,
    mul_div,
    require_amount,
    require_bps,
    require_flag,
    require_time,
)
from stagefund.constants import MAX_AMOUNT, WEIGHT_MODE_DIVIDE
from stagefund.escrow.delegation import DelegationRegistry
from stagefund.escrow.ledger import ContributionLedger
from stagefund.exceptions import (
    CapExceededError,
    ConfigurationError,
    InsufficientWeightError,
    InvalidAmountError,
    StageFundError,
)


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

ALICE = "alice"
BOB = "bob"
CAROL = "carol"
NOW = 1_700_000_000.0


def make_ledger(hard_cap=1000, rate=1, **kwargs) -> ContributionLedger:
    """Helper to create a ledger for testing."""
    return ContributionLedger(hard_cap=hard_cap, rate=rate, **kwargs)


def funded_ledger(**amounts) -> ContributionLedger:
    ledger = make_ledger()
    for who, amount in amounts.items():
        ledger.contribute(who, amount)
    return ledger


# ══════════════════════════════════════════════════════════════════════
#  FIXED-POINT ARITHMETIC
# ══════════════════════════════════════════════════════════════════════

class TestArithmetic:
    """Checked arithmetic never wraps."""

    def test_checked_add(self):
        assert checked_add(2, 3) == 5

    def test_checked_add_overflow(self):
        with pytest.raises(InvalidAmountError, match="Overflow"):
            checked_add(MAX_AMOUNT, 1)

    def test_checked_sub_underflow(self):
        with pytest.raises(InvalidAmountError, match="Underflow"):
            checked_sub(1, 2)

    def test_checked_mul_overflow(self):
        with pytest.raises(InvalidAmountError):
            checked_mul(MAX_AMOUNT, 2)

    def test_mul_div_floors(self):
        assert mul_div(7, 10, 3) == 23

    def test_mul_div_exact_intermediate(self):
        # a * b exceeds the range but the quotient fits
        assert mul_div(MAX_AMOUNT, 10, 10) == MAX_AMOUNT

    def test_mul_div_zero_denominator(self):
        with pytest.raises(InvalidAmountError, match="Division by zero"):
            mul_div(1, 1, 0)

    def test_bps_of(self):
        assert bps_of(110, 5000) == 55
        assert bps_of(3, 3333) == 0

    def test_require_amount_rejects_bool(self):
        with pytest.raises(InvalidAmountError, match="integer"):
            require_amount(True)

    def test_require_amount_rejects_float(self):
        with pytest.raises(InvalidAmountError):
            require_amount(1.5)

    def test_require_amount_negative(self):
        with pytest.raises(InvalidAmountError, match="negative"):
            require_amount(-1)

    def test_require_amount_positive(self):
        assert require_amount(0) == 0
        with pytest.raises(InvalidAmountError, match="positive"):
            require_amount(0, positive=True)

    def test_require_amount_range(self):
        assert require_amount(MAX_AMOUNT) == MAX_AMOUNT
        with pytest.raises(InvalidAmountError, match="overflows"):
            require_amount(MAX_AMOUNT + 1)

    def test_require_bps(self):
        assert require_bps(10_000) == 10_000
        with pytest.raises(InvalidAmountError):
            require_bps(10_001)

    def test_require_time(self):
        assert require_time(0) == 0
        assert require_time(NOW) == NOW

    @pytest.mark.parametrize("value", ["soon", None, True, [1], float("nan"), float("inf"), -1])
    def test_require_time_rejects(self, value):
        with pytest.raises(InvalidAmountError, match="now"):
            require_time(value)

    def test_require_flag(self):
        assert require_flag(False, "favor") is False
        for value in ("false", "true", 0, 1, None):
            with pytest.raises(InvalidAmountError, match="favor"):
                require_flag(value, "favor")

    def test_errors_share_base_class(self):
        with pytest.raises(StageFundError):
            checked_sub(0, 1)


# ══════════════════════════════════════════════════════════════════════
#  LEDGER
# ══════════════════════════════════════════════════════════════════════

class TestLedgerConstruction:

    def test_rejects_zero_rate(self):
        with pytest.raises(ConfigurationError, match="rate"):
            make_ledger(rate=0)

    def test_rejects_unknown_weight_mode(self):
        with pytest.raises(ConfigurationError, match="weight mode"):
            make_ledger(weight_mode="square")

    def test_empty(self):
        ledger = make_ledger()
        assert len(ledger) == 0
        assert ledger.total_raised == 0
        assert ledger.total_votable_weight() == 0


class TestContribute:

    def test_first_contribution_registers(self):
        ledger = make_ledger()
        record = ledger.contribute(ALICE, 60)
        assert ALICE in ledger
        assert record.principal == 60
        assert record.own_weight == 60
        assert ledger.total_raised == 60

    def test_repeat_contributions_accumulate(self):
        ledger = make_ledger()
        ledger.contribute(ALICE, 60)
        record = ledger.contribute(ALICE, 15)
        assert record.principal == 75
        assert len(ledger) == 1

    def test_weight_multiply_mode(self):
        ledger = make_ledger(rate=3)
        assert ledger.contribute(ALICE, 10).own_weight == 30

    def test_weight_divide_mode_floors(self):
        ledger = make_ledger(rate=3, weight_mode=WEIGHT_MODE_DIVIDE)
        assert ledger.contribute(ALICE, 10).own_weight == 3

    def test_divide_mode_recomputes_from_total_principal(self):
        ledger = make_ledger(rate=3, weight_mode=WEIGHT_MODE_DIVIDE)
        ledger.contribute(ALICE, 2)
        assert ledger.get(ALICE).own_weight == 0
        ledger.contribute(ALICE, 1)
        assert ledger.get(ALICE).own_weight == 1

    def test_zero_amount_rejected(self):
        ledger = make_ledger()
        with pytest.raises(InvalidAmountError):
            ledger.contribute(ALICE, 0)
        assert ALICE not in ledger

    def test_empty_identity_rejected(self):
        with pytest.raises(InvalidAmountError, match="identity"):
            make_ledger().contribute("", 10)

    def test_hard_cap_exactly_reached(self):
        ledger = make_ledger(hard_cap=100)
        ledger.contribute(ALICE, 100)
        assert ledger.total_raised == 100

    def test_hard_cap_exceeded_leaves_state(self):
        ledger = make_ledger(hard_cap=100)
        ledger.contribute(ALICE, 90)
        with pytest.raises(CapExceededError, match="hard cap"):
            ledger.contribute(BOB, 11)
        assert ledger.total_raised == 90
        assert BOB not in ledger

    def test_registration_order(self):
        ledger = funded_ledger(carol=1, alice=2, bob=3)
        assert [c.contributor_id for c in ledger] == [CAROL, ALICE, BOB]


class TestVoteCounters:

    def test_spend_direct(self):
        ledger = funded_ledger(alice=50)
        ledger.spend_weight(ALICE, 20, delegated=False)
        assert ledger.get(ALICE).voted_weight == 20
        assert ledger.get(ALICE).direct_votable == 30

    def test_spend_more_than_available(self):
        ledger = funded_ledger(alice=50)
        with pytest.raises(InsufficientWeightError, match="direct"):
            ledger.spend_weight(ALICE, 51, delegated=False)

    def test_spend_delegated_without_pool(self):
        ledger = funded_ledger(alice=50)
        with pytest.raises(InsufficientWeightError, match="delegated"):
            ledger.spend_weight(ALICE, 1, delegated=True)

    def test_unknown_voter(self):
        with pytest.raises(InsufficientWeightError):
            make_ledger().spend_weight(ALICE, 1, delegated=False)

    def test_reset_votes(self):
        ledger = funded_ledger(alice=50)
        ledger.spend_weight(ALICE, 50, delegated=False)
        ledger.reset_votes()
        assert ledger.get(ALICE).direct_votable == 50

    def test_record_refund_keeps_principal(self):
        ledger = funded_ledger(alice=40)
        ledger.record_refund(ALICE, 40)
        assert ledger.get(ALICE).refunded == 40
        assert ledger.get(ALICE).principal == 40


# ══════════════════════════════════════════════════════════════════════
#  DELEGATION
# ══════════════════════════════════════════════════════════════════════

class TestDelegation:

    def setup_method(self):
        self.ledger = funded_ledger(alice=50, bob=40, carol=10)
        self.registry = DelegationRegistry()

    def test_delegate_moves_weight_between_pools(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        alice, bob = self.ledger.get(ALICE), self.ledger.get(BOB)
        assert alice.delegated_out == 30
        assert alice.direct_votable == 20
        assert bob.delegated_in == 30
        assert bob.delegated_votable == 30
        assert bob.direct_votable == 40

    def test_total_votable_unchanged(self):
        before = self.ledger.total_votable_weight()
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        assert self.ledger.total_votable_weight() == before == 100

    def test_edges_coalesce(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 10, now=NOW)
        edge = self.registry.delegate(self.ledger, ALICE, BOB, 5, now=NOW)
        assert edge.amount == 15
        assert len(self.registry) == 1
        assert self.registry.get(ALICE, BOB) == 15

    def test_delegate_more_than_own(self):
        with pytest.raises(InsufficientWeightError, match="undelegated"):
            self.registry.delegate(self.ledger, CAROL, BOB, 11, now=NOW)

    def test_delegate_across_edges_bounded_by_own(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 40, now=NOW)
        with pytest.raises(InsufficientWeightError):
            self.registry.delegate(self.ledger, ALICE, CAROL, 11, now=NOW)
        assert self.registry.get(ALICE, CAROL) == 0

    def test_received_weight_cannot_be_redelegated(self):
        self.registry.delegate(self.ledger, ALICE, CAROL, 50, now=NOW)
        with pytest.raises(InsufficientWeightError):
            self.registry.delegate(self.ledger, CAROL, BOB, 11, now=NOW)

    def test_self_delegation_rejected(self):
        with pytest.raises(InvalidAmountError, match="self"):
            self.registry.delegate(self.ledger, ALICE, ALICE, 1, now=NOW)

    def test_delegate_to_non_contributor(self):
        with pytest.raises(InsufficientWeightError, match="no contribution"):
            self.registry.delegate(self.ledger, ALICE, "mallory", 1, now=NOW)

    def test_zero_amount_rejected(self):
        with pytest.raises(InvalidAmountError):
            self.registry.delegate(self.ledger, ALICE, BOB, 0, now=NOW)

    def test_undelegate_partial(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        edge = self.registry.undelegate(self.ledger, ALICE, BOB, 10, now=NOW)
        assert edge.amount == 20
        assert self.ledger.get(ALICE).delegated_out == 20
        assert self.ledger.get(BOB).delegated_in == 20

    def test_undelegate_to_zero_removes_edge(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        assert self.registry.undelegate(self.ledger, ALICE, BOB, 30, now=NOW) is None
        assert len(self.registry) == 0
        assert self.ledger.get(BOB).delegated_in == 0

    def test_undelegate_more_than_edge(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        with pytest.raises(InsufficientWeightError, match="holds 30"):
            self.registry.undelegate(self.ledger, ALICE, BOB, 31, now=NOW)
        assert self.registry.get(ALICE, BOB) == 30

    def test_undelegate_missing_edge(self):
        with pytest.raises(InsufficientWeightError):
            self.registry.undelegate(self.ledger, ALICE, BOB, 1, now=NOW)

    def test_undelegate_spent_weight_rejected(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 30, now=NOW)
        self.ledger.spend_weight(BOB, 25, delegated=True)
        with pytest.raises(InsufficientWeightError, match="already voted"):
            self.registry.undelegate(self.ledger, ALICE, BOB, 10, now=NOW)
        self.registry.undelegate(self.ledger, ALICE, BOB, 5, now=NOW)
        assert self.ledger.get(BOB).delegated_in == 25

    def test_outgoing_incoming(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 10, now=NOW)
        self.registry.delegate(self.ledger, CAROL, BOB, 5, now=NOW)
        assert {e.delegator for e in self.registry.incoming(BOB)} == {ALICE, CAROL}
        assert [e.delegate for e in self.registry.outgoing(ALICE)] == [BOB]

    def test_edge_timestamps_follow_supplied_clock(self):
        self.registry.delegate(self.ledger, ALICE, BOB, 10, now=NOW)
        edge = self.registry.delegate(self.ledger, ALICE, BOB, 5, now=NOW + 60)
        assert edge.created_at == NOW
        assert edge.updated_at == NOW + 60
        self.registry.undelegate(self.ledger, ALICE, BOB, 5, now=NOW + 120)
        assert self.registry.to_dict()["edges"][0]["updatedAt"] == NOW + 120


# ══════════════════════════════════════════════════════════════════════
#  SAVEPOINTS
# ══════════════════════════════════════════════════════════════════════

class TestSavepoints:

    def test_ledger_restores_named_records(self):
        ledger = funded_ledger(alice=50, bob=40)
        restore = ledger.savepoint(ALICE)
        ledger.contribute(ALICE, 10)
        ledger.spend_weight(ALICE, 20, delegated=False)
        restore()
        alice = ledger.get(ALICE)
        assert (alice.principal, alice.own_weight, alice.voted_weight) == (50, 50, 0)
        assert ledger.total_raised == 90

    def test_ledger_unregisters_newcomers(self):
        ledger = funded_ledger(alice=50)
        restore = ledger.savepoint(CAROL)
        ledger.contribute(CAROL, 10)
        restore()
        assert CAROL not in ledger
        assert len(ledger) == 1
        assert ledger.total_raised == 50
        ledger.contribute(BOB, 5)
        assert [c.contributor_id for c in ledger] == [ALICE, BOB]

    def test_registry_restores_edge(self):
        ledger = funded_ledger(alice=50, bob=40)
        registry = DelegationRegistry()
        registry.delegate(ledger, ALICE, BOB, 30, now=NOW)
        restore = registry.savepoint(ALICE, BOB)
        registry.undelegate(ledger, ALICE, BOB, 30, now=NOW + 1)
        restore()
        assert registry.get(ALICE, BOB) == 30
        assert registry.to_dict()["edges"][0]["updatedAt"] == NOW

    def test_registry_drops_new_edge(self):
        ledger = funded_ledger(alice=50, bob=40)
        registry = DelegationRegistry()
        restore = registry.savepoint(ALICE, BOB)
        registry.delegate(ledger, ALICE, BOB, 30, now=NOW)
        restore()
        assert len(registry) == 0
