"""
Contribution Ledger

Tracks each contributor's principal and the voting weight derived from it,
together with the per-milestone counters that keep a contributor from
spending the same weight twice.

Contributors live in one arena: an ordered list of records plus an
identity → position index. Registration order is the iteration order used
for refunds, so refunds are deterministic.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..arith import checked_add, checked_mul, require_amount
from ..constants import WEIGHT_MODE_DIVIDE, WEIGHT_MODE_MULTIPLY, WEIGHT_MODES
from ..exceptions import (
    CapExceededError,
    ConfigurationError,
    InsufficientWeightError,
    InvalidAmountError,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  CONTRIBUTOR
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Contributor:
    """
    One contributor's position.

    Fields:
        contributor_id:          Unique caller identity
        principal:               Total value contributed
        own_weight:              Weight derived from principal
        voted_weight:            Own weight spent on the current milestone
        delegated_voted_weight:  Received weight spent on the current milestone
        delegated_in:            Weight received from other contributors
        delegated_out:           Weight handed to other contributors
        refunded:                Value paid back by refund rounds
    """
    contributor_id: str
    principal: int = 0
    own_weight: int = 0
    voted_weight: int = 0
    delegated_voted_weight: int = 0
    delegated_in: int = 0
    delegated_out: int = 0
    refunded: int = 0

    @property
    def direct_votable(self) -> int:
        """Own weight still available for direct votes."""
        return self.own_weight - self.delegated_out - self.voted_weight

    @property
    def delegated_votable(self) -> int:
        """Received weight still available for delegated votes."""
        return self.delegated_in - self.delegated_voted_weight

    @property
    def undelegated_weight(self) -> int:
        """Own weight not yet handed to anyone."""
        return self.own_weight - self.delegated_out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contributor": self.contributor_id,
            "principal": self.principal,
            "ownWeight": self.own_weight,
            "votedWeight": self.voted_weight,
            "delegatedVotedWeight": self.delegated_voted_weight,
            "delegatedIn": self.delegated_in,
            "delegatedOut": self.delegated_out,
            "refunded": self.refunded,
            "directVotable": self.direct_votable,
            "delegatedVotable": self.delegated_votable,
        }


# ══════════════════════════════════════════════════════════════════════
#  LEDGER
# ══════════════════════════════════════════════════════════════════════

class ContributionLedger:
    """
    Principal and weight accounting for one campaign.

    Phase and deadline checks belong to the campaign; the ledger enforces
    amounts, the hard cap and the weight invariants.
    """

    def __init__(self, hard_cap: int, rate: int = 1, weight_mode: str = WEIGHT_MODE_MULTIPLY):
        require_amount(hard_cap, "hard_cap", positive=True)
        if isinstance(rate, bool) or not isinstance(rate, int) or rate < 1:
            raise ConfigurationError(f"rate must be an integer >= 1, got {rate!r}")
        if weight_mode not in WEIGHT_MODES:
            raise ConfigurationError(
                f"Unknown weight mode {weight_mode!r}; expected one of {WEIGHT_MODES}"
            )
        self.hard_cap = hard_cap
        self.rate = rate
        self.weight_mode = weight_mode
        self.total_raised = 0

        self._records: List[Contributor] = []
        self._index: Dict[str, int] = {}  # contributor_id → position in _records

    # ── Weight derivation ─────────────────────────────────────────────

    def derive_weight(self, principal: int) -> int:
        """Voting weight for *principal* under the configured mode."""
        if self.weight_mode == WEIGHT_MODE_DIVIDE:
            return principal // self.rate
        return checked_mul(principal, self.rate)

    # ── Lookups ───────────────────────────────────────────────────────

    def get(self, contributor_id: str) -> Optional[Contributor]:
        pos = self._index.get(contributor_id)
        return None if pos is None else self._records[pos]

    def require_stakeholder(self, contributor_id: str) -> Contributor:
        """Return the record for a contributor with non-zero principal."""
        record = self.get(contributor_id)
        if record is None or record.principal == 0:
            raise InsufficientWeightError(f"{contributor_id} has no contribution")
        return record

    def __contains__(self, contributor_id: str) -> bool:
        return contributor_id in self._index

    def __iter__(self) -> Iterator[Contributor]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def contributors(self) -> List[Contributor]:
        """All contributors in registration order."""
        return list(self._records)

    def total_votable_weight(self) -> int:
        """
        Own plus delegated weight across all contributors.

        Delegation moves weight between pools without creating any, so this
        equals the sum of own weights.
        """
        return sum(c.undelegated_weight + c.delegated_in for c in self._records)

    # ── Contribution ──────────────────────────────────────────────────

    def contribute(self, contributor_id: str, amount: int) -> Contributor:
        """
        Add *amount* to a contributor's principal and recompute weight.

        First-time contributors are registered at the end of the arena.
        """
        if not contributor_id:
            raise InvalidAmountError("Contributor identity is required")
        require_amount(amount, positive=True)

        new_total = checked_add(self.total_raised, amount)
        if new_total > self.hard_cap:
            raise CapExceededError(
                f"Contribution of {amount} exceeds hard cap "
                f"({self.total_raised}/{self.hard_cap} raised)"
            )

        record = self.get(contributor_id)
        current = record.principal if record is not None else 0
        new_principal = checked_add(current, amount)
        new_weight = self.derive_weight(new_principal)

        if record is None:
            record = Contributor(contributor_id=contributor_id)
            self._index[contributor_id] = len(self._records)
            self._records.append(record)
            logger.info(f"New contributor registered: {contributor_id}")

        record.principal = new_principal
        record.own_weight = new_weight
        self.total_raised = new_total

        logger.debug(
            f"Contribution: {contributor_id} amount={amount} "
            f"(principal={new_principal}, weight={new_weight})"
        )
        return record

    # ── Vote accounting ───────────────────────────────────────────────

    def spend_weight(self, contributor_id: str, amount: int, delegated: bool) -> Contributor:
        """
        Mark *amount* of a contributor's direct or delegated pool as voted.
        """
        record = self.get(contributor_id)
        available = 0
        if record is not None:
            available = record.delegated_votable if delegated else record.direct_votable
        if amount > available:
            pool = "delegated" if delegated else "direct"
            raise InsufficientWeightError(
                f"{contributor_id} has {available} {pool} weight available, "
                f"tried to vote {amount}"
            )
        if delegated:
            record.delegated_voted_weight = checked_add(record.delegated_voted_weight, amount)
        else:
            record.voted_weight = checked_add(record.voted_weight, amount)
        return record

    def reset_votes(self) -> None:
        """Clear per-milestone voted counters for every contributor."""
        for record in self._records:
            record.voted_weight = 0
            record.delegated_voted_weight = 0

    def record_refund(self, contributor_id: str, amount: int) -> None:
        """Add *amount* to the contributor's refunded total. Principal is kept for history."""
        record = self.get(contributor_id)
        record.refunded = checked_add(record.refunded, amount)

    # ── Savepoints ────────────────────────────────────────────────────

    def savepoint(self, *contributor_ids: str) -> Callable[[], None]:
        """
        Capture the raised total and the named contributors' records.

        The returned callable puts them back and unregisters anyone who was
        added afterwards. Records not named here must not be mutated in
        between.
        """
        total_raised = self.total_raised
        size = len(self._records)
        saved = {
            cid: copy.copy(self._records[self._index[cid]])
            for cid in contributor_ids
            if cid in self._index
        }

        def restore() -> None:
            for record in self._records[size:]:
                del self._index[record.contributor_id]
            del self._records[size:]
            for cid, record in saved.items():
                self._records[self._index[cid]] = record
            self.total_raised = total_raised

        return restore

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRaised": self.total_raised,
            "hardCap": self.hard_cap,
            "rate": self.rate,
            "weightMode": self.weight_mode,
            "contributors": [c.to_dict() for c in self._records],
        }

    def __repr__(self) -> str:
        return f"<ContributionLedger contributors={len(self._records)} raised={self.total_raised}>"
