"""
Milestone Schedule

Defines milestone lifecycle states and the ordered schedule that drives
which milestone is under vote. The instalments of all milestones always sum
to exactly 100.00% (10000 bps); amendments keep that invariant by taking the
new milestone's share from a future donor milestone.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ..arith import require_amount, require_bps
from ..constants import BPS_DENOMINATOR
from ..exceptions import PhaseViolationError, ScheduleInvariantViolationError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class MilestoneStatus(IntEnum):
    """Lifecycle stage of one milestone."""
    NOT_STARTED = 0
    ACTIVE = 1
    PASSED = 2
    FAILED = 3


_VALID_TRANSITIONS: Dict[MilestoneStatus, set] = {
    # NOT_STARTED → PASSED is the upfront release on successful funding
    MilestoneStatus.NOT_STARTED: {MilestoneStatus.ACTIVE, MilestoneStatus.PASSED},
    MilestoneStatus.ACTIVE:      {MilestoneStatus.PASSED, MilestoneStatus.FAILED},
    MilestoneStatus.PASSED:      set(),
    MilestoneStatus.FAILED:      set(),
}


# ══════════════════════════════════════════════════════════════════════
#  MILESTONE
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MilestoneSpec:
    """Parameters of a milestone before it joins a schedule."""
    duration: int
    quorum_bps: int
    threshold_bps: int
    instalment_bps: int

    def validate(self) -> "MilestoneSpec":
        require_amount(self.duration, "duration", positive=True)
        require_bps(self.quorum_bps, "quorum_bps")
        require_bps(self.threshold_bps, "threshold_bps")
        require_bps(self.instalment_bps, "instalment_bps")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MilestoneSpec":
        return cls(
            duration=data["duration"],
            quorum_bps=data["quorum_bps"],
            threshold_bps=data["threshold_bps"],
            instalment_bps=data["instalment_bps"],
        )


@dataclass
class Milestone:
    """
    One stage of the release schedule (a proposal).

    Fields:
        index:                  Position in the schedule (kept current on insertion)
        duration:               Voting period in seconds
        quorum_bps:             Participation needed, of the votable-weight snapshot
        threshold_bps:          Favor weight needed, of the votable-weight snapshot
        instalment_bps:         Share of total raised released when this passes
        favor_weight:           Weight cast in favor
        oppose_weight:          Weight cast against
        total_votable_snapshot: Votable weight captured when voting started
        started_at / ends_at:   Voting window
        released_amount:        Value disbursed when this milestone passed
    """
    index: int
    duration: int
    quorum_bps: int
    threshold_bps: int
    instalment_bps: int
    favor_weight: int = 0
    oppose_weight: int = 0
    status: MilestoneStatus = MilestoneStatus.NOT_STARTED
    total_votable_snapshot: int = 0
    started_at: Optional[float] = None
    ends_at: Optional[float] = None
    resolved_at: Optional[float] = None
    released_amount: int = 0
    _history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    @classmethod
    def from_spec(cls, index: int, spec: MilestoneSpec) -> "Milestone":
        return cls(
            index=index,
            duration=spec.duration,
            quorum_bps=spec.quorum_bps,
            threshold_bps=spec.threshold_bps,
            instalment_bps=spec.instalment_bps,
        )

    # ── Properties ────────────────────────────────────────────────────

    @property
    def total_cast(self) -> int:
        return self.favor_weight + self.oppose_weight

    @property
    def is_active(self) -> bool:
        return self.status == MilestoneStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in (MilestoneStatus.PASSED, MilestoneStatus.FAILED)

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    # ── State transitions ─────────────────────────────────────────────

    def transition_to(self, new_status: MilestoneStatus, reason: str = "", now: Optional[float] = None):
        """
        Advance milestone to *new_status*.

        Raises PhaseViolationError on invalid transitions.
        """
        allowed = _VALID_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise PhaseViolationError(
                f"Milestone #{self.index} cannot move from {self.status.name} → "
                f"{new_status.name}. Allowed: {[s.name for s in allowed]}"
            )
        old = self.status
        self._history.append({
            "from": old.name,
            "to": new_status.name,
            "reason": reason,
            "timestamp": now if now is not None else time.time(),
        })
        self.status = new_status
        logger.info(f"Milestone #{self.index}: {old.name} → {new_status.name} | {reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "duration": self.duration,
            "quorumBps": self.quorum_bps,
            "thresholdBps": self.threshold_bps,
            "instalmentBps": self.instalment_bps,
            "favorWeight": self.favor_weight,
            "opposeWeight": self.oppose_weight,
            "status": self.status.name,
            "totalVotableSnapshot": self.total_votable_snapshot,
            "startedAt": self.started_at,
            "endsAt": self.ends_at,
            "resolvedAt": self.resolved_at,
            "releasedAmount": self.released_amount,
        }

    def __repr__(self) -> str:
        return (
            f"<Milestone #{self.index} instalment={self.instalment_bps}bps "
            f"status={self.status.name}>"
        )


# ══════════════════════════════════════════════════════════════════════
#  SCHEDULE
# ══════════════════════════════════════════════════════════════════════

class MilestoneSchedule:
    """Ordered milestones whose instalments sum to BPS_DENOMINATOR."""

    def __init__(self, specs: Iterable[MilestoneSpec]):
        specs = [spec.validate() for spec in specs]
        if not specs:
            raise ScheduleInvariantViolationError("Schedule needs at least one milestone")
        self._milestones: List[Milestone] = [
            Milestone.from_spec(i, spec) for i, spec in enumerate(specs)
        ]
        self.check_invariant()

    # ── Invariant ─────────────────────────────────────────────────────

    @staticmethod
    def _sum_bps(milestones: List[Milestone]) -> int:
        return sum(m.instalment_bps for m in milestones)

    @property
    def total_bps(self) -> int:
        return self._sum_bps(self._milestones)

    def check_invariant(self) -> None:
        total = self.total_bps
        if total != BPS_DENOMINATOR:
            raise ScheduleInvariantViolationError(
                f"Instalments sum to {total} bps, expected {BPS_DENOMINATOR}"
            )

    # ── Amendment ─────────────────────────────────────────────────────

    def insert(
        self,
        index: int,
        spec: MilestoneSpec,
        donor_index: int,
        current_index: int,
        released_bps: int,
    ) -> Milestone:
        """
        Insert a milestone at *index*, shifting later milestones right.

        *donor_index* (pre-insertion position) gives up ``spec.instalment_bps``
        so the schedule still sums to 100%. Both positions must lie strictly
        after *current_index*. Nothing changes unless every check passes.
        """
        for name, value in (("index", index), ("donor_index", donor_index)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ScheduleInvariantViolationError(f"{name} must be an integer")
        if index <= current_index:
            raise ScheduleInvariantViolationError(
                f"Cannot insert at {index}: milestone #{current_index} is current"
            )
        if index > len(self._milestones):
            raise ScheduleInvariantViolationError(
                f"Insert position {index} is past the end of the schedule "
                f"({len(self._milestones)} milestones)"
            )
        if donor_index <= current_index or donor_index >= len(self._milestones):
            raise ScheduleInvariantViolationError(
                f"Donor milestone {donor_index} must be a future milestone "
                f"(current={current_index}, size={len(self._milestones)})"
            )

        spec.validate()
        if spec.instalment_bps > BPS_DENOMINATOR - released_bps:
            raise ScheduleInvariantViolationError(
                f"Instalment {spec.instalment_bps} bps exceeds the unreleased "
                f"{BPS_DENOMINATOR - released_bps} bps"
            )

        donor = self._milestones[donor_index]
        if donor.status != MilestoneStatus.NOT_STARTED:
            raise ScheduleInvariantViolationError(
                f"Donor milestone #{donor_index} has already started"
            )
        if donor.instalment_bps < spec.instalment_bps:
            raise ScheduleInvariantViolationError(
                f"Donor milestone #{donor_index} holds {donor.instalment_bps} bps, "
                f"cannot give {spec.instalment_bps}"
            )

        new_instalments = [m.instalment_bps for m in self._milestones]
        new_instalments[donor_index] -= spec.instalment_bps
        new_instalments.insert(index, spec.instalment_bps)
        if sum(new_instalments) != BPS_DENOMINATOR:
            raise ScheduleInvariantViolationError("Insertion would break the instalment sum")

        # Commit
        donor.instalment_bps -= spec.instalment_bps
        milestone = Milestone.from_spec(index, spec)
        self._milestones.insert(index, milestone)
        for position in range(index + 1, len(self._milestones)):
            self._milestones[position].index = position

        logger.info(
            f"Milestone #{index} inserted ({spec.instalment_bps} bps taken from "
            f"former #{donor_index}); schedule now has {len(self._milestones)} milestones"
        )
        return milestone

    # ── Savepoints ────────────────────────────────────────────────────

    def savepoint(self, index: int) -> Callable[[], None]:
        """Capture milestone *index*; the returned callable puts it back."""
        saved = copy.deepcopy(self[index])

        def restore() -> None:
            self._milestones[index] = saved

        return restore

    # ── Queries ───────────────────────────────────────────────────────

    def __getitem__(self, index: int) -> Milestone:
        if not 0 <= index < len(self._milestones):
            raise PhaseViolationError(f"No milestone at index {index}")
        return self._milestones[index]

    def __len__(self) -> int:
        return len(self._milestones)

    def __iter__(self) -> Iterator[Milestone]:
        return iter(self._milestones)

    def milestones(self) -> List[Milestone]:
        return list(self._milestones)

    def active(self) -> Optional[Milestone]:
        for milestone in self._milestones:
            if milestone.is_active:
                return milestone
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalBps": self.total_bps,
            "milestones": [m.to_dict() for m in self._milestones],
        }

    def __repr__(self) -> str:
        return f"<MilestoneSchedule milestones={len(self._milestones)}>"
