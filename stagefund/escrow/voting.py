"""
Weighted Milestone Voting

Implements:
  - NOT_STARTED → ACTIVE → {PASSED, FAILED} per milestone
  - Favor / oppose votes from a contributor's direct or delegated pool
  - Partial votes: weight can be cast in several chunks until a pool is spent
  - Quorum and threshold measured against the votable weight captured at start
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..arith import checked_add, require_amount
from ..constants import BPS_DENOMINATOR
from ..exceptions import PhaseViolationError
from .ledger import ContributionLedger
from .schedule import Milestone, MilestoneStatus

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  VOTE DATA
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VoteRecord:
    """An individual vote cast on a milestone."""
    milestone_index: int
    voter: str
    weight: int
    favor: bool
    via_delegated: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestoneIndex": self.milestone_index,
            "voter": self.voter,
            "weight": self.weight,
            "favor": self.favor,
            "viaDelegated": self.via_delegated,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MilestoneTally:
    """Read-only view of a milestone's vote."""
    milestone_index: int
    status: MilestoneStatus
    favor_weight: int
    oppose_weight: int
    total_votable: int
    quorum_bps: int
    threshold_bps: int
    instalment_bps: int
    ends_at: Optional[float] = None

    @property
    def total_cast(self) -> int:
        return self.favor_weight + self.oppose_weight

    @property
    def quorum_reached(self) -> bool:
        """cast / votable >= quorum, compared exactly in integers."""
        return self.total_cast * BPS_DENOMINATOR >= self.total_votable * self.quorum_bps

    @property
    def threshold_reached(self) -> bool:
        """favor / votable >= threshold, compared exactly in integers."""
        return self.favor_weight * BPS_DENOMINATOR >= self.total_votable * self.threshold_bps

    @property
    def passes(self) -> bool:
        return self.quorum_reached and self.threshold_reached

    @classmethod
    def of(cls, milestone: Milestone) -> "MilestoneTally":
        return cls(
            milestone_index=milestone.index,
            status=milestone.status,
            favor_weight=milestone.favor_weight,
            oppose_weight=milestone.oppose_weight,
            total_votable=milestone.total_votable_snapshot,
            quorum_bps=milestone.quorum_bps,
            threshold_bps=milestone.threshold_bps,
            instalment_bps=milestone.instalment_bps,
            ends_at=milestone.ends_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestoneIndex": self.milestone_index,
            "status": self.status.name,
            "favorWeight": self.favor_weight,
            "opposeWeight": self.oppose_weight,
            "totalCast": self.total_cast,
            "totalVotable": self.total_votable,
            "quorumBps": self.quorum_bps,
            "thresholdBps": self.threshold_bps,
            "instalmentBps": self.instalment_bps,
            "quorumReached": self.quorum_reached,
            "thresholdReached": self.threshold_reached,
            "endsAt": self.ends_at,
        }


# ══════════════════════════════════════════════════════════════════════
#  VOTING ENGINE
# ══════════════════════════════════════════════════════════════════════

class ProposalVoting:
    """
    Per-milestone voting state machine.

    Responsibilities:
        - Open a milestone's vote and snapshot total votable weight
        - Accept weighted votes from either pool, without double spending
        - Resolve PASSED / FAILED once the voting window has elapsed

    Disbursement and refunds are triggered by the campaign, not here.
    """

    def __init__(self):
        self._votes: Dict[int, List[VoteRecord]] = {}  # milestone index → votes

    # ── Start ─────────────────────────────────────────────────────────

    def start(
        self,
        milestone: Milestone,
        ledger: ContributionLedger,
        current_index: int,
        now: Optional[float] = None,
    ) -> Milestone:
        """Open voting on *milestone* (must be the current one)."""
        if milestone.index != current_index:
            raise PhaseViolationError(
                f"Milestone #{milestone.index} is not current (current={current_index})"
            )
        if milestone.status != MilestoneStatus.NOT_STARTED:
            raise PhaseViolationError(
                f"Milestone #{milestone.index} already {milestone.status.name}"
            )

        now = time.time() if now is None else now
        snapshot = ledger.total_votable_weight()

        milestone.transition_to(MilestoneStatus.ACTIVE, "Voting opened", now=now)
        milestone.total_votable_snapshot = snapshot
        milestone.started_at = now
        milestone.ends_at = now + milestone.duration
        self._votes[milestone.index] = []

        logger.info(
            f"Milestone #{milestone.index} voting open until {milestone.ends_at:.0f} "
            f"(votable={snapshot}, quorum={milestone.quorum_bps}bps, "
            f"threshold={milestone.threshold_bps}bps)"
        )
        return milestone

    # ── Cast vote ─────────────────────────────────────────────────────

    def cast_vote(
        self,
        milestone: Milestone,
        ledger: ContributionLedger,
        voter: str,
        weight: int,
        favor: bool,
        via_delegated: bool = False,
        now: Optional[float] = None,
    ) -> VoteRecord:
        """
        Cast *weight* for or against *milestone*.

        Args:
            milestone: The milestone under vote
            ledger: Contribution ledger holding the voter's pools
            voter: Caller identity
            weight: Weight to spend from the chosen pool
            favor: True to support the release, False to oppose it
            via_delegated: Spend received weight instead of own weight
        """
        if not milestone.is_active:
            raise PhaseViolationError(
                f"Milestone #{milestone.index} is not open for voting "
                f"(status={milestone.status.name})"
            )
        now = time.time() if now is None else now
        if now >= milestone.ends_at:
            raise PhaseViolationError(
                f"Voting period for milestone #{milestone.index} has ended"
            )
        require_amount(weight, "weight", positive=True)

        if favor:
            new_favor, new_oppose = checked_add(milestone.favor_weight, weight), milestone.oppose_weight
        else:
            new_favor, new_oppose = milestone.favor_weight, checked_add(milestone.oppose_weight, weight)

        # Raises InsufficientWeightError before anything is recorded
        ledger.spend_weight(voter, weight, via_delegated)

        milestone.favor_weight = new_favor
        milestone.oppose_weight = new_oppose
        record = VoteRecord(
            milestone_index=milestone.index,
            voter=voter,
            weight=weight,
            favor=favor,
            via_delegated=via_delegated,
            timestamp=now,
        )
        self._votes.setdefault(milestone.index, []).append(record)

        logger.info(
            f"Vote: {voter} → {'FOR' if favor else 'AGAINST'} milestone #{milestone.index} "
            f"(weight={weight}, pool={'delegated' if via_delegated else 'direct'})"
        )
        return record

    # ── End ───────────────────────────────────────────────────────────

    def end(self, milestone: Milestone, now: Optional[float] = None) -> MilestoneTally:
        """
        Resolve *milestone* once its voting window has elapsed.

        Resolution order: quorum, then threshold.
        """
        if not milestone.is_active:
            raise PhaseViolationError(
                f"Milestone #{milestone.index} is not active (status={milestone.status.name})"
            )
        now = time.time() if now is None else now
        if now < milestone.ends_at:
            raise PhaseViolationError(
                f"Milestone #{milestone.index} voting still open "
                f"({milestone.ends_at - now:.0f}s remaining)"
            )

        tally = MilestoneTally.of(milestone)
        if not tally.quorum_reached:
            milestone.transition_to(MilestoneStatus.FAILED, "Quorum not reached", now=now)
            logger.warning(
                f"Milestone #{milestone.index}: REJECTED, quorum not reached "
                f"({tally.total_cast}/{tally.total_votable})"
            )
        elif tally.threshold_reached:
            milestone.transition_to(MilestoneStatus.PASSED, "Quorum and threshold met", now=now)
            logger.info(
                f"Milestone #{milestone.index}: PASSED "
                f"(favor={tally.favor_weight}/{tally.total_votable})"
            )
        else:
            milestone.transition_to(MilestoneStatus.FAILED, "Threshold not reached", now=now)
            logger.warning(
                f"Milestone #{milestone.index}: REJECTED "
                f"(favor={tally.favor_weight}/{tally.total_votable}, "
                f"threshold={milestone.threshold_bps}bps)"
            )
        milestone.resolved_at = now
        return MilestoneTally.of(milestone)

    # ── Savepoints ────────────────────────────────────────────────────

    def savepoint(self, milestone_index: int) -> Callable[[], None]:
        """Capture how many votes *milestone_index* holds; restoring drops later ones."""
        votes = self._votes.get(milestone_index)
        count = len(votes) if votes is not None else 0

        def restore() -> None:
            if votes is None:
                self._votes.pop(milestone_index, None)
            else:
                del votes[count:]
                self._votes[milestone_index] = votes

        return restore

    # ── Queries ───────────────────────────────────────────────────────

    def get_votes(self, milestone_index: int) -> List[VoteRecord]:
        return list(self._votes.get(milestone_index, []))

    def voter_count(self, milestone_index: int) -> int:
        return len({v.voter for v in self._votes.get(milestone_index, [])})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "votes": {
                idx: [v.to_dict() for v in votes] for idx, votes in self._votes.items()
            },
        }

    def __repr__(self) -> str:
        return f"<ProposalVoting milestones={len(self._votes)}>"
