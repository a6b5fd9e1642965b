"""
Campaign: staged-funding escrow aggregate.

The Campaign owns every piece of mutable state: the contribution ledger,
delegation edges, the milestone schedule, per-milestone votes, the pooled
balance and the audit log. All access goes through the operations below.

Execution model:
  - Operations are serialized by the caller's environment; one runs at a time
  - Every operation validates before it mutates and, in addition, keeps an
    undo journal of exactly what it touches: if anything fails (including a
    refused transfer batch) the aggregate is restored to its exact
    pre-operation state
  - Deadlines are evaluated against the ``now`` supplied with each call
  - Transfer batches are dispatched last, after all state changes succeeded
"""

import copy
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..arith import checked_add, checked_sub, require_amount, require_flag, require_time
from ..constants import (
    DEFAULT_ALLOW_EARLY_CLOSE,
    DEFAULT_CLOSE_REQUIRES_OWNER,
    DEFAULT_UPFRONT_RELEASE,
    DEFAULT_WEIGHT_MODE,
)
from ..exceptions import (
    ConfigurationError,
    InvalidAmountError,
    PhaseViolationError,
    ScheduleInvariantViolationError,
    StageFundError,
    UnauthorizedError,
)
from .audit import AuditLog, AuditRecord
from .delegation import DelegationRegistry
from .ledger import Contributor, ContributionLedger
from .payouts import (
    REASON_SWEEP,
    Disbursement,
    RefundEngine,
    TransferFn,
    TransferInstruction,
    TransferOutbox,
    dispatch,
)
from .schedule import Milestone, MilestoneSchedule, MilestoneSpec, MilestoneStatus
from .voting import MilestoneTally, ProposalVoting, VoteRecord

logger = logging.getLogger(__name__)


class CampaignPhase(IntEnum):
    """Campaign lifecycle."""
    FUNDING = 0
    SUCCEEDED = 1
    FAILED = 2
    COMPLETED = 3


@dataclass(frozen=True)
class ContributorView:
    """Query-side snapshot of one contributor."""
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
        return self.own_weight - self.delegated_out - self.voted_weight

    @property
    def delegated_votable(self) -> int:
        return self.delegated_in - self.delegated_voted_weight

    @classmethod
    def of(cls, record: Contributor) -> "ContributorView":
        return cls(
            contributor_id=record.contributor_id,
            principal=record.principal,
            own_weight=record.own_weight,
            voted_weight=record.voted_weight,
            delegated_voted_weight=record.delegated_voted_weight,
            delegated_in=record.delegated_in,
            delegated_out=record.delegated_out,
            refunded=record.refunded,
        )

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


# Scalar attributes captured when every operation starts. Collections are
# journaled piecewise by the operation itself, right before it touches them.
# The audit log is appended only after the transfer batch is accepted, so it
# needs no undo entry.
_SCALAR_FIELDS = (
    "phase",
    "remaining_pool",
    "current_milestone_index",
    "instalment_bps_released",
    "terminated",
)

UndoJournal = List[Callable[[], None]]


class Campaign:
    """
    Escrow aggregate root.

    Usage:
        campaign = Campaign(
            owner="owner", recipient="team",
            soft_cap=100, hard_cap=1000, rate=1, funding_deadline=deadline,
            milestones=[MilestoneSpec(86400, 5000, 6000, 10000)],
        )
        campaign.contribute("alice", 60, now=t0)
        campaign.close_funding("owner", now=deadline + 1)
    """

    def __init__(
        self,
        owner: str,
        recipient: str,
        soft_cap: int,
        hard_cap: int,
        rate: int,
        funding_deadline: float,
        milestones: Iterable[MilestoneSpec],
        *,
        weight_mode: str = DEFAULT_WEIGHT_MODE,
        close_requires_owner: bool = DEFAULT_CLOSE_REQUIRES_OWNER,
        allow_early_close: bool = DEFAULT_ALLOW_EARLY_CLOSE,
        upfront_release: bool = DEFAULT_UPFRONT_RELEASE,
        transfer_fn: Optional[TransferFn] = None,
    ):
        if not owner:
            raise ConfigurationError("Campaign owner is required")
        if not recipient:
            raise ConfigurationError("Campaign recipient is required")
        require_amount(soft_cap, "soft_cap", positive=True)
        require_amount(hard_cap, "hard_cap", positive=True)
        if soft_cap > hard_cap:
            raise ConfigurationError(f"soft_cap {soft_cap} exceeds hard_cap {hard_cap}")

        self.owner = owner
        self.recipient = recipient
        self.soft_cap = soft_cap
        self.hard_cap = hard_cap
        self.funding_deadline = funding_deadline
        self.close_requires_owner = close_requires_owner
        self.allow_early_close = allow_early_close
        self.upfront_release = upfront_release
        self.transfer_fn: TransferFn = transfer_fn if transfer_fn is not None else TransferOutbox()

        self.ledger = ContributionLedger(hard_cap=hard_cap, rate=rate, weight_mode=weight_mode)
        self.delegations = DelegationRegistry()
        self.schedule = MilestoneSchedule(milestones)
        self.voting = ProposalVoting()
        self.audit = AuditLog()

        self.phase = CampaignPhase.FUNDING
        self.remaining_pool = 0
        self.current_milestone_index = 0
        self.instalment_bps_released = 0
        self.terminated = False

        logger.info(
            f"Campaign opened: soft_cap={soft_cap}, hard_cap={hard_cap}, rate={rate} "
            f"({weight_mode}), {len(self.schedule)} milestones, deadline={funding_deadline:.0f}"
        )

    @classmethod
    def from_config(cls, config, transfer_fn: Optional[TransferFn] = None) -> "Campaign":
        """Build a campaign from a validated ``CampaignConfig``."""
        return cls(
            owner=config.campaign.owner,
            recipient=config.campaign.recipient,
            soft_cap=config.campaign.soft_cap,
            hard_cap=config.campaign.hard_cap,
            rate=config.campaign.rate,
            funding_deadline=config.campaign.funding_deadline,
            milestones=config.milestone_specs(),
            weight_mode=config.campaign.weight_mode,
            close_requires_owner=config.policy.close_requires_owner,
            allow_early_close=config.policy.allow_early_close,
            upfront_release=config.policy.upfront_release,
            transfer_fn=transfer_fn,
        )

    # =====================================================================
    #  Atomicity
    # =====================================================================

    def _take_snapshot(self, *fields: str) -> Callable[[], None]:
        """
        Capture the scalar state plus whole *fields* (deep-copied).

        Whole-collection copies are reserved for operations that sweep every
        contributor anyway (closing the funding window, resolving a vote).
        """
        snapshot = {name: getattr(self, name) for name in _SCALAR_FIELDS}
        snapshot.update(copy.deepcopy({name: getattr(self, name) for name in fields}))

        def restore() -> None:
            for name, value in snapshot.items():
                setattr(self, name, value)

        return restore

    @staticmethod
    def _rollback(journal: UndoJournal) -> None:
        for undo in reversed(journal):
            undo()

    @contextmanager
    def _atomic(self, operation: str) -> Iterator[UndoJournal]:
        """
        Run one operation as a unit.

        Yields an undo journal. Before mutating a collection the operation
        appends a savepoint for exactly the part it will touch; on failure
        the journal is replayed newest first.
        """
        journal: UndoJournal = [self._take_snapshot()]
        try:
            yield journal
        except StageFundError as e:
            self._rollback(journal)
            logger.debug(f"[{operation}] rejected ({e.kind}): {e}")
            raise
        except Exception:
            self._rollback(journal)
            logger.exception(f"[{operation}] unexpected failure, state restored")
            raise

    @staticmethod
    def _clock(now: Optional[float]) -> float:
        return time.time() if now is None else require_time(now)

    def _commit(
        self,
        operation: str,
        caller: str,
        now: float,
        amounts: Optional[Dict[str, int]] = None,
        transfers: Tuple[TransferInstruction, ...] = (),
    ) -> AuditRecord:
        """Dispatch *transfers* as one batch, then append the audit record."""
        dispatch(self.transfer_fn, transfers)
        return self.audit.append(
            operation=operation,
            caller=caller,
            amounts=amounts or {},
            phase=self.phase.name,
            milestone_index=self.current_milestone_index,
            remaining_pool=self.remaining_pool,
            transfers=transfers,
            timestamp=now,
        )

    # =====================================================================
    #  Guards
    # =====================================================================

    @staticmethod
    def _require_caller(caller: str) -> None:
        if not isinstance(caller, str) or not caller:
            raise UnauthorizedError("Caller identity is required")

    @staticmethod
    def _require_counterparty(to: str) -> None:
        if not isinstance(to, str):
            raise InvalidAmountError(f"Delegate identity must be a string, got {type(to).__name__}")

    def _require_owner(self, caller: str, operation: str) -> None:
        self._require_caller(caller)
        if caller != self.owner:
            raise UnauthorizedError(f"{operation} is restricted to the campaign owner")

    def _require_phase(self, *phases: CampaignPhase) -> None:
        if self.phase not in phases:
            raise PhaseViolationError(
                f"Operation not allowed in phase {self.phase.name} "
                f"(requires {'/'.join(p.name for p in phases)})"
            )

    def _require_no_active_vote(self) -> None:
        active = self.schedule.active()
        if active is not None:
            raise PhaseViolationError(
                f"Delegation is frozen while milestone #{active.index} is under vote"
            )

    def _require_active_milestone(self) -> Milestone:
        active = self.schedule.active()
        if active is None:
            raise PhaseViolationError("No milestone is currently under vote")
        return active

    # =====================================================================
    #  Payout helpers
    # =====================================================================

    def _release(self, milestone: Milestone) -> Optional[TransferInstruction]:
        """Pay *milestone*'s instalment and advance the schedule."""
        instruction = Disbursement.plan(
            milestone,
            self.recipient,
            total_raised=self.ledger.total_raised,
            remaining_pool=self.remaining_pool,
            released_bps=self.instalment_bps_released,
        )
        self.remaining_pool = checked_sub(self.remaining_pool, instruction.amount)
        self.instalment_bps_released = checked_add(
            self.instalment_bps_released, milestone.instalment_bps
        )
        milestone.released_amount = instruction.amount
        self.current_milestone_index += 1
        self.ledger.reset_votes()

        logger.info(
            f"Milestone #{milestone.index} released: amount={instruction.amount} "
            f"→ {self.recipient} ({milestone.instalment_bps} bps, "
            f"{self.instalment_bps_released} bps released so far)"
        )
        if self.current_milestone_index >= len(self.schedule):
            self.phase = CampaignPhase.COMPLETED
            logger.info(f"Campaign COMPLETED with {self.remaining_pool} left in the pool")
        return instruction if instruction.amount > 0 else None

    def _refund_all(self, milestone_index: Optional[int]) -> Tuple[TransferInstruction, ...]:
        """Refund the whole remaining pool pro rata and fail the campaign."""
        batch = RefundEngine.plan(
            self.ledger,
            total_to_distribute=self.remaining_pool,
            remaining_pool=self.remaining_pool,
            milestone_index=milestone_index,
        )
        paid = RefundEngine.apply(self.ledger, batch)
        self.remaining_pool = checked_sub(self.remaining_pool, paid)
        self.phase = CampaignPhase.FAILED
        logger.warning(
            f"Campaign FAILED: refunded {paid} to {len(batch)} contributor(s), "
            f"{self.remaining_pool} left in the pool"
        )
        return tuple(batch)

    # =====================================================================
    #  Contribution ledger
    # =====================================================================

    def contribute(self, caller: str, amount: int, now: Optional[float] = None) -> ContributorView:
        """Commit *amount* toward the target during the funding window."""
        with self._atomic("contribute") as journal:
            now = self._clock(now)
            self._require_caller(caller)
            self._require_phase(CampaignPhase.FUNDING)
            if now > self.funding_deadline:
                raise PhaseViolationError("Funding window has closed")

            journal.append(self.ledger.savepoint(caller))
            record = self.ledger.contribute(caller, amount)
            self.remaining_pool = checked_add(self.remaining_pool, amount)

            self._commit(
                "contribute", caller, now,
                amounts={"amount": amount, "principal": record.principal, "totalRaised": self.ledger.total_raised},
            )
        logger.info(
            f"Contribution: {caller} amount={amount} "
            f"(raised {self.ledger.total_raised}/{self.hard_cap})"
        )
        return ContributorView.of(record)

    def close_funding(self, caller: str, now: Optional[float] = None) -> CampaignPhase:
        """
        End the funding window.

        Succeeds when the soft cap was met (optionally releasing milestone 0
        straight away); otherwise fails the campaign and refunds everyone.
        """
        with self._atomic("closeFunding") as journal:
            now = self._clock(now)
            self._require_caller(caller)
            if self.close_requires_owner:
                self._require_owner(caller, "closeFunding")
            if self.phase != CampaignPhase.FUNDING:
                raise PhaseViolationError(f"Funding already closed (phase={self.phase.name})")

            deadline_passed = now > self.funding_deadline
            cap_filled = self.ledger.total_raised == self.hard_cap
            early_by_owner = self.allow_early_close and caller == self.owner
            if not (deadline_passed or cap_filled or early_by_owner):
                raise PhaseViolationError(
                    f"Funding window open until {self.funding_deadline:.0f}"
                )

            journal.append(self._take_snapshot("ledger", "schedule"))
            transfers: Tuple[TransferInstruction, ...] = ()
            if self.ledger.total_raised >= self.soft_cap:
                self.phase = CampaignPhase.SUCCEEDED
                self.remaining_pool = self.ledger.total_raised
                logger.info(
                    f"Funding SUCCEEDED: raised {self.ledger.total_raised} "
                    f"(soft cap {self.soft_cap})"
                )
                if self.upfront_release:
                    first = self.schedule[0]
                    first.transition_to(MilestoneStatus.PASSED, "Released on successful funding", now=now)
                    first.resolved_at = now
                    instruction = self._release(first)
                    if instruction is not None:
                        transfers = (instruction,)
            else:
                logger.warning(
                    f"Funding missed soft cap: raised {self.ledger.total_raised} "
                    f"< {self.soft_cap}"
                )
                transfers = self._refund_all(milestone_index=None)

            self._commit(
                "closeFunding", caller, now,
                amounts={"totalRaised": self.ledger.total_raised},
                transfers=transfers,
            )
        return self.phase

    # =====================================================================
    #  Delegation
    # =====================================================================

    def delegate(self, caller: str, to: str, amount: int, now: Optional[float] = None) -> int:
        """Hand *amount* of the caller's weight to *to*. Returns the edge amount."""
        with self._atomic("delegate") as journal:
            now = self._clock(now)
            self._require_caller(caller)
            self._require_counterparty(to)
            self._require_phase(CampaignPhase.FUNDING, CampaignPhase.SUCCEEDED)
            self._require_no_active_vote()
            journal.append(self.ledger.savepoint(caller, to))
            journal.append(self.delegations.savepoint(caller, to))
            edge = self.delegations.delegate(self.ledger, caller, to, amount, now=now)
            self._commit("delegate", caller, now, amounts={"amount": amount, "edge": edge.amount})
        return edge.amount

    def undelegate(self, caller: str, to: str, amount: int, now: Optional[float] = None) -> int:
        """Take back *amount* of weight from *to*. Returns what is left on the edge."""
        with self._atomic("undelegate") as journal:
            now = self._clock(now)
            self._require_caller(caller)
            self._require_counterparty(to)
            self._require_phase(CampaignPhase.FUNDING, CampaignPhase.SUCCEEDED)
            self._require_no_active_vote()
            journal.append(self.ledger.savepoint(caller, to))
            journal.append(self.delegations.savepoint(caller, to))
            edge = self.delegations.undelegate(self.ledger, caller, to, amount, now=now)
            remaining = edge.amount if edge is not None else 0
            self._commit("undelegate", caller, now, amounts={"amount": amount, "edge": remaining})
        return remaining

    # =====================================================================
    #  Milestone schedule
    # =====================================================================

    def insert_milestone(
        self,
        caller: str,
        index: int,
        duration: int,
        quorum_bps: int,
        threshold_bps: int,
        instalment_bps: int,
        donor_index: int,
        now: Optional[float] = None,
    ) -> Milestone:
        """Amend the schedule with a new future milestone funded by *donor_index*."""
        with self._atomic("insertMilestone") as journal:
            # A past or current position is rejected before any other check
            if isinstance(index, int) and not isinstance(index, bool) and index <= self.current_milestone_index:
                raise ScheduleInvariantViolationError(
                    f"Cannot insert at {index}: milestone #{self.current_milestone_index} is current"
                )
            now = self._clock(now)
            self._require_owner(caller, "insertMilestone")
            self._require_phase(CampaignPhase.FUNDING, CampaignPhase.SUCCEEDED)
            spec = MilestoneSpec(
                duration=duration,
                quorum_bps=quorum_bps,
                threshold_bps=threshold_bps,
                instalment_bps=instalment_bps,
            )
            journal.append(self._take_snapshot("schedule"))
            milestone = self.schedule.insert(
                index,
                spec,
                donor_index=donor_index,
                current_index=self.current_milestone_index,
                released_bps=self.instalment_bps_released,
            )
            self.schedule.check_invariant()
            self._commit(
                "insertMilestone", caller, now,
                amounts={"index": index, "instalmentBps": instalment_bps, "donorIndex": donor_index},
            )
        return milestone

    # =====================================================================
    #  Voting
    # =====================================================================

    def start_milestone(self, caller: str, now: Optional[float] = None) -> Milestone:
        """Open the vote on the current milestone."""
        with self._atomic("startMilestone") as journal:
            now = self._clock(now)
            self._require_owner(caller, "startMilestone")
            self._require_phase(CampaignPhase.SUCCEEDED)
            milestone = self.schedule[self.current_milestone_index]
            journal.append(self.schedule.savepoint(milestone.index))
            journal.append(self.voting.savepoint(milestone.index))
            self.voting.start(milestone, self.ledger, self.current_milestone_index, now=now)
            self._commit(
                "startMilestone", caller, now,
                amounts={"totalVotable": milestone.total_votable_snapshot},
            )
        return milestone

    def cast_vote(
        self,
        caller: str,
        amount: int,
        favor: bool,
        via_delegated: bool = False,
        now: Optional[float] = None,
    ) -> VoteRecord:
        """Spend *amount* of weight for or against the milestone under vote."""
        with self._atomic("castVote") as journal:
            now = self._clock(now)
            self._require_caller(caller)
            self._require_phase(CampaignPhase.SUCCEEDED)
            milestone = self._require_active_milestone()
            require_flag(favor, "favor")
            require_flag(via_delegated, "via_delegated")
            journal.append(self.ledger.savepoint(caller))
            journal.append(self.schedule.savepoint(milestone.index))
            journal.append(self.voting.savepoint(milestone.index))
            record = self.voting.cast_vote(
                milestone, self.ledger, caller, amount, favor,
                via_delegated=via_delegated, now=now,
            )
            self._commit(
                "castVote", caller, now,
                amounts={
                    "weight": amount,
                    "favor": int(favor),
                    "viaDelegated": int(via_delegated),
                },
            )
        return record

    def end_milestone(self, caller: str, now: Optional[float] = None) -> MilestoneTally:
        """
        Resolve the milestone under vote.

        PASSED releases its instalment; FAILED refunds the remaining pool.
        """
        with self._atomic("endMilestone") as journal:
            now = self._clock(now)
            self._require_owner(caller, "endMilestone")
            self._require_phase(CampaignPhase.SUCCEEDED)
            milestone = self._require_active_milestone()
            journal.append(self._take_snapshot("ledger"))
            journal.append(self.schedule.savepoint(milestone.index))
            tally = self.voting.end(milestone, now=now)

            transfers: Tuple[TransferInstruction, ...] = ()
            if tally.status == MilestoneStatus.PASSED:
                instruction = self._release(milestone)
                if instruction is not None:
                    transfers = (instruction,)
            else:
                transfers = self._refund_all(milestone_index=milestone.index)

            self._commit(
                "endMilestone", caller, now,
                amounts={
                    "favorWeight": tally.favor_weight,
                    "opposeWeight": tally.oppose_weight,
                    "totalVotable": tally.total_votable,
                    "released": milestone.released_amount,
                },
                transfers=transfers,
            )
        return tally

    # =====================================================================
    #  Termination
    # =====================================================================

    def terminate_campaign(self, caller: str, now: Optional[float] = None) -> int:
        """
        Sweep rounding dust once the campaign is over.

        Goes to the recipient after completion, to the owner after failure.
        Returns the swept amount.
        """
        with self._atomic("terminateCampaign"):
            now = self._clock(now)
            self._require_owner(caller, "terminateCampaign")
            self._require_phase(CampaignPhase.COMPLETED, CampaignPhase.FAILED)
            if self.terminated:
                raise PhaseViolationError("Campaign already terminated")

            dust = self.remaining_pool
            beneficiary = self.recipient if self.phase == CampaignPhase.COMPLETED else self.owner
            transfers: Tuple[TransferInstruction, ...] = ()
            if dust > 0:
                transfers = (TransferInstruction(recipient=beneficiary, amount=dust, reason=REASON_SWEEP),)
            self.remaining_pool = 0
            self.terminated = True
            self._commit("terminateCampaign", caller, now, amounts={"swept": dust}, transfers=transfers)

        logger.info(f"Campaign terminated: swept amount={dust} → {beneficiary}")
        return dust

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    @property
    def total_raised(self) -> int:
        return self.ledger.total_raised

    def contributor(self, contributor_id: str) -> ContributorView:
        record = self.ledger.get(contributor_id)
        if record is None:
            return ContributorView(contributor_id=contributor_id)
        return ContributorView.of(record)

    def contributors(self) -> List[ContributorView]:
        return [ContributorView.of(c) for c in self.ledger.contributors()]

    def milestone(self, index: int) -> MilestoneTally:
        return MilestoneTally.of(self.schedule[index])

    def milestones(self) -> List[MilestoneTally]:
        return [MilestoneTally.of(m) for m in self.schedule]

    def votes(self, index: int) -> List[VoteRecord]:
        return self.voting.get_votes(index)

    def delegation(self, delegator: str, delegate: str) -> int:
        return self.delegations.get(delegator, delegate)

    @property
    def audit_log(self) -> Tuple[AuditRecord, ...]:
        return self.audit.records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "recipient": self.recipient,
            "phase": self.phase.name,
            "softCap": self.soft_cap,
            "hardCap": self.hard_cap,
            "fundingDeadline": self.funding_deadline,
            "totalRaised": self.total_raised,
            "remainingPool": self.remaining_pool,
            "currentMilestoneIndex": self.current_milestone_index,
            "instalmentBpsReleased": self.instalment_bps_released,
            "terminated": self.terminated,
            "ledger": self.ledger.to_dict(),
            "delegations": self.delegations.to_dict(),
            "schedule": self.schedule.to_dict(),
            "auditRecords": len(self.audit),
        }

    def __repr__(self) -> str:
        return (
            f"<Campaign phase={self.phase.name} raised={self.total_raised} "
            f"pool={self.remaining_pool} milestone={self.current_milestone_index}/{len(self.schedule)}>"
        )
