"""
Disbursement and Refunds

Both paths draw on the campaign's remaining pool and are computed in two
phases: first the complete batch of TransferInstructions is built from a
read-only view of the ledger, then the batch is handed to the external
transfer collaborator as a single unit. A refused batch pays nobody.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..arith import bps_of, checked_add, mul_div
from ..constants import BPS_DENOMINATOR
from ..exceptions import CapExceededError, TransferFailureError
from .ledger import ContributionLedger
from .schedule import Milestone

logger = logging.getLogger(__name__)


REASON_INSTALMENT = "instalment"
REASON_REFUND = "refund"
REASON_SWEEP = "sweep"


@dataclass(frozen=True)
class TransferInstruction:
    """Who gets how much. Executing the movement of value is external."""
    recipient: str
    amount: int
    reason: str
    milestone_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "amount": self.amount,
            "reason": self.reason,
            "milestoneIndex": self.milestone_index,
        }


# Accepts the whole batch or raises TransferFailureError
TransferFn = Callable[[Sequence[TransferInstruction]], None]


class TransferOutbox:
    """
    Default transfer collaborator: records every accepted batch.

    Used when no executor is injected, and as a test double.
    """

    def __init__(self):
        self._batches: List[List[TransferInstruction]] = []

    def __call__(self, batch: Sequence[TransferInstruction]) -> None:
        self._batches.append(list(batch))

    @property
    def batches(self) -> List[List[TransferInstruction]]:
        return [list(b) for b in self._batches]

    @property
    def instructions(self) -> List[TransferInstruction]:
        return [ins for batch in self._batches for ins in batch]

    def total_to(self, recipient: str) -> int:
        return sum(i.amount for i in self.instructions if i.recipient == recipient)

    def __len__(self) -> int:
        return len(self._batches)


def dispatch(transfer_fn: TransferFn, batch: Sequence[TransferInstruction]) -> None:
    """
    Hand *batch* to the transfer collaborator.

    Any failure surfaces as TransferFailureError so the caller can roll the
    whole operation back.
    """
    if not batch:
        return
    try:
        transfer_fn(tuple(batch))
    except TransferFailureError:
        logger.warning(f"Transfer batch of {len(batch)} instruction(s) refused")
        raise
    except Exception as e:
        logger.warning(f"Transfer batch of {len(batch)} instruction(s) failed: {e}")
        raise TransferFailureError(f"Transfer batch failed: {e}") from e


# ══════════════════════════════════════════════════════════════════════
#  DISBURSEMENT
# ══════════════════════════════════════════════════════════════════════

class Disbursement:
    """Computes a milestone's instalment release."""

    @staticmethod
    def plan(
        milestone: Milestone,
        recipient: str,
        total_raised: int,
        remaining_pool: int,
        released_bps: int,
    ) -> TransferInstruction:
        """
        Instalment = total_raised × instalment_bps / 10000 (floored).

        Raises unless the full amount can be paid from *remaining_pool*.
        """
        new_released = checked_add(released_bps, milestone.instalment_bps)
        if new_released > BPS_DENOMINATOR:
            raise CapExceededError(
                f"Releasing milestone #{milestone.index} would exceed 100% "
                f"({new_released} bps)"
            )
        amount = bps_of(total_raised, milestone.instalment_bps)
        if amount > remaining_pool:
            raise TransferFailureError(
                f"Instalment {amount} for milestone #{milestone.index} exceeds "
                f"remaining pool {remaining_pool}"
            )
        return TransferInstruction(
            recipient=recipient,
            amount=amount,
            reason=REASON_INSTALMENT,
            milestone_index=milestone.index,
        )


# ══════════════════════════════════════════════════════════════════════
#  REFUNDS
# ══════════════════════════════════════════════════════════════════════

class RefundEngine:
    """Computes pro-rata refunds for every contributor."""

    @staticmethod
    def plan(
        ledger: ContributionLedger,
        total_to_distribute: int,
        remaining_pool: int,
        milestone_index: Optional[int] = None,
    ) -> List[TransferInstruction]:
        """
        share = principal × total_to_distribute / total_raised (floored),
        one instruction per contributor with principal, in registration order.

        Flooring leaves at most one unit of dust per contributor in the pool.
        """
        if total_to_distribute > remaining_pool:
            raise TransferFailureError(
                f"Refund of {total_to_distribute} exceeds remaining pool {remaining_pool}"
            )
        total_raised = ledger.total_raised
        if total_raised == 0 or total_to_distribute == 0:
            return []

        # Phase one: compute every share from a read-only pass
        batch: List[TransferInstruction] = []
        paid = 0
        for contributor in ledger.contributors():
            if contributor.principal == 0:
                continue
            share = mul_div(contributor.principal, total_to_distribute, total_raised)
            if share == 0:
                logger.debug(f"Refund share for {contributor.contributor_id} rounds to zero")
                continue
            paid = checked_add(paid, share)
            batch.append(
                TransferInstruction(
                    recipient=contributor.contributor_id,
                    amount=share,
                    reason=REASON_REFUND,
                    milestone_index=milestone_index,
                )
            )

        if paid > remaining_pool:
            raise TransferFailureError(
                f"Refund shares total {paid}, remaining pool is {remaining_pool}"
            )
        return batch

    @staticmethod
    def apply(ledger: ContributionLedger, batch: Sequence[TransferInstruction]) -> int:
        """Phase two: record refunded amounts. Returns the total paid."""
        total = 0
        for instruction in batch:
            ledger.record_refund(instruction.recipient, instruction.amount)
            total = checked_add(total, instruction.amount)
        return total
