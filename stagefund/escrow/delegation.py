"""
Delegation Registry

Voting weight (never principal) can be handed from one contributor to
another. Edges are coalesced per (delegator, delegate) pair, and the
ledger's delegated_in / delegated_out totals always equal the edge sums.

Received weight forms a separate pool from the delegate's own weight, so a
delegate can never spend it as if it were their own.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..arith import checked_add, checked_sub, require_amount
from ..exceptions import InsufficientWeightError, InvalidAmountError
from .ledger import ContributionLedger

logger = logging.getLogger(__name__)


@dataclass
class DelegationEdge:
    """Weight delegated from *delegator* to *delegate*."""
    delegator: str
    delegate: str
    amount: int
    created_at: float
    updated_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegator": self.delegator,
            "delegate": self.delegate,
            "amount": self.amount,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class DelegationRegistry:
    """
    Coalesced delegation edges.

    The campaign decides *when* delegation is allowed (never while a
    milestone vote is open); the registry checks *whether* it is.
    """

    def __init__(self):
        self._edges: Dict[Tuple[str, str], DelegationEdge] = {}

    # ── Mutations ─────────────────────────────────────────────────────

    def delegate(
        self,
        ledger: ContributionLedger,
        delegator: str,
        delegate: str,
        amount: int,
        now: float,
    ) -> DelegationEdge:
        """Create or grow the (delegator, delegate) edge by *amount*."""
        require_amount(amount, positive=True)
        if delegator == delegate:
            raise InvalidAmountError("Cannot delegate to self")

        source = ledger.require_stakeholder(delegator)
        target = ledger.require_stakeholder(delegate)

        available = source.undelegated_weight
        if amount > available:
            raise InsufficientWeightError(
                f"{delegator} has {available} undelegated weight, "
                f"tried to delegate {amount}"
            )

        key = (delegator, delegate)
        edge = self._edges.get(key)
        new_edge_amount = checked_add(edge.amount if edge else 0, amount)
        new_in = checked_add(target.delegated_in, amount)
        new_out = checked_add(source.delegated_out, amount)

        if edge is None:
            edge = DelegationEdge(
                delegator=delegator, delegate=delegate, amount=0, created_at=now, updated_at=now,
            )
            self._edges[key] = edge
        edge.amount = new_edge_amount
        edge.updated_at = now
        target.delegated_in = new_in
        source.delegated_out = new_out

        logger.info(f"Delegation: {delegator} → {delegate} (+{amount}, edge={new_edge_amount})")
        return edge

    def undelegate(
        self,
        ledger: ContributionLedger,
        delegator: str,
        delegate: str,
        amount: int,
        now: float,
    ) -> Optional[DelegationEdge]:
        """
        Shrink the (delegator, delegate) edge by *amount*.

        Returns the remaining edge, or None once it reaches zero and is removed.
        """
        require_amount(amount, positive=True)
        key = (delegator, delegate)
        edge = self._edges.get(key)
        remaining = edge.amount if edge else 0
        if amount > remaining:
            raise InsufficientWeightError(
                f"Delegation {delegator} → {delegate} holds {remaining}, "
                f"tried to withdraw {amount}"
            )

        source = ledger.get(delegator)
        target = ledger.get(delegate)
        # Received weight already spent on a vote cannot be pulled back. A
        # campaign never gets here with spent weight: delegation is frozen
        # while a milestone is ACTIVE and the counters are cleared on release.
        if target.delegated_in - amount < target.delegated_voted_weight:
            raise InsufficientWeightError(
                f"{delegate} has already voted with delegated weight from {delegator}"
            )

        new_in = checked_sub(target.delegated_in, amount)
        new_out = checked_sub(source.delegated_out, amount)

        target.delegated_in = new_in
        source.delegated_out = new_out
        edge.amount = remaining - amount
        edge.updated_at = now

        logger.info(f"Undelegation: {delegator} → {delegate} (-{amount}, edge={edge.amount})")
        if edge.amount == 0:
            del self._edges[key]
            return None
        return edge

    # ── Savepoints ────────────────────────────────────────────────────

    def savepoint(self, delegator: str, delegate: str) -> Callable[[], None]:
        """Capture one edge; the returned callable puts it back as it was."""
        key = (delegator, delegate)
        edge = self._edges.get(key)
        saved = copy.copy(edge) if edge is not None else None

        def restore() -> None:
            if saved is None:
                self._edges.pop(key, None)
            else:
                self._edges[key] = saved

        return restore

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, delegator: str, delegate: str) -> int:
        edge = self._edges.get((delegator, delegate))
        return edge.amount if edge else 0

    def outgoing(self, delegator: str) -> List[DelegationEdge]:
        return [e for (src, _), e in self._edges.items() if src == delegator]

    def incoming(self, delegate: str) -> List[DelegationEdge]:
        return [e for (_, dst), e in self._edges.items() if dst == delegate]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegations": len(self._edges),
            "edges": [e.to_dict() for e in self._edges.values()],
        }

    def __len__(self) -> int:
        return len(self._edges)

    def __repr__(self) -> str:
        return f"<DelegationRegistry edges={len(self._edges)}>"
