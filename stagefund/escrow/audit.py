"""
Append-only audit log.

Every successful campaign transition appends one immutable AuditRecord for
external observers (dashboards, indexers). Failed operations leave no trace.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .payouts import TransferInstruction


@dataclass(frozen=True)
class AuditRecord:
    """One committed operation."""
    sequence: int
    operation: str
    caller: str
    amounts: Tuple[Tuple[str, int], ...]
    phase: str
    milestone_index: int
    remaining_pool: int
    transfers: Tuple[TransferInstruction, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def amount(self, key: str) -> Optional[int]:
        return dict(self.amounts).get(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "operation": self.operation,
            "caller": self.caller,
            "amounts": dict(self.amounts),
            "phase": self.phase,
            "milestoneIndex": self.milestone_index,
            "remainingPool": self.remaining_pool,
            "transfers": [t.to_dict() for t in self.transfers],
            "timestamp": self.timestamp,
        }


class AuditLog:
    """Write-only from the campaign's perspective; readers get copies."""

    def __init__(self):
        self._records: List[AuditRecord] = []

    def append(
        self,
        operation: str,
        caller: str,
        amounts: Dict[str, int],
        phase: str,
        milestone_index: int,
        remaining_pool: int,
        transfers: Tuple[TransferInstruction, ...] = (),
        timestamp: Optional[float] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            sequence=len(self._records),
            operation=operation,
            caller=caller,
            amounts=tuple(sorted(amounts.items())),
            phase=phase,
            milestone_index=milestone_index,
            remaining_pool=remaining_pool,
            transfers=tuple(transfers),
            timestamp=time.time() if timestamp is None else timestamp,
        )
        self._records.append(record)
        return record

    @property
    def records(self) -> Tuple[AuditRecord, ...]:
        return tuple(self._records)

    def since(self, sequence: int) -> Tuple[AuditRecord, ...]:
        """Records with sequence >= *sequence*, for incremental readers."""
        return tuple(self._records[max(sequence, 0):])

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"<AuditLog records={len(self._records)}>"
