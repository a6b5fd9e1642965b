"""
Staged-funding escrow with contributor governance.

Provides:
  - Contributor / ContributionLedger                 (ledger.py)
  - DelegationEdge / DelegationRegistry              (delegation.py)
  - MilestoneSpec / Milestone / MilestoneSchedule    (schedule.py)
  - VoteRecord / MilestoneTally / ProposalVoting     (voting.py)
  - TransferInstruction / Disbursement / RefundEngine (payouts.py)
  - AuditRecord / AuditLog                           (audit.py)
  - Campaign / CampaignPhase                         (campaign.py)
"""

from .ledger import (
    ContributionLedger,
    Contributor,
)
from .delegation import (
    DelegationEdge,
    DelegationRegistry,
)
from .schedule import (
    Milestone,
    MilestoneSchedule,
    MilestoneSpec,
    MilestoneStatus,
)
from .voting import (
    MilestoneTally,
    ProposalVoting,
    VoteRecord,
)
from .payouts import (
    Disbursement,
    RefundEngine,
    TransferInstruction,
    TransferOutbox,
)
from .audit import (
    AuditLog,
    AuditRecord,
)
from .campaign import (
    Campaign,
    CampaignPhase,
    ContributorView,
)

__all__ = [
    # Ledger
    "ContributionLedger",
    "Contributor",
    # Delegation
    "DelegationEdge",
    "DelegationRegistry",
    # Schedule
    "Milestone",
    "MilestoneSchedule",
    "MilestoneSpec",
    "MilestoneStatus",
    # Voting
    "MilestoneTally",
    "ProposalVoting",
    "VoteRecord",
    # Payouts
    "Disbursement",
    "RefundEngine",
    "TransferInstruction",
    "TransferOutbox",
    # Audit
    "AuditLog",
    "AuditRecord",
    # Aggregate
    "Campaign",
    "CampaignPhase",
    "ContributorView",
]
