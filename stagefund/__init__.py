"""
StageFund Package

Staged-funding escrow with contributor governance. Core imports are lazily
loaded so that importing a submodule does not read configuration until it
is needed. Logging is configured only by the ``stagefund`` command; a
library user attaches their own handlers. For direct module access:

    from stagefund.escrow import Campaign, MilestoneSpec
    from stagefund.config import load_config
    from stagefund.exceptions import PhaseViolationError
"""

import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())


def __getattr__(name):
    """Lazy module loading."""
    if name in ('Campaign', 'CampaignPhase', 'MilestoneSpec'):
        from . import escrow
        return getattr(escrow, name)
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'StageFundError':
        from .exceptions import StageFundError
        return StageFundError
    raise AttributeError(f"module 'stagefund' has no attribute {name!r}")

__all__ = ['Campaign', 'CampaignPhase', 'MilestoneSpec', 'load_config', 'StageFundError']
