"""
StageFund Unified Configuration

Loads all sections of config.toml.
Environment variables override TOML values.
"""

from .loader import (
    CampaignConfig,
    CampaignSectionConfig,
    LoggingSectionConfig,
    MilestoneConfig,
    PolicySectionConfig,
    load_config,
)

__all__ = [
    "CampaignConfig",
    "CampaignSectionConfig",
    "LoggingSectionConfig",
    "MilestoneConfig",
    "PolicySectionConfig",
    "load_config",
]
