"""
StageFund TOML Configuration Loader

Loads every section of config.toml with environment variable overrides.
Each section is a dataclass with from_dict / apply_env, and the top-level
CampaignConfig adds from_file / validate / to_dict.

Environment variable mapping:
    [campaign] owner            → STAGEFUND_OWNER
    [campaign] recipient        → STAGEFUND_RECIPIENT
    [campaign] soft_cap         → STAGEFUND_SOFT_CAP
    [campaign] hard_cap         → STAGEFUND_HARD_CAP
    [campaign] rate             → STAGEFUND_RATE
    [campaign] funding_deadline → STAGEFUND_FUNDING_DEADLINE
    [campaign] weight_mode      → STAGEFUND_WEIGHT_MODE
    [logging]  level            → STAGEFUND_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    BPS_DENOMINATOR,
    DEFAULT_ALLOW_EARLY_CLOSE,
    DEFAULT_CLOSE_REQUIRES_OWNER,
    DEFAULT_MILESTONE_DURATION_SECONDS,
    DEFAULT_RATE,
    DEFAULT_UPFRONT_RELEASE,
    DEFAULT_WEIGHT_MODE,
    WEIGHT_MODES,
)
from ..escrow.schedule import MilestoneSpec
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _to_timestamp(value: Any) -> float:
    """TOML datetimes become epoch seconds; naive datetimes are read as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


# ---------------------------------------------------------------------------
# Section dataclasses, one per every [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class CampaignSectionConfig:
    """[campaign] section."""
    owner: str = ""
    recipient: str = ""
    soft_cap: int = 0
    hard_cap: int = 0
    rate: int = DEFAULT_RATE
    funding_deadline: float = 0.0
    weight_mode: str = DEFAULT_WEIGHT_MODE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CampaignSectionConfig":
        return cls(
            owner=data.get("owner", ""),
            recipient=data.get("recipient", ""),
            soft_cap=data.get("soft_cap", 0),
            hard_cap=data.get("hard_cap", 0),
            rate=data.get("rate", DEFAULT_RATE),
            funding_deadline=_to_timestamp(data.get("funding_deadline", 0.0)),
            weight_mode=data.get("weight_mode", DEFAULT_WEIGHT_MODE),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("STAGEFUND_OWNER"):
            self.owner = v
        if v := os.environ.get("STAGEFUND_RECIPIENT"):
            self.recipient = v
        if v := os.environ.get("STAGEFUND_SOFT_CAP"):
            self.soft_cap = int(v)
        if v := os.environ.get("STAGEFUND_HARD_CAP"):
            self.hard_cap = int(v)
        if v := os.environ.get("STAGEFUND_RATE"):
            self.rate = int(v)
        if v := os.environ.get("STAGEFUND_FUNDING_DEADLINE"):
            self.funding_deadline = float(v)
        if v := os.environ.get("STAGEFUND_WEIGHT_MODE"):
            self.weight_mode = v


@dataclass
class PolicySectionConfig:
    """[policy] section."""
    close_requires_owner: bool = DEFAULT_CLOSE_REQUIRES_OWNER
    allow_early_close: bool = DEFAULT_ALLOW_EARLY_CLOSE
    upfront_release: bool = DEFAULT_UPFRONT_RELEASE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicySectionConfig":
        return cls(
            close_requires_owner=data.get("close_requires_owner", DEFAULT_CLOSE_REQUIRES_OWNER),
            allow_early_close=data.get("allow_early_close", DEFAULT_ALLOW_EARLY_CLOSE),
            upfront_release=data.get("upfront_release", DEFAULT_UPFRONT_RELEASE),
        )


@dataclass
class LoggingSectionConfig:
    """[logging] section."""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingSectionConfig":
        return cls(level=str(data.get("level", "INFO")).upper())

    def apply_env(self) -> None:
        if v := os.environ.get("STAGEFUND_LOG_LEVEL"):
            self.level = v.upper()


@dataclass
class MilestoneConfig:
    """One [[milestones]] entry."""
    instalment_bps: int = BPS_DENOMINATOR
    quorum_bps: int = 5000
    threshold_bps: int = 5000
    duration: int = DEFAULT_MILESTONE_DURATION_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MilestoneConfig":
        return cls(
            instalment_bps=data.get("instalment_bps", BPS_DENOMINATOR),
            quorum_bps=data.get("quorum_bps", 5000),
            threshold_bps=data.get("threshold_bps", 5000),
            duration=data.get("duration", DEFAULT_MILESTONE_DURATION_SECONDS),
        )

    def to_spec(self) -> MilestoneSpec:
        return MilestoneSpec(
            duration=self.duration,
            quorum_bps=self.quorum_bps,
            threshold_bps=self.threshold_bps,
            instalment_bps=self.instalment_bps,
        )


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


@dataclass
class CampaignConfig:
    """
    Unified campaign configuration.

    Loads every section of config.toml and applies environment variable
    overrides. This is the single source of truth for Campaign.from_config.
    """
    campaign: CampaignSectionConfig = field(default_factory=CampaignSectionConfig)
    policy: PolicySectionConfig = field(default_factory=PolicySectionConfig)
    logging: LoggingSectionConfig = field(default_factory=LoggingSectionConfig)
    milestones: List[MilestoneConfig] = field(default_factory=lambda: [MilestoneConfig()])

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CampaignConfig":
        """Create CampaignConfig from a parsed TOML dict."""
        milestones = [MilestoneConfig.from_dict(m) for m in data.get("milestones", [])]
        return cls(
            campaign=CampaignSectionConfig.from_dict(data.get("campaign", {})),
            policy=PolicySectionConfig.from_dict(data.get("policy", {})),
            logging=LoggingSectionConfig.from_dict(data.get("logging", {})),
            milestones=milestones or [MilestoneConfig()],
        )

    @classmethod
    def from_file(cls, config_path: str) -> "CampaignConfig":
        """
        Load configuration from a TOML file.

        Args:
            config_path: Path to config.toml

        Returns:
            CampaignConfig instance
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.campaign.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all valid

        Raises:
            ConfigurationError: on invalid config
        """
        c = self.campaign
        if not c.owner:
            raise ConfigurationError("campaign.owner is required")
        if not c.recipient:
            raise ConfigurationError("campaign.recipient is required")
        if c.soft_cap <= 0:
            raise ConfigurationError("campaign.soft_cap must be > 0")
        if c.hard_cap < c.soft_cap:
            raise ConfigurationError("campaign.hard_cap must be >= soft_cap")
        if c.rate < 1:
            raise ConfigurationError("campaign.rate must be >= 1")
        if c.weight_mode not in WEIGHT_MODES:
            raise ConfigurationError(
                f"campaign.weight_mode must be one of {WEIGHT_MODES}, got {c.weight_mode!r}"
            )
        if self.logging.level not in _LOG_LEVELS:
            raise ConfigurationError(f"Invalid logging.level: {self.logging.level}")
        total = sum(m.instalment_bps for m in self.milestones)
        if total != BPS_DENOMINATOR:
            raise ConfigurationError(
                f"milestones instalment_bps sum to {total}, expected {BPS_DENOMINATOR}"
            )
        return True

    def milestone_specs(self) -> List[MilestoneSpec]:
        return [m.to_spec() for m in self.milestones]

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "campaign": {
                "owner": self.campaign.owner,
                "recipient": self.campaign.recipient,
                "soft_cap": self.campaign.soft_cap,
                "hard_cap": self.campaign.hard_cap,
                "rate": self.campaign.rate,
                "funding_deadline": self.campaign.funding_deadline,
                "weight_mode": self.campaign.weight_mode,
            },
            "policy": {
                "close_requires_owner": self.policy.close_requires_owner,
                "allow_early_close": self.policy.allow_early_close,
                "upfront_release": self.policy.upfront_release,
            },
            "logging": {
                "level": self.logging.level,
            },
            "milestones": [
                {
                    "instalment_bps": m.instalment_bps,
                    "quorum_bps": m.quorum_bps,
                    "threshold_bps": m.threshold_bps,
                    "duration": m.duration,
                }
                for m in self.milestones
            ],
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> CampaignConfig:
    """
    Load campaign configuration.

    Resolution order:
        1. Explicit *path* argument
        2. STAGEFUND_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("STAGEFUND_CONFIG", "config.toml")

    return CampaignConfig.from_file(path)
