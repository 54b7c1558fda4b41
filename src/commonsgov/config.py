"""
commonsgov/config.py

Configuration constants and data classes for commonsgov.

Every numeric knob of the weighting model, the tier table and the veto
policy lives here. Modules read them from a GovernanceConfig instance so
a deployment can override any value from a JSON file.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError, InvalidTierError

logger = logging.getLogger("commonsgov.config")


# ============================================================================
# UNITS
# ============================================================================

SATS_PER_BTC = 100_000_000
SECONDS_PER_DAY = 86400


# ============================================================================
# WEIGHTING DEFAULTS
# ============================================================================

# Decay (days until a contribution reaches its retention floor)
DECAY_PERIOD_MINING_DAYS = 180
DECAY_PERIOD_FEE_FORWARDING_DAYS = 180
DECAY_PERIOD_ZAP_DAYS = 365
MIN_RETENTION = 0.10                  # Old contributions never fall below 10%

# Quadratic base weight
NORMALIZATION_FACTOR_BTC = 1.0
MINIMUM_WEIGHT = 0.01                 # Floor for qualified contributors

# Qualification (OR logic over a rolling window)
QUALIFICATION_WINDOW_DAYS = 90
QUALIFICATION_MIN_TOTAL_SATS = 5_000_000      # 0.05 BTC
QUALIFICATION_MIN_CONTRIBUTIONS = 3

# Whale resistance
CAP_PERCENTAGE = 0.05                 # 5% of system total per entity

# Cooling-off for large single contributions
COOLING_OFF_THRESHOLD_SATS = 10_000_000       # 0.1 BTC
COOLING_OFF_PERIOD_DAYS = 30

# Optional grandfathering ramp for newly over-cap entities
GLIDE_PATH_ENABLED = False
GLIDE_PATH_DAYS = 180

# Veto thresholds (each against its own denominator)
VETO_MINING_PERCENT = 0.30
VETO_ECONOMIC_PERCENT = 0.40
VETO_ZAP_PERCENT = 0.40

# Background job intervals (seconds)
RECOMPUTE_INTERVAL_SECONDS = 3600
DEADLINE_CHECK_INTERVAL_SECONDS = 300


# ============================================================================
# CONTRIBUTION TYPE REGISTRY
# ============================================================================

@dataclass(frozen=True)
class ContributionTypeSpec:
    """Per-type parameters for the weight formula."""
    name: str
    decay_period_days: int
    cooling_off: bool = True          # Large single contributions wait before counting
    component: str = ""               # Snapshot component this type rolls into

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ContributionTypeSpec":
        return cls(
            name=data["name"],
            decay_period_days=int(data["decay_period_days"]),
            cooling_off=bool(data.get("cooling_off", True)),
            component=data.get("component", "") or data["name"],
        )


def default_contribution_types() -> Dict[str, ContributionTypeSpec]:
    """The three contribution types the engine ships with."""
    return {
        "merge_mining": ContributionTypeSpec(
            "merge_mining", DECAY_PERIOD_MINING_DAYS, component="merge_mining"
        ),
        "fee_forwarding": ContributionTypeSpec(
            "fee_forwarding", DECAY_PERIOD_FEE_FORWARDING_DAYS, component="fee_forwarding"
        ),
        "zap": ContributionTypeSpec(
            "zap", DECAY_PERIOD_ZAP_DAYS, component="cumulative_zaps"
        ),
    }


# ============================================================================
# TIER TABLE
# ============================================================================

@dataclass(frozen=True)
class TierRequirements:
    """Fixed requirements for one proposal tier."""
    tier: int
    threshold: float                  # Total tallied weight needed per round
    required_rounds: int
    round_spacing_days: int           # Days between round openings
    voting_window_days: int           # Default length of each round

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TierRequirements":
        return cls(
            tier=int(data["tier"]),
            threshold=float(data["threshold"]),
            required_rounds=int(data["required_rounds"]),
            round_spacing_days=int(data.get("round_spacing_days", 0)),
            voting_window_days=int(data["voting_window_days"]),
        )


def default_tiers() -> Dict[int, TierRequirements]:
    return {
        1: TierRequirements(1, 100.0, 1, 0, 7),       # Routine maintenance
        2: TierRequirements(2, 500.0, 1, 0, 30),      # Minor changes
        3: TierRequirements(3, 1_000.0, 1, 0, 90),    # Significant changes
        4: TierRequirements(4, 2_500.0, 2, 30, 14),   # Major changes
        5: TierRequirements(5, 5_000.0, 3, 60, 30),   # Constitutional changes
    }


# ============================================================================
# GOVERNANCE CONFIG
# ============================================================================

@dataclass
class GovernanceConfig:
    """All tunable parameters of the voting engine."""
    min_retention: float = MIN_RETENTION
    normalization_factor_btc: float = NORMALIZATION_FACTOR_BTC
    minimum_weight: float = MINIMUM_WEIGHT
    qualification_window_days: int = QUALIFICATION_WINDOW_DAYS
    qualification_min_total_sats: int = QUALIFICATION_MIN_TOTAL_SATS
    qualification_min_contributions: int = QUALIFICATION_MIN_CONTRIBUTIONS
    cap_percentage: float = CAP_PERCENTAGE
    cooling_off_threshold_sats: int = COOLING_OFF_THRESHOLD_SATS
    cooling_off_period_days: int = COOLING_OFF_PERIOD_DAYS
    glide_path_enabled: bool = GLIDE_PATH_ENABLED
    glide_path_days: int = GLIDE_PATH_DAYS
    veto_mining_percent: float = VETO_MINING_PERCENT
    veto_economic_percent: float = VETO_ECONOMIC_PERCENT
    veto_zap_percent: float = VETO_ZAP_PERCENT
    recompute_interval_seconds: int = RECOMPUTE_INTERVAL_SECONDS
    deadline_check_interval_seconds: int = DEADLINE_CHECK_INTERVAL_SECONDS
    contribution_types: Dict[str, ContributionTypeSpec] = field(
        default_factory=default_contribution_types
    )
    tiers: Dict[int, TierRequirements] = field(default_factory=default_tiers)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Reject values the weight model cannot work with."""
        if not 0.0 < self.cap_percentage <= 1.0:
            raise ConfigError(f"cap_percentage must be in (0, 1], got {self.cap_percentage}")
        if not 0.0 <= self.min_retention <= 1.0:
            raise ConfigError(f"min_retention must be in [0, 1], got {self.min_retention}")
        if self.normalization_factor_btc <= 0:
            raise ConfigError("normalization_factor_btc must be positive")
        for name in ("veto_mining_percent", "veto_economic_percent", "veto_zap_percent"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigError(f"{name} must be in (0, 1], got {value}")
        for spec in self.contribution_types.values():
            if spec.decay_period_days <= 0:
                raise ConfigError(f"decay period for {spec.name} must be positive")
        for req in self.tiers.values():
            if req.required_rounds < 1:
                raise ConfigError(f"tier {req.tier} needs at least one round")
            if req.required_rounds > 1 and req.voting_window_days > req.round_spacing_days:
                raise ConfigError(
                    f"tier {req.tier} voting window exceeds round spacing"
                )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_tier(self, tier: int) -> TierRequirements:
        """Get requirements for a tier, raising InvalidTierError if unknown."""
        try:
            return self.tiers[int(tier)]
        except (KeyError, TypeError, ValueError):
            raise InvalidTierError(f"Invalid tier: {tier}")

    def get_contribution_type(self, name: str) -> Optional[ContributionTypeSpec]:
        return self.contribution_types.get(name)

    def register_contribution_type(self, spec: ContributionTypeSpec) -> None:
        """Add or replace a contribution type."""
        if spec.decay_period_days <= 0:
            raise ConfigError(f"decay period for {spec.name} must be positive")
        if not spec.component:
            spec = ContributionTypeSpec(spec.name, spec.decay_period_days, spec.cooling_off, spec.name)
        self.contribution_types[spec.name] = spec
        logger.info(f"Registered contribution type: {spec.name} ({spec.decay_period_days}d decay)")

    @property
    def components(self) -> list:
        """Snapshot component names in registration order."""
        seen = []
        for spec in self.contribution_types.values():
            if spec.component not in seen:
                seen.append(spec.component)
        return seen

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        data = {
            k: v for k, v in asdict(self).items()
            if k not in ("contribution_types", "tiers")
        }
        data["contribution_types"] = {
            name: spec.to_dict() for name, spec in self.contribution_types.items()
        }
        data["tiers"] = {str(t): req.to_dict() for t, req in self.tiers.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceConfig":
        known = {f for f in cls.__dataclass_fields__}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            kwargs[key] = value

        try:
            if "contribution_types" in kwargs:
                types = default_contribution_types()
                for name, spec in kwargs["contribution_types"].items():
                    base = types[name].to_dict() if name in types else {}
                    types[name] = ContributionTypeSpec.from_dict({**base, **spec, "name": name})
                kwargs["contribution_types"] = types
            if "tiers" in kwargs:
                tiers = default_tiers()
                for tier, req in kwargs["tiers"].items():
                    base = tiers[int(tier)].to_dict() if int(tier) in tiers else {}
                    tiers[int(tier)] = TierRequirements.from_dict({**base, **req, "tier": int(tier)})
                kwargs["tiers"] = tiers
            return cls(**kwargs)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid governance config: {e}") from e


def load_config(path: Optional[Path] = None) -> GovernanceConfig:
    """
    Load configuration from a JSON file.

    Args:
        path: JSON file with any subset of GovernanceConfig fields.
              None or a missing file yields the defaults.

    Returns:
        Validated GovernanceConfig
    """
    if path is None:
        return GovernanceConfig()

    path = Path(path)
    if not path.exists():
        logger.info(f"No config at {path}, using defaults")
        return GovernanceConfig()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")

    config = GovernanceConfig.from_dict(data)
    logger.info(f"Loaded governance config from {path}")
    return config
