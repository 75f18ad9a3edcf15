"""
Runtime configuration of the CTC objective.

Usage
-----
    from ctc_objective.config import CtcConfig
    config = CtcConfig(policy="average_loss_check", check_window=2000)
    config = CtcConfig.from_dict(cfg.ctc)  # plain dict or OmegaConf node
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping

from omegaconf import DictConfig, OmegaConf

from .robustness import POLICY_REGISTRY


@dataclass
class CtcConfig:
    """Configuration for :class:`ctc_objective.ctc.Ctc`."""

    # ---- Progress reporting ----
    report_interval: int = 100  # sequences between progress reports
    log_to_wandb: bool = False  # mirror progress metrics to an active wandb run

    # ---- Robustness ----
    policy: str = "stat_only"  # stat_only | sum_loss_check | average_loss_check
    check_window: int = 1000  # accepted samples before average_loss_check halves

    def __post_init__(self):
        if self.report_interval < 1:
            raise ValueError(f"report_interval must be positive, got {self.report_interval}")
        if self.policy not in POLICY_REGISTRY:
            raise ValueError(
                f"Unknown robustness policy '{self.policy}'. "
                f"Available: {sorted(POLICY_REGISTRY)}"
            )
        if self.check_window < 2 or self.check_window % 2:
            raise ValueError(f"check_window must be an even number >= 2, got {self.check_window}")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "CtcConfig":
        """Build from a mapping; unknown keys are rejected."""
        if isinstance(values, DictConfig):
            values = OmegaConf.to_container(values, resolve=True)
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown CTC config keys: {sorted(unknown)}")
        return cls(**values)
