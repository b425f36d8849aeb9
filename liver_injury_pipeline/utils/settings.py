"""
Study-independent analysis settings.

Significance thresholds and the enrichment background are shared by every
study so that regulation calls and enrichment p-values are comparable across
mouse models and human cohorts. Per-study choices (contrasts, control level,
time course) stay in the study's own config.
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AnalysisSettings:
    """Global thresholds passed into every pipeline stage."""

    # Regulation call
    lfc_threshold: float = 1.0
    padj_threshold: float = 0.05

    # Enrichment
    background_size: int = 20000
    min_set_size: int = 10
    enrichment_correction: str = "fdr_bh"  # none, fdr_bh or bonferroni

    # Trajectory clustering
    profile_pvalue_cutoff: float = 0.05

    # Anything that draws random numbers
    random_seed: int = 42

    def __post_init__(self):
        if self.lfc_threshold < 0:
            raise ValueError(f"lfc_threshold must be >= 0, got {self.lfc_threshold}")
        if not 0 < self.padj_threshold <= 1:
            raise ValueError(f"padj_threshold must be in (0, 1], got {self.padj_threshold}")
        if self.background_size <= 0:
            raise ValueError(f"background_size must be positive, got {self.background_size}")
        if self.enrichment_correction not in ("none", "fdr_bh", "bonferroni"):
            raise ValueError(f"Unknown enrichment_correction: {self.enrichment_correction}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnalysisSettings":
        """Build settings from a dict, ignoring keys that are not settings."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    @classmethod
    def from_json(cls, path: Path) -> "AnalysisSettings":
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def to_config(self) -> Dict[str, Any]:
        """Flatten into the dict form agents merge into their config."""
        return asdict(self)
