"""
Z-scores of treated samples against control samples, per gene.

    z = (value - control mean) / control sd        (sample sd, ddof=1)

Controls are either all control samples (`pooled`) or the controls at the
treated sample's time point (`time_matched`). When no control exists at a
treated time point, the controls of the two nearest control time points are
pooled instead.
"""

import logging
import re
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..utils.errors import ZScoreError
from ..utils.records import SampleMetadata

logger = logging.getLogger(__name__)

CONTROL_STRATEGIES = ("pooled", "time_matched")

_TIME_PATTERN = re.compile(r"^\s*([-+]?\d*\.?\d+)\s*([a-zA-Z]*)\s*$")
_UNIT_HOURS = {"": 1.0, "h": 1.0, "hr": 1.0, "hrs": 1.0, "hour": 1.0, "hours": 1.0,
               "m": 1.0 / 60, "min": 1.0 / 60, "d": 24.0, "day": 24.0, "days": 24.0,
               "w": 168.0, "wk": 168.0, "week": 168.0, "weeks": 168.0}


def time_to_hours(value) -> float:
    """'6h' -> 6, '2d' -> 48, 12 -> 12."""
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    match = _TIME_PATTERN.match(str(value))
    if not match or match.group(2).lower() not in _UNIT_HOURS:
        raise ValueError(f"Unrecognized time point: {value!r}")
    return float(match.group(1)) * _UNIT_HOURS[match.group(2).lower()]


def control_statistics(matrix: pd.DataFrame, control: Sequence[str]) -> Tuple[pd.Series, pd.Series]:
    """Per-gene mean and sample sd over the control columns."""
    values = matrix[list(control)]
    return values.mean(axis=1), values.std(axis=1, ddof=1)


def undefined_sd_genes(matrix: pd.DataFrame, control: Sequence[str]) -> List[str]:
    """Genes whose control sd is zero or undefined (fewer than two controls)."""
    if len(control) == 0:
        return list(matrix.index)
    _, sd = control_statistics(matrix, control)
    bad = ~np.isfinite(sd.to_numpy(dtype=float)) | (sd.to_numpy(dtype=float) <= 0)
    return list(matrix.index[bad])


def compute_zscores(matrix: pd.DataFrame, control: Sequence[str], treated: Sequence[str]) -> pd.DataFrame:
    """
    Z-score the treated columns against the control columns.

    Raises:
        ZScoreError: no control samples, or any gene with zero/undefined
            control sd (listed on the exception)
    """
    control = list(control)
    treated = list(treated)
    if not control:
        raise ZScoreError("Control sample set is empty")

    bad = undefined_sd_genes(matrix, control)
    if bad:
        raise ZScoreError(
            f"{len(bad)} genes have zero or undefined control sd (e.g. {bad[:5]})",
            genes=bad,
        )

    mean, sd = control_statistics(matrix, control)
    return matrix[treated].sub(mean, axis=0).div(sd, axis=0)


def _nearest_times(target: float, available: Sequence[float], k: int = 2) -> List[float]:
    ranked = sorted(available, key=lambda t: (abs(t - target), t))
    return ranked[:k]


def control_sample_sets(
    metadata: SampleMetadata,
    control_column: str,
    control_level: str,
    strategy: str = "pooled",
    time_column: str = "time",
) -> List[Tuple[List[str], List[str]]]:
    """
    Pair treated samples with the controls they are scored against.

    Returns:
        [(treated samples, control samples), ...] in metadata order
    """
    if strategy not in CONTROL_STRATEGIES:
        raise ValueError(f"Unknown control_strategy '{strategy}', expected one of {CONTROL_STRATEGIES}")

    is_control = metadata.column(control_column).astype(str) == str(control_level)
    controls = [s for s, c in is_control.items() if c]
    treated = [s for s, c in is_control.items() if not c]
    if not controls:
        raise ZScoreError(f"No samples with {control_column} == '{control_level}'")
    if not treated:
        return []

    if strategy == "pooled":
        return [(treated, controls)]

    hours = metadata.column(time_column).map(time_to_hours)
    control_times: Dict[float, List[str]] = {}
    for s in controls:
        control_times.setdefault(hours[s], []).append(s)

    sets: Dict[float, List[str]] = {}
    for s in treated:
        sets.setdefault(hours[s], []).append(s)

    pairs = []
    for t, samples in sets.items():
        if t in control_times:
            matched = control_times[t]
        else:
            nearest = _nearest_times(t, list(control_times))
            matched = [s for near in nearest for s in control_times[near]]
            logger.info(f"No control at {t:g}h; pooling controls from {[f'{n:g}h' for n in nearest]}")
        pairs.append((samples, matched))
    return pairs


def zscore_matrix(
    matrix: pd.DataFrame,
    pairs: Sequence[Tuple[Sequence[str], Sequence[str]]],
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Z-score every (treated, control) pair after excluding genes that would
    have zero control sd in any pair.

    Returns:
        (genes x treated samples z-scores, excluded genes)
    """
    excluded = set()
    for _, control in pairs:
        excluded.update(undefined_sd_genes(matrix, control))
    excluded_list = [g for g in matrix.index if g in excluded]
    kept = matrix.drop(index=excluded_list)
    if excluded_list:
        logger.info(f"Excluding {len(excluded_list)} genes with zero control sd before z-scoring")

    parts = [compute_zscores(kept, control, treated) for treated, control in pairs]
    if not parts:
        return pd.DataFrame(index=kept.index), excluded_list
    return pd.concat(parts, axis=1), excluded_list
