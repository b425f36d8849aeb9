"""
Native short time-series profile clustering (STEM method).

1. Enumerate every candidate model profile that starts at 0 and moves by an
   integer in [-c, c] between consecutive time points.
2. Greedily pick `max_profiles` of them, each time adding the candidate whose
   minimum distance (1 - correlation) to those already chosen is largest.
3. Assign each gene (with 0 prepended) to the chosen profile it correlates
   with best; ties go to the lowest profile id, flat genes stay unassigned.
4. Expected sizes come from repeating the assignment on time-permuted data;
   a profile's p-value is the binomial tail of its observed size,
   Bonferroni-corrected over the number of profiles.

Permutations are drawn from a seeded generator, so results are
reproducible for a fixed seed.
"""

import itertools
import logging
import math
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from ..external_tools.base_tool import ClusteringBackend
from ..utils.errors import PipelineError
from ..utils.records import ClusterProfile

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 500000


def _standardize(rows: np.ndarray) -> np.ndarray:
    """Center each row and scale to unit norm; flat rows become all-NaN."""
    centered = rows - rows.mean(axis=1, keepdims=True)
    norms = np.linalg.norm(centered, axis=1, keepdims=True)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = centered / norms
    out[norms[:, 0] < 1e-12] = np.nan
    return out


def enumerate_profiles(n_times: int, max_unit_change: int) -> np.ndarray:
    """All profiles of length n_times + 1 starting at 0, steps in [-c, c]."""
    n_candidates = (2 * max_unit_change + 1) ** n_times
    if n_candidates > MAX_CANDIDATES:
        raise PipelineError(
            f"{n_candidates} candidate profiles for {n_times} time points with unit change "
            f"{max_unit_change}; lower max_unit_change"
        )
    steps = np.array(list(itertools.product(range(-max_unit_change, max_unit_change + 1),
                                            repeat=n_times)), dtype=float)
    return np.hstack([np.zeros((len(steps), 1)), np.cumsum(steps, axis=1)])


def select_profiles(candidates: np.ndarray, max_profiles: int) -> np.ndarray:
    """Greedy max-min distance selection. Returns candidate row indices."""
    unit = _standardize(candidates)
    usable = np.where(~np.isnan(unit[:, 0]))[0]
    if usable.size == 0:
        raise PipelineError("No non-constant candidate profiles")
    unit = unit[usable]

    chosen = [0]
    min_dist = 1.0 - unit @ unit[0]
    min_dist[0] = -np.inf
    while len(chosen) < min(max_profiles, len(usable)):
        nxt = int(np.argmax(min_dist))
        if min_dist[nxt] <= 1e-12:
            break
        chosen.append(nxt)
        min_dist = np.minimum(min_dist, 1.0 - unit @ unit[nxt])
        min_dist[chosen] = -np.inf
    return usable[chosen]


def assign_genes(values: np.ndarray, profile_units: np.ndarray) -> np.ndarray:
    """Index of best-correlated profile per gene, -1 for flat genes."""
    with_zero = np.hstack([np.zeros((values.shape[0], 1)), values])
    units = _standardize(with_zero)
    flat = np.isnan(units[:, 0])
    corr = np.nan_to_num(units) @ profile_units.T
    assignment = np.argmax(corr, axis=1)
    assignment[flat] = -1
    return assignment


def _permutations(n_times: int, n_permutations: int, rng: np.random.Generator) -> List[tuple]:
    if math.factorial(n_times) <= n_permutations:
        return list(itertools.permutations(range(n_times)))
    return [tuple(rng.permutation(n_times)) for _ in range(n_permutations)]


class NativeProfileClustering(ClusteringBackend):
    """In-process implementation of STEM's profile clustering."""

    NAME = "native"

    def __init__(
        self,
        max_profiles: int = 50,
        max_unit_change: int = 2,
        n_permutations: int = 500,
        random_seed: Optional[int] = 42,
    ):
        self.max_profiles = max_profiles
        self.max_unit_change = max_unit_change
        self.n_permutations = n_permutations
        self.random_seed = random_seed

    def cluster(self, table: pd.DataFrame) -> List[ClusterProfile]:
        table = self.check_table(table)
        values = table.to_numpy(dtype=float)
        n_times = values.shape[1]

        candidates = enumerate_profiles(n_times, self.max_unit_change)
        models = candidates[select_profiles(candidates, self.max_profiles)]
        units = _standardize(models)
        n_profiles = len(models)
        logger.info(f"Selected {n_profiles} model profiles from {len(candidates)} candidates")

        assignment = assign_genes(values, units)
        observed = np.bincount(assignment[assignment >= 0], minlength=n_profiles)
        n_assigned = int(observed.sum())

        rng = np.random.default_rng(self.random_seed)
        perms = _permutations(n_times, self.n_permutations, rng)
        expected = np.zeros(n_profiles)
        for perm in perms:
            permuted = assign_genes(values[:, list(perm)], units)
            expected += np.bincount(permuted[permuted >= 0], minlength=n_profiles)
        expected /= len(perms)
        logger.info(f"Expected sizes from {len(perms)} time-point permutations")

        genes = table.index.astype(str).to_numpy()
        profiles = []
        for k in range(n_profiles):
            if n_assigned > 0:
                prob = min(expected[k] / n_assigned, 1.0)
                p = float(stats.binom.sf(observed[k] - 1, n_assigned, prob))
            else:
                p = 1.0
            profiles.append(ClusterProfile(
                profile_id=k,
                model=tuple(float(v) for v in models[k, 1:]),
                members=tuple(genes[assignment == k]),
                p_value=min(p * n_profiles, 1.0),
                expected_size=float(expected[k]),
            ))
        return profiles
