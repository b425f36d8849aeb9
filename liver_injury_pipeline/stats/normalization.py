"""
Expression Normalization
========================

Microarray path (RMA):
1. Background correction - normal + exponential convolution model per array
2. Quantile normalization - every array gets the same intensity distribution
3. log2 + median polish - probes summarized into one value per probeset

RNA-seq path (edgeR-style):
1. filter_by_expr - drop genes without enough reads in enough samples
2. TMM - trimmed mean of M-values library scaling factors
3. log-CPM - log2 counts per million with a library-scaled prior count

Both paths finish with drop_constant_genes: a gene with zero variance across
all samples has no defined z-score downstream.

These are the numpy versions; agent2 prefers edgeR and preprocessCore
through stats/bioconductor.py when R is installed.

Usage:
    from liver_injury_pipeline.stats.normalization import rma, tmm_factors, log_cpm

    expr = rma(probe_table, probe_column="probe_id", probeset_column="probeset_id")
    factors = tmm_factors(counts)
    logcpm = log_cpm(counts, factors)
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

UNANNOTATED = {"", "---", "nan", "na", "none"}


# =============================================================================
# Microarray: RMA
# =============================================================================

def _density_mode(values: np.ndarray, grid_size: int = 512) -> float:
    """Location of the maximum of a Gaussian kernel density estimate."""
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0
    if values.size < 3 or np.ptp(values) == 0:
        return float(np.median(values))
    kde = stats.gaussian_kde(values)
    grid = np.linspace(values.min(), values.max(), grid_size)
    return float(grid[np.argmax(kde(grid))])


def _bg_parameters(pm: np.ndarray) -> Tuple[float, float, float]:
    """Estimate (alpha, mu, sigma) of the RMA convolution model for one array."""
    mu = _density_mode(pm)
    below = pm[pm < mu]
    if below.size > 0:
        mu = _density_mode(below)

    bg = pm[pm < mu] - mu
    if bg.size > 1:
        sigma = float(np.sqrt(np.sum(bg ** 2) / (bg.size - 1)) * np.sqrt(2))
    else:
        sigma = float(np.std(pm))

    signal = pm[pm > mu] - mu
    exp_mean = _density_mode(signal) if signal.size > 0 else 0.0
    alpha = 1.0 / exp_mean if exp_mean > 0 else 1.0 / max(float(np.mean(signal)) if signal.size else 1.0, 1e-8)
    return alpha, mu, max(sigma, 1e-8)


def rma_background_correct(intensities: np.ndarray) -> np.ndarray:
    """
    RMA background correction, applied to each array (column) independently.

    The observed intensity is modelled as exponential signal plus normal
    background; the corrected value is E[signal | observed], which is always
    positive.
    """
    x = np.asarray(intensities, dtype=float)
    out = np.empty_like(x)
    for j in range(x.shape[1]):
        pm = x[:, j]
        alpha, mu, sigma = _bg_parameters(pm)
        a = pm - mu - alpha * sigma ** 2
        out[:, j] = a + sigma * stats.norm.pdf(a / sigma) / np.clip(stats.norm.cdf(a / sigma), 1e-300, None)
    return out


def quantile_normalize(values: np.ndarray) -> np.ndarray:
    """
    Force every column onto the mean sorted distribution.

    Tied values receive the average of the reference quantiles they span.
    """
    x = np.asarray(values, dtype=float)
    n = x.shape[0]
    reference = np.sort(x, axis=0).mean(axis=1)
    positions = np.arange(n, dtype=float)

    out = np.empty_like(x)
    for j in range(x.shape[1]):
        ranks = stats.rankdata(x[:, j], method="average") - 1.0
        out[:, j] = np.interp(ranks, positions, reference)
    return out


def median_polish(values: np.ndarray, max_iter: int = 10, eps: float = 0.01) -> np.ndarray:
    """
    Tukey median polish of a probes x arrays block.

    Returns the fitted per-array summary (overall effect + column effect).
    """
    z = np.array(values, dtype=float, copy=True)
    n_rows, n_cols = z.shape
    overall = 0.0
    row_eff = np.zeros(n_rows)
    col_eff = np.zeros(n_cols)
    old_sum = 0.0

    for _ in range(max_iter):
        row_med = np.median(z, axis=1)
        z -= row_med[:, None]
        row_eff += row_med
        delta = np.median(col_eff)
        col_eff -= delta
        overall += delta

        col_med = np.median(z, axis=0)
        z -= col_med[None, :]
        col_eff += col_med
        delta = np.median(row_eff)
        row_eff -= delta
        overall += delta

        new_sum = float(np.sum(np.abs(z)))
        if new_sum == 0 or abs(new_sum - old_sum) < eps * new_sum:
            break
        old_sum = new_sum

    return overall + col_eff


def rma(
    probe_table: pd.DataFrame,
    probe_column: str = "probe_id",
    probeset_column: str = "probeset_id",
    sample_columns: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Robust multi-array average over all arrays jointly.

    Args:
        probe_table: One row per probe with raw (linear) intensities
        probe_column: Probe identifier column
        probeset_column: Probeset identifier column
        sample_columns: Array columns (default: every other column)

    Returns:
        Probesets x arrays log2 expression
    """
    id_cols = [c for c in (probe_column, probeset_column) if c in probe_table.columns]
    if sample_columns is None:
        sample_columns = [c for c in probe_table.columns if c not in id_cols]
    sample_columns = list(sample_columns)

    raw = probe_table[sample_columns].to_numpy(dtype=float)
    corrected = rma_background_correct(raw)
    normalized = np.log2(quantile_normalize(corrected))
    logger.info(f"RMA: background corrected and quantile normalized {raw.shape[0]} probes x {raw.shape[1]} arrays")

    probesets = probe_table[probeset_column].astype(str).to_numpy()
    order = pd.unique(probesets)
    summaries = []
    for probeset in order:
        block = normalized[probesets == probeset]
        summaries.append(median_polish(block) if block.shape[0] > 1 else block[0])

    result = pd.DataFrame(np.vstack(summaries), index=pd.Index(order, name=probeset_column),
                          columns=sample_columns)
    logger.info(f"RMA: summarized into {len(result)} probesets")
    return result


def normalize_probeset_intensities(expr: pd.DataFrame, log_transformed: bool = False) -> pd.DataFrame:
    """Background-correct and quantile-normalize a probeset-level intensity table."""
    values = expr.to_numpy(dtype=float)
    if log_transformed:
        out = quantile_normalize(values)
    else:
        out = np.log2(quantile_normalize(rma_background_correct(values)))
    return pd.DataFrame(out, index=expr.index, columns=expr.columns)


def collapse_to_genes(
    expr: pd.DataFrame,
    annotation: pd.DataFrame,
    probeset_column: str = "probeset_id",
    symbol_column: str = "gene_symbol",
) -> pd.DataFrame:
    """
    Map probesets to gene symbols, keeping the highest-mean probeset per gene.

    Unannotated probesets are dropped. Ties on the mean keep the probeset that
    comes first in the input.
    """
    mapping = annotation[[probeset_column, symbol_column]].dropna()
    mapping = mapping.assign(**{
        probeset_column: mapping[probeset_column].astype(str),
        symbol_column: mapping[symbol_column].astype(str).str.strip(),
    })
    mapping = mapping[~mapping[symbol_column].str.lower().isin(UNANNOTATED)]
    mapping = mapping.drop_duplicates(subset=[probeset_column]).set_index(probeset_column)[symbol_column]

    expr = expr.copy()
    expr.index = expr.index.astype(str)
    symbols = expr.index.to_series().map(mapping)
    annotated = expr[symbols.notna().values]
    symbols = symbols[symbols.notna()]

    ranked = annotated.assign(_symbol=symbols.values, _mean=annotated.mean(axis=1).values)
    ranked = ranked.sort_values("_mean", ascending=False, kind="mergesort")
    best = ranked.drop_duplicates(subset="_symbol", keep="first")
    best = best.loc[annotated.index[annotated.index.isin(best.index)]]

    out = best.drop(columns=["_mean"]).set_index("_symbol")
    out.index.name = "gene_id"
    logger.info(f"Collapsed {len(expr)} probesets to {len(out)} genes "
                f"({len(expr) - len(annotated)} unannotated dropped)")
    return out


# =============================================================================
# RNA-seq: filtering, TMM, log-CPM
# =============================================================================

def filter_by_expr(
    counts: pd.DataFrame,
    group: Optional[Sequence[str]] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
) -> pd.Series:
    """
    Keep genes with enough counts in enough samples.

    The CPM cutoff corresponds to `min_count` reads at the median library
    size; the number of samples required is the smallest group size.

    Returns:
        Boolean Series over genes (True = keep)
    """
    lib_size = counts.sum(axis=0).to_numpy(dtype=float)
    if group is not None:
        sizes = pd.Series(list(group)).value_counts()
        n_min = float(sizes[sizes > 0].min())
    else:
        n_min = float(counts.shape[1])
    if n_min > large_n:
        n_min = large_n + (n_min - large_n) * min_prop

    median_lib = float(np.median(lib_size))
    cpm_cutoff = min_count / median_lib * 1e6
    cpm = counts.to_numpy(dtype=float) / lib_size[None, :] * 1e6

    tol = 1e-14
    keep_cpm = (cpm >= cpm_cutoff).sum(axis=1) >= n_min - tol
    keep_total = counts.sum(axis=1).to_numpy(dtype=float) >= min_total_count - tol
    return pd.Series(keep_cpm & keep_total, index=counts.index)


def _tmm_factor(obs: np.ndarray, ref: np.ndarray, lib_obs: float, lib_ref: float,
                log_ratio_trim: float, sum_trim: float, do_weighting: bool,
                a_cutoff: float) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * log_ratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = stats.rankdata(log_r)
    rank_e = stats.rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def tmm_factors(
    counts: pd.DataFrame,
    log_ratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> pd.Series:
    """
    Trimmed mean of M-values scaling factors.

    Genes with extreme log-ratios (top/bottom `log_ratio_trim`) or extreme
    average abundance (`sum_trim`) are excluded when estimating each
    library's factor, so a skew of strongly changed genes does not bias it.
    The reference library is the one whose upper quartile is closest to the
    mean upper quartile. Factors are scaled to multiply to one.
    """
    x = counts.to_numpy(dtype=float)
    lib_size = x.sum(axis=0)
    if np.any(lib_size <= 0):
        raise ValueError("Every library needs at least one read for TMM")

    upper_q = np.quantile(x / lib_size[None, :], 0.75, axis=0)
    ref_col = int(np.argmin(np.abs(upper_q - upper_q.mean())))

    factors = np.array([
        _tmm_factor(x[:, j], x[:, ref_col], lib_size[j], lib_size[ref_col],
                    log_ratio_trim, sum_trim, do_weighting, a_cutoff)
        for j in range(x.shape[1])
    ])
    factors = factors / np.exp(np.mean(np.log(factors)))
    logger.info(f"TMM reference library: {counts.columns[ref_col]}; "
                f"factors {factors.min():.3f}-{factors.max():.3f}")
    return pd.Series(factors, index=counts.columns, name="norm_factor")


def log_cpm(counts: pd.DataFrame, norm_factors: Optional[pd.Series] = None,
            prior_count: float = 2.0) -> pd.DataFrame:
    """
    log2 counts per million on effective library sizes.

    The prior count is scaled by library size so that small libraries are
    not shrunk more than large ones.
    """
    x = counts.to_numpy(dtype=float)
    lib_size = x.sum(axis=0)
    if norm_factors is not None:
        lib_size = lib_size * norm_factors.reindex(counts.columns).to_numpy(dtype=float)

    prior = prior_count * lib_size / np.mean(lib_size)
    adjusted_lib = lib_size + 2 * prior
    values = np.log2((x + prior[None, :]) / adjusted_lib[None, :] * 1e6)
    return pd.DataFrame(values, index=counts.index, columns=counts.columns)


# =============================================================================
# Shared
# =============================================================================

def drop_constant_genes(expr: pd.DataFrame, tol: float = 1e-12) -> Tuple[pd.DataFrame, List[str]]:
    """Remove genes whose values do not vary across samples (or are non-finite)."""
    values = expr.to_numpy(dtype=float)
    finite = np.isfinite(values).all(axis=1)
    spread = np.zeros(values.shape[0])
    spread[finite] = np.ptp(values[finite], axis=1)
    keep = finite & (spread > tol)
    removed = expr.index[~keep].tolist()
    if removed:
        logger.info(f"Removed {len(removed)} constant or non-finite genes")
    return expr[keep], removed


def sample_quality_metrics(log_expr: pd.DataFrame) -> pd.DataFrame:
    """
    Per-sample relative log expression (RLE) and correlation to the median array.

    RLE is each gene's deviation from its median across samples; a good array
    has RLE centred on zero with a narrow spread.
    """
    values = log_expr.to_numpy(dtype=float)
    gene_median = np.nanmedian(values, axis=1)
    rle = values - gene_median[:, None]

    q75, q25 = np.nanpercentile(rle, [75, 25], axis=0)
    correlations = [
        float(np.corrcoef(values[:, j], gene_median)[0, 1]) if np.std(values[:, j]) > 0 else 0.0
        for j in range(values.shape[1])
    ]
    return pd.DataFrame({
        "sample_id": log_expr.columns,
        "rle_median": np.nanmedian(rle, axis=0),
        "rle_iqr": q75 - q25,
        "median_correlation": correlations,
    })


def flag_low_quality(
    metrics: pd.DataFrame,
    rle_median_cutoff: float = 0.15,
    rle_iqr_cutoff: float = 0.75,
    min_correlation: float = 0.85,
) -> pd.DataFrame:
    """Add `keep` and `reason` columns to sample_quality_metrics output."""
    out = metrics.copy()
    reasons = []
    for _, row in out.iterrows():
        why = []
        if abs(row["rle_median"]) > rle_median_cutoff:
            why.append("rle_median")
        if row["rle_iqr"] > rle_iqr_cutoff:
            why.append("rle_iqr")
        if row["median_correlation"] < min_correlation:
            why.append("correlation")
        reasons.append(";".join(why))
    out["reason"] = reasons
    out["keep"] = out["reason"] == ""
    return out
