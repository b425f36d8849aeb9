"""
Per-gene linear models with empirical-Bayes moderated statistics.

Follows the limma workflow:
    fit = lm_fit(expr, design)
    fit = contrasts_fit(fit, contrast_matrix)
    fit = ebayes(fit)
    table = top_table(fit, ...)

Residual variances are shrunk towards a common prior estimated from all
genes (fit_f_dist), which keeps small-sample studies from being dominated
by genes whose variance happens to be tiny.

A contrast is not estimable when the model has no residual degrees of
freedom, or when a group it involves has fewer than `min_replicates`
samples. Such contrasts still get logFC (a plain difference of group
means) but no t, p-value or B statistic.

This is the engine used when limma itself (stats/bioconductor.py) is not
available. finish_top_table applies the same estimability and regulation
rules to a limma topTable.
"""

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

from ..utils.records import DE_RESULT_COLUMNS, Contrast, DesignMatrix

logger = logging.getLogger(__name__)


@dataclass
class LinearModelFit:
    """Coefficients and variance terms for every gene (limma's MArrayLM)."""

    genes: List[str]
    coef_names: List[str]
    coefficients: np.ndarray        # genes x coefs
    stdev_unscaled: np.ndarray      # genes x coefs
    sigma: np.ndarray               # genes
    df_residual: np.ndarray         # genes
    amean: np.ndarray               # genes
    cov_coefficients: np.ndarray    # coefs x coefs
    estimable: Optional[np.ndarray] = None  # coefs
    # Filled by ebayes
    df_prior: float = np.nan
    s2_prior: float = np.nan
    s2_post: Optional[np.ndarray] = None
    t: Optional[np.ndarray] = None
    p_value: Optional[np.ndarray] = None
    lods: Optional[np.ndarray] = None
    df_total: Optional[np.ndarray] = None


def lm_fit(expr: pd.DataFrame, design: DesignMatrix) -> LinearModelFit:
    """
    Ordinary least squares of every gene on the design.

    Args:
        expr: Genes x samples, columns in design row order
        design: Samples x group levels indicator matrix
    """
    X = design.matrix.to_numpy(dtype=float)
    Y = expr.to_numpy(dtype=float)
    n_samples, n_coef = X.shape
    if Y.shape[1] != n_samples:
        raise ValueError(f"Expression has {Y.shape[1]} samples, design has {n_samples}")

    group_sizes = X.sum(axis=0)
    if np.all(group_sizes > 0):
        # Indicator design: the least-squares coefficients are the group means
        coef = (Y @ X) / group_sizes[None, :]
        rank = n_coef
    else:
        coef, _, rank, _ = np.linalg.lstsq(X, Y.T, rcond=None)
        coef = coef.T
    if rank < n_coef:
        logger.warning(f"Design is rank deficient ({rank} < {n_coef} columns)")

    fitted = coef @ X.T
    df = n_samples - rank
    if df > 0:
        sigma = np.sqrt(np.sum((Y - fitted) ** 2, axis=1) / df)
    else:
        sigma = np.full(Y.shape[0], np.nan)

    cov = np.linalg.pinv(X.T @ X)
    stdev_unscaled = np.tile(np.sqrt(np.diag(cov)), (Y.shape[0], 1))

    return LinearModelFit(
        genes=list(expr.index),
        coef_names=design.levels,
        coefficients=coef,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=np.full(Y.shape[0], float(df)),
        amean=Y.mean(axis=1),
        cov_coefficients=cov,
    )


def unreplicated_contrasts(contrasts: Sequence[Contrast], replicates: dict,
                           min_replicates: int = 2) -> List[str]:
    """Names of contrasts that touch a group with fewer than `min_replicates` samples."""
    names = []
    for contrast in contrasts:
        thin = [level for level in contrast.weights if replicates.get(level, 0) < min_replicates]
        if thin:
            logger.warning(f"Contrast '{contrast.name}': groups without replicates {thin}; "
                           f"reporting logFC only")
            names.append(contrast.name)
    return names


def contrasts_fit(fit: LinearModelFit, contrasts: Sequence[Contrast],
                  replicates: Optional[dict] = None, min_replicates: int = 2) -> LinearModelFit:
    """
    Re-express the fit in terms of contrasts.

    Args:
        fit: Output of lm_fit
        contrasts: Contrasts over fit.coef_names
        replicates: Samples per group level; used to flag contrasts touching
            a group with fewer than `min_replicates` samples
    """
    C = np.column_stack([c.vector(fit.coef_names) for c in contrasts])
    cov = C.T @ fit.cov_coefficients @ C
    stdev = np.sqrt(np.diag(cov))

    estimable = np.full(len(contrasts), bool(fit.df_residual.size and fit.df_residual[0] > 0))
    if replicates is not None:
        thin = set(unreplicated_contrasts(contrasts, replicates, min_replicates))
        estimable &= np.array([c.name not in thin for c in contrasts])

    return replace(
        fit,
        coef_names=[c.name for c in contrasts],
        coefficients=fit.coefficients @ C,
        stdev_unscaled=np.tile(stdev, (len(fit.genes), 1)),
        cov_coefficients=cov,
        estimable=estimable,
    )


def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1 - tri / x) / special.polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    return float(y)


def fit_f_dist(s2: np.ndarray, df1: np.ndarray):
    """
    Moment estimates of the scaled F prior on gene variances.

    Returns:
        (s2_prior, df_prior); df_prior is inf when the observed spread of log
        variances is no more than sampling noise.
    """
    ok = np.isfinite(s2) & np.isfinite(df1) & (df1 > 1e-15)
    x = np.asarray(s2, dtype=float)[ok]
    d = np.asarray(df1, dtype=float)[ok]
    n = x.size
    if n <= 1:
        return np.nan, np.nan

    x = np.maximum(x, 0)
    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    elif np.any(x == 0):
        logger.info("Zero sample variances detected, offset away from zero")
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - special.digamma(d / 2) + np.log(d / 2)
    emean = np.mean(e)
    evar = np.sum((e - emean) ** 2) / (n - 1)
    evar -= np.mean(special.polygamma(1, d / 2))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        s20 = float(np.exp(emean + special.digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))
    return s20, df2


def _tmixture(tstat: np.ndarray, stdev_unscaled: np.ndarray, df: np.ndarray,
              proportion: float, v0_lim: Optional[tuple]) -> float:
    ok = np.isfinite(tstat)
    tstat, stdev_unscaled, df = np.abs(tstat[ok]), stdev_unscaled[ok], df[ok]
    n = tstat.size
    ntarget = int(np.ceil(proportion / 2 * n))
    if ntarget < 1:
        return np.nan

    p = max(ntarget / n, proportion)
    max_df = np.max(df)
    low = df < max_df
    if np.any(low):
        tail = stats.t.logsf(tstat[low], df[low])
        tstat[low] = stats.t.isf(np.exp(tail), max_df)

    order = np.argsort(-tstat, kind="mergesort")[:ntarget]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2
    r = np.arange(1, ntarget + 1)
    p0 = 2 * stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / n - (1 - p) * p0) / p
    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = stats.t.isf(ptarget[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)
    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def ebayes(fit: LinearModelFit, proportion: float = 0.01,
           stdev_coef_lim: tuple = (0.1, 4.0)) -> LinearModelFit:
    """
    Empirical-Bayes moderated t statistics, p-values and log-odds.

    Genes whose posterior variance is undefined (no residual df and no prior,
    or exactly zero) get NaN statistics.
    """
    s2 = fit.sigma ** 2
    df = fit.df_residual
    s2_prior, df_prior = fit_f_dist(s2, df)

    with np.errstate(invalid="ignore", divide="ignore"):
        if np.isnan(df_prior):
            s2_post = s2.copy()
            df_total = df.copy()
        elif np.isinf(df_prior):
            s2_post = np.full_like(s2, s2_prior)
            df_total = np.full_like(df, np.sum(df))
        else:
            s2_post = (df_prior * s2_prior + df * s2) / (df_prior + df)
            df_total = np.minimum(df + df_prior, np.sum(df))

        s2_post = np.where(np.isfinite(s2_post) & (s2_post > 0), s2_post, np.nan)
        t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]
        p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    # B statistic
    n_coef = fit.coefficients.shape[1]
    var_prior = np.full(n_coef, np.nan)
    if np.isfinite(s2_prior):
        v0_lim = (stdev_coef_lim[0] ** 2 / s2_prior, stdev_coef_lim[1] ** 2 / s2_prior)
        for j in range(n_coef):
            var_prior[j] = _tmixture(t[:, j].copy(), fit.stdev_unscaled[:, j], df_total.copy(),
                                     proportion, v0_lim)
        var_prior = np.where(np.isfinite(var_prior), var_prior, 1.0 / s2_prior)

    with np.errstate(invalid="ignore", divide="ignore"):
        r = (fit.stdev_unscaled ** 2 + var_prior[None, :]) / fit.stdev_unscaled ** 2
        t2 = t ** 2
        if df_prior > 1e6:
            kernel = t2 * (1 - 1 / r) / 2
        else:
            dft = df_total[:, None]
            kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
        lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    if fit.estimable is not None:
        blocked = ~fit.estimable
        t[:, blocked] = np.nan
        p_value[:, blocked] = np.nan
        lods[:, blocked] = np.nan

    logger.info(f"eBayes prior: s2={s2_prior:.4g}, df={df_prior:.4g}")
    return replace(fit, df_prior=df_prior, s2_prior=s2_prior, s2_post=s2_post,
                   t=t, p_value=p_value, lods=lods, df_total=df_total)


def regulation_call(logfc, adj_p, lfc_threshold: float = 1.0,
                    padj_threshold: float = 0.05) -> np.ndarray:
    """
    Discretize (logFC, adjusted p) into up / down / ns.

    Depends on nothing but its arguments; a missing adjusted p-value is "ns".
    """
    logfc = np.asarray(logfc, dtype=float)
    adj_p = np.asarray(adj_p, dtype=float)
    with np.errstate(invalid="ignore"):
        significant = np.isfinite(adj_p) & (adj_p <= padj_threshold) & (np.abs(logfc) >= lfc_threshold)
    return np.where(significant & (logfc > 0), "up",
                    np.where(significant & (logfc < 0), "down", "ns"))


def adjust_bh(p_values: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg over the non-missing p-values; missing stay missing."""
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p_values, np.nan)
    ok = np.isfinite(p_values)
    if ok.any():
        _, adjusted[ok], _, _ = multipletests(p_values[ok], method="fdr_bh")
    return adjusted


def top_table(fit: LinearModelFit, lfc_threshold: float = 1.0,
              padj_threshold: float = 0.05) -> pd.DataFrame:
    """
    Long-format DE table, one row per (gene, contrast), genes in input order.

    P-values are adjusted within each contrast.
    """
    if fit.p_value is None:
        raise ValueError("Run ebayes() before top_table()")

    frames = []
    for j, name in enumerate(fit.coef_names):
        logfc = fit.coefficients[:, j]
        p = fit.p_value[:, j]
        adj = adjust_bh(p)
        estimable = np.isfinite(p)
        frames.append(pd.DataFrame({
            "gene_id": fit.genes,
            "contrast": name,
            "logFC": logfc,
            "AveExpr": fit.amean,
            "t": fit.t[:, j],
            "P.Value": p,
            "adj.P.Val": adj,
            "B": fit.lods[:, j],
            "estimable": estimable,
            "regulation": regulation_call(logfc, adj, lfc_threshold, padj_threshold),
        }))
    return pd.concat(frames, ignore_index=True)[DE_RESULT_COLUMNS]


def finish_top_table(table: pd.DataFrame, logfc_only: Sequence[str] = (),
                     lfc_threshold: float = 1.0, padj_threshold: float = 0.05) -> pd.DataFrame:
    """
    Bring a topTable-shaped frame from another engine to the DE result schema.

    Statistics of `logfc_only` contrasts are blanked, p-values re-adjusted
    within each contrast and regulation called with the shared thresholds.
    """
    table = table.copy()
    blocked = table["contrast"].isin(list(logfc_only))
    table.loc[blocked, ["t", "P.Value", "B"]] = np.nan
    for idx in table.groupby("contrast", sort=False).groups.values():
        table.loc[idx, "adj.P.Val"] = adjust_bh(table.loc[idx, "P.Value"].to_numpy(dtype=float))
    table["estimable"] = np.isfinite(table["P.Value"].to_numpy(dtype=float))
    table["regulation"] = regulation_call(table["logFC"], table["adj.P.Val"], lfc_threshold, padj_threshold)
    return table.reset_index(drop=True)[DE_RESULT_COLUMNS]


def differential_expression(
    expr: pd.DataFrame,
    design: DesignMatrix,
    contrasts: Sequence[Contrast],
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    min_replicates: int = 2,
) -> pd.DataFrame:
    """lm_fit -> contrasts_fit -> ebayes -> top_table in one call."""
    fit = lm_fit(expr, design)
    fit = contrasts_fit(fit, contrasts, replicates=design.replicates(), min_replicates=min_replicates)
    fit = ebayes(fit)
    return top_table(fit, lfc_threshold, padj_threshold)
