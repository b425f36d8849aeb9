"""
Bioconductor back end through rpy2.

RNA-seq:    edgeR::filterByExpr -> calcNormFactors(method="TMM") -> cpm(log=TRUE)
Microarray: preprocessCore rma.background.correct -> normalize.quantiles ->
            subColSummarizeMedianpolish (the kernels behind oligo::rma, applied
            to a probe-level table instead of CEL files)
DE:         limma::lmFit -> contrasts.fit -> eBayes -> topTable

rpy2 and R are optional (`pip install liver-injury-pipeline[bioconductor]`).
Anything missing, or an error raised inside R, surfaces as RBackendError so
agents can fall back to the numpy implementations in this package.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..utils.errors import RBackendError
from ..utils.records import Contrast, DesignMatrix
from .design import contrast_matrix

logger = logging.getLogger(__name__)

EDGER_LOGCPM = """
function(counts, group, min_count, min_total_count, prior_count) {
    counts <- as.matrix(counts)
    if (is.null(group)) {
        keep <- edgeR::filterByExpr(counts, min.count = min_count, min.total.count = min_total_count)
    } else {
        keep <- edgeR::filterByExpr(counts, group = factor(group, levels = unique(group)),
                                    min.count = min_count, min.total.count = min_total_count)
    }
    if (!any(keep)) stop("All genes filtered out by filterByExpr")
    y <- edgeR::DGEList(counts = counts[keep, , drop = FALSE])
    y <- edgeR::calcNormFactors(y, method = "TMM")
    list(
        logcpm = as.data.frame(edgeR::cpm(y, log = TRUE, prior.count = prior_count)),
        samples = data.frame(sample_id = colnames(y), lib_size = y$samples$lib.size,
                             norm_factor = y$samples$norm.factors)
    )
}
"""

RMA_PROBES = """
function(pm, probesets) {
    pm <- as.matrix(pm)
    bg <- preprocessCore::rma.background.correct(pm)
    nq <- preprocessCore::normalize.quantiles(bg)
    expr <- preprocessCore::subColSummarizeMedianpolish(log2(nq), probesets)
    colnames(expr) <- colnames(pm)
    as.data.frame(expr)
}
"""

RMA_PROBESETS = """
function(expr, log_transformed) {
    m <- as.matrix(expr)
    if (!log_transformed) m <- log2(preprocessCore::rma.background.correct(m))
    out <- preprocessCore::normalize.quantiles(m)
    dimnames(out) <- dimnames(m)
    as.data.frame(out)
}
"""

LIMMA_TOPTABLE = """
function(expr, design, contrasts, levels) {
    expr <- as.matrix(expr)
    design <- as.matrix(design)
    colnames(design) <- levels
    cm <- as.matrix(contrasts)
    rownames(cm) <- levels
    fit <- limma::eBayes(limma::contrasts.fit(limma::lmFit(expr, design), cm))
    out <- lapply(colnames(cm), function(cn) {
        tt <- limma::topTable(fit, coef = cn, number = Inf, sort.by = "none", adjust.method = "BH")
        data.frame(gene_id = rownames(tt), contrast = cn,
                   tt[, c("logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B")],
                   check.names = FALSE, stringsAsFactors = FALSE)
    })
    do.call(rbind, out)
}
"""


def _load_r(packages: Sequence[str]):
    """Import rpy2 and check the R packages; RBackendError if anything is missing."""
    try:
        import rpy2.robjects as ro
        from rpy2.robjects import pandas2ri
        from rpy2.robjects.conversion import localconverter
        from rpy2.robjects.packages import importr, isinstalled
    except (ImportError, RuntimeError, OSError, ValueError) as e:
        raise RBackendError(f"rpy2 / R not available: {e}") from e

    missing = [p for p in packages if not isinstalled(p)]
    if missing:
        raise RBackendError(f"R packages not installed: {missing}")
    for package in packages:
        try:
            importr(package)
        except (ImportError, RuntimeError) as e:
            raise RBackendError(f"R package {package} failed to load: {e}") from e
    return ro, pandas2ri, localconverter


def r_available(packages: Sequence[str] = ("edgeR", "limma")) -> bool:
    """True when rpy2, R and every package in `packages` can be loaded."""
    try:
        _load_r(packages)
    except RBackendError as e:
        logger.debug(f"Bioconductor back end unavailable: {e}")
        return False
    return True


def _to_r(ro, value):
    if value is None:
        return ro.NULL
    if isinstance(value, (list, tuple)):
        return ro.StrVector([str(v) for v in value])
    return ro.conversion.py2rpy(value)


def _call(ro, localconverter, pandas2ri, source: str, *args) -> object:
    """Evaluate an R function under the pandas converter; R errors become RBackendError."""
    from rpy2.rinterface_lib.embedded import RRuntimeError

    with localconverter(ro.default_converter + pandas2ri.converter):
        r_args = [_to_r(ro, a) for a in args]
        try:
            return ro.r(source)(*r_args)
        except RRuntimeError as e:
            raise RBackendError(f"R call failed: {e}") from e


def _frame(ro, localconverter, pandas2ri, obj) -> pd.DataFrame:
    if isinstance(obj, pd.DataFrame):
        return obj
    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.rpy2py(obj)


def edger_log_cpm(
    counts: pd.DataFrame,
    group: Optional[Sequence[str]] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    prior_count: float = 2.0,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    filterByExpr + TMM + log-CPM in edgeR.

    Returns:
        (log-CPM genes x samples, per-sample lib_size / norm_factor table)
    """
    ro, pandas2ri, localconverter = _load_r(["edgeR"])
    result = _call(ro, localconverter, pandas2ri, EDGER_LOGCPM,
                   counts.astype(float),
                   None if group is None else list(group),
                   float(min_count), float(min_total_count), float(prior_count))

    logcpm = _frame(ro, localconverter, pandas2ri, result.rx2("logcpm"))
    samples = _frame(ro, localconverter, pandas2ri, result.rx2("samples"))
    logcpm.columns = list(counts.columns)
    logcpm.index = pd.Index([str(g) for g in logcpm.index], name=counts.index.name)
    logger.info(f"edgeR: kept {len(logcpm)} / {len(counts)} genes; TMM factors "
                f"{samples['norm_factor'].min():.3f}-{samples['norm_factor'].max():.3f}")
    return logcpm, samples.reset_index(drop=True)


def preprocesscore_rma(
    probe_table: pd.DataFrame,
    probe_column: str = "probe_id",
    probeset_column: str = "probeset_id",
    sample_columns: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """RMA of a probe-level table; probesets in first-appearance order."""
    id_cols = [c for c in (probe_column, probeset_column) if c in probe_table.columns]
    if sample_columns is None:
        sample_columns = [c for c in probe_table.columns if c not in id_cols]
    sample_columns = list(sample_columns)

    ro, pandas2ri, localconverter = _load_r(["preprocessCore"])
    probesets = probe_table[probeset_column].astype(str)
    result = _call(ro, localconverter, pandas2ri, RMA_PROBES,
                   probe_table[sample_columns].astype(float).reset_index(drop=True),
                   probesets.tolist())

    expr = _frame(ro, localconverter, pandas2ri, result)
    expr.columns = sample_columns
    expr.index = expr.index.astype(str)
    expr = expr.loc[pd.unique(probesets)]
    expr.index.name = probeset_column
    logger.info(f"preprocessCore RMA: {len(probe_table)} probes -> {len(expr)} probesets")
    return expr


def preprocesscore_probesets(expr: pd.DataFrame, log_transformed: bool = False) -> pd.DataFrame:
    """Background correction and quantile normalization of a probeset table."""
    ro, pandas2ri, localconverter = _load_r(["preprocessCore"])
    result = _call(ro, localconverter, pandas2ri, RMA_PROBESETS,
                   expr.astype(float), bool(log_transformed))
    out = _frame(ro, localconverter, pandas2ri, result)
    out.index, out.columns = expr.index, expr.columns
    return out


def limma_top_table(
    expr: pd.DataFrame,
    design: DesignMatrix,
    contrasts: Sequence[Contrast],
) -> pd.DataFrame:
    """
    lmFit / contrasts.fit / eBayes / topTable for every contrast.

    Returns the long topTable frame (gene_id, contrast, logFC, AveExpr, t,
    P.Value, adj.P.Val, B) with genes in input order; estimability and
    regulation are applied by linear_model.finish_top_table.
    """
    df_residual = design.matrix.shape[0] - int((design.matrix.sum(axis=0) > 0).sum())
    if df_residual < 1:
        raise RBackendError("No residual degrees of freedom for limma")

    ro, pandas2ri, localconverter = _load_r(["limma"])
    levels: List[str] = list(design.levels)
    result = _call(ro, localconverter, pandas2ri, LIMMA_TOPTABLE,
                   expr.astype(float),
                   design.matrix.astype(float),
                   contrast_matrix(contrasts, levels),
                   levels)

    table = _frame(ro, localconverter, pandas2ri, result).reset_index(drop=True)
    table["gene_id"] = table["gene_id"].astype(str)
    order: Dict[str, int] = {str(g): i for i, g in enumerate(expr.index)}
    table["_order"] = table["gene_id"].map(order)
    table["_contrast"] = table["contrast"].map({c.name: i for i, c in enumerate(contrasts)})
    table = table.sort_values(["_contrast", "_order"], kind="mergesort").drop(columns=["_order", "_contrast"])
    logger.info(f"limma: {len(contrasts)} contrasts x {len(expr)} genes")
    return table.reset_index(drop=True)


def r_versions(packages: Sequence[str]) -> Dict[str, str]:
    """Installed versions of R packages, for run metadata."""
    ro, _, _ = _load_r(packages)
    return {p: str(ro.r(f'as.character(packageVersion("{p}"))')[0]) for p in packages}
