"""
Agent 2: Normalization

Microarray: RMA (or background correction + quantile normalization for
probeset-level input), then probeset -> gene symbol collapse.
RNA-seq: expression filter, TMM factors and log-CPM.

Both paths run in R through rpy2 (edgeR; preprocessCore, the RMA kernels
used by oligo) when available, else the numpy versions in
stats/normalization.py (`use_native_fallback`). The engine used is recorded
as `method` in meta_agent2_normalize.json.

Input:
- raw_matrix.csv: From Agent 1
- metadata_aligned.csv: From Agent 1
- qc_summary.json: From Agent 1 (data type)
- probe_annotation.csv (optional): probeset_id, gene_symbol

Output:
- normalized_expression.csv: genes x samples, log2 scale
- excluded_constant_genes.csv: Genes removed for zero variance
- norm_factors.csv: TMM factors and library sizes (RNA-seq only)
- meta_agent2_normalize.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..stats import bioconductor
from ..stats.normalization import (
    collapse_to_genes,
    drop_constant_genes,
    filter_by_expr,
    log_cpm,
    normalize_probeset_intensities,
    rma,
    tmm_factors,
)
from ..utils.base_agent import BaseAgent
from ..utils.records import ExpressionMatrix, SampleMetadata


class NormalizationAgent(BaseAgent):
    """Agent for RMA / TMM + log-CPM normalization."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "group_factors": None,  # factors defining groups for filter_by_expr
            "min_count": 10,
            "min_total_count": 15,
            "prior_count": 2.0,
            "log_transformed": False,  # microarray input already on log2 scale
            "symbol_column": "gene_symbol",
            "engine": "auto",  # auto, bioconductor or native
            "use_native_fallback": True,  # numpy engine when R / Bioconductor is unavailable
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_normalize", input_dir, output_dir, merged_config)

        self.raw: Optional[pd.DataFrame] = None
        self.metadata: Optional[SampleMetadata] = None
        self.annotation: Optional[pd.DataFrame] = None
        self.data_type: Optional[str] = None
        self.method: Optional[str] = None

    def validate_inputs(self) -> bool:
        """Load QC outputs."""
        self.raw = self.load_csv("raw_matrix.csv")
        self.metadata = self.load_metadata("metadata_aligned.csv")
        self.data_type = self.load_json("qc_summary.json")["data_type"]
        self.annotation = self.load_csv("probe_annotation.csv", required=False, dtype=str)

        samples = [c for c in self.raw.columns if c not in ("gene_id", "probe_id", "probeset_id")]
        if samples != self.metadata.sample_ids:
            self.logger.error("raw_matrix.csv columns are not in metadata order")
            return False

        if self.data_type == "microarray" and "probeset_id" not in self.raw.columns:
            self.logger.error("Microarray input needs a probeset_id column")
            return False
        if self.data_type == "rnaseq" and "gene_id" not in self.raw.columns:
            self.logger.error("RNA-seq input needs a gene_id column")
            return False

        self.logger.info(f"Normalizing {self.data_type} data: {len(self.raw)} features x {len(samples)} samples")
        return True

    def _normalize_microarray(self) -> pd.DataFrame:
        samples = self.metadata.sample_ids
        if "probe_id" in self.raw.columns:
            kwargs = dict(probe_column="probe_id", probeset_column="probeset_id", sample_columns=samples)
            expr, self.method = self.run_engine(
                lambda: bioconductor.preprocesscore_rma(self.raw, **kwargs),
                lambda: rma(self.raw, **kwargs),
                "preprocessCore",
            )
        else:
            table = self.raw.set_index("probeset_id")[samples]
            log_transformed = self.config["log_transformed"]
            expr, self.method = self.run_engine(
                lambda: bioconductor.preprocesscore_probesets(table, log_transformed),
                lambda: normalize_probeset_intensities(table, log_transformed=log_transformed),
                "preprocessCore",
            )

        if self.annotation is not None:
            return collapse_to_genes(expr, self.annotation, probeset_column="probeset_id",
                                     symbol_column=self.config["symbol_column"])

        self.logger.warning("No probe_annotation.csv; keeping probeset ids as gene ids")
        expr.index.name = "gene_id"
        return expr

    def _normalize_rnaseq(self) -> pd.DataFrame:
        counts = self.raw.set_index("gene_id")[self.metadata.sample_ids]

        group = None
        if self.config["group_factors"]:
            group = self.metadata.with_group(self.config["group_factors"]).groups.tolist()

        def native():
            keep = filter_by_expr(counts, group=group, min_count=self.config["min_count"],
                                  min_total_count=self.config["min_total_count"])
            kept = counts[keep.values]
            self.logger.info(f"filter_by_expr: kept {int(keep.sum())} / {len(keep)} genes")

            factors = tmm_factors(kept)
            samples = pd.DataFrame({
                "sample_id": factors.index,
                "lib_size": kept.sum(axis=0).values,
                "norm_factor": factors.values,
            })
            return log_cpm(kept, factors, prior_count=self.config["prior_count"]), samples

        (expr, samples), self.method = self.run_engine(
            lambda: bioconductor.edger_log_cpm(counts, group, self.config["min_count"],
                                               self.config["min_total_count"], self.config["prior_count"]),
            native,
            "edgeR",
        )
        self.save_csv(samples, "norm_factors.csv")
        return expr

    def run(self) -> Dict[str, Any]:
        """Normalize, then drop constant genes."""
        if self.data_type == "microarray":
            expr = self._normalize_microarray()
        else:
            expr = self._normalize_rnaseq()

        expr, removed = drop_constant_genes(expr)
        matrix = ExpressionMatrix(expr).align_to(self.metadata)
        matrix.assert_aligned(self.metadata)

        self.save_matrix(matrix, "normalized_expression.csv")
        self.save_csv(pd.DataFrame({"gene_id": removed}), "excluded_constant_genes.csv")

        self.logger.info(f"Normalized matrix: {matrix.shape[0]} genes x {matrix.shape[1]} samples")
        return {
            "data_type": self.data_type,
            "n_genes": matrix.shape[0],
            "n_samples": matrix.shape[1],
            "n_constant_genes_removed": len(removed),
            "method": self.method,
        }

    def validate_outputs(self) -> bool:
        """Check normalized matrix is finite and metadata-aligned."""
        path = self.output_dir / "normalized_expression.csv"
        if not path.exists():
            self.logger.error("normalized_expression.csv not written")
            return False
        matrix = ExpressionMatrix.from_csv(path)
        if matrix.shape[0] == 0:
            self.logger.error("No genes left after normalization")
            return False
        if not pd.notna(matrix.data).all().all():
            self.logger.error("Normalized matrix has missing values")
            return False
        if matrix.samples != self.metadata.sample_ids:
            self.logger.error("Normalized matrix columns do not match metadata order")
            return False
        return True
