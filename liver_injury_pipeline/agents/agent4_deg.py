"""
Agent 4: Differential Expression (DEG) Analysis

limma (lmFit, contrasts.fit, eBayes, topTable) through rpy2 for every
configured contrast. When R or limma is missing the numpy engine in
stats/linear_model.py runs instead (`use_native_fallback`); the engine used
is recorded as `method` in meta_agent4_deg.json.

Input:
- normalized_expression.csv: From Agent 2
- metadata.csv: From Agent 3 (with group)
- design_matrix.csv: From Agent 3
- contrasts.csv: From Agent 3

Output:
- de_results.csv: One row per (gene, contrast)
- de_significant.csv: Rows with regulation up/down, sorted by adj.P.Val
- de_summary.csv: Up/down/ns/not-estimable counts per contrast
- meta_agent4_deg.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..stats.design import contrasts_from_frame
from ..stats import bioconductor
from ..stats.linear_model import differential_expression, finish_top_table, unreplicated_contrasts
from ..utils.base_agent import BaseAgent
from ..utils.records import (
    Contrast,
    DesignMatrix,
    ExpressionMatrix,
    SampleMetadata,
    validate_de_results,
)


class DEGAgent(BaseAgent):
    """Agent for moderated linear-model differential expression."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "lfc_threshold": 1.0,
            "padj_threshold": 0.05,
            "min_replicates": 2,  # groups with fewer samples give logFC only
            "engine": "auto",  # auto, bioconductor or native
            "use_native_fallback": True,  # numpy engine when R / limma is unavailable
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_deg", input_dir, output_dir, merged_config)

        self.matrix: Optional[ExpressionMatrix] = None
        self.metadata: Optional[SampleMetadata] = None
        self.design: Optional[DesignMatrix] = None
        self.contrasts: List[Contrast] = []
        self.results: Optional[pd.DataFrame] = None
        self.method: Optional[str] = None

    def validate_inputs(self) -> bool:
        """Load matrix, design and contrasts and check they line up."""
        self.matrix = self.load_matrix("normalized_expression.csv")
        self.metadata = self.load_metadata("metadata.csv")
        self.design = DesignMatrix(self.load_csv("design_matrix.csv", index_col=0))

        self.matrix.assert_aligned(self.metadata)
        if self.design.samples != self.metadata.sample_ids:
            self.logger.error("Design matrix rows are not in metadata order")
            return False

        self.contrasts = contrasts_from_frame(self.load_csv("contrasts.csv"), self.design.levels)

        self.logger.info(f"Expression: {self.matrix.shape[0]} genes x {self.matrix.shape[1]} samples")
        self.logger.info(f"Groups: {self.design.replicates()}")
        self.logger.info(f"Contrasts: {[c.name for c in self.contrasts]}")
        return True

    def _run_limma(self) -> pd.DataFrame:
        """limma via rpy2, then the shared estimability and regulation rules."""
        table = bioconductor.limma_top_table(self.matrix.data, self.design, self.contrasts)
        logfc_only = unreplicated_contrasts(self.contrasts, self.design.replicates(),
                                            self.config["min_replicates"])
        return finish_top_table(table, logfc_only, self.config["lfc_threshold"],
                                self.config["padj_threshold"])

    def _run_native(self) -> pd.DataFrame:
        return differential_expression(
            self.matrix.data, self.design, self.contrasts,
            lfc_threshold=self.config["lfc_threshold"],
            padj_threshold=self.config["padj_threshold"],
            min_replicates=self.config["min_replicates"],
        )

    def _has_residual_df(self) -> bool:
        replicates = self.design.replicates()
        return len(self.design.samples) > sum(1 for n in replicates.values() if n > 0)

    def run(self) -> Dict[str, Any]:
        """Execute DE analysis."""
        lfc_threshold = self.config["lfc_threshold"]
        padj_threshold = self.config["padj_threshold"]
        if self._has_residual_df():
            self.results, self.method = self.run_engine(self._run_limma, self._run_native, "limma")
        else:
            self.logger.warning("No residual degrees of freedom; limma skipped, reporting logFC only")
            self.results, self.method = self._run_native(), "native"
        self.logger.info(f"DE engine: {self.method}")
        self.save_csv(self.results, "de_results.csv")

        significant = self.results[self.results["regulation"] != "ns"].copy()
        significant = significant.sort_values(["contrast", "adj.P.Val"], kind="mergesort")
        self.save_csv(significant, "de_significant.csv")

        summary = []
        for contrast in self.contrasts:
            rows = self.results[self.results["contrast"] == contrast.name]
            counts = rows["regulation"].value_counts()
            summary.append({
                "contrast": contrast.name,
                "expression": contrast.expression,
                "n_genes": len(rows),
                "n_up": int(counts.get("up", 0)),
                "n_down": int(counts.get("down", 0)),
                "n_ns": int(counts.get("ns", 0)),
                "n_not_estimable": int((~rows["estimable"]).sum()),
            })
            self.logger.info(f"{contrast.name}: {summary[-1]['n_up']} up, {summary[-1]['n_down']} down")
        summary_df = pd.DataFrame(summary)
        self.save_csv(summary_df, "de_summary.csv")

        not_estimable = summary_df.loc[summary_df["n_not_estimable"] == summary_df["n_genes"], "contrast"].tolist()
        if not_estimable:
            self.logger.warning(f"Contrasts reported as logFC only: {not_estimable}")

        return {
            "n_genes": int(self.matrix.shape[0]),
            "n_contrasts": len(self.contrasts),
            "n_significant": int(len(significant)),
            "lfc_threshold": lfc_threshold,
            "padj_threshold": padj_threshold,
            "logfc_only_contrasts": not_estimable,
            "method": self.method,
            "r_packages": bioconductor.r_versions(["limma"]) if self.method == "limma" else {},
        }

    def validate_outputs(self) -> bool:
        """Validate DE result schema and completeness."""
        validate_de_results(self.results)
        expected = self.matrix.shape[0] * len(self.contrasts)
        if len(self.results) != expected:
            self.logger.error(f"Expected {expected} DE rows, got {len(self.results)}")
            return False
        if not np.isfinite(self.results["logFC"].to_numpy(dtype=float)).all():
            self.logger.error("Non-finite logFC values")
            return False
        return True
