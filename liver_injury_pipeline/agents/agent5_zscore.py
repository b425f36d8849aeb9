"""
Agent 5: Z-score Transformation

Standardizes treated samples against control samples per gene.

Input:
- normalized_expression.csv: From Agent 2
- metadata.csv: From Agent 3

Output:
- zscore_matrix.csv: genes x treated samples
- zscore_excluded_genes.csv: Genes with zero/undefined control sd
- meta_agent5_zscore.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..stats.zscore import CONTROL_STRATEGIES, control_sample_sets, zscore_matrix
from ..utils.base_agent import BaseAgent
from ..utils.records import ExpressionMatrix, SampleMetadata


class ZScoreAgent(BaseAgent):
    """Agent for control-relative z-scores."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "control_column": "treatment",
            "control_level": "control",
            "control_strategy": "pooled",  # pooled or time_matched
            "time_column": "time",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent5_zscore", input_dir, output_dir, merged_config)

        self.matrix: Optional[ExpressionMatrix] = None
        self.metadata: Optional[SampleMetadata] = None
        self.zscores: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Load matrix and metadata; check the control definition."""
        self.matrix = self.load_matrix("normalized_expression.csv")
        self.metadata = self.load_metadata("metadata.csv")
        self.matrix.assert_aligned(self.metadata)

        control_col = self.config["control_column"]
        if control_col not in self.metadata.table.columns:
            self.logger.error(f"Control column '{control_col}' not in metadata")
            return False

        strategy = self.config["control_strategy"]
        if strategy not in CONTROL_STRATEGIES:
            self.logger.error(f"Unknown control_strategy: {strategy}")
            return False
        if strategy == "time_matched" and self.config["time_column"] not in self.metadata.table.columns:
            self.logger.error(f"time_matched controls need a '{self.config['time_column']}' column")
            return False
        return True

    def run(self) -> Dict[str, Any]:
        """Compute z-scores after excluding genes with zero control sd."""
        pairs = control_sample_sets(
            self.metadata,
            control_column=self.config["control_column"],
            control_level=self.config["control_level"],
            strategy=self.config["control_strategy"],
            time_column=self.config["time_column"],
        )
        for treated, control in pairs:
            self.logger.info(f"{len(treated)} treated samples vs {len(control)} controls")

        self.zscores, excluded = zscore_matrix(self.matrix.data, pairs)
        treated_order = [s for s in self.metadata.sample_ids if s in self.zscores.columns]
        self.zscores = self.zscores[treated_order]

        self.save_matrix(ExpressionMatrix(self.zscores), "zscore_matrix.csv")
        self.save_csv(pd.DataFrame({"gene_id": excluded, "reason": "zero_control_sd"}),
                      "zscore_excluded_genes.csv")

        return {
            "control_strategy": self.config["control_strategy"],
            "n_treated_samples": len(treated_order),
            "n_genes": int(self.zscores.shape[0]),
            "n_excluded_genes": len(excluded),
        }

    def validate_outputs(self) -> bool:
        """Z-scores must be finite."""
        if not np.isfinite(self.zscores.to_numpy(dtype=float)).all():
            self.logger.error("Z-score matrix has non-finite values")
            return False
        return True
