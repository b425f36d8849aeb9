"""
Agent 3: Design and Contrasts

Derives the `group` factor, builds the group-means design matrix and
parses the study's named contrasts.

Input:
- metadata_aligned.csv: From Agent 1
- normalized_expression.csv: From Agent 2 (alignment check only)
- config.json: group_factors, contrasts, control_group

Output:
- metadata.csv: Metadata with the derived `group` column
- design_matrix.csv: samples x groups indicator matrix
- contrasts.csv: name, expression and one weight column per group
- meta_agent3_design.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..stats.design import build_design_matrix, contrast_matrix, default_contrasts, make_contrasts
from ..utils.base_agent import BaseAgent
from ..utils.records import DesignMatrix, SampleMetadata

DEFAULT_FACTORS = ["treatment", "time", "tissue", "diet"]


class DesignAgent(BaseAgent):
    """Agent for design matrix and contrast construction."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "group_factors": None,  # None: existing `group` column, else DEFAULT_FACTORS present
            "contrasts": {},  # {name: expression}
            "control_group": None,  # used when no contrasts are configured
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_design", input_dir, output_dir, merged_config)

        self.metadata: Optional[SampleMetadata] = None
        self.design: Optional[DesignMatrix] = None

    def _group_factors(self) -> List[str]:
        if self.config["group_factors"]:
            return list(self.config["group_factors"])
        return [f for f in DEFAULT_FACTORS if f in self.metadata.table.columns]

    def validate_inputs(self) -> bool:
        """Load metadata and check group factors and sample order."""
        self.metadata = self.load_metadata("metadata_aligned.csv")

        if not (self.metadata.has_group and not self.config["group_factors"]):
            factors = self._group_factors()
            if not factors:
                self.logger.error(f"No group factors found (looked for {DEFAULT_FACTORS})")
                return False
            self.metadata = self.metadata.with_group(factors)
            self.logger.info(f"Groups from factors: {factors}")

        matrix = self.load_matrix("normalized_expression.csv")
        matrix.assert_aligned(self.metadata)

        if not self.config["contrasts"] and not self.config["control_group"]:
            self.logger.error("Configure `contrasts` or a `control_group`")
            return False
        return True

    def run(self) -> Dict[str, Any]:
        """Build design matrix and contrasts."""
        self.design = build_design_matrix(self.metadata)
        levels = self.design.levels

        definitions = self.config["contrasts"]
        if not definitions:
            definitions = default_contrasts(levels, self.config["control_group"])
            self.logger.info(f"No contrasts configured; using each group vs {self.config['control_group']}")
        contrasts = make_contrasts(definitions, levels)

        for contrast in contrasts:
            self.logger.info(f"  {contrast.name}: {contrast.expression}")

        weights = contrast_matrix(contrasts, levels).T
        contrasts_df = pd.concat([
            pd.DataFrame({"name": [c.name for c in contrasts],
                          "expression": [c.expression for c in contrasts]}),
            weights.reset_index(drop=True),
        ], axis=1)

        self.save_csv(self.metadata.to_frame(), "metadata.csv")
        self.save_csv(self.design.matrix, "design_matrix.csv", index=True)
        self.save_csv(contrasts_df, "contrasts.csv")

        replicates = self.design.replicates()
        unreplicated = [level for level, n in replicates.items() if n < 2]
        if unreplicated:
            self.logger.warning(f"Groups without replicates: {unreplicated}")

        return {
            "n_groups": len(levels),
            "groups": replicates,
            "contrasts": [c.name for c in contrasts],
            "unreplicated_groups": unreplicated,
        }

    def validate_outputs(self) -> bool:
        """Every design row must have exactly one group."""
        design = pd.read_csv(self.output_dir / "design_matrix.csv", index_col=0)
        if not (design.sum(axis=1) == 1).all():
            self.logger.error("Design matrix rows do not sum to 1")
            return False
        if design.index.astype(str).tolist() != self.metadata.sample_ids:
            self.logger.error("Design matrix rows are not in metadata order")
            return False
        return True
