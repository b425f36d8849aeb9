"""
Agent 8: Ortholog Mapping

Translates mouse DE results to human genes for cross-species comparison.

Input:
- de_results.csv: From Agent 4
- ortholog table (`ortholog_table` setting): mouse_symbol, human_symbol
  (or source_gene, target_gene); or `ortholog_source: mygene`

Output:
- de_results_human.csv: DE rows keyed by human gene, one per (contrast, gene)
- ortholog_table.csv: The table used (written when built from mygene)
- meta_agent8_ortholog.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..stats.orthologs import build_ortholog_table, map_orthologs
from ..utils.base_agent import BaseAgent
from ..utils.records import OrthologMapping, validate_de_results


class OrthologAgent(BaseAgent):
    """Agent for mouse -> human ortholog translation."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "ortholog_table": None,  # file name in the input directory, or a path
            "ortholog_source": "table",  # table or mygene
            "source_species": "mouse",
            "target_species": "human",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent8_ortholog", input_dir, output_dir, merged_config)

        self.de_results: Optional[pd.DataFrame] = None
        self.mapping: Optional[OrthologMapping] = None
        self.mapped: Optional[pd.DataFrame] = None

    def _table_path(self) -> Path:
        path = Path(self.config["ortholog_table"])
        if not path.is_absolute() and (self.input_dir / path.name).exists():
            return self.input_dir / path.name
        return path

    def validate_inputs(self) -> bool:
        """Load DE results and the ortholog table."""
        self.de_results = self.load_csv("de_results.csv", dtype={"gene_id": str})

        if self.config["ortholog_source"] == "mygene":
            genes = self.de_results["gene_id"].unique().tolist()
            self.mapping = build_ortholog_table(genes, self.config["source_species"],
                                                self.config["target_species"])
            self.save_csv(self.mapping.table, "ortholog_table.csv")
        elif self.config["ortholog_table"]:
            path = self._table_path()
            if not path.exists():
                self.logger.error(f"Ortholog table not found: {path}")
                return False
            self.mapping = OrthologMapping.from_csv(path)
        else:
            self.logger.error("Set ortholog_table or ortholog_source: mygene")
            return False

        self.logger.info(f"Ortholog table: {len(self.mapping)} pairs")
        return True

    def run(self) -> Dict[str, Any]:
        """Map and de-duplicate by largest |logFC|."""
        self.mapped = map_orthologs(self.de_results, self.mapping)
        self.save_csv(self.mapped, "de_results_human.csv")

        source_genes = set(self.de_results["gene_id"])
        mapped_genes = set(self.mapped["source_gene"])
        n_unmapped = len(source_genes - set(self.mapping.table["source_gene"]))
        self.logger.info(f"{len(self.mapped)} rows for {self.mapped['gene_id'].nunique()} human genes; "
                         f"{n_unmapped} mouse genes unmapped")
        return {
            "n_input_rows": int(len(self.de_results)),
            "n_output_rows": int(len(self.mapped)),
            "n_source_genes": len(source_genes),
            "n_source_genes_kept": len(mapped_genes),
            "n_unmapped_genes": n_unmapped,
        }

    def validate_outputs(self) -> bool:
        """One row per (contrast, human gene)."""
        validate_de_results(self.mapped)
        return True
