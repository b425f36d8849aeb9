"""
Agent 7: Profile Enrichment Analysis

Hypergeometric over-representation of significant trajectory profiles in
curated gene sets (GMT files or Enrichr libraries via gseapy).

Input:
- profiles.csv, profile_membership.csv, significant_profiles.csv: From Agent 6
- *.gmt (optional): Gene set files referenced by `gene_sets`
- config.json: gene_sets, background_size, min_set_size, enrichment_correction

Output:
- enrichment_results.csv: One row per (profile, gene set)
- meta_agent7_enrichment.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..stats.enrichment import enrich_profiles, merge_gene_sets
from ..utils.base_agent import BaseAgent
from ..utils.records import ENRICHMENT_COLUMNS, ClusterProfile, profiles_from_frames


class EnrichmentAgent(BaseAgent):
    """Agent for over-representation analysis per profile."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "gene_sets": ["KEGG_2019_Mouse"],  # GMT paths, Enrichr library names or a dict
            "gene_set_organism": "Mouse",
            "background_size": 20000,
            "min_set_size": 10,
            "enrichment_correction": "fdr_bh",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent7_enrichment", input_dir, output_dir, merged_config)

        self.profiles: List[ClusterProfile] = []
        self.gene_sets: Dict[str, List[str]] = {}
        self.results: Optional[pd.DataFrame] = None

    def _resolve_sources(self) -> List[Any]:
        sources = self.config["gene_sets"]
        if isinstance(sources, (dict, str)):
            sources = [sources]
        resolved = []
        for source in sources:
            if isinstance(source, str) and (self.input_dir / source).exists():
                resolved.append(self.input_dir / source)
            else:
                resolved.append(source)
        return resolved

    def validate_inputs(self) -> bool:
        """Load significant profiles and gene sets."""
        profiles_df = self.load_csv("profiles.csv")
        members_df = self.load_csv("profile_membership.csv", dtype={"gene_id": str})
        significant = self.load_csv("significant_profiles.csv")

        keep = set(significant["profile_id"].astype(int))
        self.profiles = [p for p in profiles_from_frames(profiles_df, members_df) if p.profile_id in keep]
        self.logger.info(f"Significant profiles: {sorted(keep)}")

        self.gene_sets = merge_gene_sets(self._resolve_sources(),
                                         organism=self.config["gene_set_organism"])
        if not self.gene_sets:
            self.logger.error("No gene sets loaded")
            return False
        self.logger.info(f"Gene sets: {len(self.gene_sets)}")
        return True

    def run(self) -> Dict[str, Any]:
        """Test each significant profile against each gene set."""
        if not self.profiles:
            self.logger.warning("No significant profiles; writing empty enrichment table")
            self.results = pd.DataFrame(columns=ENRICHMENT_COLUMNS)
        else:
            self.results = enrich_profiles(
                self.profiles,
                self.gene_sets,
                background_size=self.config["background_size"],
                min_set_size=self.config["min_set_size"],
                correction=self.config["enrichment_correction"],
            )
        self.save_csv(self.results, "enrichment_results.csv")

        n_tested_sets = int(self.results["gene_set"].nunique()) if len(self.results) else 0
        n_hits = int((self.results["adj_p_value"] <= 0.05).sum()) if len(self.results) else 0
        return {
            "n_profiles_tested": len(self.profiles),
            "n_gene_sets_loaded": len(self.gene_sets),
            "n_gene_sets_tested": n_tested_sets,
            "n_enriched_at_0.05": n_hits,
            "background_size": self.config["background_size"],
            "correction": self.config["enrichment_correction"],
        }

    def validate_outputs(self) -> bool:
        """No tested gene set may be smaller than min_set_size."""
        if len(self.results) and (self.results["set_size"] < self.config["min_set_size"]).any():
            self.logger.error("Gene sets below min_set_size in results")
            return False
        return True
