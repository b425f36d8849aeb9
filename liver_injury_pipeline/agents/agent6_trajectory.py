"""
Agent 6: Trajectory Clustering

Clusters per-time-point logFC trajectories into model profiles, through the
external STEM tool or the native implementation.

Input:
- de_results.csv: From Agent 4
- config.json: time_course (ordered contrasts and time labels)

Output:
- trajectory_input.csv: genes x time points logFC table
- profiles.csv: Profile id, size, expected size, p-value, model values
- profile_membership.csv: gene_id -> profile_id
- significant_profiles.csv: Profiles with p-value <= profile_pvalue_cutoff
- meta_agent6_trajectory.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..external_tools.base_tool import ClusteringBackend
from ..external_tools.stem_client import StemClient
from ..stats.profiles import NativeProfileClustering
from ..utils.base_agent import BaseAgent
from ..utils.errors import PipelineError
from ..utils.records import profiles_to_frames


def parse_time_course(time_course: Any) -> Dict[str, List[str]]:
    """
    Normalize the `time_course` setting.

    Accepts a list of contrast names or {"contrasts": [...], "labels": [...]}.
    """
    if isinstance(time_course, dict):
        contrasts = list(time_course.get("contrasts", []))
        labels = list(time_course.get("labels") or contrasts)
    else:
        contrasts = list(time_course or [])
        labels = list(contrasts)
    if len(labels) != len(contrasts):
        raise PipelineError("time_course labels and contrasts differ in length")
    if len(set(labels)) != len(labels):
        raise PipelineError("time_course labels must be unique")
    return {"contrasts": contrasts, "labels": [str(label) for label in labels]}


class TrajectoryAgent(BaseAgent):
    """Agent for STEM-style trajectory clustering."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "time_course": None,
            "trajectory_backend": "auto",  # auto, stem or native
            "stem_jar": None,
            "stem_java": "java",
            "stem_memory": "1024M",
            "stem_timeout": 600,
            "max_profiles": 50,
            "max_unit_change": 2,
            "n_permutations": 500,
            "stem_correction": "Bonferroni",  # Bonferroni, False Discovery Rate or None
            "trajectory_min_abs_lfc": 0.0,  # genes must reach this |logFC| at some time point
            "profile_pvalue_cutoff": 0.05,
            "random_seed": 42,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent6_trajectory", input_dir, output_dir, merged_config)

        self.de_results: Optional[pd.DataFrame] = None
        self.time_course: Dict[str, List[str]] = {}
        self.profiles_df: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Check the time course references existing contrasts."""
        if not self.config["time_course"]:
            self.logger.error("No time_course configured")
            return False
        self.time_course = parse_time_course(self.config["time_course"])
        if len(self.time_course["contrasts"]) < 2:
            self.logger.error("time_course needs at least 2 contrasts")
            return False

        self.de_results = self.load_csv("de_results.csv")
        available = set(self.de_results["contrast"].astype(str))
        missing = [c for c in self.time_course["contrasts"] if c not in available]
        if missing:
            self.logger.error(f"time_course contrasts not in DE results: {missing}")
            return False

        self.logger.info(f"Time course: {list(zip(self.time_course['labels'], self.time_course['contrasts']))}")
        return True

    def build_backend(self) -> ClusteringBackend:
        backend = self.config["trajectory_backend"]
        if backend == "auto":
            backend = "stem" if self.config["stem_jar"] else "native"

        if backend == "stem":
            if not self.config["stem_jar"]:
                raise PipelineError("trajectory_backend 'stem' needs stem_jar")
            return StemClient(
                jar_path=Path(self.config["stem_jar"]),
                work_dir=self.output_dir / "stem",
                java=self.config["stem_java"],
                memory=self.config["stem_memory"],
                timeout=self.config["stem_timeout"],
                max_profiles=self.config["max_profiles"],
                max_unit_change=self.config["max_unit_change"],
                n_permutations=self.config["n_permutations"],
                significance_level=self.config["profile_pvalue_cutoff"],
                correction=self.config["stem_correction"],
                random_seed=self.config["random_seed"],
            )
        if backend == "native":
            return NativeProfileClustering(
                max_profiles=self.config["max_profiles"],
                max_unit_change=self.config["max_unit_change"],
                n_permutations=self.config["n_permutations"],
                random_seed=self.config["random_seed"],
            )
        raise PipelineError(f"Unknown trajectory_backend: {backend}")

    def build_table(self) -> pd.DataFrame:
        """Genes x time points logFC, columns in time-course order."""
        contrasts = self.time_course["contrasts"]
        rows = self.de_results[self.de_results["contrast"].isin(contrasts)]
        table = rows.pivot(index="gene_id", columns="contrast", values="logFC")[contrasts]
        table.columns = self.time_course["labels"]

        n_before = len(table)
        table = table.dropna()
        min_lfc = self.config["trajectory_min_abs_lfc"]
        if min_lfc > 0:
            table = table[(table.abs() >= min_lfc).any(axis=1)]
        self.logger.info(f"Trajectory table: {len(table)} / {n_before} genes")

        gene_order = pd.unique(self.de_results["gene_id"])
        table = table.loc[[g for g in gene_order if g in table.index]]
        table.index = table.index.astype(str)
        table.index.name = "gene_id"
        return table

    def run(self) -> Dict[str, Any]:
        """Cluster trajectories and keep significant profiles."""
        table = self.build_table()
        self.save_csv(table, "trajectory_input.csv", index=True)

        backend = self.build_backend()
        self.logger.info(f"Clustering with backend: {backend.NAME}")
        profiles = backend.cluster(table)

        self.profiles_df, members_df = profiles_to_frames(profiles, self.time_course["labels"])
        cutoff = self.config["profile_pvalue_cutoff"]
        significant = self.profiles_df[self.profiles_df["p_value"] <= cutoff]

        self.save_csv(self.profiles_df, "profiles.csv")
        self.save_csv(members_df, "profile_membership.csv")
        self.save_csv(significant, "significant_profiles.csv")

        self.logger.info(f"{len(significant)} of {len(profiles)} profiles with p <= {cutoff}")
        return {
            "backend": backend.NAME,
            "n_genes": int(len(table)),
            "n_profiles": len(profiles),
            "n_significant_profiles": int(len(significant)),
            "significant_profile_ids": [int(p) for p in significant["profile_id"]],
        }

    def validate_outputs(self) -> bool:
        """Profile p-values must be probabilities."""
        p = self.profiles_df["p_value"].to_numpy(dtype=float)
        if len(p) and not ((p >= 0) & (p <= 1)).all():
            self.logger.error("Profile p-values outside [0, 1]")
            return False
        return bool(np.all(self.profiles_df["size"] >= 0))
