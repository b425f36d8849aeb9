"""
STEM (Short Time-series Expression Miner) adapter.

Runs STEM in batch mode:

    java -mx<memory> -jar stem.jar -b stem_settings.txt <output dir>

Input written to the work directory:
- stem_input.tsv: tab-delimited, header `Gene` + time labels, one row per gene
- stem_settings.txt: STEM batch settings (tab-separated key/value lines)

Output read back from <output dir>:
- *_profiletable.txt: profile id, model, genes assigned/expected, p-value
- *_genetable.txt: gene, assigned profile, values

STEM draws random permutations for the expected profile sizes. The random
seed is pinned in the settings, but p-values can still differ between STEM
versions; record the jar version alongside the results.
"""

import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..utils.errors import ExternalToolError
from ..utils.records import ClusterProfile
from .base_tool import ClusteringBackend

logger = logging.getLogger(__name__)

INPUT_FILE = "stem_input.tsv"
SETTINGS_FILE = "stem_settings.txt"
OUTPUT_DIR = "stem_output"


def _normalize(name: str) -> str:
    return re.sub(r"[^a-z0-9#]", "", str(name).lower())


def _find_column(columns: Sequence[str], *candidates: str) -> Optional[str]:
    normalized = {_normalize(c): c for c in columns}
    for candidate in candidates:
        if candidate in normalized:
            return normalized[candidate]
    for candidate in candidates:
        for key, original in normalized.items():
            if candidate in key:
                return original
    return None


class StemClient(ClusteringBackend):
    """Serialize -> invoke STEM -> parse, as one synchronous call."""

    NAME = "stem"

    def __init__(
        self,
        jar_path: Path,
        work_dir: Path,
        java: str = "java",
        memory: str = "1024M",
        timeout: int = 600,
        max_profiles: int = 50,
        max_unit_change: int = 2,
        n_permutations: int = 50,
        significance_level: float = 0.05,
        correction: str = "Bonferroni",
        random_seed: int = 42,
    ):
        self.jar_path = Path(jar_path)
        self.work_dir = Path(work_dir)
        self.java = java
        self.memory = memory
        self.timeout = timeout
        self.max_profiles = max_profiles
        self.max_unit_change = max_unit_change
        self.n_permutations = n_permutations
        self.significance_level = significance_level
        self.correction = correction
        self.random_seed = random_seed

    # ------------------------------------------------------------------
    # Serialize
    # ------------------------------------------------------------------

    def write_input(self, table: pd.DataFrame) -> Path:
        path = self.work_dir / INPUT_FILE
        out = table.copy()
        out.index.name = "Gene"
        out.to_csv(path, sep="\t", float_format="%.6g")
        return path

    def settings(self, input_path: Path) -> Dict[str, str]:
        return {
            "Data_File": str(input_path),
            "Gene_Annotation_Source": "No annotations",
            "Spot_IDs_included_in_the_data_file": "false",
            "Data_Transformation[Log normalize data,Normalize data,No normalization/add 0]":
                "No normalization/add 0",
            "Maximum_Number_of_Missing_Values": "0",
            "Minimum_Correlation_between_Repeats": "0.0",
            "Minimum_Absolute_Expression_Change": "0.0",
            "Change_should_be_based_on[Maximum-Minimum,Difference From 0]": "Maximum-Minimum",
            "Pre-filtered_Gene_File": "",
            "Clustering_Method[STEM Clustering Method,K-means]": "STEM Clustering Method",
            "Maximum_Number_of_Model_Profiles": str(self.max_profiles),
            "Maximum_Unit_Change_in_Model_Profiles_between_Time_Points": str(self.max_unit_change),
            "Number_of_Permutations_per_Gene": str(self.n_permutations),
            "Maximum_Correlation": "1.0",
            "Significance_Level": str(self.significance_level),
            "Correction_Method[Bonferroni,False Discovery Rate,None]": self.correction,
            "Permutation_Test_Should_Permute_Time_Point_0": "false",
            "Random_Seed": str(self.random_seed),
        }

    def write_settings(self, input_path: Path) -> Path:
        path = self.work_dir / SETTINGS_FILE
        with open(path, "w", encoding="utf-8") as f:
            f.write("#Main Input:\n")
            for key, value in self.settings(input_path).items():
                f.write(f"{key}\t{value}\n")
        return path

    # ------------------------------------------------------------------
    # Invoke
    # ------------------------------------------------------------------

    def command(self, settings_path: Path, output_dir: Path) -> List[str]:
        return [self.java, f"-mx{self.memory}", "-jar", str(self.jar_path),
                "-b", str(settings_path), str(output_dir)]

    def invoke(self, settings_path: Path, output_dir: Path) -> None:
        if not self.jar_path.exists():
            raise ExternalToolError(f"STEM jar not found: {self.jar_path}")

        cmd = self.command(settings_path, output_dir)
        logger.info(f"Running STEM: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True,
                                    timeout=self.timeout, check=False, cwd=str(self.work_dir))
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(f"STEM timed out after {self.timeout}s") from e
        except OSError as e:
            raise ExternalToolError(f"Could not start STEM ({self.java}): {e}") from e

        if result.returncode != 0:
            raise ExternalToolError(
                f"STEM exited with status {result.returncode}: {result.stderr.strip()[:500]}",
                returncode=result.returncode, stderr=result.stderr,
            )
        logger.debug(result.stdout)

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    @staticmethod
    def _single_file(output_dir: Path, suffix: str) -> Path:
        matches = sorted(output_dir.glob(f"*{suffix}"))
        if not matches:
            raise ExternalToolError(f"STEM produced no *{suffix} in {output_dir}")
        if len(matches) > 1:
            logger.warning(f"Several *{suffix} files, using {matches[0].name}")
        return matches[0]

    @staticmethod
    def _read_table(path: Path) -> pd.DataFrame:
        try:
            return pd.read_csv(path, sep="\t", dtype=str)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise ExternalToolError(f"Cannot read STEM output {path.name}: {e}") from e

    @staticmethod
    def _parse_model(text: str, n_times: int) -> tuple:
        try:
            values = [float(v) for v in re.split(r"[,\s]+", str(text).strip("() ")) if v]
        except ValueError as e:
            raise ExternalToolError(f"Malformed STEM profile model: {text!r}") from e
        # STEM reports the added time 0 as the first value
        if len(values) == n_times + 1:
            values = values[1:]
        if len(values) != n_times:
            raise ExternalToolError(f"STEM profile model has {len(values)} values, expected {n_times}")
        return tuple(values)

    def parse_output(self, output_dir: Path, n_times: int) -> List[ClusterProfile]:
        profile_table = self._read_table(self._single_file(output_dir, "_profiletable.txt"))
        gene_table = self._read_table(self._single_file(output_dir, "_genetable.txt"))

        pid_col = _find_column(profile_table.columns, "profileid", "profile")
        model_col = _find_column(profile_table.columns, "profilemodel", "model")
        expected_col = _find_column(profile_table.columns, "#genesexpected", "#geneexpected", "expected")
        p_col = _find_column(profile_table.columns, "pvalue", "pval")
        if None in (pid_col, model_col, p_col):
            raise ExternalToolError(
                f"STEM profile table missing columns (have {list(profile_table.columns)})")

        gene_col = _find_column(gene_table.columns, "genesymbol", "gene", "spot")
        member_col = _find_column(gene_table.columns, "profile", "profileid")
        if None in (gene_col, member_col):
            raise ExternalToolError(
                f"STEM gene table missing columns (have {list(gene_table.columns)})")

        members: Dict[int, List[str]] = {}
        for gene, profile in zip(gene_table[gene_col], gene_table[member_col]):
            if pd.isna(profile) or str(profile).strip() in ("", "-1"):
                continue
            try:
                pid = int(float(str(profile).split(";")[0]))
            except ValueError as e:
                raise ExternalToolError(f"Malformed profile id in STEM gene table: {profile!r}") from e
            members.setdefault(pid, []).append(str(gene))

        profiles = []
        for _, row in profile_table.iterrows():
            try:
                pid = int(float(row[pid_col]))
                p_value = float(row[p_col])
                expected = float(row[expected_col]) if expected_col else np.nan
            except (TypeError, ValueError) as e:
                raise ExternalToolError(f"Malformed STEM profile row: {row.to_dict()}") from e
            profiles.append(ClusterProfile(
                profile_id=pid,
                model=self._parse_model(row[model_col], n_times),
                members=tuple(members.get(pid, [])),
                p_value=p_value,
                expected_size=expected,
            ))

        logger.info(f"Parsed {len(profiles)} STEM profiles, "
                    f"{sum(len(v) for v in members.values())} assigned genes")
        return profiles

    def cluster(self, table: pd.DataFrame) -> List[ClusterProfile]:
        table = self.check_table(table)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        output_dir = self.work_dir / OUTPUT_DIR
        output_dir.mkdir(parents=True, exist_ok=True)

        input_path = self.write_input(table)
        settings_path = self.write_settings(input_path)
        self.invoke(settings_path, output_dir)
        return self.parse_output(output_dir, n_times=table.shape[1])
