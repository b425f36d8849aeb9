"""
Expression Data Type Detector

Decides whether a study's input is:
- Microarray (probe or probeset intensities, routed through RMA)
- RNA-seq (integer read counts, routed through TMM + log-CPM)

Detection Criteria:
1. File hints: probe_annotation.csv, probe-level id columns → microarray
2. Identifier columns: probe_id / probeset_id vs gene_id
3. Value distribution: non-negative integers with many zeros → RNA-seq,
   continuous intensities → microarray
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import Dict, Any, Tuple, Literal
import logging

logger = logging.getLogger(__name__)

# Type alias
DataType = Literal["microarray", "rnaseq", "unknown"]

EXPRESSION_FILE = "expression_matrix.csv"


class DataTypeDetector:
    """Detect whether expression input is microarray or RNA-seq."""

    # Fraction of integer values above which a matrix looks like counts
    INTEGER_FRACTION = 0.95
    # Fraction of zeros that almost never occurs in microarray intensities
    ZERO_FRACTION = 0.05

    MICROARRAY_ID_COLUMNS = ['probe_id', 'probeset_id', 'id_ref', 'affy_id']
    RNASEQ_ID_COLUMNS = ['gene_id', 'ensembl_id', 'gene', 'symbol']

    def __init__(self, input_dir: Path):
        """
        Initialize detector with input directory.

        Args:
            input_dir: Directory containing expression_matrix.csv, metadata.csv, etc.
        """
        self.input_dir = Path(input_dir)
        self.detection_result: Dict[str, Any] = {}

    def detect(self) -> Dict[str, Any]:
        """
        Detect data type and return detailed result.

        Returns:
            {
                "data_type": "microarray" | "rnaseq" | "unknown",
                "confidence": float (0-1),
                "n_features": int,
                "n_samples": int,
                "evidence": {...}
            }
        """
        result = {
            "data_type": "unknown",
            "confidence": 0.0,
            "n_features": 0,
            "n_samples": 0,
            "evidence": {}
        }

        scores = {"microarray": 0, "rnaseq": 0}
        evidence = {}

        file_score, file_evidence = self._check_files()
        id_score, id_evidence, n_features, n_samples = self._check_id_columns()
        value_score, value_evidence = self._check_values()

        for part in (file_score, id_score, value_score):
            scores["microarray"] += part.get("microarray", 0)
            scores["rnaseq"] += part.get("rnaseq", 0)

        evidence["files"] = file_evidence
        evidence["id_columns"] = id_evidence
        evidence["values"] = value_evidence
        result["n_features"] = n_features
        result["n_samples"] = n_samples

        total_score = scores["microarray"] + scores["rnaseq"]
        if total_score > 0:
            if scores["microarray"] > scores["rnaseq"]:
                result["data_type"] = "microarray"
                result["confidence"] = scores["microarray"] / total_score
            elif scores["rnaseq"] > scores["microarray"]:
                result["data_type"] = "rnaseq"
                result["confidence"] = scores["rnaseq"] / total_score

        result["evidence"] = evidence
        self.detection_result = result

        logger.info(f"Data type detected: {result['data_type']} (confidence: {result['confidence']:.2f})")
        return result

    def _check_files(self) -> Tuple[Dict[str, int], str]:
        """Check for platform annotation files."""
        scores = {"microarray": 0, "rnaseq": 0}
        evidence = []

        if (self.input_dir / "probe_annotation.csv").exists():
            scores["microarray"] += 3
            evidence.append("Found probe_annotation.csv")

        cel_files = list(self.input_dir.glob("*.CEL")) + list(self.input_dir.glob("*.cel"))
        if cel_files:
            scores["microarray"] += 3
            evidence.append(f"Found CEL file: {cel_files[0].name}")

        return scores, "; ".join(evidence) if evidence else "No format hints"

    def _check_id_columns(self) -> Tuple[Dict[str, int], str, int, int]:
        """Check identifier column names of the expression matrix."""
        scores = {"microarray": 0, "rnaseq": 0}
        matrix_file = self.input_dir / EXPRESSION_FILE
        if not matrix_file.exists():
            return scores, f"No {EXPRESSION_FILE} found", 0, 0

        header = pd.read_csv(matrix_file, nrows=0)
        columns = [c.lower() for c in header.columns]
        id_columns = [c for c in columns if c in self.MICROARRAY_ID_COLUMNS + self.RNASEQ_ID_COLUMNS]
        n_samples = len(columns) - max(len(id_columns), 1)
        with open(matrix_file, encoding='utf-8') as f:
            n_features = sum(1 for _ in f) - 1

        if any(c in self.MICROARRAY_ID_COLUMNS for c in id_columns):
            scores["microarray"] += 3
            evidence = f"Microarray id columns: {id_columns}"
        elif any(c in self.RNASEQ_ID_COLUMNS for c in id_columns):
            scores["rnaseq"] += 1
            evidence = f"Gene id columns: {id_columns}"
        else:
            evidence = f"Unrecognized id column: {header.columns[0]}"

        return scores, evidence, n_features, n_samples

    def _check_values(self) -> Tuple[Dict[str, int], str]:
        """Check whether values look like integer counts."""
        scores = {"microarray": 0, "rnaseq": 0}

        matrix_file = self.input_dir / EXPRESSION_FILE
        if not matrix_file.exists():
            return scores, "No matrix to analyze"

        df_sample = pd.read_csv(matrix_file, nrows=1000)
        numeric_cols = df_sample.select_dtypes(include=[np.number]).columns
        numeric_cols = [c for c in numeric_cols
                        if c.lower() not in self.MICROARRAY_ID_COLUMNS + self.RNASEQ_ID_COLUMNS]
        if len(numeric_cols) == 0:
            return scores, "No numeric data"

        values = df_sample[numeric_cols].to_numpy(dtype=float).flatten()
        values = values[np.isfinite(values)]
        if values.size == 0:
            return scores, "No finite values"

        frac_int = float(np.mean(np.abs(values - np.round(values)) < 1e-6))
        frac_zero = float(np.mean(values == 0))
        nonneg = bool((values >= 0).all())

        if nonneg and frac_int >= self.INTEGER_FRACTION:
            scores["rnaseq"] += 3
            if frac_zero >= self.ZERO_FRACTION:
                scores["rnaseq"] += 1
            return scores, f"Integer-valued ({frac_int:.0%}), {frac_zero:.1%} zeros → counts"

        scores["microarray"] += 2
        return scores, f"Continuous values ({frac_int:.0%} integers) → intensities"

    def get_data_type(self) -> DataType:
        """Get the detected data type."""
        if not self.detection_result:
            self.detect()
        return self.detection_result.get("data_type", "unknown")


def detect_data_type(input_dir: Path) -> Dict[str, Any]:
    """
    Convenience function to detect data type.

    Args:
        input_dir: Directory containing the study input

    Returns:
        Detection result dictionary
    """
    detector = DataTypeDetector(input_dir)
    return detector.detect()
