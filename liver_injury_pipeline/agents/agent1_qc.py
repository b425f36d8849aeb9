"""
Agent 1: Loading and Quality Control

Reads the raw expression matrix and sample metadata, aligns them 1:1 and
removes low-quality microarray samples.

Input:
- expression_matrix.csv: gene_id (RNA-seq counts), probe_id + probeset_id
  (probe-level intensities) or probeset_id (probeset-level intensities)
- metadata.csv: sample_id first, then factor columns or a `label` column
- sample_labels.csv (optional): label -> factor values
- config.json: Analysis parameters

Output:
- raw_matrix.csv: Raw matrix, sample columns in metadata order
- metadata_aligned.csv: Metadata of the samples that passed QC
- qc_metrics.csv: Per-sample QC metrics and keep decision
- qc_summary.json: Detected data type and sample counts
- meta_agent1_qc.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..stats.normalization import flag_low_quality, quantile_normalize, sample_quality_metrics
from ..utils.base_agent import BaseAgent
from ..utils.data_type_detector import EXPRESSION_FILE, DataTypeDetector
from ..utils.errors import PipelineError
from ..utils.records import ExpressionMatrix, SampleLabelTable, SampleMetadata

ID_COLUMN_SETS = [
    ["probe_id", "probeset_id"],
    ["probeset_id"],
]


class QualityControlAgent(BaseAgent):
    """Agent for input alignment and sample-level QC."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "data_type": "auto",  # auto, microarray or rnaseq
            "rle_median_cutoff": 0.15,
            "rle_iqr_cutoff": 0.75,
            "min_correlation": 0.85,
            "remove_low_quality": True,
            "min_library_size": 0,  # RNA-seq: samples below this are removed
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_qc", input_dir, output_dir, merged_config)

        self.raw: Optional[pd.DataFrame] = None
        self.id_columns: List[str] = []
        self.metadata: Optional[SampleMetadata] = None
        self.data_type: Optional[str] = None

    def _split_id_columns(self, raw: pd.DataFrame) -> List[str]:
        for id_cols in ID_COLUMN_SETS:
            if all(c in raw.columns for c in id_cols):
                return id_cols
        first = raw.columns[0]
        if first != "gene_id":
            self.logger.info(f"Using first column '{first}' as gene_id")
        return [first]

    def _resolve_data_type(self) -> str:
        data_type = self.config["data_type"]
        if data_type != "auto":
            return data_type
        detected = DataTypeDetector(self.input_dir).get_data_type()
        if detected == "unknown":
            raise PipelineError("Could not detect data type; set data_type to microarray or rnaseq")
        return detected

    def validate_inputs(self) -> bool:
        """Load matrix and metadata and check they describe the same samples."""
        self.raw = self.load_csv(EXPRESSION_FILE)
        self.metadata = self.load_metadata("metadata.csv")

        labels_file = self.input_dir / "sample_labels.csv"
        if labels_file.exists():
            labels = SampleLabelTable.from_csv(labels_file)
            self.metadata = labels.apply(self.metadata)
            self.logger.info(f"Applied sample labels: factors {labels.factors}")

        self.id_columns = self._split_id_columns(self.raw)
        if self.raw[self.id_columns[0]].isna().any():
            self.logger.error("Expression matrix has rows without an identifier")
            return False

        self.data_type = self._resolve_data_type()
        if self.data_type not in ("microarray", "rnaseq"):
            self.logger.error(f"Unknown data_type: {self.data_type}")
            return False

        sample_cols = [c for c in self.raw.columns if c not in self.id_columns]
        self.logger.info(f"Data type: {self.data_type}")
        self.logger.info(f"Matrix: {len(self.raw)} features x {len(sample_cols)} samples")
        self.logger.info(f"Metadata: {len(self.metadata.sample_ids)} samples")
        return True

    def _aligned_samples(self) -> pd.DataFrame:
        """Sample columns reordered to metadata order; fails on any set difference."""
        sample_cols = [c for c in self.raw.columns if c not in self.id_columns]
        values = self.raw[sample_cols].reset_index(drop=True)
        return ExpressionMatrix(values).align_to(self.metadata).data.reset_index(drop=True)

    def _microarray_qc(self, values: pd.DataFrame) -> pd.DataFrame:
        log_values = np.log2(values.clip(lower=1.0))
        normalized = pd.DataFrame(quantile_normalize(log_values.to_numpy()),
                                  index=values.index, columns=values.columns)
        metrics = sample_quality_metrics(normalized)
        return flag_low_quality(
            metrics,
            rle_median_cutoff=self.config["rle_median_cutoff"],
            rle_iqr_cutoff=self.config["rle_iqr_cutoff"],
            min_correlation=self.config["min_correlation"],
        )

    def _rnaseq_qc(self, values: pd.DataFrame) -> pd.DataFrame:
        lib_size = values.sum(axis=0)
        metrics = pd.DataFrame({
            "sample_id": values.columns,
            "library_size": lib_size.values,
            "detected_genes": (values > 0).sum(axis=0).values,
        })
        too_small = (lib_size.values <= 0) | (lib_size.values < self.config["min_library_size"])
        metrics["reason"] = np.where(too_small, "library_size", "")
        metrics["keep"] = ~too_small
        return metrics

    def run(self) -> Dict[str, Any]:
        """Align, compute QC metrics and drop failing samples."""
        values = self._aligned_samples()

        if self.data_type == "rnaseq" and (values.to_numpy() < 0).any():
            raise PipelineError("RNA-seq counts contain negative values")

        metrics = self._microarray_qc(values) if self.data_type == "microarray" else self._rnaseq_qc(values)

        failed = metrics.loc[~metrics["keep"], "sample_id"].tolist()
        if failed and self.config["remove_low_quality"]:
            self.logger.warning(f"Removing {len(failed)} low-quality samples: {failed}")
            keep = [s for s in values.columns if s not in set(failed)]
            if len(keep) < 2:
                raise PipelineError("Fewer than 2 samples left after QC")
            values = values[keep]
            self.metadata = self.metadata.subset(keep)
        elif failed:
            self.logger.warning(f"Low-quality samples kept (remove_low_quality=False): {failed}")

        raw_out = pd.concat([self.raw[self.id_columns].reset_index(drop=True), values], axis=1)
        if self.id_columns == [self.raw.columns[0]] and self.id_columns[0] not in ("gene_id", "probeset_id"):
            raw_out = raw_out.rename(columns={self.id_columns[0]: "gene_id"})

        self.save_csv(raw_out, "raw_matrix.csv")
        self.save_csv(self.metadata.to_frame(), "metadata_aligned.csv")
        self.save_csv(metrics, "qc_metrics.csv")

        summary = {
            "data_type": self.data_type,
            "n_features": int(len(raw_out)),
            "n_samples": int(values.shape[1]),
            "removed_samples": failed if self.config["remove_low_quality"] else [],
        }
        self.save_json(summary, "qc_summary.json")

        self.logger.info(f"QC done: {values.shape[1]} samples kept, {len(summary['removed_samples'])} removed")
        return summary

    def validate_outputs(self) -> bool:
        """Check aligned outputs exist and agree on sample order."""
        for filename in ["raw_matrix.csv", "metadata_aligned.csv", "qc_metrics.csv", "qc_summary.json"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output: {filename}")
                return False

        header = pd.read_csv(self.output_dir / "raw_matrix.csv", nrows=0).columns
        id_cols = {"gene_id", "probe_id", "probeset_id"}
        samples = [c for c in header if c not in id_cols]
        meta = pd.read_csv(self.output_dir / "metadata_aligned.csv")
        if samples != meta["sample_id"].astype(str).tolist():
            self.logger.error("raw_matrix.csv columns do not match metadata order")
            return False
        return True
