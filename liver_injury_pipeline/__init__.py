"""
Liver Injury Expression Pipeline

A per-study pipeline for microarray and RNA-seq data from mouse liver
injury models and human cohorts, run as specialized agents:
1. Loading + QC
2. Normalization (RMA / TMM + log-CPM)
3. Design matrix and contrasts
4. Differential expression (moderated linear models)
5. Z-scores against controls
6. Trajectory clustering (STEM or native)
7. Profile enrichment
8. Mouse -> human ortholog mapping

Each agent has clear input/output files and can be run independently.
"""

__version__ = "1.0.0"

from .orchestrator import StudyPipeline, create_sample_data
from .utils.settings import AnalysisSettings

__all__ = ["StudyPipeline", "create_sample_data", "AnalysisSettings"]
