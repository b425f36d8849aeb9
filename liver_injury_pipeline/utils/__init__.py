"""Utility modules for the liver injury pipeline."""

from .base_agent import BaseAgent
from .data_type_detector import DataTypeDetector, detect_data_type
from .errors import (
    AlignmentError,
    ContrastError,
    ExternalToolError,
    PipelineError,
    RBackendError,
    ZScoreError,
)
from .settings import AnalysisSettings

__all__ = [
    "BaseAgent",
    "DataTypeDetector",
    "detect_data_type",
    "AlignmentError",
    "ContrastError",
    "ExternalToolError",
    "PipelineError",
    "RBackendError",
    "ZScoreError",
    "AnalysisSettings",
]
