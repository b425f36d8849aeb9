"""
Clustering backend interface.

A backend takes a genes x time-points table of effect sizes (columns in
time order) and returns the model profiles with their gene memberships and
significance. Callers only see ClusterProfile records, so the external STEM
tool and the native implementation are interchangeable.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

import numpy as np
import pandas as pd

from ..utils.errors import PipelineError
from ..utils.records import ClusterProfile

logger = logging.getLogger(__name__)


class ClusteringBackend(ABC):
    """Base class for trajectory clustering backends."""

    NAME: str = "base"

    @abstractmethod
    def cluster(self, table: pd.DataFrame) -> List[ClusterProfile]:
        """Assign genes (rows) to trajectory profiles over the ordered columns."""

    def check_table(self, table: pd.DataFrame) -> pd.DataFrame:
        """Reject tables a clustering backend cannot use."""
        if table.shape[1] < 2:
            raise PipelineError(f"Trajectory clustering needs at least 2 time points, got {table.shape[1]}")
        if table.empty:
            raise PipelineError("Trajectory table has no genes")
        if table.index.has_duplicates:
            raise PipelineError("Trajectory table has duplicate gene ids")
        values = table.to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise PipelineError("Trajectory table has missing or non-finite values")
        return table
