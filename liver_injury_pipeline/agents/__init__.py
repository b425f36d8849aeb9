"""
Liver Injury Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 1: Loading and QC
- Agent 2: Normalization
- Agent 3: Design and contrasts
- Agent 4: Differential expression
- Agent 5: Z-scores
- Agent 6: Trajectory clustering (time-course studies)
- Agent 7: Profile enrichment (time-course studies)
- Agent 8: Ortholog mapping (cross-species studies)
"""

from .agent1_qc import QualityControlAgent
from .agent2_normalize import NormalizationAgent
from .agent3_design import DesignAgent
from .agent4_deg import DEGAgent
from .agent5_zscore import ZScoreAgent
from .agent6_trajectory import TrajectoryAgent
from .agent7_enrichment import EnrichmentAgent
from .agent8_ortholog import OrthologAgent

__all__ = [
    "QualityControlAgent",
    "NormalizationAgent",
    "DesignAgent",
    "DEGAgent",
    "ZScoreAgent",
    "TrajectoryAgent",
    "EnrichmentAgent",
    "OrthologAgent",
]
