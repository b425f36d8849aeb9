"""Adapters for external clustering tools."""

from .base_tool import ClusteringBackend
from .stem_client import StemClient

__all__ = ["ClusteringBackend", "StemClient"]
