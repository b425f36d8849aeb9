"""
Exception types raised at pipeline stage boundaries.

All derive from ValueError so the agent validation path
(BaseAgent.execute) treats them like any other input failure.
"""

from typing import Iterable, List, Optional


class PipelineError(ValueError):
    """Base class for pipeline validation errors."""


class AlignmentError(PipelineError):
    """Expression matrix columns do not match the metadata sample order."""

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None,
                 extra: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing: List[str] = list(missing or [])
        self.extra: List[str] = list(extra or [])


class ContrastError(PipelineError):
    """A contrast expression is malformed or references unknown groups."""


class ZScoreError(PipelineError):
    """Z-scores cannot be computed (no controls, or zero control sd)."""

    def __init__(self, message: str, genes: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.genes: List[str] = list(genes or [])


class ExternalToolError(PipelineError):
    """The external clustering tool failed or produced unreadable output."""

    def __init__(self, message: str, returncode: Optional[int] = None,
                 stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class RBackendError(PipelineError):
    """R, rpy2 or a Bioconductor package is missing, or the R call failed."""
