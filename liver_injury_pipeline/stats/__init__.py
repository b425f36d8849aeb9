"""Numeric kernels: normalization, linear models, z-scores, profiles, enrichment, orthologs, and the rpy2 Bioconductor back end."""
