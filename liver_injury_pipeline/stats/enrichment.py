"""
Over-representation analysis of profile gene lists.

For each (profile, gene set) pair the p-value is the hypergeometric upper
tail P(X >= overlap) for drawing `profile_size` genes from a universe of
`background_size` genes of which `set_size` are in the set, as computed by
gseapy's offline Enrichr. The universe size is configuration, not
derived from the data, so p-values are comparable between studies.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import gseapy as gp
import numpy as np
import pandas as pd
from gseapy.parser import read_gmt
from statsmodels.stats.multitest import multipletests

from ..utils.errors import PipelineError
from ..utils.records import ENRICHMENT_COLUMNS, ClusterProfile

logger = logging.getLogger(__name__)

CORRECTION_METHODS = ("none", "fdr_bh", "bonferroni")

GeneSets = Dict[str, List[str]]


def load_gene_sets(source: Union[str, Path, Mapping[str, Iterable[str]]],
                   organism: str = "Mouse") -> GeneSets:
    """
    Load a gene-set catalog.

    Args:
        source: A dict of {set name: genes}, a path to a GMT file, or the
            name of an Enrichr library (e.g. "KEGG_2019_Mouse")
        organism: Enrichr organism, used for library names only
    """
    if isinstance(source, Mapping):
        return {str(k): [str(g) for g in v] for k, v in source.items()}

    path = Path(source)
    if path.suffix.lower() == ".gmt" or path.exists():
        if not path.exists():
            raise FileNotFoundError(f"Gene set file not found: {path}")
        gene_sets = read_gmt(str(path))
        logger.info(f"Loaded {len(gene_sets)} gene sets from {path.name}")
    else:
        logger.info(f"Fetching Enrichr library {source} ({organism})")
        gene_sets = gp.get_library(name=str(source), organism=organism)
        logger.info(f"Loaded {len(gene_sets)} gene sets from {source}")

    return {str(k): [str(g) for g in v if str(g)] for k, v in gene_sets.items()}


def filter_gene_sets(gene_sets: Mapping[str, Iterable[str]], min_size: int) -> GeneSets:
    """Drop gene sets with fewer than `min_size` distinct genes."""
    kept = {}
    for name, genes in gene_sets.items():
        unique = list(dict.fromkeys(genes))
        if len(unique) >= min_size:
            kept[name] = unique
    dropped = len(gene_sets) - len(kept)
    if dropped:
        logger.info(f"Excluded {dropped} gene sets smaller than {min_size} genes")
    return kept


def adjust_pvalues(p_values: Sequence[float], method: str = "fdr_bh") -> np.ndarray:
    """Multiple-testing correction: none, fdr_bh or bonferroni."""
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction '{method}', expected one of {CORRECTION_METHODS}")
    p_values = np.asarray(p_values, dtype=float)
    if method == "none" or p_values.size == 0:
        return p_values.copy()
    _, adjusted, _, _ = multipletests(p_values, method=method)
    return adjusted


def _check_background(memberships: Mapping, tested: Mapping, background_size: int) -> None:
    largest_profile = max((len(set(m)) for m in memberships.values()), default=0)
    largest_set = max((len(g) for g in tested.values()), default=0)
    if background_size < max(largest_profile, largest_set):
        raise PipelineError(
            f"background_size {background_size} is smaller than the largest profile "
            f"({largest_profile} genes) or gene set ({largest_set} genes)"
        )


def _enrichr_hits(members: List[str], tested: GeneSets, background_size: int) -> pd.DataFrame:
    """Offline Enrichr (hypergeometric test) of one gene list; only sets with hits come back."""
    enr = gp.enrichr(
        gene_list=members,
        gene_sets=tested,
        background=int(background_size),
        outdir=None,
        cutoff=1.0,
        no_plot=True,
        verbose=False,
    )
    if not isinstance(enr.results, pd.DataFrame):
        return pd.DataFrame(columns=["Term", "Overlap", "P-value", "Genes"])
    return enr.results


def enrich_profiles(
    profiles: Union[Sequence[ClusterProfile], Mapping[str, Iterable[str]]],
    gene_sets: Mapping[str, Iterable[str]],
    background_size: int = 20000,
    min_set_size: int = 10,
    correction: str = "fdr_bh",
) -> pd.DataFrame:
    """
    Test every profile against every gene set of at least `min_set_size`.

    P-values come from gseapy's offline Enrichr. Sets without a single hit
    are reported with overlap 0 and p = 1, so every profile has one row per
    tested set and correction is applied over all of them, within each
    profile. Rows are sorted by profile, then p-value.

    Raises:
        PipelineError: background_size is smaller than a profile or a tested
            gene set, which leaves the hypergeometric test undefined
    """
    if correction not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction '{correction}', expected one of {CORRECTION_METHODS}")
    if isinstance(profiles, Mapping):
        memberships = {k: list(dict.fromkeys(map(str, v))) for k, v in profiles.items()}
    else:
        memberships = {p.profile_id: list(dict.fromkeys(map(str, p.members))) for p in profiles}

    tested = filter_gene_sets(gene_sets, min_set_size)
    _check_background(memberships, tested, background_size)

    rows = []
    for profile_id, members in memberships.items():
        hits = _enrichr_hits(members, tested, background_size) if members and tested else None
        by_term = {} if hits is None else hits.set_index("Term").to_dict("index")

        profile_rows = []
        for name, genes in tested.items():
            hit = by_term.get(name)
            hit_genes = set() if hit is None else set(str(hit["Genes"]).split(";"))
            overlap = [g for g in genes if g in hit_genes]
            profile_rows.append({
                "profile_id": profile_id,
                "gene_set": name,
                "overlap": len(overlap),
                "profile_size": len(members),
                "set_size": len(genes),
                "background": background_size,
                "p_value": 1.0 if hit is None else float(hit["P-value"]),
                "genes": ";".join(overlap),
            })
        adjusted = adjust_pvalues([r["p_value"] for r in profile_rows], correction)
        for row, adj in zip(profile_rows, adjusted):
            row["adj_p_value"] = float(adj)
        rows.extend(profile_rows)

    result = pd.DataFrame(rows, columns=ENRICHMENT_COLUMNS)
    if not result.empty:
        result = result.sort_values(["profile_id", "p_value"], kind="mergesort").reset_index(drop=True)
    logger.info(f"Tested {len(memberships)} profiles against {len(tested)} gene sets")
    return result


def merge_gene_sets(sources: Optional[Sequence], organism: str = "Mouse") -> GeneSets:
    """Load and combine several catalogs; later sources win on name clashes."""
    combined: GeneSets = {}
    for source in sources or []:
        combined.update(load_gene_sets(source, organism=organism))
    return combined
