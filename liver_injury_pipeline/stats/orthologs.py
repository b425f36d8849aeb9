"""
Mouse -> human ortholog translation of DE results.

map_orthologs only ever reads a static two-column table; build_ortholog_table
is the one-off helper that creates such a table from MyGene.info homologene
records.
"""

import logging
from typing import Dict, Iterable, List

import mygene
import pandas as pd

from ..utils.records import OrthologMapping

logger = logging.getLogger(__name__)

TAXON_IDS = {"human": 9606, "mouse": 10090, "rat": 10116}


def map_orthologs(de_results: pd.DataFrame, mapping: OrthologMapping,
                  gene_column: str = "gene_id") -> pd.DataFrame:
    """
    Translate DE rows to target-species genes.

    Rows whose gene has no ortholog are dropped. When several source genes
    map to one target gene within a contrast, the row with the largest
    |logFC| is kept; ties keep the row that came first in `de_results`.

    Returns:
        DE rows with `gene_id` replaced by the target gene and the original
        id kept in `source_gene`
    """
    table = de_results.rename(columns={gene_column: "source_gene"})
    table["source_gene"] = table["source_gene"].astype(str)
    table["_order"] = range(len(table))

    merged = table.merge(mapping.table, on="source_gene", how="inner")
    n_unmapped = table.loc[~table["source_gene"].isin(mapping.table["source_gene"]), "source_gene"].nunique()
    logger.info(f"{n_unmapped} source genes without ortholog dropped")

    merged["_abs_lfc"] = merged["logFC"].abs()
    merged = merged.sort_values(["_abs_lfc", "_order"], ascending=[False, True], kind="mergesort")
    deduped = merged.drop_duplicates(subset=["contrast", "target_gene"], keep="first")
    deduped = deduped.sort_values("_order", kind="mergesort")

    out = deduped.drop(columns=["_abs_lfc", "_order"]).rename(columns={"target_gene": gene_column})
    columns = [gene_column, "source_gene"] + [c for c in out.columns if c not in (gene_column, "source_gene")]
    return out[columns].reset_index(drop=True)


def _homologs(hit: Dict, taxon: int) -> List[int]:
    homologene = hit.get("homologene") or {}
    return [int(g[1]) for g in homologene.get("genes", []) if len(g) >= 2 and int(g[0]) == taxon]


def build_ortholog_table(symbols: Iterable[str], source_species: str = "mouse",
                         target_species: str = "human") -> OrthologMapping:
    """
    Build a source -> target symbol table from MyGene.info homologene data.

    Needs network access; run once and save the table with the study input.
    """
    symbols = list(dict.fromkeys(str(s) for s in symbols))
    target_taxon = TAXON_IDS[target_species]
    mg = mygene.MyGeneInfo()

    logger.info(f"Querying MyGene.info homologene for {len(symbols)} {source_species} genes...")
    hits = mg.querymany(symbols, scopes="symbol", fields="homologene",
                        species=source_species, verbose=False)

    pairs = []
    for hit in hits:
        if hit.get("notfound"):
            continue
        for entrez in _homologs(hit, target_taxon):
            pairs.append((str(hit["query"]), entrez))

    target_ids = sorted({e for _, e in pairs})
    id_to_symbol: Dict[int, str] = {}
    if target_ids:
        targets = mg.querymany(target_ids, scopes="entrezgene", fields="symbol",
                               species=target_species, verbose=False)
        for t in targets:
            if not t.get("notfound") and "symbol" in t:
                id_to_symbol[int(t["query"])] = t["symbol"]

    rows = [{"source_gene": s, "target_gene": id_to_symbol[e]} for s, e in pairs if e in id_to_symbol]
    mapping = OrthologMapping(pd.DataFrame(rows, columns=["source_gene", "target_gene"]))
    logger.info(f"Ortholog table: {len(mapping)} pairs for "
                f"{mapping.table['source_gene'].nunique()} / {len(symbols)} genes")
    return mapping
