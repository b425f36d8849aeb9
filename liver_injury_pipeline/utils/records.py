"""
Typed records exchanged between pipeline stages.

Each stage reads the previous stage's CSV artifacts back into these records,
so schema and alignment problems surface at the boundary where they occur.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import AlignmentError, PipelineError

logger = logging.getLogger(__name__)

REGULATION_LABELS = ("up", "down", "ns")

DE_RESULT_COLUMNS = [
    "gene_id", "contrast", "logFC", "AveExpr", "t",
    "P.Value", "adj.P.Val", "B", "estimable", "regulation",
]

ENRICHMENT_COLUMNS = [
    "profile_id", "gene_set", "overlap", "profile_size", "set_size",
    "background", "p_value", "adj_p_value", "genes",
]

GROUP_SEPARATOR = "_"


def assert_aligned(samples: Sequence[str], sample_ids: Sequence[str]) -> None:
    """Fail unless the matrix columns equal the metadata sample order exactly."""
    samples = [str(s) for s in samples]
    sample_ids = [str(s) for s in sample_ids]
    if samples == sample_ids:
        return

    present, known = set(samples), set(sample_ids)
    missing = [s for s in sample_ids if s not in present]
    extra = [s for s in samples if s not in known]
    if missing or extra:
        raise AlignmentError(
            f"Sample mismatch between matrix and metadata "
            f"(missing from matrix: {missing[:5]}, not in metadata: {extra[:5]})",
            missing=missing, extra=extra,
        )
    raise AlignmentError(
        "Matrix sample columns are not in metadata order "
        f"(first matrix columns: {samples[:5]}, first metadata rows: {sample_ids[:5]})"
    )


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """One row per sample; factor columns plus the derived `group` label."""

    table: pd.DataFrame
    sample_column: str = "sample_id"

    def __post_init__(self):
        table = self.table.copy()
        if self.sample_column not in table.columns:
            table = table.rename(columns={table.columns[0]: self.sample_column})
        table[self.sample_column] = table[self.sample_column].astype(str)

        if table.empty:
            raise PipelineError("Sample metadata is empty")
        duplicated = table[self.sample_column][table[self.sample_column].duplicated()]
        if len(duplicated) > 0:
            raise PipelineError(f"Duplicate sample ids in metadata: {duplicated.tolist()[:5]}")

        object.__setattr__(self, "table", table.reset_index(drop=True))

    @classmethod
    def from_csv(cls, path: Path) -> "SampleMetadata":
        return cls(pd.read_csv(path))

    @property
    def sample_ids(self) -> List[str]:
        return self.table[self.sample_column].tolist()

    @property
    def has_group(self) -> bool:
        return "group" in self.table.columns

    @property
    def groups(self) -> pd.Series:
        if not self.has_group:
            raise PipelineError("Metadata has no 'group' column; build it with with_group()")
        return pd.Series(self.table["group"].astype(str).values, index=self.sample_ids, name="group")

    def column(self, name: str) -> pd.Series:
        if name not in self.table.columns:
            raise PipelineError(f"Metadata has no '{name}' column")
        return pd.Series(self.table[name].values, index=self.sample_ids, name=name)

    def with_group(self, factors: Sequence[str]) -> "SampleMetadata":
        """Derive `group` by joining factor levels in the given column order."""
        missing = [f for f in factors if f not in self.table.columns]
        if missing:
            raise PipelineError(f"Group factors not in metadata: {missing}")
        if not factors:
            raise PipelineError("At least one factor is required to build groups")

        table = self.table.copy()
        parts = [table[f].astype(str).str.strip() for f in factors]
        group = parts[0]
        for part in parts[1:]:
            group = group + GROUP_SEPARATOR + part
        table["group"] = group
        return SampleMetadata(table, self.sample_column)

    def subset(self, sample_ids: Sequence[str]) -> "SampleMetadata":
        keep = set(sample_ids)
        return SampleMetadata(self.table[self.table[self.sample_column].isin(keep)], self.sample_column)

    def to_frame(self) -> pd.DataFrame:
        return self.table.copy()


@dataclass(frozen=True, eq=False)
class ExpressionMatrix:
    """Genes (rows) x samples (columns) of real-valued expression."""

    data: pd.DataFrame

    def __post_init__(self):
        data = self.data.copy()
        data.index = data.index.astype(str)
        data.columns = [str(c) for c in data.columns]
        if data.index.has_duplicates:
            dupes = data.index[data.index.duplicated()].unique().tolist()
            raise PipelineError(f"Gene identifiers are not unique: {dupes[:5]}")
        try:
            data = data.astype(float)
        except (TypeError, ValueError) as e:
            raise PipelineError(f"Expression matrix has non-numeric values: {e}") from e
        object.__setattr__(self, "data", data)

    @classmethod
    def from_csv(cls, path: Path, index_col: int = 0) -> "ExpressionMatrix":
        return cls(pd.read_csv(path, index_col=index_col))

    @property
    def genes(self) -> List[str]:
        return self.data.index.tolist()

    @property
    def samples(self) -> List[str]:
        return self.data.columns.tolist()

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def align_to(self, metadata: SampleMetadata) -> "ExpressionMatrix":
        """Reorder columns by sample id to metadata order; any set difference is an error."""
        sample_ids = metadata.sample_ids
        present, known = set(self.data.columns), set(sample_ids)
        missing = [s for s in sample_ids if s not in present]
        extra = [s for s in self.data.columns if s not in known]
        if missing or extra:
            raise AlignmentError(
                f"Matrix and metadata samples differ (missing from matrix: {missing[:5]}, "
                f"not in metadata: {extra[:5]})",
                missing=missing, extra=extra,
            )
        if self.samples != sample_ids:
            logger.info("Reordering matrix columns to metadata sample order")
        return ExpressionMatrix(self.data[sample_ids])

    def assert_aligned(self, metadata: SampleMetadata) -> None:
        assert_aligned(self.samples, metadata.sample_ids)

    def to_frame(self, index_label: str = "gene_id") -> pd.DataFrame:
        out = self.data.copy()
        out.index.name = index_label
        return out


@dataclass(frozen=True, eq=False)
class SampleLabelTable:
    """Declarative mapping from a sample label to its factor values."""

    table: pd.DataFrame
    label_column: str = "label"

    def __post_init__(self):
        table = self.table.copy()
        if self.label_column not in table.columns:
            raise PipelineError(f"Label table has no '{self.label_column}' column")
        table[self.label_column] = table[self.label_column].astype(str).str.strip()
        if table[self.label_column].duplicated().any():
            dupes = table[self.label_column][table[self.label_column].duplicated()].tolist()
            raise PipelineError(f"Duplicate labels in label table: {dupes[:5]}")
        if len(table.columns) < 2:
            raise PipelineError("Label table needs at least one factor column")
        object.__setattr__(self, "table", table)

    @classmethod
    def from_csv(cls, path: Path) -> "SampleLabelTable":
        return cls(pd.read_csv(path, dtype=str))

    @property
    def factors(self) -> List[str]:
        return [c for c in self.table.columns if c != self.label_column]

    def apply(self, metadata: SampleMetadata) -> SampleMetadata:
        """Attach factor columns to every sample by its label."""
        labels = metadata.column(self.label_column).astype(str).str.strip()
        unknown = sorted(set(labels) - set(self.table[self.label_column]))
        if unknown:
            raise PipelineError(f"Sample labels without a factor mapping: {unknown}")

        lookup = self.table.set_index(self.label_column)
        table = metadata.to_frame().drop(columns=[c for c in self.factors if c in metadata.table.columns])
        for factor in self.factors:
            table[factor] = labels.map(lookup[factor]).values
        return SampleMetadata(table, metadata.sample_column)


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Samples x group levels indicator matrix."""

    matrix: pd.DataFrame

    def __post_init__(self):
        values = self.matrix.to_numpy()
        if not np.isin(values, (0, 1)).all():
            raise PipelineError("Design matrix must contain only 0/1 indicators")
        row_sums = values.sum(axis=1)
        if not (row_sums == 1).all():
            bad = self.matrix.index[row_sums != 1].tolist()
            raise PipelineError(f"Samples with other than one group membership: {bad[:5]}")

    @property
    def levels(self) -> List[str]:
        return [str(c) for c in self.matrix.columns]

    @property
    def samples(self) -> List[str]:
        return [str(s) for s in self.matrix.index]

    def replicates(self) -> Dict[str, int]:
        return {level: int(self.matrix[level].sum()) for level in self.matrix.columns}


@dataclass(frozen=True)
class Contrast:
    """A named linear combination of group-level coefficients."""

    name: str
    expression: str
    weights: Dict[str, float] = field(default_factory=dict)

    def vector(self, levels: Sequence[str]) -> np.ndarray:
        unknown = set(self.weights) - set(levels)
        if unknown:
            raise PipelineError(f"Contrast '{self.name}' references unknown levels: {sorted(unknown)}")
        return np.array([self.weights.get(level, 0.0) for level in levels], dtype=float)


@dataclass(frozen=True)
class ClusterProfile:
    """A trajectory shape with its assigned genes and significance."""

    profile_id: int
    model: Tuple[float, ...]
    members: Tuple[str, ...]
    p_value: float
    expected_size: float = float("nan")

    @property
    def size(self) -> int:
        return len(self.members)

    def is_significant(self, cutoff: float) -> bool:
        return bool(np.isfinite(self.p_value) and self.p_value <= cutoff)


def profiles_to_frames(profiles: Sequence[ClusterProfile],
                       time_labels: Sequence[str]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Flatten profiles into (profile table, gene membership table)."""
    rows = []
    members = []
    for p in profiles:
        row = {
            "profile_id": p.profile_id,
            "size": p.size,
            "expected_size": p.expected_size,
            "p_value": p.p_value,
        }
        for label, value in zip(time_labels, p.model):
            row[f"model_{label}"] = value
        rows.append(row)
        members.extend({"gene_id": g, "profile_id": p.profile_id} for g in p.members)

    profile_df = pd.DataFrame(rows, columns=["profile_id", "size", "expected_size", "p_value"]
                              + [f"model_{label}" for label in time_labels])
    member_df = pd.DataFrame(members, columns=["gene_id", "profile_id"])
    return profile_df, member_df


def profiles_from_frames(profile_df: pd.DataFrame, member_df: pd.DataFrame) -> List[ClusterProfile]:
    """Inverse of profiles_to_frames."""
    model_cols = [c for c in profile_df.columns if c.startswith("model_")]
    grouped = member_df.groupby("profile_id")["gene_id"].apply(lambda s: tuple(s.astype(str)))
    out = []
    for _, row in profile_df.iterrows():
        pid = int(row["profile_id"])
        out.append(ClusterProfile(
            profile_id=pid,
            model=tuple(float(row[c]) for c in model_cols),
            members=grouped.get(pid, tuple()),
            p_value=float(row["p_value"]),
            expected_size=float(row.get("expected_size", np.nan)),
        ))
    return out


def validate_de_results(df: pd.DataFrame) -> pd.DataFrame:
    """Check the DE result schema and regulation labels."""
    missing = [c for c in DE_RESULT_COLUMNS if c not in df.columns]
    if missing:
        raise PipelineError(f"DE results missing columns: {missing}")
    bad = set(df["regulation"].dropna().unique()) - set(REGULATION_LABELS)
    if bad:
        raise PipelineError(f"Unknown regulation labels: {sorted(bad)}")
    dupes = df.duplicated(subset=["gene_id", "contrast"])
    if dupes.any():
        raise PipelineError(f"{int(dupes.sum())} duplicate (gene, contrast) rows in DE results")
    return df


@dataclass(frozen=True, eq=False)
class OrthologMapping:
    """Static source-species -> target-species gene table (one row per pair)."""

    table: pd.DataFrame

    COLUMN_ALIASES = {
        "mouse_symbol": "source_gene",
        "mouse_gene": "source_gene",
        "human_symbol": "target_gene",
        "human_gene": "target_gene",
    }

    def __post_init__(self):
        table = self.table.rename(columns=self.COLUMN_ALIASES)
        missing = [c for c in ("source_gene", "target_gene") if c not in table.columns]
        if missing:
            raise PipelineError(f"Ortholog table missing columns: {missing}")
        table = table[["source_gene", "target_gene"]].dropna().astype(str)
        table = table.drop_duplicates().reset_index(drop=True)
        object.__setattr__(self, "table", table)

    @classmethod
    def from_csv(cls, path: Path) -> "OrthologMapping":
        return cls(pd.read_csv(path, dtype=str))

    def __len__(self) -> int:
        return len(self.table)
