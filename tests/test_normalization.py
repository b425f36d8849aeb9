"""
Tests for microarray (RMA) and RNA-seq (TMM / log-CPM) normalization.
"""

import numpy as np
import pandas as pd
import pytest

pytestmark = pytest.mark.filterwarnings("ignore::DeprecationWarning")


class TestQuantileNormalization:
    """Tests for quantile normalization."""

    def test_columns_share_distribution(self):
        """Every column ends up with the same sorted values."""
        from liver_injury_pipeline.stats.normalization import quantile_normalize

        rng = np.random.default_rng(0)
        x = np.column_stack([rng.normal(5, 1, 50), rng.normal(7, 2, 50), rng.exponential(3, 50)])
        out = quantile_normalize(x)

        sorted_cols = np.sort(out, axis=0)
        assert np.allclose(sorted_cols[:, 0], sorted_cols[:, 1])
        assert np.allclose(sorted_cols[:, 0], sorted_cols[:, 2])

    def test_rank_order_preserved(self):
        """Normalization never reorders values within a column."""
        from liver_injury_pipeline.stats.normalization import quantile_normalize

        x = np.array([[5.0, 4.0], [2.0, 1.0], [3.0, 6.0]])
        out = quantile_normalize(x)
        assert np.array_equal(np.argsort(out[:, 0]), np.argsort(x[:, 0]))
        assert np.array_equal(np.argsort(out[:, 1]), np.argsort(x[:, 1]))


class TestRMA:
    """Tests for background correction and probe summarization."""

    def test_background_correction_is_positive(self):
        """Corrected intensities are strictly positive."""
        from liver_injury_pipeline.stats.normalization import rma_background_correct

        rng = np.random.default_rng(1)
        raw = rng.normal(100, 10, size=(500, 3)) + rng.exponential(200, size=(500, 3))
        out = rma_background_correct(raw)
        assert (out > 0).all()

    def test_median_polish_additive_block(self):
        """An exactly additive block gives back overall + column effects."""
        from liver_injury_pipeline.stats.normalization import median_polish

        rows = np.array([0.0, 1.0, -0.5, 2.0])
        cols = np.array([6.0, 7.0, 8.5])
        block = rows[:, None] + cols[None, :]
        summary = median_polish(block)

        assert np.allclose(np.diff(summary), np.diff(cols))
        assert np.isclose(summary.mean(), cols.mean() + np.median(rows))

    def test_rma_one_row_per_probeset(self):
        """Probes collapse to probesets in input order."""
        from liver_injury_pipeline.stats.normalization import rma

        rng = np.random.default_rng(2)
        n_sets, n_probes = 40, 3
        rows = []
        for i in range(n_sets):
            level = rng.uniform(6, 12)
            for p in range(n_probes):
                rows.append([f"p{i}_{p}", f"ps{i}", *(2 ** (level + rng.normal(0, 0.2, 4)) + 40)])
        table = pd.DataFrame(rows, columns=["probe_id", "probeset_id", "A1", "A2", "A3", "A4"])

        expr = rma(table)
        assert expr.shape == (n_sets, 4)
        assert expr.index.tolist() == [f"ps{i}" for i in range(n_sets)]
        assert list(expr.columns) == ["A1", "A2", "A3", "A4"]
        assert np.isfinite(expr.to_numpy()).all()


class TestCollapseToGenes:
    """Tests for probeset -> gene symbol collapsing."""

    def test_highest_mean_probeset_wins(self):
        """Multiple probesets per gene keep the highest mean."""
        from liver_injury_pipeline.stats.normalization import collapse_to_genes

        expr = pd.DataFrame({"A": [5.0, 8.0, 3.0], "B": [5.0, 8.0, 3.0]}, index=["ps1", "ps2", "ps3"])
        annotation = pd.DataFrame({"probeset_id": ["ps1", "ps2", "ps3"],
                                   "gene_symbol": ["Cyp2e1", "Cyp2e1", "Hmox1"]})
        out = collapse_to_genes(expr, annotation)

        assert out.index.tolist() == ["Cyp2e1", "Hmox1"]
        assert out.loc["Cyp2e1", "A"] == 8.0
        assert out.index.name == "gene_id"

    def test_tie_keeps_first_probeset(self):
        """Equal means keep the probeset that comes first in the input."""
        from liver_injury_pipeline.stats.normalization import collapse_to_genes

        expr = pd.DataFrame({"A": [4.0, 6.0], "B": [6.0, 4.0]}, index=["ps1", "ps2"])
        annotation = pd.DataFrame({"probeset_id": ["ps1", "ps2"], "gene_symbol": ["Gclc", "Gclc"]})
        out = collapse_to_genes(expr, annotation)

        assert out.loc["Gclc", "A"] == 4.0

    def test_unannotated_dropped(self):
        """Probesets without a symbol are dropped."""
        from liver_injury_pipeline.stats.normalization import collapse_to_genes

        expr = pd.DataFrame({"A": [1.0, 2.0, 3.0]}, index=["ps1", "ps2", "ps3"])
        annotation = pd.DataFrame({"probeset_id": ["ps1", "ps2", "ps3"],
                                   "gene_symbol": ["Atf3", "---", None]})
        out = collapse_to_genes(expr, annotation)
        assert out.index.tolist() == ["Atf3"]

    def test_many_probesets_keep_input_order(self):
        """Genome-scale arrays collapse in one pass; output follows the winning probesets' input order."""
        from liver_injury_pipeline.stats.normalization import collapse_to_genes

        n = 40000
        probesets = [f"ps{i}" for i in range(n)]
        genes = [f"Gene{i // 2}" for i in range(n)]
        # Odd probesets win for even genes, even probesets for odd genes
        values = np.array([(i % 2) if (i // 2) % 2 == 0 else 1 - (i % 2) for i in range(n)], dtype=float)
        expr = pd.DataFrame({"A": values, "B": values}, index=probesets)
        annotation = pd.DataFrame({"probeset_id": probesets, "gene_symbol": genes})

        out = collapse_to_genes(expr, annotation)

        assert len(out) == n // 2
        assert out.index.tolist() == [f"Gene{j}" for j in range(n // 2)]
        assert (out["A"] == 1.0).all()


class TestRnaSeqNormalization:
    """Tests for filterByExpr, TMM and log-CPM."""

    def test_filter_drops_low_count_genes(self, count_matrix):
        """Genes with almost no reads are filtered out."""
        from liver_injury_pipeline.stats.normalization import filter_by_expr

        counts = count_matrix.copy()
        counts.loc["Empty"] = [0, 1, 0, 0, 2, 0]
        keep = filter_by_expr(counts, group=["a"] * 3 + ["b"] * 3)

        assert not keep["Empty"]
        assert keep.drop("Empty").all()

    def test_tmm_factors_multiply_to_one(self, count_matrix):
        """Factors are centred on a geometric mean of one."""
        from liver_injury_pipeline.stats.normalization import tmm_factors

        factors = tmm_factors(count_matrix)
        assert np.isclose(np.prod(factors.to_numpy()), 1.0)
        assert factors.name == "norm_factor"

    def test_tmm_scaled_library(self):
        """A library that is an exact multiple of another needs no scaling."""
        from liver_injury_pipeline.stats.normalization import tmm_factors

        base = np.arange(10, 110)
        counts = pd.DataFrame({"S1": base, "S2": base * 2})
        factors = tmm_factors(counts)
        assert np.allclose(factors.to_numpy(), 1.0)

    def test_tmm_composition_bias(self):
        """A few strongly induced genes do not inflate the other genes."""
        from liver_injury_pipeline.stats.normalization import tmm_factors

        a = np.full(100, 100)
        b = a.copy()
        b[:10] = 1000
        counts = pd.DataFrame({"S1": a, "S2": b})
        factors = tmm_factors(counts)

        effective = counts.sum(axis=0) * factors
        assert effective["S1"] == pytest.approx(effective["S2"], rel=1e-6)

    def test_empty_library_rejected(self):
        """A sample without reads cannot be TMM-normalized."""
        from liver_injury_pipeline.stats.normalization import tmm_factors

        with pytest.raises(ValueError):
            tmm_factors(pd.DataFrame({"S1": [1, 2], "S2": [0, 0]}))

    def test_log_cpm_independent_of_depth(self):
        """Same proportions at different depths give the same log-CPM."""
        from liver_injury_pipeline.stats.normalization import log_cpm

        base = np.array([10, 100, 1000, 5000])
        counts = pd.DataFrame({"S1": base, "S2": base * 3}, index=list("abcd"))
        out = log_cpm(counts)
        assert np.allclose(out["S1"], out["S2"])


class TestQualityHelpers:
    """Tests for constant-gene removal and array QC metrics."""

    def test_drop_constant_genes(self):
        """Zero-variance genes are removed and reported."""
        from liver_injury_pipeline.stats.normalization import drop_constant_genes

        expr = pd.DataFrame({"A": [1.0, 2.0, 5.0], "B": [1.0, 3.0, 5.0]}, index=["flat", "ok", "flat2"])
        kept, removed = drop_constant_genes(expr)
        assert kept.index.tolist() == ["ok"]
        assert removed == ["flat", "flat2"]

    def test_outlier_array_flagged(self):
        """A shifted, noisy array fails RLE checks."""
        from liver_injury_pipeline.stats.normalization import flag_low_quality, sample_quality_metrics

        rng = np.random.default_rng(3)
        base = rng.uniform(4, 12, size=500)
        values = base[:, None] + rng.normal(0, 0.1, size=(500, 5))
        values[:, 4] = base + 1.0 + rng.normal(0, 2.0, size=500)
        log_expr = pd.DataFrame(values, columns=[f"A{i}" for i in range(5)])

        flagged = flag_low_quality(sample_quality_metrics(log_expr))
        assert flagged["keep"].tolist() == [True, True, True, True, False]
        assert "rle_median" in flagged.loc[4, "reason"]
