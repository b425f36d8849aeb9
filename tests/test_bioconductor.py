"""
Tests for the rpy2 / Bioconductor engine and the native fallback.

Agent-level tests replace the R calls with stand-ins, so they run without R.
The comparisons against edgeR and limma themselves run only when R and the
packages are installed.
"""

import json
import sys

import numpy as np
import pandas as pd
import pytest

from liver_injury_pipeline.stats.bioconductor import r_available

pytestmark = pytest.mark.filterwarnings("ignore::DeprecationWarning")

requires_limma = pytest.mark.skipif(not r_available(["limma"]), reason="R package limma not available")
requires_edger = pytest.mark.skipif(not r_available(["edgeR"]), reason="R package edgeR not available")


def _write_de_inputs(input_dir, expr, metadata):
    """Write the files the DE stage reads, for a two-group APAP_vs_control study."""
    from liver_injury_pipeline.stats.design import build_design_matrix

    input_dir.mkdir(parents=True, exist_ok=True)
    design = build_design_matrix(metadata)
    expr.rename_axis("gene_id").to_csv(input_dir / "normalized_expression.csv")
    metadata.to_frame().to_csv(input_dir / "metadata.csv", index=False)
    design.matrix.to_csv(input_dir / "design_matrix.csv")
    pd.DataFrame({"name": ["APAP_vs_control"], "expression": ["APAP - control"]}).to_csv(
        input_dir / "contrasts.csv", index=False)


def _meta(output_dir, name):
    with open(output_dir / f"meta_{name}.json", encoding="utf-8") as f:
        return json.load(f)


class TestRBackendLoading:
    """Tests for detecting a missing R back end."""

    def test_missing_rpy2_is_backend_error(self, monkeypatch):
        """An rpy2 import failure surfaces as RBackendError."""
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.utils.errors import RBackendError

        monkeypatch.setitem(sys.modules, "rpy2.robjects", None)
        with pytest.raises(RBackendError):
            bioconductor._load_r(["limma"])
        assert bioconductor.r_available(["limma"]) is False

    def test_limma_needs_residual_df(self):
        """One sample per group leaves limma nothing to estimate variance from."""
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.stats.design import build_design_matrix, make_contrasts
        from liver_injury_pipeline.utils.errors import RBackendError
        from liver_injury_pipeline.utils.records import SampleMetadata

        meta = SampleMetadata(pd.DataFrame({"sample_id": ["S1", "S2"], "group": ["control", "APAP"]}))
        design = build_design_matrix(meta)
        contrasts = make_contrasts({"APAP_vs_control": "APAP - control"}, design.levels)
        expr = pd.DataFrame({"S1": [1.0, 2.0], "S2": [2.0, 3.0]}, index=["g1", "g2"])

        with pytest.raises(RBackendError):
            bioconductor.limma_top_table(expr, design, contrasts)


class TestFinishTopTable:
    """Tests for bringing a limma topTable to the DE result schema."""

    def _table(self):
        return pd.DataFrame({
            "gene_id": ["g1", "g2", "g1", "g2"],
            "contrast": ["A_vs_C", "A_vs_C", "B_vs_C", "B_vs_C"],
            "logFC": [2.0, 0.2, -3.0, 1.5],
            "AveExpr": [5.0, 6.0, 5.0, 6.0],
            "t": [8.0, 0.5, -9.0, 6.0],
            "P.Value": [0.001, 0.6, 0.0005, 0.002],
            "adj.P.Val": [0.5, 0.5, 0.5, 0.5],
            "B": [3.0, -5.0, 4.0, 2.0],
        })

    def test_adjusts_within_contrast_and_calls(self):
        """adj.P.Val is recomputed per contrast; regulation uses the shared rule."""
        from liver_injury_pipeline.stats.linear_model import adjust_bh, finish_top_table
        from liver_injury_pipeline.utils.records import DE_RESULT_COLUMNS

        out = finish_top_table(self._table())

        assert list(out.columns) == DE_RESULT_COLUMNS
        assert np.allclose(out["adj.P.Val"][:2], adjust_bh(np.array([0.001, 0.6])))
        assert out["regulation"].tolist() == ["up", "ns", "down", "up"]
        assert out["estimable"].all()

    def test_logfc_only_contrast_blanked(self):
        """Unreplicated contrasts keep logFC but lose their statistics."""
        from liver_injury_pipeline.stats.linear_model import finish_top_table

        out = finish_top_table(self._table(), logfc_only=["B_vs_C"])
        blocked = out[out["contrast"] == "B_vs_C"]

        assert blocked[["t", "P.Value", "adj.P.Val", "B"]].isna().all().all()
        assert not blocked["estimable"].any()
        assert (blocked["regulation"] == "ns").all()
        assert blocked["logFC"].tolist() == [-3.0, 1.5]


class TestDEEngineSelection:
    """Tests for how the DE stage picks limma or the native engine."""

    def test_fallback_when_limma_missing(self, temp_dir, log_expression, two_group_metadata, monkeypatch):
        """auto + use_native_fallback runs the native engine and records it."""
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.utils.errors import RBackendError

        def no_r(*args, **kwargs):
            raise RBackendError("R packages not installed: ['limma']")

        monkeypatch.setattr(bioconductor, "limma_top_table", no_r)
        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        results = DEGAgent(temp_dir / "in", temp_dir / "out").execute()

        assert results["method"] == "native_fallback"
        assert _meta(temp_dir / "out", "agent4_deg")["method"] == "native_fallback"
        de = pd.read_csv(temp_dir / "out" / "de_results.csv").set_index("gene_id")
        assert de.loc["Target", "regulation"] == "up"

    def test_bioconductor_engine_does_not_fall_back(self, temp_dir, log_expression, two_group_metadata,
                                                    monkeypatch):
        """engine 'bioconductor' fails instead of silently switching engines."""
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.utils.errors import RBackendError

        def no_r(*args, **kwargs):
            raise RBackendError("rpy2 / R not available")

        monkeypatch.setattr(bioconductor, "limma_top_table", no_r)
        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        with pytest.raises(RBackendError):
            DEGAgent(temp_dir / "in", temp_dir / "out", {"engine": "bioconductor"}).execute()

    def test_no_fallback_when_disabled(self, temp_dir, log_expression, two_group_metadata, monkeypatch):
        """use_native_fallback False turns a missing R into an error under auto."""
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.utils.errors import RBackendError

        def no_r(*args, **kwargs):
            raise RBackendError("rpy2 / R not available")

        monkeypatch.setattr(bioconductor, "limma_top_table", no_r)
        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        with pytest.raises(RBackendError):
            DEGAgent(temp_dir / "in", temp_dir / "out", {"use_native_fallback": False}).execute()

    def test_limma_result_is_recorded(self, temp_dir, log_expression, two_group_metadata, monkeypatch):
        """A topTable from limma goes through the shared rules and is labelled limma."""
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.stats.linear_model import differential_expression

        calls = []

        def fake_limma(expr, design, contrasts):
            calls.append([c.name for c in contrasts])
            table = differential_expression(expr, design, contrasts)
            return table.drop(columns=["estimable", "regulation"])

        monkeypatch.setattr(bioconductor, "limma_top_table", fake_limma)
        monkeypatch.setattr(bioconductor, "r_versions", lambda packages: {p: "3.58.1" for p in packages})
        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        results = DEGAgent(temp_dir / "in", temp_dir / "out").execute()

        assert calls == [["APAP_vs_control"]]
        assert results["method"] == "limma"
        assert results["r_packages"] == {"limma": "3.58.1"}
        de = pd.read_csv(temp_dir / "out" / "de_results.csv").set_index("gene_id")
        assert de.loc["Target", "regulation"] == "up"

    def test_native_engine_never_calls_r(self, temp_dir, log_expression, two_group_metadata, monkeypatch):
        """engine 'native' skips R entirely."""
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent
        from liver_injury_pipeline.stats import bioconductor

        def unexpected(*args, **kwargs):
            raise AssertionError("limma called with engine 'native'")

        monkeypatch.setattr(bioconductor, "limma_top_table", unexpected)
        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        results = DEGAgent(temp_dir / "in", temp_dir / "out", {"engine": "native"}).execute()
        assert results["method"] == "native"

    def test_unknown_engine(self, temp_dir, log_expression, two_group_metadata):
        from liver_injury_pipeline.agents.agent4_deg import DEGAgent

        _write_de_inputs(temp_dir / "in", log_expression, two_group_metadata)
        with pytest.raises(ValueError):
            DEGAgent(temp_dir / "in", temp_dir / "out", {"engine": "deseq2"}).execute()


class TestNormalizationEngineSelection:
    """Tests for how the normalization stage picks edgeR or the native engine."""

    def test_edger_fallback(self, rnaseq_study, temp_dir, monkeypatch):
        """Without edgeR the numpy TMM / log-CPM runs and is recorded."""
        from liver_injury_pipeline.agents.agent1_qc import QualityControlAgent
        from liver_injury_pipeline.agents.agent2_normalize import NormalizationAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.utils.errors import RBackendError

        def no_r(*args, **kwargs):
            raise RBackendError("R packages not installed: ['edgeR']")

        monkeypatch.setattr(bioconductor, "edger_log_cpm", no_r)
        QualityControlAgent(rnaseq_study, temp_dir / "qc").execute()
        results = NormalizationAgent(temp_dir / "qc", temp_dir / "norm").execute()

        assert results["method"] == "native_fallback"
        assert _meta(temp_dir / "norm", "agent2_normalize")["method"] == "native_fallback"
        factors = pd.read_csv(temp_dir / "norm" / "norm_factors.csv")
        assert list(factors.columns) == ["sample_id", "lib_size", "norm_factor"]
        assert np.isclose(np.prod(factors["norm_factor"]), 1.0)

    def test_edger_result_is_used(self, rnaseq_study, temp_dir, monkeypatch):
        """An edgeR log-CPM table is written as the normalized matrix."""
        from liver_injury_pipeline.agents.agent1_qc import QualityControlAgent
        from liver_injury_pipeline.agents.agent2_normalize import NormalizationAgent
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.stats.normalization import log_cpm, tmm_factors

        def fake_edger(counts, group, min_count, min_total_count, prior_count):
            kept = counts[counts.sum(axis=1) >= 100]
            factors = tmm_factors(kept)
            samples = pd.DataFrame({"sample_id": factors.index, "lib_size": kept.sum(axis=0).values,
                                    "norm_factor": factors.values})
            return log_cpm(kept, factors, prior_count=prior_count), samples

        monkeypatch.setattr(bioconductor, "edger_log_cpm", fake_edger)
        QualityControlAgent(rnaseq_study, temp_dir / "qc").execute()
        results = NormalizationAgent(temp_dir / "qc", temp_dir / "norm").execute()

        assert results["method"] == "edgeR"
        expr = pd.read_csv(temp_dir / "norm" / "normalized_expression.csv", index_col=0)
        metadata = pd.read_csv(temp_dir / "qc" / "metadata_aligned.csv")
        assert expr.columns.tolist() == metadata["sample_id"].astype(str).tolist()


@requires_limma
class TestLimmaAgreement:
    """limma and the native engine agree on a two-group study."""

    def test_same_fold_changes_and_calls(self, log_expression, two_group_metadata):
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.stats.design import build_design_matrix, make_contrasts
        from liver_injury_pipeline.stats.linear_model import differential_expression, finish_top_table

        design = build_design_matrix(two_group_metadata)
        contrasts = make_contrasts({"APAP_vs_control": "APAP - control"}, design.levels)

        limma = finish_top_table(bioconductor.limma_top_table(log_expression, design, contrasts))
        native = differential_expression(log_expression, design, contrasts)

        assert limma["gene_id"].tolist() == native["gene_id"].tolist()
        assert np.allclose(limma["logFC"], native["logFC"])
        assert np.corrcoef(limma["t"], native["t"])[0, 1] > 0.999
        assert limma.set_index("gene_id").loc["Target", "regulation"] == "up"


@requires_edger
class TestEdgeRAgreement:
    """edgeR and the native TMM / log-CPM agree on shared genes."""

    def test_log_cpm_close(self, count_matrix):
        from liver_injury_pipeline.stats import bioconductor
        from liver_injury_pipeline.stats.normalization import log_cpm, tmm_factors

        edger, samples = bioconductor.edger_log_cpm(count_matrix)
        native = log_cpm(count_matrix.loc[edger.index], tmm_factors(count_matrix.loc[edger.index]))

        assert samples["sample_id"].tolist() == count_matrix.columns.tolist()
        assert np.allclose(edger.to_numpy(), native.to_numpy(), atol=0.05)
