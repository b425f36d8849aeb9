"""
Tests for trajectory clustering: the native STEM method and the STEM adapter.
"""

import subprocess

import numpy as np
import pandas as pd
import pytest

pytestmark = pytest.mark.filterwarnings("ignore::DeprecationWarning")

TIMES = ["6h", "24h", "48h"]


@pytest.fixture
def trajectory_table():
    """60 genes peaking at 24h (scaled copies of one shape) plus 140 noise genes."""
    rng = np.random.default_rng(21)
    peak = np.array([1.0, 3.0, 1.0])
    shaped = peak[None, :] * rng.uniform(0.5, 2.0, size=(60, 1))
    noise = rng.normal(0, 1, size=(140, 3))
    genes = [f"Peak{i}" for i in range(60)] + [f"Noise{i}" for i in range(140)]
    return pd.DataFrame(np.vstack([shaped, noise]), index=genes, columns=TIMES)


class TestProfileEnumeration:
    """Tests for candidate profiles and selection."""

    def test_candidate_count(self):
        """(2c + 1)^T candidates, each starting at 0."""
        from liver_injury_pipeline.stats.profiles import enumerate_profiles

        candidates = enumerate_profiles(3, 2)
        assert candidates.shape == (125, 4)
        assert (candidates[:, 0] == 0).all()
        assert np.abs(np.diff(candidates, axis=1)).max() == 2

    def test_too_many_candidates(self):
        """Very long series with large unit change are refused."""
        from liver_injury_pipeline.stats.profiles import enumerate_profiles
        from liver_injury_pipeline.utils.errors import PipelineError

        with pytest.raises(PipelineError):
            enumerate_profiles(12, 3)

    def test_selection_is_distinct(self):
        """Selected profiles are pairwise distinct in shape."""
        from liver_injury_pipeline.stats.profiles import _standardize, enumerate_profiles, select_profiles

        candidates = enumerate_profiles(3, 2)
        chosen = select_profiles(candidates, 20)
        units = _standardize(candidates[chosen])
        corr = units @ units.T
        np.fill_diagonal(corr, 0)

        assert len(chosen) == 20
        assert corr.max() < 1 - 1e-9

    def test_flat_gene_unassigned(self):
        """A gene with no change over time is left out of every profile."""
        from liver_injury_pipeline.stats.profiles import (
            _standardize,
            assign_genes,
            enumerate_profiles,
            select_profiles,
        )

        candidates = enumerate_profiles(3, 1)
        units = _standardize(candidates[select_profiles(candidates, 10)])
        assignment = assign_genes(np.array([[0.0, 0.0, 0.0], [1.0, 2.0, 3.0]]), units)

        assert assignment[0] == -1
        assert assignment[1] >= 0


class TestNativeProfileClustering:
    """Tests for NativeProfileClustering."""

    def test_deterministic_with_seed(self, trajectory_table):
        """Same seed, same profiles and p-values."""
        from liver_injury_pipeline.stats.profiles import NativeProfileClustering

        first = NativeProfileClustering(max_profiles=20, n_permutations=3, random_seed=1).cluster(trajectory_table)
        second = NativeProfileClustering(max_profiles=20, n_permutations=3, random_seed=1).cluster(trajectory_table)

        assert [p.members for p in first] == [p.members for p in second]
        assert [p.p_value for p in first] == [p.p_value for p in second]

    def test_shared_shape_is_significant(self, trajectory_table):
        """The over-represented peak-at-24h shape gets a small p-value."""
        from liver_injury_pipeline.stats.profiles import NativeProfileClustering

        profiles = NativeProfileClustering(max_profiles=20, random_seed=42).cluster(trajectory_table)
        holder = next(p for p in profiles if "Peak0" in p.members)

        assert sum("Peak" in g for g in holder.members) == 60
        assert holder.p_value < 0.001
        assert holder.model[1] > holder.model[0]
        assert holder.model[1] > holder.model[2]

    def test_every_gene_in_at_most_one_profile(self, trajectory_table):
        """Memberships do not overlap and p-values are probabilities."""
        from liver_injury_pipeline.stats.profiles import NativeProfileClustering

        profiles = NativeProfileClustering(max_profiles=20).cluster(trajectory_table)
        members = [g for p in profiles for g in p.members]

        assert len(members) == len(set(members))
        assert all(0.0 <= p.p_value <= 1.0 for p in profiles)
        assert all(len(p.model) == 3 for p in profiles)

    def test_rejects_single_time_point(self):
        """Clustering needs at least two time points."""
        from liver_injury_pipeline.stats.profiles import NativeProfileClustering
        from liver_injury_pipeline.utils.errors import PipelineError

        with pytest.raises(PipelineError):
            NativeProfileClustering().cluster(pd.DataFrame({"6h": [1.0, 2.0]}, index=["a", "b"]))

    def test_rejects_missing_values(self):
        """Missing values are refused, not imputed."""
        from liver_injury_pipeline.stats.profiles import NativeProfileClustering
        from liver_injury_pipeline.utils.errors import PipelineError

        table = pd.DataFrame({"6h": [1.0, np.nan], "24h": [2.0, 1.0]}, index=["a", "b"])
        with pytest.raises(PipelineError):
            NativeProfileClustering().cluster(table)


def _write_fake_stem_output(output_dir):
    (output_dir / "stem_input_profiletable.txt").write_text(
        "Profile ID\tProfile Model\t# Genes Assigned\t# Genes Expected\tp-value\n"
        "4\t0,1,3,1\t2\t0.4\t1.2E-4\n"
        "9\t0,-1,-2,-2\t1\t0.8\t0.61\n"
    )
    (output_dir / "stem_input_genetable.txt").write_text(
        "Gene Symbol\tProfile\t6h\t24h\t48h\n"
        "Hmox1\t4\t1.1\t2.9\t1.0\n"
        "Atf3\t4\t0.9\t3.1\t1.2\n"
        "Cyp2e1\t9\t-0.8\t-2.1\t-1.9\n"
        "Alb\t-1\t0.0\t0.1\t0.0\n"
    )


class TestStemClient:
    """Tests for the external STEM adapter (subprocess mocked)."""

    def _client(self, temp_dir, **kwargs):
        from liver_injury_pipeline.external_tools.stem_client import StemClient

        jar = temp_dir / "stem.jar"
        jar.write_bytes(b"")
        return StemClient(jar_path=jar, work_dir=temp_dir / "work", **kwargs)

    def _table(self):
        return pd.DataFrame({"6h": [1.1, 0.9, -0.8, 0.0], "24h": [2.9, 3.1, -2.1, 0.1],
                             "48h": [1.0, 1.2, -1.9, 0.0]},
                            index=["Hmox1", "Atf3", "Cyp2e1", "Alb"])

    def test_parses_profiles_and_members(self, temp_dir, monkeypatch):
        """Profile and gene tables become ClusterProfile records."""
        seen = {}

        def fake_run(cmd, **kwargs):
            seen["cmd"] = cmd
            seen["timeout"] = kwargs.get("timeout")
            _write_fake_stem_output(temp_dir / "work" / "stem_output")
            return subprocess.CompletedProcess(cmd, 0, stdout="done", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        client = self._client(temp_dir, memory="2G", timeout=30)
        profiles = client.cluster(self._table())

        assert seen["cmd"][:3] == ["java", "-mx2G", "-jar"]
        assert seen["cmd"][-3] == "-b"
        assert seen["timeout"] == 30

        by_id = {p.profile_id: p for p in profiles}
        assert by_id[4].members == ("Hmox1", "Atf3")
        assert by_id[4].model == (1.0, 3.0, 1.0)
        assert by_id[4].p_value == pytest.approx(1.2e-4)
        assert by_id[4].expected_size == pytest.approx(0.4)
        assert by_id[9].members == ("Cyp2e1",)
        assert "Alb" not in {g for p in profiles for g in p.members}

    def test_writes_input_and_settings(self, temp_dir, monkeypatch):
        """The data file is tab-separated with a Gene column; settings point at it."""
        def fake_run(cmd, **kwargs):
            _write_fake_stem_output(temp_dir / "work" / "stem_output")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        self._client(temp_dir, random_seed=7).cluster(self._table())

        data = pd.read_csv(temp_dir / "work" / "stem_input.tsv", sep="\t")
        assert list(data.columns) == ["Gene", "6h", "24h", "48h"]
        settings = (temp_dir / "work" / "stem_settings.txt").read_text()
        assert "Random_Seed\t7" in settings
        assert "stem_input.tsv" in settings

    def test_nonzero_exit(self, temp_dir, monkeypatch):
        """A failing STEM run raises with its exit status and stderr."""
        from liver_injury_pipeline.utils.errors import ExternalToolError

        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: subprocess.CompletedProcess(
            cmd, 1, stdout="", stderr="java.lang.OutOfMemoryError"))

        with pytest.raises(ExternalToolError) as excinfo:
            self._client(temp_dir).cluster(self._table())
        assert excinfo.value.returncode == 1
        assert "OutOfMemoryError" in excinfo.value.stderr

    def test_timeout(self, temp_dir, monkeypatch):
        """A hung STEM run is reported as a tool failure."""
        from liver_injury_pipeline.utils.errors import ExternalToolError

        def hang(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        monkeypatch.setattr(subprocess, "run", hang)
        with pytest.raises(ExternalToolError):
            self._client(temp_dir, timeout=1).cluster(self._table())

    def test_missing_output(self, temp_dir, monkeypatch):
        """Exit 0 without result tables is still a failure."""
        from liver_injury_pipeline.utils.errors import ExternalToolError

        monkeypatch.setattr(subprocess, "run", lambda cmd, **kw: subprocess.CompletedProcess(
            cmd, 0, stdout="", stderr=""))
        with pytest.raises(ExternalToolError):
            self._client(temp_dir).cluster(self._table())

    def test_missing_jar(self, temp_dir):
        """No jar, no run."""
        from liver_injury_pipeline.external_tools.stem_client import StemClient
        from liver_injury_pipeline.utils.errors import ExternalToolError

        client = StemClient(jar_path=temp_dir / "absent.jar", work_dir=temp_dir / "work")
        with pytest.raises(ExternalToolError):
            client.cluster(self._table())


class TestTrajectoryAgentBackend:
    """Tests for how the trajectory stage configures its backend."""

    def test_stem_backend_gets_clustering_settings(self, temp_dir):
        """Permutation count and correction reach the STEM settings file."""
        from liver_injury_pipeline.agents.agent6_trajectory import TrajectoryAgent
        from liver_injury_pipeline.external_tools.stem_client import StemClient

        jar = temp_dir / "stem.jar"
        jar.write_bytes(b"")
        agent = TrajectoryAgent(temp_dir, temp_dir / "out", {
            "trajectory_backend": "stem",
            "stem_jar": str(jar),
            "n_permutations": 1234,
            "stem_correction": "False Discovery Rate",
        })
        backend = agent.build_backend()
        agent.close_logging()

        assert isinstance(backend, StemClient)
        settings = backend.settings(temp_dir / "stem_input.tsv")
        assert settings["Number_of_Permutations_per_Gene"] == "1234"
        assert settings["Correction_Method[Bonferroni,False Discovery Rate,None]"] == "False Discovery Rate"

    def test_native_backend_gets_permutations(self, temp_dir):
        """The native backend uses the same permutation count."""
        from liver_injury_pipeline.agents.agent6_trajectory import TrajectoryAgent

        agent = TrajectoryAgent(temp_dir, temp_dir / "out", {"n_permutations": 77})
        backend = agent.build_backend()
        agent.close_logging()

        assert backend.n_permutations == 77
