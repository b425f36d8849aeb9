"""
Liver Injury Pipeline - Test Configuration and Fixtures
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def temp_dir(tmp_path):
    """Per-test scratch directory."""
    return tmp_path


@pytest.fixture
def two_group_metadata():
    """Three control and three APAP samples."""
    from liver_injury_pipeline.utils.records import SampleMetadata

    return SampleMetadata(pd.DataFrame({
        "sample_id": [f"S{i}" for i in range(1, 7)],
        "treatment": ["control"] * 3 + ["APAP"] * 3,
    })).with_group(["treatment"])


@pytest.fixture
def log_expression():
    """
    log2 expression, 3 control + 3 APAP samples.

    `Target` is exactly [3, 3, 3, 4, 4, 4]; the other genes are noise with
    sd 0.1 and no group effect.
    """
    rng = np.random.default_rng(7)
    n_noise = 200
    values = 6.0 + rng.normal(0, 0.1, size=(n_noise, 6))
    genes = [f"Gene{i}" for i in range(n_noise)]
    df = pd.DataFrame(values, index=genes, columns=[f"S{i}" for i in range(1, 7)])
    df.loc["Target"] = [3.0, 3.0, 3.0, 4.0, 4.0, 4.0]
    return df


@pytest.fixture
def count_matrix():
    """Negative-binomial-like counts, 100 genes x 6 samples."""
    rng = np.random.default_rng(11)
    means = rng.uniform(20, 2000, size=100)
    counts = rng.poisson(means[:, None] * rng.uniform(0.8, 1.2, size=6)[None, :])
    return pd.DataFrame(counts, index=[f"Gene{i}" for i in range(100)],
                        columns=[f"S{i}" for i in range(1, 7)])


@pytest.fixture
def time_course_metadata():
    """Controls at 6h and 48h; APAP at 6h and 24h (no control at 24h)."""
    from liver_injury_pipeline.utils.records import SampleMetadata

    return SampleMetadata(pd.DataFrame({
        "sample_id": ["C6a", "C6b", "C48a", "C48b", "A6a", "A6b", "A24a", "A24b"],
        "treatment": ["control"] * 4 + ["APAP"] * 4,
        "time": ["6h", "6h", "48h", "48h", "6h", "6h", "24h", "24h"],
    }))


@pytest.fixture
def rnaseq_study(tmp_path):
    """Synthetic RNA-seq time-course study directory."""
    from liver_injury_pipeline.orchestrator import create_sample_data

    study = tmp_path / "study"
    create_sample_data(study, data_type="rnaseq", time_course=True, n_genes=120)
    return study


@pytest.fixture
def microarray_study(tmp_path):
    """Synthetic probe-level microarray study directory."""
    from liver_injury_pipeline.orchestrator import create_sample_data

    study = tmp_path / "study"
    create_sample_data(study, data_type="microarray", time_course=False, n_genes=60)
    return study
