"""
Tests for the design matrix and the contrast expression parser.
"""

import numpy as np
import pandas as pd
import pytest

pytestmark = pytest.mark.filterwarnings("ignore::DeprecationWarning")

LEVELS = ["control_24h", "APAP_24h", "Vehicle_24h", "APAP_6h"]


class TestDesignMatrix:
    """Tests for build_design_matrix."""

    def test_one_group_per_sample(self, time_course_metadata):
        """Rows sum to one; columns follow first appearance."""
        from liver_injury_pipeline.stats.design import build_design_matrix

        meta = time_course_metadata.with_group(["treatment", "time"])
        design = build_design_matrix(meta)

        assert design.levels == ["control_6h", "control_48h", "APAP_6h", "APAP_24h"]
        assert (design.matrix.sum(axis=1) == 1).all()
        assert design.samples == meta.sample_ids
        assert design.replicates()["APAP_24h"] == 2


class TestContrastParser:
    """Tests for parse_contrast / make_contrasts."""

    def test_simple_difference(self):
        """A - B gives +1 / -1."""
        from liver_injury_pipeline.stats.design import parse_contrast

        c = parse_contrast("APAP_24h", "APAP_24h - control_24h", LEVELS)
        assert c.weights == {"APAP_24h": 1.0, "control_24h": -1.0}
        assert np.array_equal(c.vector(LEVELS), [-1.0, 1.0, 0.0, 0.0])

    def test_difference_of_differences(self):
        """The shared control cancels out of an interaction contrast."""
        from liver_injury_pipeline.stats.design import parse_contrast

        c = parse_contrast("APAP_vs_vehicle",
                           "(APAP_24h - control_24h) - (Vehicle_24h - control_24h)", LEVELS)
        assert c.weights == {"APAP_24h": 1.0, "Vehicle_24h": -1.0}

    def test_scaled_average(self):
        """Numeric coefficients scale groups."""
        from liver_injury_pipeline.stats.design import parse_contrast

        c = parse_contrast("APAP_mean", "0.5*(APAP_6h + APAP_24h) - control_24h", LEVELS)
        assert c.weights == pytest.approx({"APAP_6h": 0.5, "APAP_24h": 0.5, "control_24h": -1.0})

    def test_division_by_number(self):
        """Division by a constant is allowed."""
        from liver_injury_pipeline.stats.design import parse_contrast

        c = parse_contrast("avg", "(APAP_6h + APAP_24h)/2 - control_24h", LEVELS)
        assert c.weights["APAP_6h"] == pytest.approx(0.5)

    def test_backtick_names(self):
        """Backticks quote group names that are not identifiers."""
        from liver_injury_pipeline.stats.design import parse_contrast

        c = parse_contrast("odd", "`APAP 24h` - `ctrl-24h`", ["APAP 24h", "ctrl-24h"])
        assert c.weights == {"APAP 24h": 1.0, "ctrl-24h": -1.0}

    @pytest.mark.parametrize("expression", [
        "APAP_48h - control_24h",      # unknown group
        "APAP_24h - control_24h + 1",  # constant term
        "APAP_24h * control_24h",      # product of groups
        "APAP_24h / control_24h",      # division by a group
        "(APAP_24h - control_24h",     # unbalanced
        "APAP_24h - APAP_24h",         # all coefficients cancel
        "",
    ])
    def test_malformed_contrasts(self, expression):
        """Malformed expressions raise ContrastError."""
        from liver_injury_pipeline.stats.design import parse_contrast
        from liver_injury_pipeline.utils.errors import ContrastError

        with pytest.raises(ContrastError):
            parse_contrast("bad", expression, LEVELS)

    def test_duplicate_names(self):
        """Two contrasts with one name are rejected."""
        from liver_injury_pipeline.stats.design import make_contrasts
        from liver_injury_pipeline.utils.errors import ContrastError

        definitions = [
            {"name": "APAP", "expression": "APAP_24h - control_24h"},
            {"name": "APAP", "expression": "APAP_6h - control_24h"},
        ]
        with pytest.raises(ContrastError):
            make_contrasts(definitions, LEVELS)

    def test_no_contrasts(self):
        """An empty definition is an error."""
        from liver_injury_pipeline.stats.design import make_contrasts
        from liver_injury_pipeline.utils.errors import ContrastError

        with pytest.raises(ContrastError):
            make_contrasts({}, LEVELS)

    def test_default_contrasts(self):
        """Every other group against the control."""
        from liver_injury_pipeline.stats.design import default_contrasts, make_contrasts

        definitions = default_contrasts(LEVELS, "control_24h")
        contrasts = make_contrasts(definitions, LEVELS)
        assert [c.name for c in contrasts] == [
            "APAP_24h_vs_control_24h", "Vehicle_24h_vs_control_24h", "APAP_6h_vs_control_24h",
        ]
        assert all(c.weights["control_24h"] == -1.0 for c in contrasts)

    def test_contrast_matrix_and_frame(self):
        """The levels x contrasts matrix and the saved name/expression table agree."""
        from liver_injury_pipeline.stats.design import contrast_matrix, contrasts_from_frame, make_contrasts

        contrasts = make_contrasts({"a": "APAP_24h - control_24h", "b": "APAP_6h - APAP_24h"}, LEVELS)
        matrix = contrast_matrix(contrasts, LEVELS)
        assert matrix.shape == (4, 2)
        assert matrix.loc["APAP_24h", "b"] == -1.0

        frame = pd.DataFrame({"name": ["a", "b"],
                              "expression": ["APAP_24h - control_24h", "APAP_6h - APAP_24h"]})
        rebuilt = contrasts_from_frame(frame, LEVELS)
        assert [c.weights for c in rebuilt] == [c.weights for c in contrasts]
