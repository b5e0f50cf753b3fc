"""
Tests for the grouped observation table.
"""

import numpy as np
import pandas as pd
import pytest

from sdfit.data import DataTable, Observation, SubjectData


class TestDataTableConstruction:
    """Test building tables from records and frames."""

    def test_groups_preserve_order(self):
        table = DataTable.from_records([
            (7, 20, 40.0), (3, 1, 80.0), (7, 1, 85.0), (3, 5, 70.0),
        ])
        assert table.subject_ids == (7, 3)
        np.testing.assert_array_equal(table[7].predictors, [20.0, 1.0])
        np.testing.assert_array_equal(table[3].responses, [80.0, 70.0])

    def test_observation_records(self):
        table = DataTable.from_records([Observation(1, 1.0, 80.0), Observation(1, 5.0, 70.0)])
        assert len(table) == 1
        assert table.n_observations == 2

    def test_missing_responses_keep_subject(self):
        table = DataTable.from_records([(1, 1, None), (1, 5, float("nan")), (2, 1, 50.0)])
        assert 1 in table
        assert table[1].n_observed == 0
        assert len(table[1]) == 2
        assert table.n_observations == 1

    def test_from_frame(self):
        df = pd.DataFrame({
            "id": [1, 1, 2],
            "sd": [1.0, 5.0, 1.0],
            "ip": [80.0, np.nan, 60.0],
        })
        table = DataTable.from_frame(df, subject_col="id", predictor_col="sd", response_col="ip")
        assert table.subject_ids == (1, 2)
        x, y = table[1].observed()
        np.testing.assert_array_equal(x, [1.0])
        np.testing.assert_array_equal(y, [80.0])

    def test_from_frame_missing_column(self):
        with pytest.raises(ValueError, match="missing columns"):
            DataTable.from_frame(pd.DataFrame({"subject_id": [1]}))

    def test_round_trip_frame(self, two_subject_table):
        df = two_subject_table.to_frame()
        assert list(df.columns) == ["subject_id", "predictor", "response"]
        assert len(df) == 10
        assert DataTable.from_frame(df)[2] == two_subject_table[2]


class TestDataTableValidation:
    """Test rejection of invalid observations."""

    def test_duplicate_predictor(self):
        with pytest.raises(ValueError, match="duplicate"):
            DataTable.from_records([(1, 5, 80.0), (1, 5, 70.0)])

    @pytest.mark.parametrize("predictor", [0.0, -1.0, float("inf"), float("nan")])
    def test_invalid_predictor(self, predictor):
        with pytest.raises(ValueError):
            DataTable.from_records([(1, predictor, 80.0)])

    def test_infinite_response(self):
        with pytest.raises(ValueError, match="responses"):
            DataTable.from_records([(1, 1, float("inf"))])

    def test_duplicate_subject(self):
        subj = SubjectData(1, [1.0], [2.0])
        with pytest.raises(ValueError, match="Duplicate subject"):
            DataTable([subj, subj])


class TestDataTableImmutability:
    """Test that tables and subjects cannot be modified."""

    def test_arrays_read_only(self, two_subject_table):
        with pytest.raises(ValueError):
            two_subject_table[1].responses[0] = 0.0

    def test_attributes_frozen(self, two_subject_table):
        with pytest.raises(AttributeError):
            two_subject_table[1].subject_id = 9

    def test_subset_is_monotone(self, two_subject_table):
        sub = two_subject_table.subset([2])
        assert sub.subject_ids == (2,)
        assert two_subject_table.subject_ids == (1, 2)

    def test_subset_unknown(self, two_subject_table):
        with pytest.raises(KeyError):
            two_subject_table.subset([3])

    def test_unknown_subject(self, two_subject_table):
        with pytest.raises(KeyError):
            two_subject_table[99]

    def test_predictor_levels(self, two_subject_table):
        assert two_subject_table.predictor_levels() == [1.0, 5.0, 20.0, 50.0, 100.0]
