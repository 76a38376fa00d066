# tests/test_rates.py
import pytest
import numpy as np
import pandas as pd
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from exceptions import InvalidRateError
from migration import MigrationEntry
from rates import (
    MortalityRate,
    FertilityRate,
    RateTables,
    mortality_table,
    fertility_table,
    check_ages_contiguous,
    check_probabilities,
    validate_mortality_table,
    validate_fertility_table,
)


class TestMortalityTable:

    def test_records_apply_to_both_sexes(self):
        t = mortality_table([MortalityRate(0, 0.01), MortalityRate(1, 0.02)])
        assert t.index.name == "age"
        assert t.loc[1, "male"] == 0.02
        assert t.loc[1, "female"] == 0.02

    def test_sex_specific_frame(self):
        df = pd.DataFrame({"age": ["0", "1+"], "male": [0.1, 1.0], "female": [0.05, 1.0]})
        t = mortality_table(df)
        assert t.index.tolist() == [0, 1]
        assert t.loc[0, "female"] == 0.05

    def test_series_input(self):
        t = mortality_table(pd.Series([0.1, 0.2], index=[0, 1]))
        assert t["male"].tolist() == [0.1, 0.2]

    def test_empty_rejected(self):
        with pytest.raises(InvalidRateError):
            mortality_table([])

    def test_missing_columns(self):
        with pytest.raises(InvalidRateError):
            mortality_table(pd.DataFrame({"age": [0], "mx": [0.1]}))


class TestFertilityTable:

    def test_records(self):
        t = fertility_table([FertilityRate(20, 0.1), FertilityRate(21, 0.12)])
        assert t.loc[21, "rate"] == 0.12

    def test_asfr_column_alias(self):
        t = fertility_table(pd.DataFrame({"age": [25], "asfr": [0.09]}))
        assert t["rate"].tolist() == [0.09]

    def test_empty_allowed(self):
        t = fertility_table([])
        assert t.empty
        assert list(t.columns) == ["rate"]


class TestChecks:

    def test_contiguous_ok(self):
        check_ages_contiguous([0, 1, 2, 3])

    def test_gap(self):
        with pytest.raises(InvalidRateError, match="not contiguous"):
            check_ages_contiguous([0, 1, 3])

    def test_unsorted(self):
        with pytest.raises(InvalidRateError, match="sorted"):
            check_ages_contiguous([0, 2, 1])

    def test_wrong_start(self):
        with pytest.raises(InvalidRateError, match="start at age 0"):
            check_ages_contiguous([1, 2])

    def test_probabilities(self):
        check_probabilities([0.0, 0.5, 1.0])
        for bad in ([1.1], [-0.01], [np.nan]):
            with pytest.raises(InvalidRateError):
                check_probabilities(bad)

    def test_mortality_must_reach_open_bucket(self):
        t = mortality_table([MortalityRate(a, 0.01) for a in range(5)])
        validate_mortality_table(t, 4)
        with pytest.raises(InvalidRateError, match="end at age 10"):
            validate_mortality_table(t, 10)

    def test_negative_fertility(self):
        with pytest.raises(InvalidRateError):
            validate_fertility_table(fertility_table([FertilityRate(20, -0.1)]))


class TestRateTables:

    def test_normalizes_inputs(self):
        rt = RateTables(
            mortality=[MortalityRate(0, 0.01), MortalityRate(1, 1.0)],
            fertility=[],
            migration=[MigrationEntry(1, "F", 10.0)],
        )
        assert list(rt.mortality.columns) == ["male", "female"]
        assert rt.fertility.empty
        assert rt.migration["sex"].tolist() == ["female"]

    def test_frozen_and_replace(self):
        rt = RateTables(mortality=[MortalityRate(0, 0.5)], fertility=[])
        with pytest.raises(Exception):
            rt.fertility = None
        rt2 = rt.replace(fertility=[FertilityRate(0, 0.1)])
        assert rt.fertility.empty
        assert rt2.fertility.loc[0, "rate"] == 0.1
        assert rt2.migration.empty

    def test_compared_by_identity(self):
        rt = RateTables(mortality=[MortalityRate(0, 0.5)], fertility=[])
        same = RateTables(mortality=[MortalityRate(0, 0.5)], fertility=[])
        assert rt == rt
        assert rt != same
        assert len({rt, same}) == 2
