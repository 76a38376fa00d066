# tests/test_fertility.py
import pytest
import numpy as np
import pandas as pd
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cohorts import CohortMatrix
from exceptions import InvalidRateError, MissingCohortError
from fertility import (
    SEX_RATIO_AT_BIRTH,
    split_births,
    expected_births,
    total_fertility_rate,
    validate_asfr,
)
from rates import FertilityRate


def _women(ages_counts, max_age=50):
    female = np.zeros(max_age + 1)
    for a, c in ages_counts.items():
        female[a] = c
    return CohortMatrix(np.zeros(max_age + 1), female, max_age=max_age)


# ============================================================================
# Test split_births
# ============================================================================
class TestSplitBirths:

    def test_default_ratio(self):
        m, f = split_births(2050.0)
        assert SEX_RATIO_AT_BIRTH == 105.0
        assert m == pytest.approx(1050.0)
        assert f == pytest.approx(1000.0)

    def test_parity(self):
        m, f = split_births(100.0, 100.0)
        assert m == f == 50.0

    @pytest.mark.parametrize("srb", [0, -5, np.inf, np.nan])
    def test_invalid_ratio(self, srb):
        with pytest.raises(InvalidRateError):
            split_births(10.0, srb)


# ============================================================================
# Test expected_births
# ============================================================================
class TestExpectedBirths:

    def test_sums_female_count_times_rate(self):
        cohorts = _women({20: 1000, 30: 500})
        rates = [FertilityRate(20, 0.1), FertilityRate(30, 0.2)]
        m, f = expected_births(cohorts, rates, sex_ratio_at_birth=100.0)
        assert m + f == pytest.approx(200.0)
        assert m == pytest.approx(100.0)

    def test_ignores_males(self):
        cohorts = CohortMatrix(np.full(51, 1000.0), np.zeros(51), max_age=50)
        m, f = expected_births(cohorts, [FertilityRate(25, 0.3)])
        assert m == 0.0 and f == 0.0

    def test_zero_fertility(self):
        m, f = expected_births(_women({25: 1000}), [FertilityRate(a, 0.0) for a in range(15, 50)])
        assert (m, f) == (0.0, 0.0)

    def test_empty_table(self):
        assert expected_births(_women({25: 1000}), []) == (0.0, 0.0)

    def test_accepts_series(self):
        rates = pd.Series([0.1], index=[20])
        m, f = expected_births(_women({20: 1050}), rates, sex_ratio_at_birth=105.0)
        assert m + f == pytest.approx(105.0)

    def test_missing_cohort(self):
        with pytest.raises(MissingCohortError, match="age 60"):
            expected_births(_women({20: 100}), [FertilityRate(60, 0.01)])

    def test_negative_rate(self):
        with pytest.raises(InvalidRateError):
            expected_births(_women({20: 100}), [FertilityRate(20, -0.01)])


class TestTotalFertilityRate:

    def test_sum_of_asfr(self):
        rates = [FertilityRate(a, 0.05) for a in range(15, 50)]
        assert total_fertility_rate(rates) == pytest.approx(1.75)


# ============================================================================
# Test validate_asfr
# ============================================================================
class TestValidateASFR:
    """Biological plausibility checks on single-year ASFR."""

    def test_plausible_schedule(self):
        asfr = pd.Series({a: (0.06 if 20 <= a <= 34 else 0.01) for a in range(15, 50)})
        assert validate_asfr(asfr) == []

    def test_outside_reproductive_ages(self):
        asfr = pd.Series({8: 0.01, 25: 0.1})
        warnings = validate_asfr(asfr)
        assert any("Age 8" in w for w in warnings)

    def test_max_rate(self):
        asfr = pd.Series({25: 0.5})
        assert any("exceeds biological maximum" in w for w in validate_asfr(asfr))

    def test_tfr_too_high(self):
        asfr = pd.Series(0.3, index=range(15, 50))
        assert any("TFR" in w for w in validate_asfr(asfr))

    def test_peak_age(self):
        asfr = pd.Series({45: 0.1, 25: 0.05})
        assert any("Peak fertility at age 45" in w for w in validate_asfr(asfr))

    def test_raise_mode(self):
        with pytest.raises(InvalidRateError, match="ASFR validation failed"):
            validate_asfr(pd.Series({25: 0.5}), warnings_only=False)

    def test_empty(self):
        assert validate_asfr(pd.Series(dtype=float)) == []
