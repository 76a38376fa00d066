# tests/test_metrics.py
import pytest
import numpy as np
import pandas as pd
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cohorts import CohortMatrix
from helpers import Sentinel, is_sentinel
from metrics import (
    ALL_METRICS,
    sex_ratio,
    sex_ratios,
    dependency_ratios,
    median_age,
    median_ages,
    cohort_tracking,
    life_expectancy,
    life_tables,
    yearly_summary,
    derive,
)
from mortality import build_life_table
from projections import ProjectionResult, ProjectionYear, RunState, project
from rates import FertilityRate, MortalityRate, RateTables


def _result(*matrices, base_year=2024):
    years = tuple(
        ProjectionYear(base_year + i, m.replace(year=base_year + i))
        for i, m in enumerate(matrices)
    )
    return ProjectionResult(base_year=base_year, horizon=len(matrices) - 1,
                            years=years, state=RunState.COMPLETED)


def _m(male, female):
    return CohortMatrix(male, female, max_age=len(male) - 1)


# ============================================================================
# Sex ratios
# ============================================================================
class TestSexRatios:

    def test_zero_population_is_sentinel(self):
        """male = 0, female = 0 -> no-population sentinel, not 0/0."""
        assert sex_ratio(0, 0) is Sentinel.NO_POPULATION

    def test_no_females_is_infinite(self):
        assert sex_ratio(10, 0) is Sentinel.INFINITE

    def test_bands(self):
        male = np.zeros(71)
        female = np.zeros(71)
        male[0], female[0] = 105, 100
        male[10], female[10] = 50, 50
        male[30], female[30] = 90, 100
        male[70], female[70] = 40, 80
        df = sex_ratios(_result(_m(male, female)))
        row = df.iloc[0]
        assert row["year"] == 2024
        assert row["at_birth"] == pytest.approx(105.0)
        assert row["children"] == pytest.approx(155 / 150 * 100)
        assert row["working_age"] == pytest.approx(90.0)
        assert row["elderly"] == pytest.approx(50.0)
        assert row["overall"] == pytest.approx(285 / 330 * 100)
        assert row["total_male"] == 285

    def test_empty_year_never_raises(self):
        df = sex_ratios(_result(CohortMatrix.zeros(max_age=70)))
        for col in ("overall", "at_birth", "children", "working_age", "elderly"):
            assert df[col].iloc[0] is Sentinel.NO_POPULATION


# ============================================================================
# Dependency ratios
# ============================================================================
class TestDependencyRatios:

    def test_ratios(self):
        male = np.zeros(71)
        male[5] = 30
        male[40] = 100
        male[70] = 20
        df = dependency_ratios(_result(_m(male, np.zeros(71))))
        row = df.iloc[0]
        assert row["youth_ratio"] == pytest.approx(30.0)
        assert row["old_age_ratio"] == pytest.approx(20.0)
        assert row["total_ratio"] == pytest.approx(50.0)
        assert row["working_age_pop"] == 100

    def test_no_working_age(self):
        male = np.zeros(71)
        male[5] = 30
        row = dependency_ratios(_result(_m(male, np.zeros(71)))).iloc[0]
        assert row["youth_ratio"] is Sentinel.INFINITE
        assert row["old_age_ratio"] is Sentinel.NO_POPULATION
        assert row["total_ratio"] is Sentinel.INFINITE


# ============================================================================
# Median age
# ============================================================================
class TestMedianAge:

    def test_uniform(self):
        assert median_age([1, 1, 1, 1]) == pytest.approx(2.0)

    def test_interpolates_inside_interval(self):
        assert median_age([0, 10, 0, 0]) == pytest.approx(1.5)
        assert median_age([3, 1, 0, 0]) == pytest.approx(2 / 3)

    def test_open_bucket(self):
        assert median_age([0, 0, 0, 5]) == 3.0

    def test_empty(self):
        assert median_age([0, 0, 0]) is Sentinel.NO_POPULATION

    def test_bounds_and_bracketing(self):
        rng = np.random.default_rng(0)
        for _ in range(50):
            v = rng.integers(0, 100, size=111).astype(float)
            v[rng.random(111) < 0.5] = 0.0
            if v.sum() == 0:
                continue
            med = median_age(v)
            assert 0.0 <= med <= 110.0
            x = int(np.floor(med)) if med < 110 else 110
            cum = np.cumsum(v)
            half = v.sum() / 2
            before = cum[x - 1] if x > 0 else 0.0
            # the crossing happens inside age x (or exactly at its upper edge)
            assert before <= half <= cum[x] or np.isclose(med, x)

    def test_median_ages_frame(self):
        res = _result(_m([0, 10, 0, 0], [0, 0, 10, 0]), _m([0, 0, 10, 0], [0, 0, 0, 10]))
        df = median_ages(res)
        assert df["median_age"].iloc[0] == pytest.approx(2.0)
        assert df["median_age_male"].iloc[0] == pytest.approx(1.5)
        assert df["median_age_female"].iloc[0] == pytest.approx(2.5)
        assert df["change"].iloc[0] is None
        assert df["change"].iloc[1] == pytest.approx(df["median_age"].iloc[1] - 2.0)

    def test_empty_year_change(self):
        res = _result(CohortMatrix.zeros(max_age=3), _m([1, 1, 1, 1], [1, 1, 1, 1]))
        df = median_ages(res)
        assert df["median_age"].iloc[0] is Sentinel.NO_POPULATION
        assert df["change"].iloc[1] is None


# ============================================================================
# Cohort tracking
# ============================================================================
class TestCohortTracking:

    def test_follows_diagonal(self):
        res = _result(
            _m([0, 60, 0, 0], [0, 40, 0, 0]),
            _m([0, 0, 50, 0], [0, 0, 30, 0]),
            _m([0, 0, 0, 70], [0, 0, 0, 5]),
        )
        df = cohort_tracking(res, 2023)
        assert df["year"].tolist() == [2024, 2025]
        assert df["age"].tolist() == [1, 2]
        assert df["population"].tolist() == [100, 80]
        assert df["survival_rate"].tolist() == pytest.approx([1.0, 0.8])
        assert df["cumulative_survival"].iloc[1] == pytest.approx(0.8)

    def test_vanished_cohort(self):
        res = _result(
            _m([0, 10, 0, 0, 0], [0, 0, 0, 0, 0]),
            _m([0, 0, 0, 0, 0], [0, 0, 0, 0, 0]),
            _m([0, 0, 0, 0, 0], [0, 0, 0, 0, 0]),
        )
        df = cohort_tracking(res, 2023)
        assert df["survival_rate"].iloc[1] == 0.0
        assert df["survival_rate"].iloc[2] is Sentinel.NO_POPULATION
        assert df["cumulative_survival"].iloc[2] == 0.0

    def test_cohort_born_during_projection(self):
        res = _result(_m([0, 0], [0, 0]), _m([5, 0], [5, 0]), _m([0, 4], [0, 4]))
        df = cohort_tracking(res, 2025)
        assert df["year"].tolist() == [2025]

    def test_unobserved_cohort(self):
        df = cohort_tracking(_result(_m([1, 1], [1, 1])), 1900)
        assert df.empty
        assert "survival_rate" in df.columns


# ============================================================================
# Life-table summaries and components of change
# ============================================================================
class TestProjectionBasedMetrics:

    @pytest.fixture
    def result(self):
        rates = RateTables(
            mortality=[MortalityRate(a, 0.02) for a in range(70)] + [MortalityRate(70, 1.0)],
            fertility=[FertilityRate(a, 0.08) for a in range(20, 35)],
        )
        initial = CohortMatrix(np.full(71, 100.0), np.full(71, 100.0), max_age=70)
        return project(initial, rates, base_year=2024, horizon=3)

    def test_life_expectancy(self, result):
        df = life_expectancy(result)
        assert df["year"].tolist() == [2025, 2026, 2027]
        expected = build_life_table(np.arange(71), [0.02] * 70 + [1.0])
        assert df["e0_male"].iloc[0] == pytest.approx(expected.loc[0, "ex"])
        assert df["e65_female"].iloc[0] == pytest.approx(expected.loc[65, "ex"])

    def test_life_tables_long(self, result):
        df = life_tables(result)
        assert len(df) == 3 * 2 * 71
        assert list(df.columns[:3]) == ["year", "sex", "age"]

    def test_yearly_summary(self, result):
        df = yearly_summary(result)
        assert df["growth_rate"].iloc[0] is None
        row = df.iloc[1]
        assert row["natural_change"] == pytest.approx(row["births"] - row["deaths"])
        assert row["population"] == pytest.approx(
            df["population"].iloc[0] + row["births"] - row["deaths"] + row["net_migration"])

    def test_derive_subset(self, result):
        frames = derive(result, ["sex_ratio", "median_age"])
        assert set(frames) == {"sex_ratio", "median_age"}
        assert all(len(df) == 4 for df in frames.values())

    def test_derive_all_and_cohort_default(self, result):
        frames = derive(result)
        assert set(frames) == set(ALL_METRICS)
        assert set(frames["cohort_tracking"]["birth_year"]) == {2024}

    def test_derive_birth_years(self, result):
        frames = derive(result, "cohort_tracking", birth_year=[2000, 2020])
        assert sorted(set(frames["cohort_tracking"]["birth_year"])) == [2000, 2020]

    def test_derive_empty_birth_years_uses_base_year(self, result):
        frames = derive(result, ["cohort_tracking"], birth_year=[])
        assert set(frames["cohort_tracking"]["birth_year"]) == {2024}

    def test_age_groups(self, result):
        df = derive(result, ["age_groups"])["age_groups"]
        assert list(df.columns) == ["year", "label", "male", "female", "total", "percentage"]
        assert df["year"].nunique() == 4
        first = df[df["year"] == 2024]
        assert first["label"].tolist()[:2] == ["0-4", "5-9"]
        assert first["label"].iloc[-1] == "70+"
        assert first["total"].sum() == pytest.approx(71 * 200.0)
        assert first["male"].iloc[0] == pytest.approx(500.0)
        assert first["percentage"].sum() == pytest.approx(100.0)

    def test_derive_unknown(self, result):
        with pytest.raises(ValueError):
            derive(result, ["gini"])

    def test_metrics_do_not_mutate_result(self, result):
        before = result.to_frame()
        derive(result)
        pd.testing.assert_frame_equal(before, result.to_frame())
        assert not any(is_sentinel(v) for v in before["total"])
