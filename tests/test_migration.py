# tests/test_migration.py
import warnings

import pytest
import numpy as np
import pandas as pd
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cohorts import CohortMatrix
from exceptions import NegativePopulationWarning, UnknownAgeError
from migration import (
    MigrationEntry,
    migration_frame,
    aggregate_regional_flows,
    regional_balance,
    entries_for_year,
    counts_from_rates,
    apply_migration,
)


@pytest.fixture
def cohorts():
    return CohortMatrix([100, 100, 100, 100], [50, 50, 50, 50], year=2030, max_age=3)


# ============================================================================
# Entry frames
# ============================================================================
class TestMigrationFrame:

    def test_from_entries(self):
        df = migration_frame([MigrationEntry(1, "M", 5.0), MigrationEntry("3+", "female", -2.0)])
        assert list(df.columns) == ["age", "sex", "net_count", "region", "year"]
        assert df["sex"].tolist() == ["male", "female"]
        assert df["age"].tolist() == [1, 3]
        assert df["year"].tolist() == [None, None]

    def test_wide_frame_melted(self):
        wide = pd.DataFrame({"age": [0, 1], "male": [1.0, 2.0], "female": [3.0, 4.0]})
        df = migration_frame(wide)
        assert len(df) == 4
        assert df.loc[(df["age"] == 1) & (df["sex"] == "female"), "net_count"].item() == 4.0

    def test_unknown_sex_kept(self):
        df = migration_frame([MigrationEntry(1, "other", 1.0)])
        assert df["sex"].tolist() == ["other"]

    def test_empty(self):
        assert migration_frame([]).empty

    def test_mapping_records(self):
        df = migration_frame([
            {"age": 1, "sex": "male", "net_count": 5.0, "region": None, "year": None},
            {"age": 2, "sex": "F", "net_count": -1.5, "year": 2030},
        ])
        assert df["age"].tolist() == [1, 2]
        assert df["sex"].tolist() == ["male", "female"]
        assert df["net_count"].tolist() == [5.0, -1.5]
        assert df["year"].tolist() == [None, 2030]
        assert df["region"].tolist() == [None, None]


class TestRegionalFlows:

    def test_aggregate_cancels_between_regions(self):
        entries = [
            MigrationEntry(20, "male", 300.0, region="north"),
            MigrationEntry(20, "male", -100.0, region="south"),
            MigrationEntry(20, "female", 50.0, region="north"),
        ]
        out = aggregate_regional_flows(entries)
        male = out[(out["age"] == 20) & (out["sex"] == "male")]
        assert male["net_count"].item() == 200.0
        assert out["region"].isna().all()
        assert len(out) == 2

    def test_regional_balance(self):
        entries = [
            MigrationEntry(20, "male", 300.0, region="north"),
            MigrationEntry(21, "male", -100.0, region="north"),
            MigrationEntry(20, "female", -40.0),
        ]
        bal = regional_balance(entries).set_index("region")
        assert bal.loc["north", "inflow"] == 300.0
        assert bal.loc["north", "outflow"] == 100.0
        assert bal.loc["north", "net_count"] == 200.0
        assert bal.loc["national", "outflow"] == 40.0

    def test_entries_for_year(self):
        entries = [
            MigrationEntry(1, "male", 10.0),
            MigrationEntry(1, "male", 5.0, year=2031),
            MigrationEntry(1, "male", 7.0, year=2032),
        ]
        out = entries_for_year(entries, 2031)
        assert out["net_count"].sum() == 15.0
        assert out["year"].tolist() == [2031]
        assert out["net_count"].tolist() == [15.0]

    def test_entries_for_year_without_matches(self):
        out = entries_for_year([MigrationEntry(1, "male", 7.0, year=2032)], 2031)
        assert out.empty


# ============================================================================
# Applying migration
# ============================================================================
class TestApplyMigration:

    def test_adds_to_cells(self, cohorts):
        out = apply_migration(cohorts, [MigrationEntry(1, "male", 25.0),
                                        MigrationEntry(2, "female", -10.0)])
        assert out.count(1, "male") == 125.0
        assert out.count(2, "female") == 40.0
        assert out.total == cohorts.total + 15.0
        # input untouched
        assert cohorts.count(1, "male") == 100.0

    def test_no_entries_returns_equal_copy(self, cohorts):
        out = apply_migration(cohorts, [])
        assert out == cohorts
        assert out is not cohorts

    def test_clamps_and_reports_to_sink(self, cohorts):
        sink = []
        out = apply_migration(cohorts, [MigrationEntry(0, "female", -80.0)], warnings_sink=sink)
        assert out.count(0, "female") == 0.0
        assert len(sink) == 1
        w = sink[0]
        assert isinstance(w, NegativePopulationWarning)
        assert (w.age, w.sex, w.year) == (0, "female", 2030)
        assert w.deficit == pytest.approx(30.0)

    def test_clamp_without_sink_warns(self, cohorts):
        with pytest.warns(NegativePopulationWarning):
            out = apply_migration(cohorts, [MigrationEntry(3, "male", -500.0)])
        assert out.count(3, "male") == 0.0
        assert (out.male >= 0).all()

    def test_no_warning_when_population_suffices(self, cohorts):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            apply_migration(cohorts, [MigrationEntry(3, "male", -100.0)])

    def test_unknown_age(self, cohorts):
        with pytest.raises(UnknownAgeError, match="age 7"):
            apply_migration(cohorts, [MigrationEntry(7, "male", 1.0)])

    def test_unknown_sex(self, cohorts):
        with pytest.raises(UnknownAgeError):
            apply_migration(cohorts, [MigrationEntry(1, "other", 1.0)])

    def test_regional_entries_aggregated(self, cohorts):
        entries = [MigrationEntry(1, "male", -150.0, region="a"),
                   MigrationEntry(1, "male", 100.0, region="b")]
        sink = []
        out = apply_migration(cohorts, entries, warnings_sink=sink)
        assert out.count(1, "male") == 50.0
        assert sink == []


class TestCountsFromRates:

    def test_rates_times_population(self, cohorts):
        rates = pd.DataFrame({"age": [0, 1], "male": [0.1, -0.2], "female": [0.0, 0.5]})
        entries = counts_from_rates(cohorts, rates)
        out = apply_migration(cohorts, entries)
        assert out.count(0, "male") == pytest.approx(110.0)
        assert out.count(1, "male") == pytest.approx(80.0)
        assert out.count(1, "female") == pytest.approx(75.0)

    def test_unknown_age(self, cohorts):
        with pytest.raises(UnknownAgeError):
            counts_from_rates(cohorts, pd.DataFrame({"age": [9], "sex": ["male"], "rate": [0.1]}))
