# src/metrics.py
"""
Derived indicators over a finished ProjectionResult.

Every calculator is a pure function of the result and returns a flat DataFrame
(one row per year, every cell a scalar). Zero denominators never raise and never
produce NaN/inf: they resolve to helpers.Sentinel values. Nothing is rounded
here; rounding happens in helpers.to_export_frame.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional

import numpy as np
import pandas as pd

from cohorts import CohortMatrix, age_groups as _group_ages
from helpers import Sentinel, _coerce_list, safe_ratio
from mortality import life_expectancy as _ex_at
from projections import ProjectionResult

logger = logging.getLogger(__name__)

CHILD_AGES = (0, 14)
WORKING_AGES = (15, 64)
ELDERLY_MIN_AGE = 65


def _sum(m: CohortMatrix, lo: int, hi: Optional[int], sex: str = "total") -> float:
    return m.sum_ages(lo, hi, sex)


def _frame(rows: list, columns: list) -> pd.DataFrame:
    """DataFrame from row dicts; columns holding None or a Sentinel stay object-typed."""
    df = pd.DataFrame(rows, columns=columns)
    for col in columns:
        vals = [r[col] for r in rows]
        if any(v is None or isinstance(v, Sentinel) for v in vals):
            df[col] = pd.Series(vals, index=df.index, dtype=object)
    return df


# ---------------------------------------------------------------------
# Sex ratios
# ---------------------------------------------------------------------
def sex_ratio(male: float, female: float):
    """Males per 100 females; Sentinel when there are no females."""
    return safe_ratio(male, female, 100.0)


def sex_ratios(result: ProjectionResult) -> pd.DataFrame:
    """
    Sex ratio per year over all ages, age 0, 0-14, 15-64 and 65+.

    Returns columns: year, overall, at_birth, children, working_age, elderly,
    total_male, total_female.
    """
    bands = {
        "overall": (0, None),
        "at_birth": (0, 0),
        "children": CHILD_AGES,
        "working_age": WORKING_AGES,
        "elderly": (ELDERLY_MIN_AGE, None),
    }
    rows = []
    for year, m in result.series():
        row = {"year": year}
        for name, (lo, hi) in bands.items():
            row[name] = sex_ratio(_sum(m, lo, hi, "male"), _sum(m, lo, hi, "female"))
        row["total_male"] = m.male_total
        row["total_female"] = m.female_total
        rows.append(row)
    return _frame(rows, ["year", *bands, "total_male", "total_female"])


# ---------------------------------------------------------------------
# Dependency ratios
# ---------------------------------------------------------------------
def dependency_ratios(result: ProjectionResult) -> pd.DataFrame:
    """
    youth = pop(0-14)/pop(15-64)*100, old_age = pop(65+)/pop(15-64)*100,
    total = youth + old_age.
    """
    rows = []
    for year, m in result.series():
        youth = _sum(m, *CHILD_AGES)
        working = _sum(m, *WORKING_AGES)
        elderly = _sum(m, ELDERLY_MIN_AGE, None)
        rows.append({
            "year": year,
            "youth_pop": youth,
            "working_age_pop": working,
            "elderly_pop": elderly,
            "youth_ratio": safe_ratio(youth, working, 100.0),
            "old_age_ratio": safe_ratio(elderly, working, 100.0),
            "total_ratio": safe_ratio(youth + elderly, working, 100.0),
        })
    return _frame(rows, ["year", "youth_pop", "working_age_pop", "elderly_pop",
                         "youth_ratio", "old_age_ratio", "total_ratio"])


# ---------------------------------------------------------------------
# Median age
# ---------------------------------------------------------------------
def median_age(counts) -> float | Sentinel:
    """
    Median of a single-year age distribution (index = age, last index = open bucket).

    The cumulative count is built from age 0 upward; within the first age x
    where it reaches half the total, the median is interpolated linearly over
    [x, x+1]. A crossing inside the open bucket returns its lower bound, so the
    result always lies in [0, max_age]. An empty population gives
    Sentinel.NO_POPULATION.
    """
    v = np.asarray(counts, dtype=float).reshape(-1)
    total = float(v.sum())
    if total <= 0:
        return Sentinel.NO_POPULATION
    half = total / 2.0
    cum = np.cumsum(v)
    x = int(np.searchsorted(cum, half, side="left"))
    x = min(x, v.size - 1)
    if x == v.size - 1:
        return float(x)
    before = float(cum[x - 1]) if x > 0 else 0.0
    frac = (half - before) / v[x] if v[x] > 0 else 0.0
    return float(x) + min(max(frac, 0.0), 1.0)


def median_ages(result: ProjectionResult) -> pd.DataFrame:
    """
    Median age per year for total, male and female populations.

    `change` is the difference in total median age from the previous year
    (None for the first year or when either year has no population).
    """
    rows = []
    prev = None
    for year, m in result.series():
        med = median_age(m.vector("total"))
        change = None
        if prev is not None and not isinstance(prev, Sentinel) and not isinstance(med, Sentinel):
            change = med - prev
        rows.append({
            "year": year,
            "median_age": med,
            "median_age_male": median_age(m.male),
            "median_age_female": median_age(m.female),
            "change": change,
        })
        prev = med
    return _frame(rows, ["year", "median_age", "median_age_male", "median_age_female", "change"])


# ---------------------------------------------------------------------
# Cohort tracking
# ---------------------------------------------------------------------
def cohort_tracking(result: ProjectionResult, birth_year: int) -> pd.DataFrame:
    """
    Follow the cohort born in `birth_year` across the projection.

    The cohort sits at age = year - birth_year. It is followed while that age is
    below the open bucket (which mixes several birth cohorts).

    survival_rate        : population / population in the previous tracked year
    cumulative_survival  : population / population in the first tracked year
    """
    birth_year = int(birth_year)
    rows = []
    initial = None
    prev = None
    for year, m in result.series():
        age = year - birth_year
        if age < 0 or age >= m.max_age:
            continue
        male = m.count(age, "male")
        female = m.count(age, "female")
        pop = male + female
        if initial is None:
            initial = pop
            prev = pop
        rows.append({
            "year": year,
            "age": age,
            "population": pop,
            "male": male,
            "female": female,
            "survival_rate": safe_ratio(pop, prev),
            "cumulative_survival": safe_ratio(pop, initial),
        })
        prev = pop
    if not rows:
        logger.info("Birth cohort %d is not observed in %d-%d.",
                    birth_year, result.base_year, result.end_year)
    return _frame(rows, ["year", "age", "population", "male", "female",
                         "survival_rate", "cumulative_survival"])


# ---------------------------------------------------------------------
# Life tables
# ---------------------------------------------------------------------
def life_expectancy(result: ProjectionResult) -> pd.DataFrame:
    """e0 and e65 by sex from each stepped year's (shock-adjusted) life table."""
    rows = []
    for year in sorted(result.life_tables):
        tables = result.life_tables[year]
        rows.append({
            "year": year,
            "e0_male": _ex_at(tables["male"], 0),
            "e0_female": _ex_at(tables["female"], 0),
            "e65_male": _ex_at(tables["male"], 65),
            "e65_female": _ex_at(tables["female"], 65),
        })
    return pd.DataFrame(rows, columns=["year", "e0_male", "e0_female", "e65_male", "e65_female"])


def life_tables(result: ProjectionResult) -> pd.DataFrame:
    """All per-year life tables stacked long: year, sex, age, qx, lx, dx, Lx, Tx, ex."""
    frames = []
    for year in sorted(result.life_tables):
        for sex, lt in result.life_tables[year].items():
            df = lt.reset_index()
            df.insert(0, "sex", sex)
            df.insert(0, "year", year)
            frames.append(df)
    if not frames:
        return pd.DataFrame(columns=["year", "sex", "age", "qx", "lx", "dx", "Lx", "Tx", "ex"])
    return pd.concat(frames, ignore_index=True)


# ---------------------------------------------------------------------
# Components of change
# ---------------------------------------------------------------------
def yearly_summary(result: ProjectionResult) -> pd.DataFrame:
    """Population and its components of change per year (growth in % of the prior year)."""
    rows = []
    prev_total = None
    for y in result.years:
        total = y.cohorts.total
        rows.append({
            "year": y.year,
            "population": total,
            "births": y.births,
            "deaths": y.deaths,
            "net_migration": y.net_migration,
            "natural_change": y.births - y.deaths,
            "growth_rate": None if prev_total is None
                           else safe_ratio(total - prev_total, prev_total, 100.0),
            "warnings": len(y.warnings),
        })
        prev_total = total
    return _frame(rows, ["year", "population", "births", "deaths", "net_migration",
                         "natural_change", "growth_rate", "warnings"])


# ---------------------------------------------------------------------
# Age groups
# ---------------------------------------------------------------------
def age_group_structure(result: ProjectionResult, width: int = 5) -> pd.DataFrame:
    """Five-year groups per year: year, label, male, female, total, percentage."""
    frames = []
    for year, m in result.series():
        df = _group_ages(m, width)
        df.insert(0, "year", year)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=["year", "label", "male", "female", "total", "percentage"])
    return pd.concat(frames, ignore_index=True)


# ---------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------
METRICS: Dict[str, Callable[[ProjectionResult], pd.DataFrame]] = {
    "sex_ratio": sex_ratios,
    "dependency_ratio": dependency_ratios,
    "median_age": median_ages,
    "life_expectancy": life_expectancy,
    "life_table": life_tables,
    "summary": yearly_summary,
    "age_groups": age_group_structure,
}
COHORT_METRIC = "cohort_tracking"
ALL_METRICS = list(METRICS) + [COHORT_METRIC]


def derive(
    result: ProjectionResult,
    metrics: Optional[Iterable[str]] = None,
    birth_year=None,
) -> Dict[str, pd.DataFrame]:
    """
    Compute the requested subset of derived series.

    Parameters
    ----------
    result : ProjectionResult
        Finished (or partial) projection; never modified.
    metrics : iterable of str or comma-separated str, optional
        Names from ALL_METRICS. None computes everything.
    birth_year : int or list of int, optional
        Cohort(s) for 'cohort_tracking'; None or an empty list means the base year.

    Returns
    -------
    dict name -> DataFrame
    """
    names = ALL_METRICS if metrics is None else (_coerce_list(metrics) or [])
    unknown = [n for n in names if n not in ALL_METRICS]
    if unknown:
        raise ValueError(f"Unknown metric(s) {unknown}; choose from {ALL_METRICS}.")

    out: Dict[str, pd.DataFrame] = {}
    for name in names:
        if name == COHORT_METRIC:
            years = None if birth_year is None else _coerce_list(
                birth_year if isinstance(birth_year, (list, str)) else [birth_year])
            years = years or [result.base_year]
            frames = []
            for by in years:
                df = cohort_tracking(result, int(by))
                df.insert(0, "birth_year", int(by))
                frames.append(df)
            out[name] = pd.concat(frames, ignore_index=True)
        else:
            out[name] = METRICS[name](result)
    return out
