# src/migration.py
"""
Net migration by single year of age and sex.

Entries are kept in a long frame with columns
    age, sex, net_count, region, year
where `region` is an optional sub-national tag and `year` is optional
(missing = the entry applies to every projection year). Regional flows are
aggregated into a national net before they reach `apply_migration`, which is
itself region-agnostic.
"""
from __future__ import annotations

import warnings
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from cohorts import SEXES, CohortMatrix
from exceptions import NegativePopulationWarning, UnknownAgeError
from helpers import _age_from_label

ENTRY_COLUMNS = ["age", "sex", "net_count", "region", "year"]


class MigrationEntry(NamedTuple):
    age: int
    sex: str
    net_count: float
    region: Optional[str] = None
    year: Optional[int] = None


def _normalize_sex(value) -> str:
    s = str(value).strip().lower()
    if s in ("m", "male", "1", "hombre", "hombres"):
        return "male"
    if s in ("f", "female", "2", "mujer", "mujeres"):
        return "female"
    return s


def _year_or_none(y):
    if y is None or pd.isna(y):
        return None
    return int(y)


def migration_frame(entries) -> pd.DataFrame:
    """
    Build the long entry frame from MigrationEntry records or a DataFrame.

    A wide frame (age, male, female) is melted into long form. Sex labels are
    normalized to 'male' / 'female'; unrecognized labels are kept verbatim so
    that `apply_migration` can reject them.
    """
    if isinstance(entries, pd.DataFrame):
        df = entries.copy()
        if "age" not in df.columns:
            df = df.reset_index()
        if "sex" not in df.columns and {"male", "female"} <= set(df.columns):
            id_vars = [c for c in ("age", "region", "year") if c in df.columns]
            df = df.melt(id_vars=id_vars, value_vars=["male", "female"],
                         var_name="sex", value_name="net_count")
    else:
        rows = [e._asdict() if hasattr(e, "_asdict") else dict(e) for e in entries]
        df = pd.DataFrame(rows).reindex(columns=ENTRY_COLUMNS)

    for col in ENTRY_COLUMNS:
        if col not in df.columns:
            df[col] = None
    df = df[ENTRY_COLUMNS].copy()
    if df.empty:
        return df.astype({"age": int, "net_count": float})

    df["age"] = [_age_from_label(a) for a in df["age"]]
    df["sex"] = df["sex"].map(_normalize_sex)
    df["net_count"] = pd.to_numeric(df["net_count"], errors="coerce").fillna(0.0).astype(float)
    df["year"] = pd.Series([_year_or_none(y) for y in df["year"]], index=df.index, dtype=object)
    df["region"] = pd.Series([None if r is None or pd.isna(r) else str(r) for r in df["region"]],
                             index=df.index, dtype=object)
    return df.reset_index(drop=True)


def aggregate_regional_flows(entries) -> pd.DataFrame:
    """
    Collapse regional entries into one national net per (year, age, sex).

    Region tags are dropped; inflows to one region and outflows from another
    cancel in the national total.
    """
    df = migration_frame(entries)
    if df.empty:
        return df
    key_year = df["year"].map(lambda y: -1 if _year_or_none(y) is None else int(y))
    out = (
        df.assign(_year=key_year)
          .groupby(["_year", "age", "sex"], as_index=False, sort=True)["net_count"].sum()
    )
    out["year"] = pd.Series([None if y == -1 else int(y) for y in out["_year"]],
                            index=out.index, dtype=object)
    out["region"] = None
    return out[ENTRY_COLUMNS].reset_index(drop=True)


def regional_balance(entries) -> pd.DataFrame:
    """Inflow, outflow and net count per region; untagged entries count as 'national'."""
    df = migration_frame(entries)
    df["region"] = df["region"].fillna("national")
    df["inflow"] = df["net_count"].clip(lower=0.0)
    df["outflow"] = (-df["net_count"]).clip(lower=0.0)
    return (
        df.groupby("region", as_index=False)[["inflow", "outflow", "net_count"]].sum()
          .sort_values("region", kind="mergesort")
          .reset_index(drop=True)
    )


def entries_for_year(entries, year: int) -> pd.DataFrame:
    """Entries that apply to `year` (undated + dated for that year), aggregated nationally."""
    df = migration_frame(entries)
    if df.empty:
        return df
    mask = [y is None or y == int(year) for y in map(_year_or_none, df["year"])]
    selected = df.loc[mask].copy()
    selected["year"] = int(year)
    return aggregate_regional_flows(selected)


def counts_from_rates(cohorts: CohortMatrix, rates: pd.DataFrame) -> pd.DataFrame:
    """
    Convert net migration *rates* (per person, by age and sex) to counts.

    `rates` is either long (age, sex, rate) or wide (age, male, female).
    Returns a long entry frame.
    """
    df = rates.copy()
    if "age" not in df.columns:
        df = df.reset_index()
    if "sex" not in df.columns:
        df = df.melt(id_vars=["age"], value_vars=["male", "female"],
                     var_name="sex", value_name="rate")
    entries = []
    for _, r in df.iterrows():
        age = _age_from_label(r["age"])
        sex = _normalize_sex(r["sex"])
        if not cohorts.has_age(age) or sex not in SEXES:
            raise UnknownAgeError(f"Migration rate for unknown cohort (age={age}, sex={sex}).")
        entries.append(MigrationEntry(age, sex, float(r["rate"]) * cohorts.count(age, sex)))
    return migration_frame(entries)


def apply_migration(
    cohorts: CohortMatrix,
    entries,
    *,
    warnings_sink: list | None = None,
) -> CohortMatrix:
    """
    Add each entry's net_count to its age/sex cell and return a new matrix.

    Parameters
    ----------
    cohorts : CohortMatrix
        Population before migration (not modified).
    entries : MigrationEntry records or entry frame
        National net counts; regional entries are summed first.
    warnings_sink : list, optional
        Receives a NegativePopulationWarning for every clamped cell. Without a
        sink the warnings go through `warnings.warn`.

    Raises
    ------
    UnknownAgeError
        An entry targets an age outside 0..max_age or an unknown sex.
    """
    df = migration_frame(entries)
    male = cohorts.male.copy()
    female = cohorts.female.copy()
    if df.empty:
        return cohorts.replace(male=male, female=female)

    for age, sex, net in zip(df["age"], df["sex"], df["net_count"]):
        if not cohorts.has_age(age):
            raise UnknownAgeError(
                f"Migration entry for age {age} outside 0..{cohorts.max_age}."
            )
        if sex == "male":
            male[int(age)] += net
        elif sex == "female":
            female[int(age)] += net
        else:
            raise UnknownAgeError(f"Migration entry for unknown sex {sex!r} (age {age}).")

    for sex, vec in (("male", male), ("female", female)):
        for age in np.flatnonzero(vec < 0):
            w = NegativePopulationWarning(int(age), sex, float(-vec[age]), year=cohorts.year)
            if warnings_sink is not None:
                warnings_sink.append(w)
            else:
                warnings.warn(w, stacklevel=2)
            vec[age] = 0.0

    return cohorts.replace(male=male, female=female)
