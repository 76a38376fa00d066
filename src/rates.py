# src/rates.py
"""
Rate-table containers and their validation.

Tables are plain DataFrames indexed by single-year age:
  mortality : columns ['male', 'female'] holding qx (probability of dying x -> x+1)
  fertility : column  ['rate']           births per woman per year
Migration entries live in `migration.py`; they are carried here untouched.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

import numpy as np
import pandas as pd

from exceptions import InvalidRateError
from helpers import _age_from_label
from migration import migration_frame


class MortalityRate(NamedTuple):
    age: int
    qx: float


class FertilityRate(NamedTuple):
    age: int
    rate: float


def _records_to_frame(records, value_cols, allow_empty: bool = False) -> pd.DataFrame:
    if isinstance(records, pd.DataFrame):
        df = records.copy()
        if "age" not in df.columns:
            df = df.reset_index()
            if "age" not in df.columns:
                df = df.rename(columns={df.columns[0]: "age"})
    elif isinstance(records, pd.Series):
        df = pd.DataFrame({"age": records.index, value_cols[0]: records.to_numpy()})
    else:
        rows = [r._asdict() if hasattr(r, "_asdict") else dict(r) for r in records]
        df = pd.DataFrame(rows)
    if df.empty:
        if allow_empty:
            return pd.DataFrame({"age": pd.Series(dtype=int),
                                 **{c: pd.Series(dtype=float) for c in value_cols}})
        raise InvalidRateError("Rate table is empty.")
    if "age" not in df.columns:
        raise InvalidRateError("Rate table needs an 'age' column.")
    df["age"] = [_age_from_label(a) for a in df["age"]]
    return df


def mortality_table(records) -> pd.DataFrame:
    """
    Normalize mortality input to a DataFrame indexed by age with 'male' and
    'female' qx columns.

    Accepts MortalityRate records / a frame with a single 'qx' column (applied to
    both sexes) or a frame with 'male' and 'female' columns.
    """
    df = _records_to_frame(records, ["qx"])
    if {"male", "female"} <= set(df.columns):
        out = df[["age", "male", "female"]]
    elif "qx" in df.columns:
        out = pd.DataFrame({"age": df["age"], "male": df["qx"], "female": df["qx"]})
    else:
        raise InvalidRateError("Mortality table needs 'qx' or 'male'/'female' columns.")
    out = out.astype({"male": float, "female": float}).set_index("age")
    return out


def fertility_table(records) -> pd.DataFrame:
    """Normalize fertility input to a DataFrame indexed by age with a 'rate' column."""
    df = _records_to_frame(records, ["rate"], allow_empty=True)
    if "rate" not in df.columns:
        if "asfr" in df.columns:
            df = df.rename(columns={"asfr": "rate"})
        else:
            raise InvalidRateError("Fertility table needs a 'rate' column.")
    return df[["age", "rate"]].astype({"rate": float}).set_index("age")


def check_ages_contiguous(ages, *, start: int | None = 0, what: str = "rate table") -> None:
    """Raise InvalidRateError unless ages are sorted, unique and step by one."""
    ages = np.asarray(ages, dtype=float)
    if ages.size == 0:
        raise InvalidRateError(f"{what} is empty.")
    if start is not None and ages[0] != start:
        raise InvalidRateError(f"{what} must start at age {start}, got {ages[0]:g}.")
    diffs = np.diff(ages)
    if np.any(diffs <= 0):
        raise InvalidRateError(f"{what} ages must be sorted and unique.")
    if np.any(diffs != 1):
        gap = int(np.flatnonzero(diffs != 1)[0])
        raise InvalidRateError(
            f"{what} ages are not contiguous: {ages[gap]:g} followed by {ages[gap + 1]:g}."
        )


def check_probabilities(values, *, what: str = "qx") -> None:
    v = np.asarray(values, dtype=float)
    bad = ~np.isfinite(v) | (v < 0.0) | (v > 1.0)
    if bad.any():
        i = int(np.flatnonzero(bad)[0])
        raise InvalidRateError(f"{what} must lie in [0, 1]; found {v[i]!r} at position {i}.")


def validate_mortality_table(table: pd.DataFrame, max_age: int) -> None:
    """Mortality must cover ages 0..max_age exactly, with every qx in [0, 1]."""
    check_ages_contiguous(table.index.to_numpy(), start=0, what="Mortality table")
    if int(table.index[-1]) != int(max_age):
        raise InvalidRateError(
            f"Mortality table must end at age {max_age} (open bucket), "
            f"got {int(table.index[-1])}."
        )
    for sex in ("male", "female"):
        check_probabilities(table[sex].to_numpy(), what=f"{sex} qx")


def validate_fertility_table(table: pd.DataFrame) -> None:
    if table.index.has_duplicates:
        raise InvalidRateError("Fertility table has duplicated ages.")
    r = table["rate"].to_numpy(dtype=float)
    if not np.all(np.isfinite(r)) or np.any(r < 0):
        raise InvalidRateError("Fertility rates must be finite and non-negative.")


@dataclass(frozen=True, eq=False)
class RateTables:
    """
    Read-only bundle of the three component inputs for one projection year.

    `migration` is the long-form entry frame built by migration.migration_frame.
    """
    mortality: pd.DataFrame
    fertility: pd.DataFrame
    migration: pd.DataFrame = None

    def __post_init__(self):
        object.__setattr__(self, "mortality", mortality_table(self.mortality))
        object.__setattr__(self, "fertility", fertility_table(self.fertility))
        entries = [] if self.migration is None else self.migration
        object.__setattr__(self, "migration", migration_frame(entries))

    def replace(self, **changes) -> "RateTables":
        fields = {"mortality": self.mortality, "fertility": self.fertility,
                  "migration": self.migration}
        fields.update(changes)
        return RateTables(**fields)
