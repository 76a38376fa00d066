# src/cohorts.py
"""
Single-year age-by-sex population counts for one calendar year.

A CohortMatrix holds two read-only numpy vectors (male, female) indexed by age
0..max_age, where the last age is the open terminal bucket ("110+"). Every
projection year produces a *new* matrix; snapshots are never edited in place.
"""
from __future__ import annotations

from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from exceptions import InvalidCohortError
from helpers import _age_from_label, _single_year_bins

MAX_AGE = 110
SEXES = ("male", "female")


def _as_vector(values, k: int, sex: str) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True).reshape(-1)
    if arr.shape[0] != k:
        raise InvalidCohortError(f"{sex} vector must have length {k}, got {arr.shape[0]}.")
    if not np.all(np.isfinite(arr)):
        raise InvalidCohortError(f"{sex} counts must be finite.")
    if np.any(arr < 0):
        bad = int(np.flatnonzero(arr < 0)[0])
        raise InvalidCohortError(f"Negative {sex} count at age {bad}: {arr[bad]!r}.")
    arr.setflags(write=False)
    return arr


class CohortMatrix:
    """
    Population by single year of age and sex.

    Parameters
    ----------
    male, female : array-like of length max_age+1
        Non-negative counts; index i is age i, the last index the open bucket.
    year : int, optional
        Calendar year the counts refer to.
    max_age : int
        Age of the open terminal bucket (default 110).
    """

    __slots__ = ("_male", "_female", "year", "max_age")

    def __init__(self, male, female, year: int | None = None, max_age: int = MAX_AGE):
        max_age = int(max_age)
        if max_age < 1:
            raise InvalidCohortError("max_age must be at least 1.")
        k = max_age + 1
        self._male = _as_vector(male, k, "male")
        self._female = _as_vector(female, k, "female")
        self.year = None if year is None else int(year)
        self.max_age = max_age

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------
    @classmethod
    def zeros(cls, year: int | None = None, max_age: int = MAX_AGE) -> "CohortMatrix":
        k = int(max_age) + 1
        return cls(np.zeros(k), np.zeros(k), year=year, max_age=max_age)

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping],
        year: int | None = None,
        max_age: int = MAX_AGE,
    ) -> "CohortMatrix":
        """
        Build a matrix from records with keys `age`, `male`, `female`.

        Missing ages are filled with zero, duplicate ages are summed and ages
        above `max_age` are folded into the open terminal bucket.
        """
        k = int(max_age) + 1
        male = np.zeros(k)
        female = np.zeros(k)
        for rec in records:
            age = _age_from_label(rec["age"])
            if age < 0:
                raise InvalidCohortError(f"Negative age in cohort records: {age}.")
            i = min(age, int(max_age))
            male[i] += float(rec.get("male", 0.0) or 0.0)
            female[i] += float(rec.get("female", 0.0) or 0.0)
        return cls(male, female, year=year, max_age=max_age)

    @classmethod
    def from_frame(
        cls, df: pd.DataFrame, year: int | None = None, max_age: int = MAX_AGE
    ) -> "CohortMatrix":
        """Build from a DataFrame with `age` (column or index), `male`, `female`."""
        frame = df.reset_index() if "age" not in df.columns else df
        missing = {"age", "male", "female"} - set(frame.columns)
        if missing:
            raise InvalidCohortError(f"Cohort frame missing columns: {sorted(missing)}")
        if year is None and "year" in frame.columns and frame["year"].nunique() == 1:
            year = int(frame["year"].iloc[0])
        return cls.from_records(frame[["age", "male", "female"]].to_dict("records"),
                                year=year, max_age=max_age)

    def replace(self, *, male=None, female=None, year=None) -> "CohortMatrix":
        """Return a new matrix with some fields swapped."""
        return CohortMatrix(
            self._male if male is None else male,
            self._female if female is None else female,
            year=self.year if year is None else year,
            max_age=self.max_age,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def male(self) -> np.ndarray:
        return self._male

    @property
    def female(self) -> np.ndarray:
        return self._female

    @property
    def ages(self) -> np.ndarray:
        return np.arange(self.max_age + 1)

    @property
    def male_total(self) -> float:
        return float(self._male.sum())

    @property
    def female_total(self) -> float:
        return float(self._female.sum())

    @property
    def total(self) -> float:
        return self.male_total + self.female_total

    def vector(self, sex: str) -> np.ndarray:
        if sex == "male":
            return self._male
        if sex == "female":
            return self._female
        if sex == "total":
            return self._male + self._female
        raise ValueError(f"Unknown sex {sex!r}; expected 'male', 'female' or 'total'.")

    def has_age(self, age: int) -> bool:
        return 0 <= int(age) <= self.max_age

    def count(self, age: int, sex: str = "total") -> float:
        if not self.has_age(age):
            raise KeyError(f"Age {age} outside 0..{self.max_age}.")
        return float(self.vector(sex)[int(age)])

    def sum_ages(self, lo: int, hi: int | None = None, sex: str = "total") -> float:
        """Sum counts over ages lo..hi inclusive (hi=None means up to the open bucket)."""
        lo = max(int(lo), 0)
        hi = self.max_age if hi is None else min(int(hi), self.max_age)
        if hi < lo:
            return 0.0
        return float(self.vector(sex)[lo:hi + 1].sum())

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame({
            "age": self.ages,
            "age_label": _single_year_bins(self.max_age),
            "male": self._male,
            "female": self._female,
        })
        df["total"] = df["male"] + df["female"]
        if self.year is not None:
            df.insert(0, "year", self.year)
        return df

    def __eq__(self, other) -> bool:
        if not isinstance(other, CohortMatrix):
            return NotImplemented
        return (
            self.year == other.year
            and self.max_age == other.max_age
            and np.array_equal(self._male, other._male)
            and np.array_equal(self._female, other._female)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return (f"CohortMatrix(year={self.year}, max_age={self.max_age}, "
                f"male={self.male_total:.6g}, female={self.female_total:.6g})")


def age_groups(matrix: CohortMatrix, width: int = 5) -> pd.DataFrame:
    """
    Aggregate a matrix into `width`-year groups with an open last group.

    Returns columns: label, male, female, total, percentage (of the total
    population; 0.0 when the population is empty).
    """
    width = int(width)
    if width < 1:
        raise ValueError("width must be >= 1")
    rows = []
    total = matrix.total
    for lo in range(0, matrix.max_age + 1, width):
        hi = lo + width - 1
        is_last = hi >= matrix.max_age
        label = f"{lo}+" if is_last else f"{lo}-{hi}"
        m = matrix.sum_ages(lo, None if is_last else hi, "male")
        f = matrix.sum_ages(lo, None if is_last else hi, "female")
        rows.append({
            "label": label,
            "male": m,
            "female": f,
            "total": m + f,
            "percentage": (m + f) / total * 100.0 if total > 0 else 0.0,
        })
        if is_last:
            break
    return pd.DataFrame(rows)
