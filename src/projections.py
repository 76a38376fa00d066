# src/projections.py
"""
Year-stepping cohort-component projection.

A ProjectionRun is the explicit context object for one run: it owns the working
matrix, the immutable inputs and the list of completed snapshots. Runs share no
state, so several may execute concurrently without synchronization.

State machine:  INITIALIZED -> STEPPING -> COMPLETED
                                  |-> FAILED     (component error; partial result kept)
                                  |-> CANCELLED  (cancel event / deadline, checked
                                                  between years only)

Per-year step (from the year-t matrix to year t+1):
  1. births    : expected births from the start-of-year female population
  2. mortality : survivors(x) = N(x) * lx(x+1)/lx(x) from this year's
                 (shock-adjusted) life table, per sex
  3. ageing    : survivors move to x+1; the open bucket keeps its own
                 survivors and absorbs those ageing out of max_age-1
  4. births are inserted at age 0
  5. migration : national net counts for the year, negative cells clamped
  6. snapshot  : a new CohortMatrix is appended; nothing already recorded
                 is touched again
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from cohorts import SEXES, CohortMatrix
from exceptions import (
    InvalidCohortError,
    InvalidRateError,
    NegativePopulationWarning,
    ProjectionCancelled,
    ProjectionError,
)
from fertility import SEX_RATIO_AT_BIRTH, expected_births
from helpers import to_export_frame, _with_suffix
from migration import apply_migration
from mortality import INFANT_SEPARATION, RADIX, build_life_table, survival_ratios
from rates import RateTables, validate_fertility_table, validate_mortality_table
from shocks import Shock, apply_shocks

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, eq=False)
class ProjectionYear:
    """One recorded year: the matrix plus the flows that produced it."""
    year: int
    cohorts: CohortMatrix
    births_male: float = 0.0
    births_female: float = 0.0
    deaths_male: float = 0.0
    deaths_female: float = 0.0
    net_migration: float = 0.0
    warnings: Tuple[NegativePopulationWarning, ...] = ()

    @property
    def births(self) -> float:
        return self.births_male + self.births_female

    @property
    def deaths(self) -> float:
        return self.deaths_male + self.deaths_female


@dataclass(frozen=True, eq=False)
class ProjectionResult:
    """
    Ordered (year, matrix) series, base year first.

    `years` holds every snapshot that was completed, including the base year.
    A failed or cancelled run keeps its partial series; `failure` carries the
    exception and `completed_years` says how many steps were actually made.
    """
    base_year: int
    horizon: int
    years: Tuple[ProjectionYear, ...]
    state: RunState
    life_tables: Dict[int, Dict[str, pd.DataFrame]] = field(default_factory=dict)
    failure: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.state is RunState.COMPLETED

    @property
    def completed_years(self) -> int:
        return max(len(self.years) - 1, 0)

    @property
    def end_year(self) -> int:
        return self.base_year + self.horizon

    @property
    def warnings(self) -> list:
        return [w for y in self.years for w in y.warnings]

    def cohorts(self, year: int) -> CohortMatrix:
        for y in self.years:
            if y.year == int(year):
                return y.cohorts
        raise KeyError(f"Year {year} not in projection result.")

    def series(self) -> list:
        """[(year, CohortMatrix), ...] in year order."""
        return [(y.year, y.cohorts) for y in self.years]

    def raise_for_status(self) -> None:
        if self.state is RunState.FAILED and self.failure is not None:
            raise self.failure
        if self.state is RunState.CANCELLED:
            raise ProjectionCancelled(
                f"Projection cancelled after {self.completed_years} of {self.horizon} years."
            )

    def to_frame(self) -> pd.DataFrame:
        """Long frame (year, age, age_label, male, female, total)."""
        if not self.years:
            return pd.DataFrame(columns=["year", "age", "age_label", "male", "female", "total"])
        return pd.concat([y.cohorts.to_frame() for y in self.years], ignore_index=True)


ProgressCallback = Callable[[int, int, int], None]


class ProjectionRun:
    """
    Context object for one projection run.

    Parameters
    ----------
    initial : CohortMatrix
        Base-year population.
    rates : RateTables
        Mortality (qx by sex), fertility and migration inputs. Read-only.
    shocks : sequence of Shock
        Applied each year, in order, by `shocks.apply_shocks`.
    base_year : int
        Calendar year of `initial`.
    horizon : int
        Number of yearly steps (> 0).
    sex_ratio_at_birth : float
        Males per 100 female births.
    radix, a0 : float
        Life-table radix and infant separation factor.
    cancel_event : object with is_set(), optional
        Cooperative cancellation, checked before each year.
    deadline : float, optional
        `time.monotonic()` value after which no new year is started.
    progress : callable(year, done, total), optional

    Raises
    ------
    InvalidRateError, InvalidCohortError
        Inputs are rejected here, before any year is stepped.
    """

    def __init__(
        self,
        initial: CohortMatrix,
        rates: RateTables,
        shocks: Sequence[Shock] = (),
        *,
        base_year: int,
        horizon: int,
        sex_ratio_at_birth: float = SEX_RATIO_AT_BIRTH,
        radix: float = RADIX,
        a0: float = INFANT_SEPARATION,
        cancel_event=None,
        deadline: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        if not isinstance(initial, CohortMatrix):
            raise InvalidCohortError("initial population must be a CohortMatrix.")
        if int(horizon) <= 0:
            raise ValueError(f"horizon must be a positive number of years, got {horizon!r}.")
        srb = float(sex_ratio_at_birth)
        if not np.isfinite(srb) or srb <= 0:
            raise InvalidRateError(f"sex ratio at birth must be positive, got {sex_ratio_at_birth!r}.")
        if not np.isfinite(radix) or radix <= 0:
            raise InvalidRateError(f"radix must be positive, got {radix!r}.")
        validate_mortality_table(rates.mortality, initial.max_age)
        validate_fertility_table(rates.fertility)
        for s in shocks:
            if not isinstance(s, Shock):
                raise TypeError(f"Not a shock: {s!r}")

        self.base_year = int(base_year)
        self.horizon = int(horizon)
        self.rates = rates
        self.shocks = tuple(shocks)
        self.sex_ratio_at_birth = srb
        self.radix = float(radix)
        self.a0 = float(a0)
        self.cancel_event = cancel_event
        self.deadline = deadline
        self.progress = progress

        self.state = RunState.INITIALIZED
        self.failure: Optional[BaseException] = None
        self._current = initial.replace(year=self.base_year)
        self._years = [ProjectionYear(self.base_year, self._current)]
        self._life_tables: Dict[int, Dict[str, pd.DataFrame]] = {}

    # ------------------------------------------------------------------
    @property
    def current(self) -> CohortMatrix:
        return self._current

    @property
    def next_year(self) -> int:
        return self._current.year + 1

    def _should_stop(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def life_tables_for(self, rates: RateTables) -> Dict[str, pd.DataFrame]:
        ages = rates.mortality.index.to_numpy()
        return {
            sex: build_life_table(ages, rates.mortality[sex].to_numpy(),
                                  radix=self.radix, a0=self.a0)
            for sex in SEXES
        }

    def step(self) -> ProjectionYear:
        """
        Advance the working matrix by one year and record the snapshot.

        Component errors propagate; `run()` turns them into a FAILED result.
        """
        if self.state in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED):
            raise RuntimeError(f"Cannot step a run in state {self.state.value}.")
        self.state = RunState.STEPPING

        start = self._current
        year = self.next_year
        rates = apply_shocks(self.rates, self.shocks, year)
        tables = self.life_tables_for(rates)

        births_m, births_f = expected_births(start, rates.fertility, self.sex_ratio_at_birth)

        aged = {}
        deaths = {}
        for sex in SEXES:
            pop = start.vector(sex)
            survivors = pop * survival_ratios(tables[sex])
            deaths[sex] = float(pop.sum() - survivors.sum())
            nxt = np.zeros_like(pop)
            nxt[1:] = survivors[:-1]
            nxt[-1] += survivors[-1]
            aged[sex] = nxt
        aged["male"][0] += births_m
        aged["female"][0] += births_f

        before = CohortMatrix(aged["male"], aged["female"], year=year, max_age=start.max_age)
        sink: list = []
        after = apply_migration(before, rates.migration, warnings_sink=sink)
        for w in sink:
            logger.warning(str(w))

        snapshot = ProjectionYear(
            year=year,
            cohorts=after,
            births_male=births_m,
            births_female=births_f,
            deaths_male=deaths["male"],
            deaths_female=deaths["female"],
            net_migration=after.total - before.total,
            warnings=tuple(sink),
        )
        # Commit only once the whole step succeeded
        self._years.append(snapshot)
        self._life_tables[year] = tables
        self._current = after
        return snapshot

    def result(self) -> ProjectionResult:
        return ProjectionResult(
            base_year=self.base_year,
            horizon=self.horizon,
            years=tuple(self._years),
            state=self.state,
            life_tables=dict(self._life_tables),
            failure=self.failure,
        )

    def run(self) -> ProjectionResult:
        """Step `horizon` years (or until failure / cancellation) and return the result."""
        logger.info("Projecting %d years from %d.", self.horizon, self.base_year)
        while len(self._years) - 1 < self.horizon:
            if self._should_stop():
                self.state = RunState.CANCELLED
                logger.warning(
                    "Projection cancelled after %d of %d years.",
                    len(self._years) - 1, self.horizon,
                )
                return self.result()
            try:
                snap = self.step()
            except ProjectionError as exc:
                self.state = RunState.FAILED
                self.failure = exc
                logger.error("Projection failed in year %d: %s", self.next_year, exc)
                return self.result()
            if self.progress is not None:
                self.progress(snap.year, len(self._years) - 1, self.horizon)
        self.state = RunState.COMPLETED
        return self.result()


def project(
    initial: CohortMatrix,
    rates: RateTables,
    shocks: Iterable[Shock] = (),
    *,
    base_year: int,
    horizon: int,
    **kwargs,
) -> ProjectionResult:
    """Build a ProjectionRun and run it to completion."""
    run = ProjectionRun(initial, rates, tuple(shocks), base_year=base_year,
                        horizon=horizon, **kwargs)
    return run.run()


# ---------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------
def save_projection(result: ProjectionResult, results_dir: str, label: str = "",
                    decimals: Optional[int] = 2) -> str:
    """
    Save the yearly cohort series to <results_dir>/projections/age_structures<label>.csv.
    Returns the written path.
    """
    out_path = os.path.join(results_dir, "projections")
    os.makedirs(out_path, exist_ok=True)
    fname = os.path.join(out_path, _with_suffix("age_structures.csv", f"_{label}" if label else ""))
    df = result.to_frame()
    df["state"] = result.state.value
    to_export_frame(df, decimals).to_csv(fname, index=False)
    return fname


def save_metrics(frames: Dict[str, pd.DataFrame], results_dir: str, label: str = "",
                 decimals: Optional[int] = 2) -> list:
    """
    Save each derived frame to <results_dir>/metrics/<name><label>.csv.
    Returns the written paths.
    """
    out_path = os.path.join(results_dir, "metrics")
    os.makedirs(out_path, exist_ok=True)
    written = []
    for name, df in frames.items():
        fname = os.path.join(out_path, _with_suffix(f"{name}.csv", f"_{label}" if label else ""))
        to_export_frame(df, decimals).to_csv(fname, index=False)
        written.append(fname)
    return written
