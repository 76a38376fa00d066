# src/shocks.py
"""
Scenario shocks: temporary or permanent adjustments to the component rates.

Each shock is a tagged variant bound to one component (mortality, fertility or
migration) and carries either a Multiplier or an Additive adjustment whose
domain is checked against that component when the shock is created:

  MortalityShock  : multiplier >= 0, additive delta in [-1, 1]  (qx is a probability)
  FertilityShock  : multiplier >= 0, any finite delta; women only
  MigrationShock  : any finite multiplier or delta (net counts are signed), or a
                    Spread total shared by the matched cells of the year's grid

Overlapping shocks compose by sequential application in the order supplied.
Multiply-then-add differs from add-then-multiply; the order is part of the
contract. Clamping (qx to [0, 1], fertility >= 0) happens once, after composition.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import ClassVar, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from cohorts import MAX_AGE, SEXES
from exceptions import InvalidRateError
from migration import entries_for_year, migration_frame
from rates import RateTables


class Component(str, Enum):
    MORTALITY = "mortality"
    FERTILITY = "fertility"
    MIGRATION = "migration"


class Recurrence(str, Enum):
    ONCE = "once"            # only in start_year
    EACH_YEAR = "each_year"  # every year of [start_year, end_year]


@dataclass(frozen=True)
class Multiplier:
    factor: float

    def scaled(self, weight: float) -> float:
        return 1.0 + (float(self.factor) - 1.0) * weight

    def apply(self, values, weight: float = 1.0):
        return values * self.scaled(weight)


@dataclass(frozen=True)
class Additive:
    delta: float

    def apply(self, values, weight: float = 1.0):
        return values + float(self.delta) * weight


@dataclass(frozen=True)
class Spread:
    """A yearly total shared evenly by the matched cells (migration only)."""
    total: float

    def apply(self, values, weight: float = 1.0, cells: int = 1):
        return values + float(self.total) * weight / cells


Adjustment = Union[Multiplier, Additive, Spread]


@dataclass(frozen=True)
class Shock:
    """
    Base shock. Use one of the component variants below.

    Ages are inclusive; max_age=None means open-ended ("60+"). sex=None targets
    both sexes. `intensity` scales the adjustment per year offset from
    start_year (values in [0, 1]; offsets past its end reuse the last value).
    """
    start_year: int
    end_year: int
    adjustment: Adjustment
    min_age: int = 0
    max_age: Optional[int] = None
    sex: Optional[str] = None
    recurrence: Recurrence = Recurrence.EACH_YEAR
    intensity: Optional[Sequence[float]] = None
    name: str = ""

    component: ClassVar[Optional[Component]] = None

    def __post_init__(self):
        if self.component is None:
            raise TypeError("Use MortalityShock, FertilityShock or MigrationShock.")
        if int(self.end_year) < int(self.start_year):
            raise ValueError(f"Shock {self.name!r}: end_year before start_year.")
        if int(self.min_age) < 0:
            raise ValueError(f"Shock {self.name!r}: min_age must be >= 0.")
        if self.max_age is not None and int(self.max_age) < int(self.min_age):
            raise ValueError(f"Shock {self.name!r}: max_age below min_age.")
        if self.sex is not None and self.sex not in SEXES:
            raise ValueError(f"Shock {self.name!r}: sex must be 'male', 'female' or None.")
        if not isinstance(self.adjustment, (Multiplier, Additive, Spread)):
            raise TypeError(f"Shock {self.name!r}: adjustment must be Multiplier, Additive or Spread.")
        if isinstance(self.adjustment, Spread) and self.component is not Component.MIGRATION:
            raise ValueError(f"Shock {self.name!r}: Spread only applies to migration.")
        object.__setattr__(self, "recurrence", Recurrence(self.recurrence))
        if self.intensity is not None:
            curve = tuple(float(v) for v in self.intensity)
            if not curve or any(not (0.0 <= v <= 1.0) for v in curve):
                raise ValueError(f"Shock {self.name!r}: intensity values must lie in [0, 1].")
            object.__setattr__(self, "intensity", curve)
        self._check_adjustment()

    def _check_adjustment(self) -> None:
        value = self._adjustment_value()
        if not math.isfinite(value):
            raise ValueError(f"Shock {self.name!r}: adjustment must be finite.")

    def _adjustment_value(self) -> float:
        adj = self.adjustment
        if isinstance(adj, Spread):
            return float(adj.total)
        return float(adj.factor if isinstance(adj, Multiplier) else adj.delta)

    # ------------------------------------------------------------------
    def applies_in(self, year: int) -> bool:
        year = int(year)
        if year < int(self.start_year) or year > int(self.end_year):
            return False
        if self.recurrence is Recurrence.ONCE:
            return year == int(self.start_year)
        return True

    def weight(self, year: int) -> float:
        if self.intensity is None:
            return 1.0
        offset = int(year) - int(self.start_year)
        return self.intensity[min(max(offset, 0), len(self.intensity) - 1)]

    def age_mask(self, ages) -> np.ndarray:
        ages = np.asarray(ages)
        mask = ages >= int(self.min_age)
        if self.max_age is not None:
            mask &= ages <= int(self.max_age)
        return mask

    def sexes(self) -> tuple:
        return SEXES if self.sex is None else (self.sex,)


@dataclass(frozen=True)
class MortalityShock(Shock):
    component: ClassVar[Component] = Component.MORTALITY

    def _check_adjustment(self) -> None:
        super()._check_adjustment()
        value = self._adjustment_value()
        if isinstance(self.adjustment, Multiplier) and value < 0:
            raise ValueError(f"Shock {self.name!r}: mortality multiplier must be >= 0.")
        if isinstance(self.adjustment, Additive) and not (-1.0 <= value <= 1.0):
            raise ValueError(f"Shock {self.name!r}: additive qx delta must lie in [-1, 1].")


@dataclass(frozen=True)
class FertilityShock(Shock):
    component: ClassVar[Component] = Component.FERTILITY

    def _check_adjustment(self) -> None:
        super()._check_adjustment()
        if isinstance(self.adjustment, Multiplier) and self._adjustment_value() < 0:
            raise ValueError(f"Shock {self.name!r}: fertility multiplier must be >= 0.")
        if self.sex == "male":
            raise ValueError(f"Shock {self.name!r}: fertility applies to women only.")


@dataclass(frozen=True)
class MigrationShock(Shock):
    component: ClassVar[Component] = Component.MIGRATION


SHOCK_TYPES = {
    Component.MORTALITY: MortalityShock,
    Component.FERTILITY: FertilityShock,
    Component.MIGRATION: MigrationShock,
}


# ---------------------------------------------------------------------
# Applying shocks
# ---------------------------------------------------------------------
def active_shocks(shocks: Iterable[Shock], year: int) -> list:
    """Shocks in effect for `year`, in the order supplied."""
    return [s for s in shocks if s.applies_in(year)]


def _migration_grid(entries: pd.DataFrame, max_age: int) -> pd.DataFrame:
    """Wide (age x male/female) net counts covering 0..max_age plus any other ages seen."""
    ages = sorted(set(range(max_age + 1)) | set(int(a) for a in entries["age"]))
    grid = pd.DataFrame(0.0, index=pd.Index(ages, name="age"), columns=list(SEXES))
    for age, sex, net in zip(entries["age"], entries["sex"], entries["net_count"]):
        if sex not in grid.columns:
            grid[sex] = 0.0
        grid.loc[int(age), sex] += float(net)
    return grid


def _adjust(frame: pd.DataFrame, shock: Shock, columns, weight: float,
            max_age: Optional[int] = None) -> None:
    ages = frame.index.to_numpy()
    mask = shock.age_mask(ages)
    if isinstance(shock.adjustment, Spread):
        # the total is shared by the cells that exist in the matrix
        mask &= ages <= max_age
        cells = int(mask.sum()) * len(columns)
        if cells == 0:
            raise InvalidRateError(
                f"Shock {shock.name!r}: no age/sex cell in 0..{max_age} matches "
                f"ages {shock.min_age}..{shock.max_age} sex={shock.sex}."
            )
        frame.loc[mask, columns] = shock.adjustment.apply(frame.loc[mask, columns], weight, cells)
        return
    if not mask.any() or not columns:
        return
    frame.loc[mask, columns] = shock.adjustment.apply(frame.loc[mask, columns], weight)


def apply_shocks(base_rates: RateTables, shocks: Iterable[Shock], year: int) -> RateTables:
    """
    Rate tables for `year` with every applicable shock applied.

    Parameters
    ----------
    base_rates : RateTables
        Unshocked inputs; never modified.
    shocks : iterable of Shock
        Applied sequentially in the order supplied.
    year : int
        Projection year being stepped.

    Returns
    -------
    RateTables
        Adjusted copies. Mortality is clamped to [0, 1] and fertility floored
        at 0 after all shocks are composed; migration is left signed. The
        migration frame holds the national entries for `year` only.
    """
    mortality = base_rates.mortality.copy()
    fertility = base_rates.fertility.copy()
    max_age = int(mortality.index.max()) if len(mortality) else MAX_AGE
    migration = _migration_grid(entries_for_year(base_rates.migration, year), max_age)

    for shock in shocks:
        if not shock.applies_in(year):
            continue
        w = shock.weight(year)
        if isinstance(shock, MortalityShock):
            _adjust(mortality, shock, list(shock.sexes()), w)
        elif isinstance(shock, FertilityShock):
            _adjust(fertility, shock, ["rate"], w)
        elif isinstance(shock, MigrationShock):
            _adjust(migration, shock, [s for s in shock.sexes() if s in migration.columns], w,
                    max_age=max_age)
        else:
            raise TypeError(f"Unsupported shock type: {type(shock).__name__}")

    mortality[list(SEXES)] = mortality[list(SEXES)].clip(lower=0.0, upper=1.0)
    fertility["rate"] = fertility["rate"].clip(lower=0.0)
    long = migration.reset_index().melt(id_vars=["age"], var_name="sex", value_name="net_count")
    long["year"] = int(year)
    return base_rates.replace(mortality=mortality, fertility=fertility,
                              migration=migration_frame(long))


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------
def pandemic_shock(start_year: int, end_year: int, mortality_increase: float = 1.3,
                   min_age: int = 65, **kw) -> MortalityShock:
    """Raised mortality for older ages (1.3 = +30%)."""
    kw.setdefault("name", "Pandemic")
    return MortalityShock(start_year, end_year, Multiplier(mortality_increase),
                          min_age=min_age, **kw)


def war_shock(start_year: int, end_year: int, mortality_increase: float = 2.0,
              min_age: int = 18, max_age: int = 45, **kw) -> MortalityShock:
    """Raised mortality for young adult men."""
    kw.setdefault("name", "War casualties")
    kw.setdefault("sex", "male")
    return MortalityShock(start_year, end_year, Multiplier(mortality_increase),
                          min_age=min_age, max_age=max_age, **kw)


def baby_boom_shock(start_year: int, end_year: int, fertility_increase: float = 1.4,
                    min_age: int = 20, max_age: int = 40, **kw) -> FertilityShock:
    kw.setdefault("name", "Baby boom")
    return FertilityShock(start_year, end_year, Multiplier(fertility_increase),
                          min_age=min_age, max_age=max_age, **kw)


def fertility_decline_shock(start_year: int, end_year: int, factor: float = 0.7,
                            min_age: int = 15, max_age: int = 49, **kw) -> FertilityShock:
    kw.setdefault("name", "Fertility decline")
    return FertilityShock(start_year, end_year, Multiplier(factor),
                          min_age=min_age, max_age=max_age, **kw)


def migration_wave_shock(start_year: int, end_year: int, total: float = -50_000.0,
                         min_age: int = 20, max_age: Optional[int] = 40, **kw) -> MigrationShock:
    """
    A yearly migration total spread evenly over the targeted age/sex cells.

    The per-cell share is worked out each year against the matrix being
    projected, so overriding ages or sex keeps the total intact.
    Negative totals model an emigration wave, positive ones a refugee influx.
    """
    kw.setdefault("name", "Emigration wave" if total < 0 else "Migration influx")
    return MigrationShock(start_year, end_year, Spread(float(total)),
                          min_age=min_age, max_age=max_age, **kw)


SHOCK_TEMPLATES = {
    "pandemic-moderate": lambda s, e, **kw: pandemic_shock(s, e, 1.3, 65, **kw),
    "pandemic-severe": lambda s, e, **kw: pandemic_shock(
        s, e, 1.5, 0, **{"intensity": (0.3, 1.0, 0.8, 0.4, 0.1), **kw}),
    "war-conventional": lambda s, e, **kw: war_shock(s, e, 2.0, 18, 45, **kw),
    "baby-boom": lambda s, e, **kw: baby_boom_shock(s, e, 1.4, 20, 40, **kw),
    "fertility-decline": lambda s, e, **kw: fertility_decline_shock(s, e, 0.7, 15, 49, **kw),
    "mass-emigration": lambda s, e, **kw: migration_wave_shock(s, e, -50_000.0, 20, 40, **kw),
    "refugee-influx": lambda s, e, **kw: migration_wave_shock(s, e, 100_000.0, 0, None, **kw),
}


# ---------------------------------------------------------------------
# Parsing scenario definitions
# ---------------------------------------------------------------------
def _parse_adjustment(d: dict) -> Adjustment:
    if "adjustment" in d:
        adj = d["adjustment"]
        if isinstance(adj, dict):
            kind = str(adj.get("type", "multiplier")).lower()
            value = adj.get("value")
        else:
            kind, value = "multiplier", adj
    elif "multiplier" in d:
        kind, value = "multiplier", d["multiplier"]
    elif "additive" in d:
        kind, value = "additive", d["additive"]
    elif "total" in d:
        kind, value = "spread", d["total"]
    elif "modifier" in d:
        kind, value = "multiplier", d["modifier"]
    else:
        raise ValueError(f"Shock definition has no adjustment: {d!r}")
    if value is None:
        raise ValueError(f"Shock adjustment needs a value: {d!r}")
    if kind in ("multiplier", "multiplicative", "factor"):
        return Multiplier(float(value))
    if kind in ("additive", "absolute", "delta"):
        return Additive(float(value))
    if kind in ("spread", "total"):
        return Spread(float(value))
    raise ValueError(f"Unknown adjustment type {kind!r}")


def shock_from_dict(d: dict) -> Shock:
    """
    Build a shock from a plain mapping (YAML / JSON scenario files).

    Either name a template::

        {template: pandemic-moderate, start_year: 2025, end_year: 2026}

    or spell it out::

        {component: mortality, start_year: 2025, end_year: 2025,
         ages: {min: 60}, multiplier: 1.4, recurrence: once}
    """
    d = dict(d)
    if "start_year" not in d or "end_year" not in d:
        raise ValueError(f"Shock definition needs start_year and end_year: {d!r}")
    start, end = int(d.pop("start_year")), int(d.pop("end_year"))

    opts = {}
    ages = d.get("ages", d.get("target_ages"))
    if isinstance(ages, dict):
        opts["min_age"] = int(ages.get("min", 0))
        if ages.get("max") is not None:
            opts["max_age"] = int(ages["max"])
    for key in ("min_age", "max_age"):
        if d.get(key) is not None:
            opts[key] = int(d[key])
    sex = d.get("sex")
    if sex not in (None, "all"):
        opts["sex"] = str(sex).lower()
    for key in ("recurrence", "intensity", "name"):
        if d.get(key) is not None:
            opts[key] = d[key]

    template = d.get("template")
    if template is not None:
        if template not in SHOCK_TEMPLATES:
            raise ValueError(f"Unknown shock template {template!r}")
        shock = SHOCK_TEMPLATES[template](start, end)
        return replace(shock, **opts)

    kind = str(d.get("component", d.get("type", ""))).lower()
    try:
        cls = SHOCK_TYPES[Component(kind)]
    except ValueError:
        raise ValueError(f"Unknown shock component {kind!r}") from None
    return cls(start, end, _parse_adjustment(d), **opts)
