# src/mortality.py
import logging

import numpy as np
import pandas as pd

from exceptions import InvalidRateError
from rates import check_ages_contiguous, check_probabilities, mortality_table

logger = logging.getLogger(__name__)

RADIX = 100_000
INFANT_SEPARATION = 0.3  # share of infant deaths' exposure credited to the year


# ---------------------------------------------------------------------
# Single-year period life table
# ---------------------------------------------------------------------
def build_life_table(
    ages,
    qx,
    *,
    radix: float = RADIX,
    a0: float = INFANT_SEPARATION,
) -> pd.DataFrame:
    """
    Single-year period life table from death probabilities.
    Returns columns: [qx, lx, dx, Lx, Tx, ex], indexed by age.

    Steps
    -----
      1) lx_0 = radix; for each age dx = lx * qx and lx_next = lx - dx.
      2) Lx: age 0 uses lx_next + a0 * dx (infant deaths cluster early in the
         year); every other age uses the midpoint (lx + lx_next) / 2.
      3) The last age is the open bucket, closed here: Tx = Lx at that age.
      4) Tx is the reverse cumulative sum of Lx; ex = Tx / lx where lx > 0,
         else 0.

    No rounding happens here; dx stays a full-precision real so that survivorship
    does not drift over 100+ age steps.

    Raises
    ------
    InvalidRateError
        qx outside [0, 1] or non-finite, ages unsorted / non-contiguous, empty
        input, or a non-positive radix.
    """
    ages = np.asarray(ages, dtype=float).reshape(-1)
    qx = np.asarray(qx, dtype=float).reshape(-1)
    if ages.size == 0:
        raise InvalidRateError("Cannot build a life table from an empty rate table.")
    if ages.size != qx.size:
        raise InvalidRateError("ages and qx must have the same length.")
    if not np.isfinite(radix) or radix <= 0:
        raise InvalidRateError(f"radix must be positive, got {radix!r}.")
    check_ages_contiguous(ages, start=None, what="Life table")
    check_probabilities(qx, what="qx")

    n = ages.size
    lx = np.empty(n)
    dx = np.empty(n)
    Lx = np.empty(n)

    l_cur = float(radix)
    for i in range(n):
        d = l_cur * qx[i]
        l_next = l_cur - d
        lx[i] = l_cur
        dx[i] = d
        if ages[i] == 0:
            Lx[i] = l_next + a0 * d
        else:
            Lx[i] = 0.5 * (l_cur + l_next)
        l_cur = l_next

    Tx = np.cumsum(Lx[::-1])[::-1]
    ex = np.divide(Tx, lx, out=np.zeros(n), where=lx > 0)

    df = pd.DataFrame(
        {"qx": qx, "lx": lx, "dx": dx, "Lx": Lx, "Tx": Tx, "ex": ex},
        index=pd.Index(ages.astype(int), name="age"),
    )

    # Soft checks (warnings only); these hold by construction for valid qx
    if np.any(np.diff(lx) > 0):
        logger.warning("lx increased with age; check inputs.")
    if not np.isclose(dx.sum() + (lx[-1] - dx[-1]), float(radix), rtol=0.0, atol=1e-6 * radix):
        logger.warning("Σ d_x plus survivors deviates from radix; check inputs.")

    return df


def life_table_from_rates(rates, *, sex: str = "male", radix: float = RADIX,
                          a0: float = INFANT_SEPARATION) -> pd.DataFrame:
    """
    Life table from MortalityRate records, a qx Series indexed by age, or a
    mortality table (for which `sex` picks the column).
    """
    table = mortality_table(rates)
    return build_life_table(table.index.to_numpy(), table[sex].to_numpy(), radix=radix, a0=a0)


def survival_ratios(lt: pd.DataFrame) -> np.ndarray:
    """
    Probability of surviving from age x to x+1 for every row of a life table.

    s_x = lx(x+1) / lx(x); the last (open) row uses its own (lx - dx) / lx.
    Where lx is 0 the ratio falls back to 1 - qx, so cohorts that exist at ages
    the radix never reaches (e.g. migrants) are still aged correctly.
    """
    lx = lt["lx"].to_numpy(dtype=float)
    dx = lt["dx"].to_numpy(dtype=float)
    qx = lt["qx"].to_numpy(dtype=float)
    l_next = lx - dx
    s = np.divide(l_next, lx, out=np.zeros_like(lx), where=lx > 0)
    s = np.where(lx > 0, s, 1.0 - qx)
    return np.clip(s, 0.0, 1.0)


def life_expectancy(lt: pd.DataFrame, age: int = 0) -> float:
    """Remaining life expectancy e_x read from a life table (0.0 past its last age)."""
    if age not in lt.index:
        return 0.0
    return float(lt.loc[age, "ex"])
