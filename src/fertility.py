# src/fertility.py
import logging
from typing import Tuple

import numpy as np
import pandas as pd

from cohorts import CohortMatrix
from exceptions import InvalidRateError, MissingCohortError
from rates import fertility_table

logger = logging.getLogger(__name__)

SEX_RATIO_AT_BIRTH = 105.0  # males per 100 females


def split_births(total: float, sex_ratio_at_birth: float = SEX_RATIO_AT_BIRTH) -> Tuple[float, float]:
    """
    Split a birth total by the sex ratio at birth (males per 100 females).

    male = total * srb / (srb + 100); female = total - male.
    """
    srb = float(sex_ratio_at_birth)
    if not np.isfinite(srb) or srb <= 0:
        raise InvalidRateError(f"sex ratio at birth must be a positive number, got {sex_ratio_at_birth!r}.")
    male = float(total) * srb / (srb + 100.0)
    return male, float(total) - male


def expected_births(
    cohorts: CohortMatrix,
    fertility,
    sex_ratio_at_birth: float = SEX_RATIO_AT_BIRTH,
) -> Tuple[float, float]:
    """
    Expected (male, female) births for one year.

    Parameters
    ----------
    cohorts : CohortMatrix
        Start-of-year population; only the female vector is used.
    fertility : FertilityRate records, pd.Series or DataFrame indexed by age
        Age-specific fertility rates (births per woman per year).
    sex_ratio_at_birth : float
        Males per 100 females (default 105).

    Raises
    ------
    MissingCohortError
        A fertility age has no row in the cohort matrix.
    InvalidRateError
        Negative / non-finite rates or a non-positive sex ratio at birth.
    """
    table = fertility_table(fertility)
    rates = table["rate"].to_numpy(dtype=float)
    if not np.all(np.isfinite(rates)) or np.any(rates < 0):
        raise InvalidRateError("Fertility rates must be finite and non-negative.")

    total = 0.0
    for age, rate in zip(table.index, rates):
        if not cohorts.has_age(age):
            raise MissingCohortError(
                f"Fertility age {age} has no cohort row (matrix covers 0..{cohorts.max_age})."
            )
        total += cohorts.female[int(age)] * rate
    return split_births(total, sex_ratio_at_birth)


def total_fertility_rate(fertility) -> float:
    """TFR = sum of single-year ASFR."""
    table = fertility_table(fertility)
    return float(table["rate"].sum())


def validate_asfr(asfr: pd.Series, *, warnings_only: bool = True) -> list:
    """
    Validate ASFR for biological plausibility.

    Parameters
    ----------
    asfr : pd.Series of single-year age-specific fertility rates indexed by age.
    warnings_only : If True, return warnings list; if False, raise InvalidRateError on violations.

    Returns
    -------
    List of warning strings for implausible values.

    Checks
    ------
    1. Reproductive age range (10-55 years)
    2. Maximum biologically possible ASFR (~0.40)
    3. TFR range (0.3 - 10.0)
    4. Peak fertility age (should be 18-40)
    """
    warnings_list = []
    asfr = pd.Series(asfr, dtype="float64")
    if asfr.empty:
        return warnings_list

    # Check 1: Age range (reproductive ages 10-55)
    for age, rate in asfr.items():
        age = int(age)
        if (age < 10 or age > 55) and rate > 0.001:
            warnings_list.append(
                f"Age {age}: Fertility rate {rate:.4f} outside "
                f"reproductive ages (10-55). Biologically implausible."
            )

    # Check 2: Maximum rate (biological maximum ~0.40)
    max_asfr = float(asfr.max())
    if max_asfr > 0.40:
        warnings_list.append(
            f"Maximum ASFR {max_asfr:.4f} exceeds biological maximum (~0.40). "
            f"Even high-fertility populations rarely exceed 0.35."
        )

    # Check 3: TFR range
    tfr = float(asfr.sum())
    if tfr > 10.0:
        warnings_list.append(
            f"TFR {tfr:.2f} exceeds historical maximum (~9-10). "
            f"Check for data errors or improper scaling."
        )
    if 0 < tfr < 0.30:
        warnings_list.append(
            f"TFR {tfr:.2f} below minimum observed in modern populations (~0.8). "
            f"Extreme low fertility - verify data quality."
        )

    # Check 4: Peak fertility age
    if max_asfr > 0:
        peak_age = int(asfr.idxmax())
        if peak_age < 18 or peak_age > 40:
            warnings_list.append(
                f"Peak fertility at age {peak_age} is unusual. "
                f"Typically peaks at 20-35 years."
            )

    if not warnings_only and warnings_list:
        raise InvalidRateError("ASFR validation failed:\n  " + "\n  ".join(warnings_list))

    for w in warnings_list:
        logger.warning(f"[ASFR Validation] {w}")
    return warnings_list
