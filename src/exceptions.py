# src/exceptions.py
"""
Typed failures and warnings raised by the projection engine.

Validation errors (malformed rate tables, bad cohorts) are raised before a run
starts. Domain errors raised while stepping are caught by the driver and folded
into a failed ProjectionResult together with the years already computed.
Numeric anomalies never abort a run; they surface as warnings.
"""
from __future__ import annotations


class ProjectionError(Exception):
    """Base class for every engine error."""


class InvalidRateError(ProjectionError, ValueError):
    """A rate table is malformed: qx outside [0,1], age gaps, negative rates..."""


class InvalidCohortError(ProjectionError, ValueError):
    """A cohort matrix would hold negative, non-finite or misaligned counts."""


class MissingCohortError(ProjectionError, KeyError):
    """A fertility age has no corresponding row in the cohort matrix."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownAgeError(ProjectionError, KeyError):
    """A migration entry references an age (or sex) outside the cohort matrix."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ProjectionCancelled(ProjectionError):
    """Raised by ProjectionResult.raise_for_status() for a cancelled run."""


class NegativePopulationWarning(UserWarning):
    """
    Net emigration exceeded the cohort; the cell was clamped to zero.

    `deficit` is the (positive) number of emigrants that could not be removed.
    """

    def __init__(self, age: int, sex: str, deficit: float, year: int | None = None):
        self.age = int(age)
        self.sex = str(sex)
        self.deficit = float(deficit)
        self.year = year
        where = f"year {year}, " if year is not None else ""
        super().__init__(
            f"{where}age {self.age} {self.sex}: migration would leave "
            f"{-self.deficit:.6g} people; clamped to 0."
        )
