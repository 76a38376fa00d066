# src/helpers.py
"""
General-purpose helpers shared across the engine.

This module centralizes reusable utilities that are agnostic to domain specifics:
- Age-label scaffolding for single-year ages with an open terminal bucket.
- Liberal CSV header detection.
- List/string coercions for config values.
- Filename suffix manipulation.
- Zero-denominator-safe ratios and their sentinels.
- The export boundary: the single place where derived frames are rounded.

All functions are pure and side-effect free, facilitating reuse and unit testing.

IMPORTANT: This module does not import project-specific modules to avoid circular
dependencies. Callers must supply any configuration defaults they need.
"""
from __future__ import annotations

import os
from enum import Enum

import numpy as np
import pandas as pd

# ---------------------------------------------------------------------------
# Age scaffolding
# ---------------------------------------------------------------------------

def _single_year_bins(max_age: int = 110) -> list[str]:
    """
    Return single-year age labels '0', '1', ..., str(max_age-1), f'{max_age}+'.

    Parameters
    ----------
    max_age : int
        Lower bound of the open terminal bucket.

    Returns
    -------
    list[str]
        Age labels for single-year ages up to an open-ended tail.
    """
    return [str(a) for a in range(0, max_age)] + [f"{max_age}+"]


def _age_from_label(label) -> int:
    """
    Lower bound of an age label: '25' -> 25, '110+' -> 110, '15-19' -> 15.

    Integers pass through unchanged.
    """
    if isinstance(label, (int, np.integer)):
        return int(label)
    s = str(label).strip()
    if s.endswith("+"):
        s = s[:-1]
    if "-" in s[1:]:
        s = s.split("-")[0]
    return int(float(s))


# ---------------------------------------------------------------------------
# CSV helpers
# ---------------------------------------------------------------------------

def _find_col(df: pd.DataFrame, must_include: list[str]) -> str | None:
    """
    Return the first column name in `df` whose lowercase name contains *all*
    substrings in `must_include`. Used for robust header detection.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame with candidate columns.
    must_include : list[str]
        Substrings that must all appear in the lowercase column name.

    Returns
    -------
    str | None
        Original column name or None if not found.
    """
    low = {c.lower(): c for c in df.columns}
    for lc, orig in low.items():
        if all(s in lc for s in must_include):
            return orig
    return None


# ---------------------------------------------------------------------------
# List / string coercions for config-like values
# ---------------------------------------------------------------------------

def _coerce_list(x):
    """
    Coerce input to a flat list of strings.

    Rules
    -----
    - If `x` is a list, flatten one level; split any string items on ';' or ','.
    - If `x` is a string, split on ';' or ',' and strip.
    - Otherwise return None (caller should fall back to project defaults).
    """
    if isinstance(x, list):
        flat: list[str] = []
        for it in x:
            if isinstance(it, list):
                flat.extend(str(v) for v in it)
            elif isinstance(it, str) and (";" in it or "," in it):
                flat.extend(
                    [s.strip() for s in it.replace(",", ";").split(";") if s.strip()]
                )
            else:
                flat.append(str(it))
        return flat
    if isinstance(x, str):
        if ";" in x or "," in x:
            return [s.strip() for s in x.replace(",", ";").split(";") if s.strip()]
        return [x.strip()]
    return None


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _with_suffix(fname: str, suffix: str) -> str:
    """
    Insert a suffix before the file extension.

    Example
    -------
    _with_suffix("foo.csv", "_bar") -> "foo_bar.csv"
    """
    if not suffix:
        return fname
    base, ext = os.path.splitext(fname)
    return f"{base}{suffix}{ext}"


# ---------------------------------------------------------------------------
# Ratios with defined sentinels
# ---------------------------------------------------------------------------

class Sentinel(str, Enum):
    """
    Explicit stand-ins for ratios whose denominator is zero.

    INFINITE      : positive numerator over a zero denominator.
    NO_POPULATION : nothing to measure (0/0, or an empty population).
    """
    INFINITE = "inf"
    NO_POPULATION = "no_population"

    def __str__(self) -> str:
        return self.value


def is_sentinel(value) -> bool:
    return isinstance(value, Sentinel)


def safe_ratio(num: float, den: float, scale: float = 1.0):
    """
    num/den * scale, or a Sentinel when den is zero.

    Never returns NaN or inf; the caller can always tell a real ratio from a
    degenerate one with `is_sentinel`.
    """
    num = float(num)
    den = float(den)
    if den > 0:
        return num / den * scale
    if num > 0:
        return Sentinel.INFINITE
    return Sentinel.NO_POPULATION


# ---------------------------------------------------------------------------
# Export boundary
# ---------------------------------------------------------------------------

def to_export_frame(df: pd.DataFrame, decimals: int | None = 2) -> pd.DataFrame:
    """
    Flatten a derived frame for a text/CSV exporter.

    - Sentinels become their string value ('inf', 'no_population').
    - Float columns are rounded to `decimals` (None keeps full precision).
    - The index is dropped into columns.

    This is the only place in the engine where numbers are rounded.
    """
    out = df.reset_index(drop=not _has_named_index(df)).copy()
    for col in out.columns:
        s = out[col]
        if s.dtype == object:
            out[col] = s.map(lambda v: _export_scalar(v, decimals))
        elif pd.api.types.is_float_dtype(s) and decimals is not None:
            out[col] = s.round(int(decimals))
    return out


def _has_named_index(df: pd.DataFrame) -> bool:
    return any(name is not None for name in df.index.names)


def _export_scalar(v, decimals):
    if isinstance(v, Sentinel):
        return v.value
    if v is None:
        return ""
    if isinstance(v, (float, np.floating)):
        if not np.isfinite(v):
            return ""
        return round(float(v), int(decimals)) if decimals is not None else float(v)
    return v
