# src/data_loaders.py
import os
import yaml
import pandas as pd

from cohorts import MAX_AGE, CohortMatrix
from exceptions import InvalidCohortError, InvalidRateError
from helpers import _find_col, _age_from_label
from migration import migration_frame, _normalize_sex
from rates import fertility_table, mortality_table
from shocks import shock_from_dict


def _get_base_dir():
    """
    Returns the directory of this script
    """
    return os.path.dirname(os.path.abspath(__file__))

def return_default_config():
    """
    Returns the default configuration dictionary
    """
    return {
        "paths": {
            "data_dir": "./data",
            "results_dir": "./results",
            "population_csv": "./data/population.csv",
            "mortality_csv": "./data/mortality.csv",
            "fertility_csv": "./data/fertility.csv",
            "migration_csv": "./data/migration.csv",
            "scenarios_yaml": "./data/scenarios.yaml",
        },
        "diagnostics": {
            "validate_asfr": True,
        },
        "projections": {
            "base_year": 2024, "horizon": 50, "max_age": MAX_AGE,
            "radix": 100_000, "infant_separation": 0.3,
            "sex_ratio_at_birth": 105.0,
            "timeout_seconds": 60,
        },
        "metrics": {
            "requested": ["sex_ratio", "dependency_ratio", "median_age",
                          "life_expectancy", "summary", "cohort_tracking"],
            "birth_years": [],
            "decimals": 2,
        },
        "runs": {
            "processes": 1,
            "baseline": True,
        },
    }

def _resolve(ROOT_DIR, p):
    """
    Resolve path p relative to ROOT_DIR if not absolute.
    """
    return os.path.abspath(os.path.join(ROOT_DIR, p))

def _deep_merge(dst, src):
    """
    Recursively merge src into dst
    """
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v

def _load_config(ROOT_DIR: str, path: str):
    """
    Load YAML config if present; otherwise use defaults for both config and paths.
    Returns (cfg, PATHS)
    """
    cfg = return_default_config()
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            user = yaml.safe_load(fh) or {}
        _deep_merge(cfg, user)
    else:
        print(f"[config] No config file at {path}; using built-in defaults.")

    PATHS = {key: _resolve(ROOT_DIR, p) for key, p in cfg["paths"].items()}
    return cfg, PATHS

# ------------------------------- CSV readers --------------------------------

def _read_csv(path: str) -> pd.DataFrame:
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")
    return pd.read_csv(path)

def _age_col(df: pd.DataFrame, path: str) -> str:
    col = _find_col(df, ["age"]) or _find_col(df, ["edad"])
    if col is None:
        raise KeyError(f"No age column in {path}; columns: {list(df.columns)}")
    return col

def _sex_cols(df: pd.DataFrame):
    """
    Return (male_col, female_col) for a wide frame, or (None, None).

    'female' contains 'male', so the female column is found first and excluded.
    """
    female = _find_col(df, ["female"]) or _find_col(df, ["mujer"])
    rest = df.drop(columns=[female]) if female is not None else df
    male = _find_col(rest, ["male"]) or _find_col(rest, ["hombre"])
    if male is None or female is None:
        return None, None
    return male, female

def load_population_csv(path: str, year: int | None = None, max_age: int = MAX_AGE) -> CohortMatrix:
    """
    Read the base population into a CohortMatrix.

    Accepts a wide file (age, male, female) or a long one (age, sex, population).
    Labels such as '110+' or '85-89' are mapped to their lower age bound; ages
    above max_age are folded into the open bucket.
    """
    df = _read_csv(path)
    age = _age_col(df, path)
    male, female = _sex_cols(df)
    if male is None:
        sex = _find_col(df, ["sex"]) or _find_col(df, ["sexo"])
        val = (_find_col(df, ["pop"]) or _find_col(df, ["count"])
               or _find_col(df, ["value"]) or _find_col(df, ["valor"]))
        if sex is None or val is None:
            raise InvalidCohortError(
                f"{path}: need (age, male, female) or (age, sex, population) columns."
            )
        long = pd.DataFrame({
            "age": df[age],
            "sex": df[sex].map(_normalize_sex),
            "value": pd.to_numeric(df[val], errors="coerce").fillna(0.0),
        })
        wide = (long.pivot_table(index="age", columns="sex", values="value", aggfunc="sum")
                    .reindex(columns=["male", "female"]).fillna(0.0).reset_index())
    else:
        wide = pd.DataFrame({
            "age": df[age],
            "male": pd.to_numeric(df[male], errors="coerce").fillna(0.0),
            "female": pd.to_numeric(df[female], errors="coerce").fillna(0.0),
        })
    yr_col = _find_col(df, ["year"])
    if year is None and yr_col is not None and df[yr_col].nunique() == 1:
        year = int(df[yr_col].iloc[0])
    return CohortMatrix.from_records(wide.to_dict("records"), year=year, max_age=max_age)

def load_mortality_csv(path: str) -> pd.DataFrame:
    """
    Read qx by single age. Columns: age plus either qx (both sexes) or
    male/female (qx_male, qx_female, ...). Returns the normalized mortality table.
    """
    df = _read_csv(path)
    age = _age_col(df, path)
    male, female = _sex_cols(df)
    if male is not None:
        out = pd.DataFrame({"age": df[age], "male": df[male], "female": df[female]})
    else:
        qx = _find_col(df, ["qx"])
        if qx is None:
            raise InvalidRateError(f"{path}: need a qx column or male/female qx columns.")
        out = pd.DataFrame({"age": df[age], "qx": df[qx]})
    return mortality_table(out)

def load_fertility_csv(path: str) -> pd.DataFrame:
    """
    Read age-specific fertility rates (age, asfr|rate). Labels like '15-19' are
    mapped to their lower bound, so abridged input should be split beforehand.
    """
    df = _read_csv(path)
    age = _age_col(df, path)
    rate = _find_col(df, ["asfr"]) or _find_col(df, ["rate"]) or _find_col(df, ["fert"])
    if rate is None:
        raise InvalidRateError(f"{path}: need an asfr/rate column.")
    return fertility_table(pd.DataFrame({"age": df[age], "rate": df[rate]}))

def load_migration_csv(path: str) -> pd.DataFrame:
    """
    Read net migration counts, long (age, sex, net[, region][, year]) or wide
    (age, male, female[, region][, year]). Returns the long entry frame.
    """
    df = _read_csv(path)
    age = _age_col(df, path)
    out = pd.DataFrame({"age": df[age].map(_age_from_label)})
    for key, names in (("region", ["region", "dpto"]), ("year", ["year", "ano"])):
        for name in names:
            col = _find_col(df, [name])
            if col is not None:
                out[key] = df[col]
                break
    male, female = _sex_cols(df)
    if male is not None:
        out["male"] = df[male]
        out["female"] = df[female]
    else:
        sex = _find_col(df, ["sex"])
        net = _find_col(df, ["net"]) or _find_col(df, ["count"]) or _find_col(df, ["value"])
        if sex is None or net is None:
            raise KeyError(f"{path}: need (age, sex, net) or (age, male, female) columns.")
        out["sex"] = df[sex]
        out["net_count"] = df[net]
    return migration_frame(out)

# ------------------------------- Scenarios ----------------------------------

def load_scenarios(path: str) -> dict:
    """
    Read shock scenarios from YAML.

    Layout::

        scenarios:
          pandemic:
            - {template: pandemic-moderate, start_year: 2025, end_year: 2026}
          emigration:
            - {component: migration, start_year: 2025, end_year: 2030,
               ages: {min: 20, max: 40}, additive: -500}

    A list of {name, shocks} mappings is accepted too. Returns
    {scenario name: [Shock, ...]} in file order; an absent file gives {}.
    """
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        doc = yaml.safe_load(fh) or {}
    raw = doc.get("scenarios", doc) if isinstance(doc, dict) else doc
    if isinstance(raw, list):
        raw = {str(item.get("name", f"scenario_{i}")): item.get("shocks", [])
               for i, item in enumerate(raw)}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: scenarios must be a mapping or a list.")
    scenarios = {}
    for name, shocks in raw.items():
        scenarios[str(name)] = [shock_from_dict(s) for s in (shocks or [])]
    return scenarios
