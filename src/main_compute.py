# ------------------------------------------------------------------------------
# Cohort-component projection pipeline with scenario shocks.
# - Loads the base population, single-year qx (by sex), ASFR and net migration
#   from the CSVs named in config.yaml, and shock scenarios from YAML.
# - Runs the baseline plus every scenario, optionally in a process Pool.
# - Writes one age-structure CSV and one CSV per derived metric per scenario.
# - Single global TQDM progress bar over scenarios.
#
# `handle_projection_request` is the function-call seam used by a surrounding
# service: request dict in, flat response dict out, no transport.
# ------------------------------------------------------------------------------


from __future__ import annotations
from typing import Optional, List
import os
import time
import logging
import pandas as pd
from tqdm import tqdm
from multiprocessing import Pool

from cohorts import MAX_AGE, CohortMatrix
from data_loaders import (
    _get_base_dir,
    _load_config,
    load_population_csv,
    load_mortality_csv,
    load_fertility_csv,
    load_migration_csv,
    load_scenarios,
)
from exceptions import ProjectionError
from fertility import SEX_RATIO_AT_BIRTH, validate_asfr
from helpers import _coerce_list, to_export_frame
from metrics import derive
from mortality import INFANT_SEPARATION, RADIX
from projections import ProjectionRun, RunState, save_metrics, save_projection
from rates import RateTables
from shocks import shock_from_dict

logger = logging.getLogger(__name__)

# ------------------------------- Config loading -------------------------------
ROOT_DIR = os.path.abspath(os.path.join(_get_base_dir(), ".."))
CONFIG_PATH = os.path.join(ROOT_DIR, "config.yaml")

DEFAULT_TIMEOUT_SECONDS = 60.0


# ------------------------------ Request handler ------------------------------
def _cohorts_from_request(request: dict, max_age: int) -> CohortMatrix:
    base = request.get("cohorts", request.get("population"))
    if base is None:
        raise ValueError("Request has no 'cohorts'.")
    if isinstance(base, CohortMatrix):
        return base
    if isinstance(base, pd.DataFrame):
        return CohortMatrix.from_frame(base, max_age=max_age)
    return CohortMatrix.from_records(base, max_age=max_age)


def _response(success: bool, state: str, done: int, requested: int,
              error: Optional[dict] = None, metrics: Optional[dict] = None,
              projection: Optional[list] = None) -> dict:
    return {
        "success": success,
        "state": state,
        "years_completed": done,
        "years_requested": requested,
        "error": error,
        "metrics": metrics or {},
        "projection": projection or [],
    }


def _records(df: pd.DataFrame, decimals) -> list:
    return to_export_frame(df, decimals).to_dict("records")


def handle_projection_request(request: dict, *, cancel_event=None,
                              timeout: Optional[float] = None) -> dict:
    """
    Run one projection from a plain request mapping.

    Request keys
    ------------
    cohorts        : records [{age, male, female}, ...] or a CohortMatrix
    mortality      : records [{age, qx}] or [{age, male, female}]
    fertility      : records [{age, rate}] (may be empty)
    migration      : records [{age, sex, net_count[, region][, year]}] (optional)
    shocks         : list of shock mappings (see shocks.shock_from_dict)
    base_year, horizon, sex_ratio_at_birth, max_age (optional)
    metrics        : names to derive (default: all); birth_year for cohort tracking
    decimals       : rounding for the flat output rows (default 2)

    Returns a response whose `projection` and `metrics` values are lists of
    flat rows. Validation errors give success=False with years_completed=0;
    a mid-run failure or a timeout keeps the years already computed.
    """
    horizon = int(request.get("horizon", 0) or 0)
    decimals = request.get("decimals", 2)
    timeout = DEFAULT_TIMEOUT_SECONDS if timeout is None else timeout
    deadline = time.monotonic() + float(timeout) if timeout else None

    try:
        max_age = int(request.get("max_age", MAX_AGE))
        initial = _cohorts_from_request(request, max_age)
        rates = RateTables(
            mortality=request["mortality"],
            fertility=request.get("fertility", []),
            migration=request.get("migration"),
        )
        shocks = [shock_from_dict(s) for s in request.get("shocks", []) or []]
        run = ProjectionRun(
            initial, rates, shocks,
            base_year=int(request.get("base_year", initial.year or 0)),
            horizon=horizon,
            sex_ratio_at_birth=float(request.get("sex_ratio_at_birth", SEX_RATIO_AT_BIRTH)),
            cancel_event=cancel_event,
            deadline=deadline,
        )
    except (ProjectionError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Rejected projection request: %s", exc)
        return _response(False, RunState.FAILED.value, 0, horizon,
                         error={"type": type(exc).__name__, "message": str(exc)})

    result = run.run()
    error = None
    if result.failure is not None:
        error = {"type": type(result.failure).__name__, "message": str(result.failure)}
    elif result.state is RunState.CANCELLED:
        error = {"type": "ProjectionCancelled",
                 "message": f"Stopped after {result.completed_years} of {horizon} years."}

    frames = derive(result, request.get("metrics"), request.get("birth_year"))
    return _response(
        result.ok, result.state.value, result.completed_years, horizon,
        error=error,
        metrics={name: _records(df, decimals) for name, df in frames.items()},
        projection=_records(result.to_frame(), decimals),
    )


# ------------------------------- Batch runner --------------------------------
def _load_inputs(cfg: dict, PATHS: dict) -> dict:
    proj = cfg["projections"]
    max_age = int(proj.get("max_age", MAX_AGE))
    population = load_population_csv(PATHS["population_csv"], year=int(proj["base_year"]),
                                     max_age=max_age)
    mortality = load_mortality_csv(PATHS["mortality_csv"])
    fertility = load_fertility_csv(PATHS["fertility_csv"])
    if os.path.exists(PATHS["migration_csv"]):
        migration = load_migration_csv(PATHS["migration_csv"])
        print(f"[migration] {len(migration)} entries loaded from {PATHS['migration_csv']}.")
    else:
        migration = None
        print(f"[migration] No migration CSV found (expected at {PATHS['migration_csv']}); closed population.")

    if bool(cfg.get("diagnostics", {}).get("validate_asfr", True)):
        validate_asfr(fertility["rate"], warnings_only=True)

    return {
        "population": population,
        "rates": RateTables(mortality=mortality, fertility=fertility, migration=migration),
    }


def _execute_scenario(task: dict) -> dict:
    """Run one scenario and write its outputs. Returns a summary row."""
    cfg, PATHS = task["cfg"], task["PATHS"]
    proj, met = cfg["projections"], cfg["metrics"]
    label = task["label"]
    timeout = proj.get("timeout_seconds")

    run = ProjectionRun(
        task["population"], task["rates"], task["shocks"],
        base_year=int(proj["base_year"]),
        horizon=int(proj["horizon"]),
        sex_ratio_at_birth=float(proj.get("sex_ratio_at_birth", SEX_RATIO_AT_BIRTH)),
        radix=float(proj.get("radix", RADIX)),
        a0=float(proj.get("infant_separation", INFANT_SEPARATION)),
        deadline=time.monotonic() + float(timeout) if timeout else None,
    )
    result = run.run()

    decimals = met.get("decimals", 2)
    birth_years = _coerce_list(met.get("birth_years")) or None
    frames = derive(result, met.get("requested"), birth_years)
    save_projection(result, PATHS["results_dir"], label, decimals)
    save_metrics(frames, PATHS["results_dir"], label, decimals)

    return {
        "scenario": label,
        "state": result.state.value,
        "years_completed": result.completed_years,
        "shocks": len(task["shocks"]),
        "warnings": len(result.warnings),
        "final_population": result.years[-1].cohorts.total,
        "error": "" if result.failure is None else str(result.failure),
    }


def run_scenarios(cfg: dict, PATHS: dict) -> pd.DataFrame:
    """
    Baseline plus every YAML scenario; returns (and saves) a one-row-per-scenario summary.
    """
    inputs = _load_inputs(cfg, PATHS)
    scenarios = load_scenarios(PATHS["scenarios_yaml"])
    print(f"[scenarios] {len(scenarios)} scenario(s) loaded from {PATHS['scenarios_yaml']}.")

    tasks: List[dict] = []
    if bool(cfg.get("runs", {}).get("baseline", True)):
        scenarios = {"baseline": [], **scenarios}
    for label, shocks in scenarios.items():
        tasks.append({"cfg": cfg, "PATHS": PATHS, "label": label, "shocks": shocks, **inputs})

    os.makedirs(PATHS["results_dir"], exist_ok=True)
    PROCS = max(1, int(cfg.get("runs", {}).get("processes", 1)))
    rows: List[dict] = []
    with tqdm(total=len(tasks), desc="Projection scenarios", unit="scenario") as pbar:
        if PROCS > 1 and len(tasks) > 1:
            with Pool(PROCS) as pool:
                for row in pool.imap_unordered(_execute_scenario, tasks):
                    rows.append(row)
                    pbar.set_postfix({"last": row["scenario"]})
                    pbar.update(1)
        else:
            for task in tasks:
                row = _execute_scenario(task)
                rows.append(row)
                pbar.set_postfix({"last": row["scenario"]})
                pbar.update(1)

    summary = pd.DataFrame(rows).sort_values("scenario", kind="mergesort").reset_index(drop=True)
    summary.to_csv(os.path.join(PATHS["results_dir"], "scenario_summary.csv"), index=False)
    return summary


def main(config_path: Optional[str] = None) -> pd.DataFrame:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    cfg, PATHS = _load_config(ROOT_DIR, config_path or CONFIG_PATH)
    proj = cfg["projections"]
    print(f"[pipeline] Projecting {proj['horizon']} years from {proj['base_year']} "
          f"(single-year ages 0..{proj.get('max_age', MAX_AGE)}+).")
    summary = run_scenarios(cfg, PATHS)
    failed = summary[summary["state"] != RunState.COMPLETED.value]
    for _, row in failed.iterrows():
        print(f"[pipeline] Scenario {row['scenario']} {row['state']}: {row['error']}")
    print(f"[output] Results saved in {PATHS['results_dir']}")
    return summary


if __name__ == "__main__":
    main()
