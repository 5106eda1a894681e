"""Configuration for the panel-to-survival risk index analyses."""

from __future__ import annotations

import os
from pathlib import Path

CHANGE_LOG = [
    "2026-10-17: Quartile cells always use Q1 as reference and fail when Q1 is empty or only one level remains.",
    "2026-10-17: Serialised warning-filter sections across grid workers; timed-out pooled cells no longer delay the run.",
    "2026-10-14: Added per-table attempted/succeeded grid summary so skipped cells are visible in REPORT.md.",
    "2026-10-13: Added cancellation and per-cell time budget to the model grid worker pool.",
    "2026-10-12: Added time-dependent AUC for endpoints with competing predictor models.",
    "2026-10-12: Added PH assumption tests per coefficient using Schoenfeld residuals (rank transform).",
    "2026-10-10: Added sensitivity grids (quartile predictor, complete-case, early-event exclusion).",
    "2026-10-09: Replaced per-subject in-place event edits with a grouped fold producing immutable event records.",
    "2026-10-08: Split panel reduction, event derivation and model grid into separate modules.",
]

ASSUMPTIONS = [
    "Time origin is the first observed wave of each subject, whatever its covariate completeness.",
    "Elapsed time uses (year + month/12) differences without day-level precision.",
    "A condition flag that is missing at a wave never counts as a positive report.",
    "Subjects positive at their first wave keep duration=0/event=1 in the event table and are excluded from Cox fits.",
    "Imputation is a single chained-equation completion of the reference records; event columns are never imputed.",
    "Continuous predictors are standardised so hazard ratios are per 1 SD; quartile models use Q1 as reference.",
]

CONDITIONS = [
    "hibpe",
    "diabe",
    "cancre",
    "lunge",
    "hearte",
    "stroke",
    "psyche",
    "arthre",
    "dyslipe",
    "livere",
    "kidneye",
    "digeste",
    "asthmae",
    "memrye",
]

COVARIATES = [
    "age",
    "gender",
    "edu",
    "marry",
    "rural",
    "smoken",
    "drinkl",
    "bmi",
    "waist",
    "height",
    "sbp",
    "dbp",
    "tg",
    "glucose",
    "hdl",
    "ldl",
    "tc",
]

CONFIG = {
    "panel_path": os.environ.get("PANEL_DATA_PATH", "").strip(),
    "subject_col": "ID",
    "wave_col": "wave",
    "year_col": "iyear",
    "month_col": "imonth",
    # Fields carried from the panel into the reference record.
    "reference_fields": [*COVARIATES, *CONDITIONS],
    "conditions": list(CONDITIONS),
    "duration_suffix": "_time",
    "event_suffix": "_event",
    "age_col": "age",
    "age_min": 45,
    "required_fields": ["age", "gender", "tg", "glucose"],
    "variable_types": {
        "age": "continuous",
        "gender": "binary",
        "edu": "categorical",
        "marry": "binary",
        "rural": "binary",
        "smoken": "binary",
        "drinkl": "binary",
        "bmi": "continuous",
        "waist": "continuous",
        "height": "continuous",
        "sbp": "continuous",
        "dbp": "continuous",
        "tg": "continuous",
        "glucose": "continuous",
        "hdl": "continuous",
        "ldl": "continuous",
        "tc": "continuous",
    },
    "imputation_max_iter": 10,
    "random_seed": 42,
    # Evaluated in order; later formulas may use earlier results.
    "feature_formulas": {
        "tyg": "log(tg * glucose / 2)",
        "tyg_bmi": "tyg * bmi",
        "tyg_wc": "tyg * waist",
        "tyg_whtr": "tyg * waist / height",
    },
    "predictors": ["tyg", "tyg_bmi", "tyg_wc", "tyg_whtr"],
    "predictor_winsor_quantiles": (0.005, 0.995),
    "standardize_predictors": True,
    "quartile_suffix": "_q4",
    "adjustment_sets": {
        "model_1": ["age", "gender"],
        "model_2": ["age", "gender", "edu", "marry", "rural", "smoken", "drinkl"],
        "model_3": ["age", "gender", "edu", "marry", "rural", "smoken", "drinkl", "sbp", "hdl", "ldl"],
    },
    "categorical_covariates": ["edu"],
    "cox_penalizer": 0.0,
    "cox_exclude_nonpositive_duration": True,
    "cox_phreg_fallback": True,
    "min_events_per_cell": 5,
    "min_nonevents_per_cell": 5,
    "ci_level": 0.95,
    "td_auc_horizons": [2.0, 4.0, 7.0],
    "performance_model": "model_1",
    "significance_threshold": 0.05,
    "significance_model": "model_3",
    "ph_assumption_alpha": 0.05,
    "sensitivity_scenarios": ["quartile", "complete_case", "exclude_early_events"],
    "early_event_years": 2.0,
    "max_workers": int(os.environ.get("GRID_MAX_WORKERS", min(8, os.cpu_count() or 1))),
    "cell_timeout_seconds": (
        float(os.environ["GRID_CELL_TIMEOUT_SECONDS"]) if os.environ.get("GRID_CELL_TIMEOUT_SECONDS") else None
    ),
    "print_tables": False,
    "print_table_max_rows": 30,
    "output_dir": os.environ.get(
        "PANEL_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "panel_survival_outputs"),
    ),
}

SENSITIVITY_SCENARIOS = ("quartile", "complete_case", "exclude_early_events")

REQUIRED_OUTPUT_FILES = [
    "cohort_flow.csv",
    "regression_results.csv",
    "sensitivity_results.csv",
    "performance_results.csv",
    "assumption_results.csv",
    "grid_summary.csv",
    "grid_failures.csv",
    "best_predictors.csv",
    "significant_pairs.csv",
    "REPORT.md",
]


def validate_config(config: dict | None = None, *, require_input: bool = True) -> None:
    config = CONFIG if config is None else config
    if require_input and not config.get("panel_path"):
        raise ValueError("PANEL_DATA_PATH is empty. Set PANEL_DATA_PATH before running.")
    for key in ("predictors", "conditions", "adjustment_sets"):
        if not config.get(key):
            raise ValueError(f"Config key '{key}' must not be empty.")
    unknown = [s for s in config.get("sensitivity_scenarios", []) if s not in SENSITIVITY_SCENARIOS]
    if unknown:
        raise ValueError(f"Unknown sensitivity scenarios: {', '.join(unknown)}")


def ensure_output_dir(config: dict | None = None) -> Path:
    config = CONFIG if config is None else config
    out_dir = Path(config["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
