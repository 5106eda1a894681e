"""Merge grid outputs into tidy result tables and derived summaries."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .grid import FAILURE_COLUMNS, SUMMARY_COLUMNS, GridRun

REGRESSION_COLUMNS = [
    "analysis",
    "predictor",
    "endpoint",
    "model",
    "group",
    "term",
    "coef",
    "std_error",
    "hr",
    "ci_low",
    "ci_high",
    "p_value",
    "n",
    "events",
    "covariates",
    "backend",
]
PERFORMANCE_COLUMNS = [
    "analysis",
    "predictor",
    "endpoint",
    "model",
    "metric",
    "horizon",
    "estimate",
    "ci_low",
    "ci_high",
    "n",
    "events",
]
ASSUMPTION_COLUMNS = [
    "analysis",
    "predictor",
    "endpoint",
    "model",
    "term",
    "is_predictor_term",
    "statistic",
    "p_value",
    "assumption_met",
]
BEST_COLUMNS = ["endpoint", "predictor", "model", "estimate", "ci_low", "ci_high", "n", "events"]
SIGNIFICANT_COLUMNS = ["predictor", "endpoint", "model", "n_significant_groups", "min_p_value", "hr_at_min_p"]

TABLE_COLUMNS = {
    "regression": REGRESSION_COLUMNS,
    "sensitivity": REGRESSION_COLUMNS,
    "performance": PERFORMANCE_COLUMNS,
    "assumption": ASSUMPTION_COLUMNS,
}


@dataclass
class ResultTables:
    regression: pd.DataFrame
    sensitivity: pd.DataFrame
    performance: pd.DataFrame
    assumption: pd.DataFrame
    grid_summary: pd.DataFrame
    failures: pd.DataFrame
    best_predictors: pd.DataFrame
    significant_pairs: pd.DataFrame


def _merge_rows(runs: list[GridRun], columns: list[str]) -> pd.DataFrame:
    frames = [run.rows_frame() for run in runs]
    frames = [f for f in frames if not f.empty]
    if not frames:
        return pd.DataFrame(columns=columns)
    out = pd.concat(frames, ignore_index=True, sort=False)
    extra = [c for c in out.columns if c not in columns]
    return out[[*[c for c in columns if c in out.columns], *extra]]


def summarize_grids(runs: dict[str, list[GridRun]]) -> pd.DataFrame:
    rows = [run.summary_row(table) for table, table_runs in runs.items() for run in table_runs]
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def collect_failures(runs: dict[str, list[GridRun]]) -> pd.DataFrame:
    frames = [run.failures_frame() for table_runs in runs.values() for run in table_runs]
    frames = [f for f in frames if not f.empty]
    if not frames:
        return pd.DataFrame(columns=FAILURE_COLUMNS)
    return pd.concat(frames, ignore_index=True, sort=False)


def best_predictor_per_endpoint(
    performance: pd.DataFrame,
    *,
    metric: str = "c_index",
    model: str | None = None,
) -> pd.DataFrame:
    """Highest-scoring predictor per endpoint; ties go to the alphabetically first predictor."""
    if performance.empty or "metric" not in performance.columns:
        return pd.DataFrame(columns=BEST_COLUMNS)
    df = performance.loc[performance["metric"] == metric]
    if model is not None:
        df = df.loc[df["model"] == model]
    df = df.dropna(subset=["estimate"])
    if df.empty:
        return pd.DataFrame(columns=BEST_COLUMNS)
    ranked = df.sort_values(["endpoint", "estimate", "predictor"], ascending=[True, False, True], kind="mergesort")
    best = ranked.groupby("endpoint", sort=True).head(1)
    return best[BEST_COLUMNS].reset_index(drop=True)


def significant_pairs(
    regression: pd.DataFrame,
    *,
    threshold: float = 0.05,
    model: str | None = None,
) -> pd.DataFrame:
    """Distinct predictor/endpoint pairs with any coefficient of interest below ``threshold``."""
    if regression.empty or "p_value" not in regression.columns:
        return pd.DataFrame(columns=SIGNIFICANT_COLUMNS)
    df = regression.dropna(subset=["p_value"])
    if model is not None:
        df = df.loc[df["model"] == model]
    df = df.loc[df["p_value"] < float(threshold)]
    if df.empty:
        return pd.DataFrame(columns=SIGNIFICANT_COLUMNS)

    # Without a model filter a pair counts once however many adjustment sets reach significance.
    rows: list[dict[str, object]] = []
    for (predictor, endpoint), g in df.groupby(["predictor", "endpoint"], sort=True):
        top = g.loc[g["p_value"].idxmin()]
        rows.append(
            {
                "predictor": predictor,
                "endpoint": endpoint,
                "model": model if model is not None else ",".join(sorted(g["model"].astype(str).unique())),
                "n_significant_groups": int(len(g)),
                "min_p_value": float(top["p_value"]),
                "hr_at_min_p": float(top["hr"]) if "hr" in g.columns else np.nan,
            }
        )
    return pd.DataFrame(rows, columns=SIGNIFICANT_COLUMNS)


def build_result_tables(runs: dict[str, list[GridRun]], config: dict) -> ResultTables:
    tables = {name: _merge_rows(runs.get(name, []), cols) for name, cols in TABLE_COLUMNS.items()}
    best = best_predictor_per_endpoint(tables["performance"], model=config.get("performance_model"))
    significant = significant_pairs(
        tables["regression"],
        threshold=float(config.get("significance_threshold", 0.05)),
        model=config.get("significance_model"),
    )
    return ResultTables(
        regression=tables["regression"],
        sensitivity=tables["sensitivity"],
        performance=tables["performance"],
        assumption=tables["assumption"],
        grid_summary=summarize_grids(runs),
        failures=collect_failures(runs),
        best_predictors=best,
        significant_pairs=significant,
    )
