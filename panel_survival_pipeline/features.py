"""Derived risk-index features and predictor groupings."""

from __future__ import annotations

import logging
import re
from typing import Iterable

import numpy as np
import pandas as pd

QUARTILE_LABELS = ["Q1", "Q2", "Q3", "Q4"]

_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_EVAL_FUNCTIONS = {"log", "exp", "sqrt", "abs", "log1p", "expm1"}


def _safe_numeric(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    out = df.copy()
    for col in cols:
        if col in out.columns:
            out[col] = pd.to_numeric(out[col], errors="coerce")
    return out


def _winsorize_series(series: pd.Series, lower_q: float, upper_q: float) -> pd.Series:
    out = pd.to_numeric(series, errors="coerce").astype(float).copy()
    non_null = out.dropna()
    if non_null.empty:
        return out
    lo = float(non_null.quantile(lower_q))
    hi = float(non_null.quantile(upper_q))
    return out.clip(lower=lo, upper=hi)


def formula_inputs(expr: str) -> list[str]:
    return [name for name in _NAME_PATTERN.findall(expr) if name not in _EVAL_FUNCTIONS]


def add_derived_features(
    df: pd.DataFrame,
    formulas: dict[str, str],
    notes: list[str] | None = None,
) -> pd.DataFrame:
    out = df.copy()
    for name, expr in formulas.items():
        inputs = formula_inputs(expr)
        missing = [c for c in inputs if c not in out.columns]
        if missing:
            msg = f"Feature '{name}' skipped: missing inputs {', '.join(missing)}."
            logging.warning(msg)
            if notes is not None:
                notes.append(msg)
            continue
        out = _safe_numeric(out, inputs)
        with np.errstate(divide="ignore", invalid="ignore"):
            values = pd.to_numeric(out.eval(expr), errors="coerce")
        out[name] = values.replace([np.inf, -np.inf], np.nan)
    return out


def winsorize_columns(
    df: pd.DataFrame,
    columns: Iterable[str],
    quantiles: tuple[float, float] | None,
) -> pd.DataFrame:
    if not quantiles:
        return df.copy()
    out = df.copy()
    low_q, high_q = quantiles
    for col in columns:
        if col in out.columns:
            out[col] = _winsorize_series(out[col], float(low_q), float(high_q))
    return out


def add_quartile_groups(df: pd.DataFrame, columns: Iterable[str], suffix: str = "_q4") -> pd.DataFrame:
    out = df.copy()
    for col in columns:
        if col not in out.columns:
            continue
        values = pd.to_numeric(out[col], errors="coerce")
        if values.nunique() < len(QUARTILE_LABELS):
            logging.warning("add_quartile_groups: '%s' has too few distinct values for quartiles", col)
            continue
        try:
            out[f"{col}{suffix}"] = pd.qcut(values, q=4, labels=QUARTILE_LABELS)
        except ValueError as exc:
            logging.warning("add_quartile_groups: '%s' quartile edges not unique (%s)", col, exc)
    return out


def prepare_analysis_dataset(df: pd.DataFrame, config: dict, notes: list[str] | None = None) -> pd.DataFrame:
    out = add_derived_features(df, config.get("feature_formulas", {}), notes=notes)
    predictors = [p for p in config["predictors"] if p in out.columns]
    out = winsorize_columns(out, predictors, config.get("predictor_winsor_quantiles"))
    out = add_quartile_groups(out, predictors, suffix=config.get("quartile_suffix", "_q4"))
    return out
