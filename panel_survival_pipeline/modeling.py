"""Cox proportional-hazards cells: model frames, fitting backends and hazard-ratio rows."""

from __future__ import annotations

import logging
import math
import threading
import warnings
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError, ConvergenceWarning
from scipy.stats import norm
from statsmodels.duration.hazard_regression import PHReg
from statsmodels.tools.sm_exceptions import ConvergenceWarning as SMConvergenceWarning

from .errors import FitFailure, SchemaGapError
from .grid import CellResult, ModelSpec

TERM_SEP = "__"

# Library calls that swap the process-wide warnings filter list run under this lock.
WARNINGS_LOCK = threading.Lock()


@dataclass(frozen=True)
class CoxFit:
    params: pd.Series
    covariance: pd.DataFrame
    converged: bool
    data: pd.DataFrame
    duration_col: str
    event_col: str
    backend: str
    model: Any = None

    @property
    def n(self) -> int:
        return int(len(self.data))

    @property
    def events(self) -> int:
        return int(self.data[self.event_col].sum())

    def standard_errors(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.covariance.to_numpy(dtype=float))), index=self.params.index)

    def risk_score(self, frame: pd.DataFrame | None = None) -> np.ndarray:
        frame = self.data if frame is None else frame
        design = frame[list(self.params.index)].to_numpy(dtype=float)
        return design @ self.params.to_numpy(dtype=float)


@dataclass(frozen=True)
class FittedCell:
    fit: CoxFit
    predictor_terms: dict[str, str]


@dataclass(frozen=True)
class ModelFrame:
    frame: pd.DataFrame
    duration_col: str
    event_col: str
    predictor_terms: dict[str, str]
    covariate_terms: list[str]

    @property
    def terms(self) -> list[str]:
        return [*self.predictor_terms, *self.covariate_terms]


def endpoint_columns(endpoint: str, config: dict) -> tuple[str, str]:
    return (
        f"{endpoint}{config.get('duration_suffix', '_time')}",
        f"{endpoint}{config.get('event_suffix', '_event')}",
    )


def predictor_column(spec: ModelSpec, config: dict) -> str:
    if spec.categorical:
        return f"{spec.predictor}{config.get('quartile_suffix', '_q4')}"
    return spec.predictor


def _two_sided_p_from_z(z_value: float) -> float:
    if not np.isfinite(z_value):
        return np.nan
    return float(math.erfc(abs(float(z_value)) / math.sqrt(2.0)))


def _check_rank(design: pd.DataFrame, label: str) -> None:
    if design.shape[1] == 0:
        raise FitFailure(f"{label}: empty design")
    values = design.to_numpy(dtype=float)
    # Cox has no intercept; centring exposes constant columns as rank loss too.
    centred = values - values.mean(axis=0)
    rank = int(np.linalg.matrix_rank(centred))
    if rank < design.shape[1]:
        raise FitFailure(f"{label}: rank-deficient design (rank {rank} < {design.shape[1]} terms)")


def prepare_model_frame(data: pd.DataFrame, spec: ModelSpec, config: dict) -> ModelFrame:
    duration_col, event_col = endpoint_columns(spec.endpoint, config)
    pred_col = predictor_column(spec, config)
    covariates = list(spec.adjustment.covariates)
    required = list(dict.fromkeys([duration_col, event_col, pred_col, *covariates]))
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise SchemaGapError(spec.cell_id, missing)

    frame = data[required].dropna().copy()
    frame[duration_col] = pd.to_numeric(frame[duration_col], errors="coerce").astype(float)
    frame[event_col] = pd.to_numeric(frame[event_col], errors="coerce").fillna(0).astype(int)
    if bool(config.get("cox_exclude_nonpositive_duration", True)):
        frame = frame.loc[frame[duration_col] > 0]

    parts: list[pd.DataFrame] = [frame[[duration_col, event_col]]]
    predictor_terms: dict[str, str] = {}
    if spec.categorical:
        levels = frame[pred_col].astype("category")
        reference = levels.cat.categories[0] if len(levels.cat.categories) else None
        if reference is None or not (levels == reference).any():
            raise FitFailure(f"{spec.cell_id}: no subjects in reference level {reference}")
        levels = levels.cat.remove_unused_categories()
        dummies = pd.get_dummies(levels, prefix=pred_col, prefix_sep=TERM_SEP, dtype=float)
        dummies = dummies.drop(columns=f"{pred_col}{TERM_SEP}{reference}")
        for term in dummies.columns:
            predictor_terms[term] = term.split(TERM_SEP, 1)[1]
        parts.append(dummies)
    else:
        x = pd.to_numeric(frame[pred_col], errors="coerce").astype(float)
        group = "per_unit"
        if bool(config.get("standardize_predictors", True)):
            sd = float(x.std(ddof=1)) if len(x) > 1 else 0.0
            if sd > 0:
                x = (x - x.mean()) / sd
                group = "per_SD"
        predictor_terms[pred_col] = group
        parts.append(x.to_frame(pred_col))

    if not predictor_terms:
        raise FitFailure(f"{spec.cell_id}: predictor has fewer than two levels")

    categorical = set(config.get("categorical_covariates", []))
    covariate_terms: list[str] = []
    for cov in covariates:
        if cov == pred_col:
            covariate_terms.append(f"{cov}{TERM_SEP}adj")
            parts.append(frame[[cov]].astype(float).rename(columns={cov: f"{cov}{TERM_SEP}adj"}))
        elif cov in categorical:
            levels = frame[cov].astype("category").cat.remove_unused_categories()
            dummies = pd.get_dummies(levels, prefix=cov, prefix_sep=TERM_SEP, drop_first=True, dtype=float)
            covariate_terms.extend(dummies.columns)
            parts.append(dummies)
        else:
            covariate_terms.append(cov)
            parts.append(pd.to_numeric(frame[cov], errors="coerce").astype(float).to_frame(cov))

    model_df = pd.concat(parts, axis=1)

    n = int(len(model_df))
    events = int(model_df[event_col].sum())
    min_events = int(config.get("min_events_per_cell", 5))
    min_nonevents = int(config.get("min_nonevents_per_cell", 5))
    if events < max(min_events, 1):
        raise FitFailure(f"{spec.cell_id}: too few events ({events} < {max(min_events, 1)}; n={n})")
    if n - events < min_nonevents:
        raise FitFailure(f"{spec.cell_id}: too few non-events ({n - events} < {min_nonevents})")

    _check_rank(model_df[[*predictor_terms, *covariate_terms]], spec.cell_id)
    return ModelFrame(
        frame=model_df.reset_index(drop=True),
        duration_col=duration_col,
        event_col=event_col,
        predictor_terms=predictor_terms,
        covariate_terms=covariate_terms,
    )


def _fit_phreg(
    frame: pd.DataFrame,
    *,
    duration_col: str,
    event_col: str,
    covariates: list[str],
) -> CoxFit:
    endog = frame[duration_col].to_numpy(dtype=float)
    status = frame[event_col].to_numpy(dtype=int)
    exog = frame[covariates].to_numpy(dtype=float)
    try:
        with WARNINGS_LOCK, warnings.catch_warnings():
            warnings.filterwarnings("error", category=SMConvergenceWarning)
            res = PHReg(endog=endog, exog=exog, status=status, ties="breslow").fit()
    except (np.linalg.LinAlgError, SMConvergenceWarning, ValueError) as exc:
        raise FitFailure(f"PHReg fit failed: {exc}") from exc

    params = pd.Series(np.asarray(res.params, dtype=float), index=covariates)
    cov = pd.DataFrame(np.asarray(res.cov_params(), dtype=float), index=covariates, columns=covariates)
    retvals = getattr(res, "mle_retvals", None)
    converged = bool(retvals.get("converged", True)) if isinstance(retvals, dict) else True
    if not np.all(np.isfinite(params)) or not np.all(np.isfinite(np.diag(cov))):
        raise FitFailure("PHReg fit produced non-finite estimates")
    return CoxFit(
        params=params,
        covariance=cov,
        converged=converged,
        data=frame[[duration_col, event_col, *covariates]].copy(),
        duration_col=duration_col,
        event_col=event_col,
        backend="statsmodels_phreg",
        model=res,
    )


def fit_proportional_hazards(
    frame: pd.DataFrame,
    *,
    duration_col: str,
    event_col: str,
    covariates: list[str],
    penalizer: float = 0.0,
    fallback: bool = True,
) -> CoxFit:
    """Fit a Cox model with lifelines, retrying with statsmodels PHReg when lifelines fails."""
    model_df = frame[[duration_col, event_col, *covariates]].copy()
    cph = CoxPHFitter(penalizer=float(penalizer))
    try:
        with WARNINGS_LOCK, warnings.catch_warnings():
            warnings.filterwarnings("error", category=ConvergenceWarning)
            cph.fit(model_df, duration_col=duration_col, event_col=event_col)
    except (ConvergenceError, ConvergenceWarning, np.linalg.LinAlgError, ValueError) as exc:
        if not fallback:
            raise FitFailure(f"lifelines Cox fit failed: {exc}") from exc
        logging.info("lifelines Cox fit failed (%s); retrying with PHReg", exc)
        return _fit_phreg(model_df, duration_col=duration_col, event_col=event_col, covariates=covariates)

    params = cph.params_.reindex(covariates).astype(float)
    cov = cph.variance_matrix_.reindex(index=covariates, columns=covariates).astype(float)
    if not np.all(np.isfinite(params)) or not np.all(np.isfinite(np.diag(cov))):
        raise FitFailure("lifelines Cox fit produced non-finite estimates")
    return CoxFit(
        params=params,
        covariance=cov,
        converged=True,
        data=model_df,
        duration_col=duration_col,
        event_col=event_col,
        backend="lifelines",
        model=cph,
    )


def hazard_ratio_rows(
    fit: CoxFit,
    spec: ModelSpec,
    model_frame: ModelFrame,
    *,
    analysis: str,
    ci_level: float = 0.95,
) -> list[dict[str, object]]:
    z = float(norm.ppf(0.5 + ci_level / 2.0))
    se = fit.standard_errors()
    rows: list[dict[str, object]] = []
    for term, group in model_frame.predictor_terms.items():
        coef = float(fit.params[term])
        std_error = float(se[term])
        rows.append(
            {
                "analysis": analysis,
                "predictor": spec.predictor,
                "endpoint": spec.endpoint,
                "model": spec.adjustment.name,
                "group": group,
                "term": term,
                "coef": coef,
                "std_error": std_error,
                "hr": float(np.exp(coef)),
                "ci_low": float(np.exp(coef - z * std_error)),
                "ci_high": float(np.exp(coef + z * std_error)),
                "p_value": _two_sided_p_from_z(coef / std_error) if std_error > 0 else np.nan,
                "n": fit.n,
                "events": fit.events,
                "covariates": ",".join(spec.adjustment.covariates),
                "backend": fit.backend,
            }
        )
    return rows


Fitter = Callable[..., CoxFit]


def make_cox_cell(
    data: pd.DataFrame,
    config: dict,
    *,
    analysis: str = "main",
    fitter: Fitter = fit_proportional_hazards,
) -> Callable[[ModelSpec], CellResult]:
    """Build the per-cell function; ``data`` is shared read-only across cells."""
    penalizer = float(config.get("cox_penalizer", 0.0))
    fallback = bool(config.get("cox_phreg_fallback", True))
    ci_level = float(config.get("ci_level", 0.95))

    def cell(spec: ModelSpec) -> CellResult:
        mf = prepare_model_frame(data, spec, config)
        fit = fitter(
            mf.frame,
            duration_col=mf.duration_col,
            event_col=mf.event_col,
            covariates=mf.terms,
            penalizer=penalizer,
            fallback=fallback,
        )
        if not fit.converged:
            raise FitFailure(f"{spec.cell_id}: {fit.backend} did not converge")
        rows = hazard_ratio_rows(fit, spec, mf, analysis=analysis, ci_level=ci_level)
        return CellResult(rows=rows, payload=FittedCell(fit=fit, predictor_terms=dict(mf.predictor_terms)))

    return cell
