"""Discrimination and PH-assumption diagnostics for fitted grid cells."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import numpy as np
from lifelines.statistics import proportional_hazard_test
from lifelines.utils import concordance_index
from scipy.stats import norm
from sksurv.metrics import cumulative_dynamic_auc
from sksurv.util import Surv

from .errors import FitFailure
from .grid import CellOutcome, CellResult, GridRun, run_cells
from .modeling import WARNINGS_LOCK, CoxFit, FittedCell


@dataclass(frozen=True)
class TdAucSpec:
    endpoint: str
    predictor: str
    model: str
    source: CellOutcome

    @property
    def cell_id(self) -> str:
        return f"{self.predictor}|{self.endpoint}|{self.model}|td_auc"


def _z(ci_level: float) -> float:
    return float(norm.ppf(0.5 + ci_level / 2.0))


def concordance_with_ci(
    durations: Iterable[float],
    risk: Iterable[float],
    events: Iterable[int],
    *,
    n: int | None = None,
    ci_level: float = 0.95,
) -> tuple[float, float, float]:
    """Harrell's C where higher ``risk`` means earlier failure, with a normal-approximation CI.

    The lower bound is clipped into [0.5, 1.0] and the upper bound into [lower, 1.0],
    so the interval is never inverted when C falls below 0.5.
    """
    durations = np.asarray(list(durations), dtype=float)
    risk = np.asarray(list(risk), dtype=float)
    events = np.asarray(list(events), dtype=int)
    try:
        c_index = float(concordance_index(durations, -risk, events))
    except ZeroDivisionError as exc:
        raise FitFailure(f"concordance undefined: {exc}") from exc

    n = len(durations) if n is None else int(n)
    if n <= 0:
        raise FitFailure("concordance undefined for an empty sample")
    se = float(np.sqrt(max(c_index * (1.0 - c_index), 0.0) / n))
    half = _z(ci_level) * se
    ci_low = float(min(max(c_index - half, 0.5), 1.0))
    ci_high = float(max(min(c_index + half, 1.0), ci_low))
    return c_index, ci_low, ci_high


def _fitted(outcome: CellOutcome) -> FittedCell:
    payload = outcome.payload
    if not isinstance(payload, FittedCell):
        raise FitFailure(f"{outcome.cell_id}: no fitted model to evaluate")
    return payload


def make_concordance_cell(config: dict) -> Callable[[CellOutcome], CellResult]:
    ci_level = float(config.get("ci_level", 0.95))

    def cell(outcome: CellOutcome) -> CellResult:
        fit = _fitted(outcome).fit
        data = fit.data
        c_index, ci_low, ci_high = concordance_with_ci(
            data[fit.duration_col],
            fit.risk_score(),
            data[fit.event_col],
            ci_level=ci_level,
        )
        spec = outcome.spec
        row = {
            "analysis": "concordance",
            "predictor": spec.predictor,
            "endpoint": spec.endpoint,
            "model": spec.adjustment.name,
            "metric": "c_index",
            "horizon": np.nan,
            "estimate": c_index,
            "ci_low": ci_low,
            "ci_high": ci_high,
            "n": fit.n,
            "events": fit.events,
        }
        return CellResult(rows=[row])

    return cell


def time_dependent_auc(fit: CoxFit, horizons: Sequence[float]) -> list[tuple[float, float]]:
    times = fit.data[fit.duration_col].to_numpy(dtype=float)
    events = fit.data[fit.event_col].to_numpy(dtype=bool)
    usable = [float(h) for h in horizons if times.min() < float(h) < times.max()]
    if not usable:
        raise FitFailure(
            f"no AUC horizon inside follow-up ({times.min():.2f}, {times.max():.2f}); requested {list(horizons)}"
        )
    survival = Surv.from_arrays(event=events, time=times)
    try:
        with WARNINGS_LOCK:
            auc, _mean_auc = cumulative_dynamic_auc(survival, survival, fit.risk_score(), usable)
    except ValueError as exc:
        raise FitFailure(f"time-dependent AUC failed: {exc}") from exc

    out = [(h, float(a)) for h, a in zip(usable, np.atleast_1d(auc)) if np.isfinite(a)]
    if not out:
        raise FitFailure("time-dependent AUC undefined at every horizon")
    return out


def make_td_auc_cell(config: dict) -> Callable[[TdAucSpec], CellResult]:
    horizons = [float(h) for h in config.get("td_auc_horizons", [])]

    def cell(spec: TdAucSpec) -> CellResult:
        fit = _fitted(spec.source).fit
        rows = [
            {
                "analysis": "time_dependent_auc",
                "predictor": spec.predictor,
                "endpoint": spec.endpoint,
                "model": spec.model,
                "metric": "td_auc",
                "horizon": horizon,
                "estimate": auc,
                "ci_low": np.nan,
                "ci_high": np.nan,
                "n": fit.n,
                "events": fit.events,
            }
            for horizon, auc in time_dependent_auc(fit, horizons)
        ]
        return CellResult(rows=rows)

    return cell


def td_auc_specs(regression: GridRun, model: str) -> list[TdAucSpec]:
    """AUC cells for endpoints where at least two predictors have a fitted model under ``model``."""
    by_endpoint: dict[str, list[CellOutcome]] = {}
    for outcome in regression.successes():
        spec = outcome.spec
        if spec.adjustment.name == model:
            by_endpoint.setdefault(spec.endpoint, []).append(outcome)

    specs: list[TdAucSpec] = []
    for endpoint, outcomes in by_endpoint.items():
        if len({o.spec.predictor for o in outcomes}) < 2:
            logging.info("td_auc: endpoint %s has fewer than two competing predictor models; skipped", endpoint)
            continue
        for outcome in outcomes:
            specs.append(TdAucSpec(endpoint, outcome.spec.predictor, model, outcome))
    return specs


def ph_assumption_rows(fitted: FittedCell, spec, *, alpha: float = 0.05) -> list[dict[str, object]]:
    fit = fitted.fit
    if fit.backend != "lifelines":
        raise FitFailure(f"PH test needs a lifelines fit (backend={fit.backend})")
    try:
        with WARNINGS_LOCK:
            result = proportional_hazard_test(fit.model, fit.data, time_transform="rank")
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise FitFailure(f"PH test failed: {exc}") from exc

    summary = result.summary
    rows: list[dict[str, object]] = []
    for term, rec in summary.iterrows():
        p_value = float(rec["p"])
        rows.append(
            {
                "analysis": "ph_assumption",
                "predictor": spec.predictor,
                "endpoint": spec.endpoint,
                "model": spec.adjustment.name,
                "term": str(term),
                "is_predictor_term": str(term) in fitted.predictor_terms,
                "statistic": float(rec["test_statistic"]),
                "p_value": p_value,
                "assumption_met": bool(p_value > alpha),
            }
        )
    return rows


def make_assumption_cell(config: dict) -> Callable[[CellOutcome], CellResult]:
    alpha = float(config.get("ph_assumption_alpha", 0.05))

    def cell(outcome: CellOutcome) -> CellResult:
        return CellResult(rows=ph_assumption_rows(_fitted(outcome), outcome.spec, alpha=alpha))

    return cell


def evaluate_regression_run(
    regression: GridRun,
    config: dict,
    **run_kwargs,
) -> dict[str, GridRun]:
    """Run concordance, time-dependent AUC and PH grids over the successful regression cells."""
    fitted = regression.successes()
    performance_model = config.get("performance_model") or next(iter(config["adjustment_sets"]))
    return {
        "concordance": run_cells("concordance", fitted, make_concordance_cell(config), **run_kwargs),
        "td_auc": run_cells(
            "td_auc",
            td_auc_specs(regression, performance_model),
            make_td_auc_cell(config),
            **run_kwargs,
        ),
        "ph_assumption": run_cells("ph_assumption", fitted, make_assumption_cell(config), **run_kwargs),
    }
