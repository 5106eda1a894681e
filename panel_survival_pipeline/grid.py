"""Model grid orchestration: spec generation, fault-isolated cell execution, outcome bookkeeping."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

import pandas as pd

from .errors import FitFailure, SchemaGapError

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SCHEMA_GAP = "schema_gap"
STATUS_NOT_DISPATCHED = "not_dispatched"

SUMMARY_COLUMNS = [
    "table",
    "grid",
    "cells_total",
    "schema_gaps",
    "attempted",
    "succeeded",
    "failed",
    "not_dispatched",
]
FAILURE_COLUMNS = ["grid", "cell", "status", "message"]


@dataclass(frozen=True)
class AdjustmentSet:
    name: str
    covariates: tuple[str, ...] = ()


@dataclass(frozen=True)
class ModelSpec:
    predictor: str
    endpoint: str
    adjustment: AdjustmentSet
    categorical: bool = False

    @property
    def cell_id(self) -> str:
        kind = "categorical" if self.categorical else "continuous"
        return f"{self.predictor}|{self.endpoint}|{self.adjustment.name}|{kind}"


@dataclass(frozen=True)
class GridConfig:
    predictors: tuple[str, ...]
    endpoints: tuple[str, ...]
    adjustment_sets: tuple[AdjustmentSet, ...]
    categorical: bool = False

    def specs(self) -> Iterator[ModelSpec]:
        for predictor in self.predictors:
            for endpoint in self.endpoints:
                for adjustment in self.adjustment_sets:
                    yield ModelSpec(predictor, endpoint, adjustment, self.categorical)

    def __len__(self) -> int:
        return len(self.predictors) * len(self.endpoints) * len(self.adjustment_sets)


def grid_config_from(config: dict, *, categorical: bool = False) -> GridConfig:
    return GridConfig(
        predictors=tuple(config["predictors"]),
        endpoints=tuple(config["conditions"]),
        adjustment_sets=tuple(
            AdjustmentSet(name, tuple(covariates)) for name, covariates in config["adjustment_sets"].items()
        ),
        categorical=categorical,
    )


@dataclass(frozen=True)
class CellResult:
    rows: list[dict[str, object]]
    payload: Any = None


@dataclass(frozen=True)
class CellOutcome:
    index: int
    spec: Any
    cell_id: str
    status: str
    rows: tuple[dict[str, object], ...] = ()
    message: str = ""
    payload: Any = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


@dataclass
class GridRun:
    name: str
    outcomes: list[CellOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def cells_total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(STATUS_OK)

    @property
    def failed(self) -> int:
        return self._count(STATUS_FAILED)

    @property
    def schema_gaps(self) -> int:
        return self._count(STATUS_SCHEMA_GAP)

    @property
    def not_dispatched(self) -> int:
        return self._count(STATUS_NOT_DISPATCHED)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    def successes(self) -> list[CellOutcome]:
        return [o for o in self.outcomes if o.ok]

    def rows_frame(self) -> pd.DataFrame:
        rows = [row for o in self.outcomes if o.ok for row in o.rows]
        return pd.DataFrame(rows)

    def notices(self) -> list[str]:
        return [f"{self.name}: cell {o.cell_id} failed: {o.message}" for o in self.outcomes if o.status == STATUS_FAILED]

    def failures_frame(self) -> pd.DataFrame:
        rows = [
            {"grid": self.name, "cell": o.cell_id, "status": o.status, "message": o.message}
            for o in self.outcomes
            if o.status in (STATUS_FAILED, STATUS_SCHEMA_GAP)
        ]
        return pd.DataFrame(rows, columns=FAILURE_COLUMNS)

    def summary_row(self, table: str) -> dict[str, object]:
        return {
            "table": table,
            "grid": self.name,
            "cells_total": self.cells_total,
            "schema_gaps": self.schema_gaps,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "not_dispatched": self.not_dispatched,
        }


def _cell_label(spec: Any) -> str:
    return str(getattr(spec, "cell_id", spec))


def _run_cell(
    index: int,
    spec: Any,
    cell_fn: Callable[[Any], CellResult],
    *,
    grid: str,
    cell_timeout: float | None,
    started: dict[int, float] | None = None,
) -> CellOutcome:
    cell_id = _cell_label(spec)
    t0 = time.monotonic()
    if started is not None:
        started[index] = t0
    try:
        result = cell_fn(spec)
    except SchemaGapError as exc:
        logging.info("%s: skipping cell %s (%s)", grid, cell_id, exc)
        return CellOutcome(index, spec, cell_id, STATUS_SCHEMA_GAP, message=str(exc), elapsed=time.monotonic() - t0)
    except FitFailure as exc:
        logging.warning("%s: cell %s failed: %s", grid, cell_id, exc)
        return CellOutcome(index, spec, cell_id, STATUS_FAILED, message=str(exc), elapsed=time.monotonic() - t0)
    except Exception as exc:
        logging.warning("%s: cell %s raised %s: %s", grid, cell_id, type(exc).__name__, exc)
        return CellOutcome(
            index,
            spec,
            cell_id,
            STATUS_FAILED,
            message=f"{type(exc).__name__}: {exc}",
            elapsed=time.monotonic() - t0,
        )

    elapsed = time.monotonic() - t0
    if cell_timeout is not None and elapsed > cell_timeout:
        msg = f"exceeded time budget ({elapsed:.2f}s > {cell_timeout:.2f}s)"
        logging.warning("%s: cell %s %s", grid, cell_id, msg)
        return CellOutcome(index, spec, cell_id, STATUS_FAILED, message=msg, elapsed=elapsed)
    return CellOutcome(
        index,
        spec,
        cell_id,
        STATUS_OK,
        rows=tuple(result.rows),
        payload=result.payload,
        elapsed=elapsed,
    )


def _not_dispatched(index: int, spec: Any) -> CellOutcome:
    return CellOutcome(index, spec, _cell_label(spec), STATUS_NOT_DISPATCHED, message="cancelled before dispatch")


def _run_pooled(
    specs: list[Any],
    cell_fn: Callable[[Any], CellResult],
    *,
    grid: str,
    max_workers: int,
    cancel_event: threading.Event | None,
    cell_timeout: float | None,
) -> dict[int, CellOutcome]:
    outcomes: dict[int, CellOutcome] = {}
    started: dict[int, float] = {}
    pending = iter(enumerate(specs))
    in_flight: dict[Future, tuple[int, Any]] = {}
    poll = None if cell_timeout is None else max(cell_timeout / 4.0, 0.01)

    # Sized past max_workers so an abandoned worker never blocks a queued cell; dispatch is capped below.
    pool = ThreadPoolExecutor(max_workers=max(len(specs), 1), thread_name_prefix=f"grid-{grid}")
    abandoned = False
    try:
        exhausted = False
        while True:
            while not exhausted and len(in_flight) < max_workers:
                nxt = next(pending, None)
                if nxt is None:
                    exhausted = True
                    break
                index, spec = nxt
                if cancel_event is not None and cancel_event.is_set():
                    outcomes[index] = _not_dispatched(index, spec)
                    continue
                future = pool.submit(
                    _run_cell,
                    index,
                    spec,
                    cell_fn,
                    grid=grid,
                    cell_timeout=cell_timeout,
                    started=started,
                )
                in_flight[future] = (index, spec)

            if not in_flight:
                break

            done, _ = wait(list(in_flight), timeout=poll, return_when=FIRST_COMPLETED)
            for future in done:
                index, _spec = in_flight.pop(future)
                outcomes[index] = future.result()

            if cell_timeout is not None:
                now = time.monotonic()
                for future, (index, spec) in list(in_flight.items()):
                    t0 = started.get(index)
                    if t0 is None or now - t0 <= cell_timeout:
                        continue
                    # The worker thread cannot be interrupted; its late result is discarded.
                    in_flight.pop(future)
                    future.cancel()
                    abandoned = True
                    msg = f"exceeded time budget ({now - t0:.2f}s > {cell_timeout:.2f}s)"
                    logging.warning("%s: cell %s %s; abandoned", grid, _cell_label(spec), msg)
                    outcomes[index] = CellOutcome(
                        index, spec, _cell_label(spec), STATUS_FAILED, message=msg, elapsed=now - t0
                    )
    finally:
        # Abandoned workers keep running; do not wait for them.
        pool.shutdown(wait=not abandoned, cancel_futures=True)
    return outcomes


def run_cells(
    name: str,
    specs: Sequence[Any],
    cell_fn: Callable[[Any], CellResult],
    *,
    max_workers: int = 1,
    cancel_event: threading.Event | None = None,
    cell_timeout: float | None = None,
) -> GridRun:
    """Run ``cell_fn`` over every spec; failures are recorded per cell and never raised.

    Outcomes come back in spec order whatever the completion order. Setting
    ``cancel_event`` stops dispatching new cells; cells already running finish.
    In pooled mode a cell past ``cell_timeout`` is marked failed and abandoned; the run
    returns without waiting for its worker thread.
    """
    specs = list(specs)
    logging.info("%s: dispatching %s cells (workers=%s)", name, len(specs), max(1, int(max_workers)))

    if int(max_workers) <= 1:
        outcomes: dict[int, CellOutcome] = {}
        for index, spec in enumerate(specs):
            if cancel_event is not None and cancel_event.is_set():
                outcomes[index] = _not_dispatched(index, spec)
                continue
            outcomes[index] = _run_cell(index, spec, cell_fn, grid=name, cell_timeout=cell_timeout)
    else:
        outcomes = _run_pooled(
            specs,
            cell_fn,
            grid=name,
            max_workers=int(max_workers),
            cancel_event=cancel_event,
            cell_timeout=cell_timeout,
        )

    run = GridRun(name=name, outcomes=[outcomes[i] for i in range(len(specs))])
    logging.info(
        "%s: cells=%s attempted=%s succeeded=%s failed=%s schema_gaps=%s not_dispatched=%s",
        name,
        run.cells_total,
        run.attempted,
        run.succeeded,
        run.failed,
        run.schema_gaps,
        run.not_dispatched,
    )
    return run
