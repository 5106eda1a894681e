"""Derive per-condition event time and event flag from each subject's wave history."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np
import pandas as pd

from .errors import MissingHistoryError


@dataclass(frozen=True)
class EventRecord:
    subject: object
    condition: str
    duration: float
    event: int


def _elapsed_years(year: pd.Series, month: pd.Series, index: int) -> float:
    # Same approximation as the survey timing fields: no day-level precision.
    return float((year.iloc[index] - year.iloc[0]) + (month.iloc[index] - month.iloc[0]) / 12.0)


def _timing_columns(history: pd.DataFrame, year_col: str, month_col: str) -> tuple[pd.Series, pd.Series]:
    year = pd.to_numeric(history[year_col], errors="coerce") if year_col in history.columns else None
    month = pd.to_numeric(history[month_col], errors="coerce") if month_col in history.columns else None
    if year is None:
        year = pd.Series(np.nan, index=history.index)
    if month is None:
        month = pd.Series(np.nan, index=history.index)
    year = year.ffill().bfill()
    month = month.ffill().bfill().fillna(0.0)
    return year.reset_index(drop=True), month.reset_index(drop=True)


def derive_subject_events(
    history: pd.DataFrame,
    conditions: Iterable[str],
    *,
    subject: object,
    wave_col: str,
    year_col: str,
    month_col: str,
) -> dict[str, EventRecord]:
    """Fold one subject's panel rows into an EventRecord per condition.

    Rows are ordered by wave. A condition positive at the first wave gives
    duration 0 and event 1; otherwise the first later positive wave sets the
    duration (event 1), and a never-positive history is censored at the last
    wave (event 0). Missing flags are never treated as positive.
    """
    if history.empty:
        raise MissingHistoryError(subject)

    ordered = history.sort_values(wave_col, kind="mergesort").reset_index(drop=True)
    year, month = _timing_columns(ordered, year_col, month_col)
    has_time = bool(year.notna().all())
    if not has_time:
        logging.warning("subject %s has no interview year; durations set to 0", subject)

    out: dict[str, EventRecord] = {}
    last = len(ordered) - 1
    for condition in conditions:
        if condition in ordered.columns:
            flags = pd.to_numeric(ordered[condition], errors="coerce")
        else:
            flags = pd.Series(np.nan, index=ordered.index)
        positive = (flags == 1).to_numpy()

        if positive[0]:
            out[condition] = EventRecord(subject, condition, 0.0, 1)
            continue

        hits = np.flatnonzero(positive)
        index, event = (int(hits[0]), 1) if hits.size else (last, 0)
        duration = _elapsed_years(year, month, index) if has_time else 0.0
        if duration < 0:
            logging.warning(
                "subject %s condition %s: interview dates go backwards (%.3f years); clipped to 0",
                subject,
                condition,
                duration,
            )
            duration = 0.0
        out[condition] = EventRecord(subject, condition, duration, event)
    return out


def derive_event_records(
    panel: pd.DataFrame,
    subjects: Iterable[object],
    config: dict,
    *,
    missing: list[object] | None = None,
) -> pd.DataFrame:
    """Long-form event table (subject, condition, duration, event) for the given subjects.

    Subjects without any panel rows are skipped and appended to ``missing``.
    """
    subject_col = config["subject_col"]
    conditions = list(config["conditions"])
    groups = {key: grp for key, grp in panel.groupby(subject_col, sort=False)}

    records: list[EventRecord] = []
    for subject in subjects:
        history = groups.get(subject, panel.iloc[0:0])
        try:
            per_condition = derive_subject_events(
                history,
                conditions,
                subject=subject,
                wave_col=config["wave_col"],
                year_col=config["year_col"],
                month_col=config["month_col"],
            )
        except MissingHistoryError as exc:
            logging.warning("Excluding subject from event derivation: %s", exc)
            if missing is not None:
                missing.append(exc.subject)
            continue
        records.extend(per_condition.values())

    return pd.DataFrame(
        [(r.subject, r.condition, r.duration, r.event) for r in records],
        columns=[subject_col, "condition", "duration", "event"],
    )


def attach_event_columns(
    reference: pd.DataFrame,
    panel: pd.DataFrame,
    config: dict,
    notes: list[str] | None = None,
) -> pd.DataFrame:
    """Return a widened copy of ``reference`` with <condition>_time/_event columns."""
    subject_col = config["subject_col"]
    conditions = list(config["conditions"])
    duration_suffix = config.get("duration_suffix", "_time")
    event_suffix = config.get("event_suffix", "_event")

    missing: list[object] = []
    long_df = derive_event_records(panel, reference[subject_col].tolist(), config, missing=missing)

    cols: list[str] = []
    for condition in conditions:
        cols.extend([f"{condition}{duration_suffix}", f"{condition}{event_suffix}"])

    base = reference.drop(columns=[c for c in cols if c in reference.columns])
    if missing:
        base = base.loc[~base[subject_col].isin(missing)]
        msg = f"attach_event_columns: excluded {len(missing)} subjects with no panel history."
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)

    if long_df.empty:
        return base.reindex(columns=[*base.columns, *cols]).reset_index(drop=True)

    durations = long_df.pivot(index=subject_col, columns="condition", values="duration")
    events = long_df.pivot(index=subject_col, columns="condition", values="event")
    durations = durations.reindex(columns=conditions).add_suffix(duration_suffix)
    events = events.reindex(columns=conditions).astype(int).add_suffix(event_suffix)
    wide = pd.concat([durations, events], axis=1).reset_index().reindex(columns=[subject_col, *cols])

    out = base.merge(wide, on=subject_col, how="inner", validate="one_to_one")
    logging.info("Attached event columns for %s conditions to %s subjects", len(conditions), len(out))
    return out.reset_index(drop=True)
