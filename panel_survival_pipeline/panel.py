"""Panel validation, reduction to reference records, and cohort flow."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import pandas as pd

from .errors import MalformedPanelError


@dataclass
class PanelData:
    panel_df: pd.DataFrame
    reference_df: pd.DataFrame
    cohort_flow: pd.DataFrame


def validate_panel(panel: pd.DataFrame, *, subject_col: str, wave_col: str) -> None:
    """Fail fast unless every row carries a subject/wave key and each pair is unique."""
    missing = [c for c in (subject_col, wave_col) if c not in panel.columns]
    if missing:
        raise MalformedPanelError(f"panel is missing key columns: {', '.join(missing)}")

    null_keys = panel[subject_col].isna() | panel[wave_col].isna()
    if null_keys.any():
        raise MalformedPanelError(f"panel has {int(null_keys.sum())} rows with a null subject or wave key")

    dup_mask = panel.duplicated(subset=[subject_col, wave_col], keep=False)
    if dup_mask.any():
        offenders = sorted(panel.loc[dup_mask, subject_col].astype(str).unique())
        preview = ", ".join(offenders[:10])
        raise MalformedPanelError(
            f"duplicate ({subject_col}, {wave_col}) keys for {len(offenders)} subjects: {preview}"
        )


def reduce_panel(
    panel: pd.DataFrame,
    *,
    subject_col: str,
    wave_col: str,
    fields: Iterable[str] | None = None,
) -> pd.DataFrame:
    """Collapse a panel to one row per subject using the latest non-missing value per field.

    A frame without ``wave_col`` is treated as already reduced and must hold one
    row per subject; reducing it again returns the same frame.
    """
    if fields is None:
        fields = [c for c in panel.columns if c not in (subject_col, wave_col)]
    fields = [c for c in dict.fromkeys(fields) if c not in (subject_col, wave_col)]

    absent = [c for c in fields if c not in panel.columns]
    if absent:
        logging.warning("reduce_panel: fields absent from panel and left missing: %s", ", ".join(absent))

    if wave_col in panel.columns:
        validate_panel(panel, subject_col=subject_col, wave_col=wave_col)
        ordered = panel.sort_values([subject_col, wave_col], ascending=[True, False], kind="mergesort")
    else:
        if subject_col not in panel.columns:
            raise MalformedPanelError(f"panel is missing key column: {subject_col}")
        if panel[subject_col].duplicated().any():
            raise MalformedPanelError(
                f"frame has no '{wave_col}' column but repeats {subject_col}; cannot pick a latest wave"
            )
        ordered = panel

    present = [c for c in fields if c in ordered.columns]
    # GroupBy.first skips nulls, so with waves sorted descending it yields the latest observed value.
    reduced = ordered.groupby(subject_col, sort=True)[present].first()
    reduced = reduced.reindex(columns=fields).reset_index()
    return reduced


def _flow_row(step: str, df: pd.DataFrame) -> dict[str, object]:
    return {"step": step, "n": int(len(df))}


def filter_required(
    reference: pd.DataFrame,
    required: Iterable[str],
    *,
    flow: list[dict[str, object]] | None = None,
) -> pd.DataFrame:
    required = [c for c in required if c in reference.columns]
    if not required:
        return reference.copy()
    kept = reference.dropna(subset=required).reset_index(drop=True)
    dropped = len(reference) - len(kept)
    if dropped:
        logging.info("filter_required: dropped %s subjects missing any of %s", dropped, required)
    if flow is not None:
        flow.append(_flow_row(f"complete required fields ({', '.join(required)})", kept))
    return kept


def build_reference_cohort(panel: pd.DataFrame, config: dict) -> PanelData:
    subject_col = config["subject_col"]
    wave_col = config["wave_col"]
    validate_panel(panel, subject_col=subject_col, wave_col=wave_col)

    flow: list[dict[str, object]] = [
        {"step": "panel rows", "n": int(len(panel))},
        {"step": "distinct subjects", "n": int(panel[subject_col].nunique())},
    ]

    reference = reduce_panel(
        panel,
        subject_col=subject_col,
        wave_col=wave_col,
        fields=config.get("reference_fields"),
    )

    age_col = config.get("age_col")
    age_min = config.get("age_min")
    if age_col and age_min is not None and age_col in reference.columns:
        age = pd.to_numeric(reference[age_col], errors="coerce")
        reference = reference.loc[age.isna() | (age >= float(age_min))].reset_index(drop=True)
        flow.append(_flow_row(f"{age_col} >= {age_min} or unknown", reference))

    reference = filter_required(reference, config.get("required_fields", []), flow=flow)

    retained = panel.loc[panel[subject_col].isin(reference[subject_col])].reset_index(drop=True)
    logging.info(
        "Reference cohort: subjects=%s panel_rows=%s",
        len(reference),
        len(retained),
    )
    return PanelData(
        panel_df=retained,
        reference_df=reference,
        cohort_flow=pd.DataFrame(flow),
    )
