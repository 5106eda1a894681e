"""Report generation utilities for panel survival outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd


def _fmt_float(x: float | int | None, digits: int = 3) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return f"{float(x):.{digits}f}"


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    cohort_flow: pd.DataFrame,
    grid_summary: pd.DataFrame,
    best_predictors: pd.DataFrame,
    significant_pairs: pd.DataFrame,
    significance_threshold: float,
    generated_files: list[str],
    notes: list[str],
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# REPORT: Risk indices and incident chronic conditions (panel survival analysis)")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Cohort Flow")
    if cohort_flow.empty:
        lines.append("- Cohort flow unavailable.")
    else:
        for _, row in cohort_flow.iterrows():
            step = row.get("step", "step")
            n = row.get("n", "NA")
            lines.append(f"- {step}: {n}")
    lines.append("")

    lines.append("## Grid Completion")
    if grid_summary.empty:
        lines.append("- No grids were run.")
    else:
        lines.append("| table | grid | cells | schema gaps | attempted | succeeded | failed | not dispatched |")
        lines.append("|---|---|---|---|---|---|---|---|")
        for _, row in grid_summary.iterrows():
            lines.append(
                f"| {row['table']} | {row['grid']} | {row['cells_total']} | {row['schema_gaps']} | "
                f"{row['attempted']} | {row['succeeded']} | {row['failed']} | {row['not_dispatched']} |"
            )
    lines.append("")

    lines.append("## Best Predictor per Endpoint (C-index)")
    if best_predictors.empty:
        lines.append("- No concordance estimates available.")
    else:
        for _, row in best_predictors.iterrows():
            lines.append(
                f"- {row['endpoint']}: {row['predictor']} "
                f"C={_fmt_float(row['estimate'])} ({_fmt_float(row['ci_low'])}-{_fmt_float(row['ci_high'])})"
            )
    lines.append("")

    lines.append(f"## Significant Predictor/Endpoint Pairs (p < {significance_threshold})")
    lines.append(f"- Count: {len(significant_pairs)}")
    for _, row in significant_pairs.iterrows():
        lines.append(
            f"- {row['predictor']} -> {row['endpoint']} ({row['model']}): "
            f"min p={_fmt_float(row['min_p_value'], 4)}, HR={_fmt_float(row['hr_at_min_p'])}"
        )
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- Cells that failed or hit schema gaps are absent from the result tables; see grid_failures.csv.")
    lines.append("- Subjects positive at their first wave are prevalent cases and do not enter Cox fits.")
    lines.append("- Time-dependent AUC is computed on the training data and is optimistic.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
