"""Main entrypoint for the panel survival pipeline."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .aggregation import ResultTables, build_result_tables
from .config import ASSUMPTIONS, CHANGE_LOG, CONFIG, REQUIRED_OUTPUT_FILES, ensure_output_dir, validate_config
from .evaluation import evaluate_regression_run
from .events import attach_event_columns
from .features import prepare_analysis_dataset
from .grid import GridRun, grid_config_from, run_cells
from .imputation import complete
from .io_utils import read_table, write_table
from .modeling import endpoint_columns, make_cox_cell
from .panel import PanelData, build_reference_cohort
from .reporting import write_report


@dataclass
class AnalysisDatasets:
    imputed: pd.DataFrame
    complete_case: pd.DataFrame


@dataclass
class PipelineRunResult:
    output_dir: Path | None
    generated_files: list[str]
    panel_data: PanelData
    datasets: AnalysisDatasets
    runs: dict[str, list[GridRun]]
    tables: ResultTables
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_table(
    *,
    file_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    print_tables: bool = False,
    print_max_rows: int = 30,
) -> Path:
    out_path = write_table(df, output_dir / file_name)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    if print_tables:
        _print_df(file_name, df, max_rows=print_max_rows)
    return out_path


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name == "REPORT.md":
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def exclude_early_events(dataset: pd.DataFrame, config: dict) -> pd.DataFrame:
    """Blank the endpoint columns of subjects whose event falls within ``early_event_years``.

    Exclusion is per endpoint: a subject dropped for one condition stays in the others.
    """
    out = dataset.copy()
    window = float(config.get("early_event_years", 2.0))
    for condition in config["conditions"]:
        duration_col, event_col = endpoint_columns(condition, config)
        if duration_col not in out.columns or event_col not in out.columns:
            continue
        early = (out[event_col] == 1) & (out[duration_col] < window)
        out[[duration_col, event_col]] = out[[duration_col, event_col]].astype(float)
        out.loc[early, [duration_col, event_col]] = np.nan
    return out


def build_analysis_datasets(panel_data: PanelData, config: dict, notes: list[str]) -> AnalysisDatasets:
    reference = panel_data.reference_df
    imputed_reference = complete(
        reference,
        config.get("variable_types", {}),
        random_state=int(config.get("random_seed", 42)),
        max_iter=int(config.get("imputation_max_iter", 10)),
        notes=notes,
    )
    # Event columns must be fully attached before any grid reads the datasets.
    imputed = attach_event_columns(imputed_reference, panel_data.panel_df, config, notes=notes)
    raw = attach_event_columns(reference, panel_data.panel_df, config)
    return AnalysisDatasets(
        imputed=prepare_analysis_dataset(imputed, config, notes=notes),
        complete_case=prepare_analysis_dataset(raw, config),
    )


def run_model_grids(
    datasets: AnalysisDatasets,
    config: dict,
    *,
    cancel_event: threading.Event | None = None,
) -> dict[str, list[GridRun]]:
    run_kwargs = {
        "max_workers": int(config.get("max_workers", 1)),
        "cancel_event": cancel_event,
        "cell_timeout": config.get("cell_timeout_seconds"),
    }
    continuous = list(grid_config_from(config).specs())

    regression = run_cells(
        "regression",
        continuous,
        make_cox_cell(datasets.imputed, config, analysis="main"),
        **run_kwargs,
    )

    sensitivity: list[GridRun] = []
    for scenario in config.get("sensitivity_scenarios", []):
        if scenario == "quartile":
            specs = list(grid_config_from(config, categorical=True).specs())
            data = datasets.imputed
        elif scenario == "complete_case":
            specs = continuous
            data = datasets.complete_case
        else:
            specs = continuous
            data = exclude_early_events(datasets.imputed, config)
        sensitivity.append(
            run_cells(
                f"sensitivity_{scenario}",
                specs,
                make_cox_cell(data, config, analysis=scenario),
                **run_kwargs,
            )
        )

    evaluation = evaluate_regression_run(regression, config, **run_kwargs)
    return {
        "regression": [regression],
        "sensitivity": sensitivity,
        "performance": [evaluation["concordance"], evaluation["td_auc"]],
        "assumption": [evaluation["ph_assumption"]],
    }


def run_pipeline(
    panel_df: pd.DataFrame,
    config: dict | None = None,
    *,
    output_dir: Path | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineRunResult:
    config = CONFIG if config is None else config
    validate_config(config, require_input=False)
    notes: list[str] = []

    panel_data = build_reference_cohort(panel_df, config)
    datasets = build_analysis_datasets(panel_data, config, notes)
    runs = run_model_grids(datasets, config, cancel_event=cancel_event)
    tables = build_result_tables(runs, config)

    for table_runs in runs.values():
        for run in table_runs:
            notes.extend(run.notices())
    if cancel_event is not None and cancel_event.is_set():
        notes.append("Run was cancelled; result tables hold only the cells finished before cancellation.")

    generated_files: list[str] = []
    if output_dir is not None:
        print_tables = bool(config.get("print_tables", False))
        print_max_rows = int(config.get("print_table_max_rows", 30))
        output_map: list[tuple[str, pd.DataFrame]] = [
            ("cohort_flow.csv", panel_data.cohort_flow),
            ("regression_results.csv", tables.regression),
            ("sensitivity_results.csv", tables.sensitivity),
            ("performance_results.csv", tables.performance),
            ("assumption_results.csv", tables.assumption),
            ("grid_summary.csv", tables.grid_summary),
            ("grid_failures.csv", tables.failures),
            ("best_predictors.csv", tables.best_predictors),
            ("significant_pairs.csv", tables.significant_pairs),
        ]
        for file_name, df in output_map:
            path = _save_table(
                file_name=file_name,
                df=df,
                output_dir=output_dir,
                print_tables=print_tables,
                print_max_rows=print_max_rows,
            )
            generated_files.append(path.name)

        _verify_outputs(output_dir, notes)
        report_path = write_report(
            output_dir=output_dir,
            change_log=CHANGE_LOG,
            assumptions=ASSUMPTIONS,
            cohort_flow=panel_data.cohort_flow,
            grid_summary=tables.grid_summary,
            best_predictors=tables.best_predictors,
            significant_pairs=tables.significant_pairs,
            significance_threshold=float(config.get("significance_threshold", 0.05)),
            generated_files=generated_files,
            notes=notes,
        )
        generated_files.append(report_path.name)

    return PipelineRunResult(
        output_dir=output_dir,
        generated_files=sorted(generated_files),
        panel_data=panel_data,
        datasets=datasets,
        runs=runs,
        tables=tables,
        notes=notes,
    )


def main() -> PipelineRunResult:
    _configure_logging()
    validate_config(CONFIG)

    output_dir = ensure_output_dir(CONFIG)
    logging.info("Starting panel survival pipeline. input=%s", CONFIG["panel_path"])
    logging.info("Output directory: %s", output_dir)

    panel_df = read_table(CONFIG["panel_path"], job_name="raw_panel")
    result = run_pipeline(panel_df, CONFIG, output_dir=output_dir)

    logging.info("Pipeline complete. Generated files:")
    for fp in result.generated_files:
        logging.info("- %s", fp)
    return result


if __name__ == "__main__":
    main()
