"""File helpers for reading panel tables and writing result tables."""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

SUPPORTED_SUFFIXES = (".csv", ".tsv", ".parquet", ".dta")


def validate_input_path(path: str | Path) -> Path:
    if not str(path).strip():
        raise ValueError("Input path is empty.")
    resolved = Path(path).expanduser().resolve()
    if resolved.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported input file type '{resolved.suffix}'. Allowed: {', '.join(SUPPORTED_SUFFIXES)}."
        )
    if not resolved.exists():
        raise ValueError(f"Input file does not exist: {resolved}")
    return resolved


def read_table(path: str | Path, *, job_name: str) -> pd.DataFrame:
    resolved = validate_input_path(path)
    suffix = resolved.suffix.lower()
    logging.info("Reading table: %s (%s)", job_name, resolved)
    try:
        if suffix == ".csv":
            df = pd.read_csv(resolved)
        elif suffix == ".tsv":
            df = pd.read_csv(resolved, sep="\t")
        elif suffix == ".parquet":
            df = pd.read_parquet(resolved)
        else:
            df = pd.read_stata(resolved, convert_categoricals=False)
    except (OSError, ValueError, pd.errors.ParserError) as exc:
        logging.exception("Reading table failed: %s", job_name)
        raise RuntimeError(f"Reading table failed ({job_name}): {exc}") from exc
    logging.info("Finished reading: %s | rows=%s cols=%s", job_name, len(df), len(df.columns))
    return df


def write_table(df: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path
