"""Single chained-equation completion of the reference records."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer

VARIABLE_TYPES = ("binary", "categorical", "continuous")


def complete(
    dataset: pd.DataFrame,
    variable_types: dict[str, str],
    *,
    random_state: int = 42,
    max_iter: int = 10,
    notes: list[str] | None = None,
) -> pd.DataFrame:
    """Return a copy of ``dataset`` with typed columns imputed; shape and index are unchanged."""
    unknown = {col: kind for col, kind in variable_types.items() if kind not in VARIABLE_TYPES}
    if unknown:
        raise ValueError(f"Unknown variable types: {unknown}")

    out = dataset.copy()
    absent = [col for col in variable_types if col not in out.columns]
    if absent:
        logging.warning("complete: typed columns absent from dataset: %s", ", ".join(absent))

    cols = [col for col in variable_types if col in out.columns]
    for col in cols:
        out[col] = pd.to_numeric(out[col], errors="coerce")

    empty = [col for col in cols if out[col].notna().sum() == 0]
    if empty:
        msg = f"complete: columns with no observed values left missing: {', '.join(empty)}"
        logging.warning(msg)
        if notes is not None:
            notes.append(msg)
    cols = [col for col in cols if col not in empty]

    n_missing = int(out[cols].isna().sum().sum()) if cols else 0
    if n_missing == 0:
        return out

    observed_min = out[cols].min()
    observed_max = out[cols].max()

    imputer = IterativeImputer(
        max_iter=int(max_iter),
        random_state=int(random_state),
        sample_posterior=False,
        skip_complete=True,
    )
    filled = pd.DataFrame(imputer.fit_transform(out[cols]), columns=cols, index=out.index)

    for col in cols:
        kind = variable_types[col]
        if kind == "binary":
            filled[col] = np.clip(np.round(filled[col]), 0, 1)
        elif kind == "categorical":
            filled[col] = np.clip(np.round(filled[col]), observed_min[col], observed_max[col])
        out[col] = filled[col]

    logging.info("complete: imputed %s missing values across %s columns", n_missing, len(cols))
    if notes is not None:
        notes.append(f"Imputed {n_missing} missing covariate values across {len(cols)} columns (IterativeImputer).")
    return out
