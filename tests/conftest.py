import copy

import numpy as np
import pandas as pd
import pytest

from panel_survival_pipeline.config import CONFIG

WAVE_YEARS = {1: 2011, 2: 2013, 3: 2015, 4: 2018}
TEST_CONDITIONS = ["hibpe", "diabe", "hearte"]


def make_panel(n_subjects=300, seed=42, conditions=TEST_CONDITIONS):
    rng = np.random.default_rng(seed)
    rows = []
    for pid in range(1, n_subjects + 1):
        age0 = rng.uniform(45, 80)
        gender = int(rng.random() < 0.5)
        edu = int(rng.integers(1, 5))
        marry = int(rng.random() < 0.8)
        rural = int(rng.random() < 0.6)
        smoken = int(rng.random() < 0.3)
        drinkl = int(rng.random() < 0.35)
        height = rng.uniform(150, 180)
        bmi = rng.uniform(18, 34)
        waist = 60 + 1.2 * bmi + rng.normal(0, 5)
        tg = float(np.exp(rng.normal(4.8, 0.45)))
        glucose = float(np.exp(rng.normal(4.65, 0.2)))
        tyg = np.log(tg * glucose / 2)
        blood_missing = rng.random() < 0.03

        n_waves = int(rng.choice([1, 2, 3, 4], p=[0.05, 0.15, 0.2, 0.6]))
        status = {c: int(rng.random() < 0.1) for c in conditions}
        for wave in range(1, n_waves + 1):
            if wave > 1:
                dt = WAVE_YEARS[wave] - WAVE_YEARS[wave - 1]
                for c in conditions:
                    hazard = 0.06 * np.exp(0.9 * (tyg - 8.6))
                    if status[c] == 0 and rng.random() < 1 - np.exp(-hazard * dt):
                        status[c] = 1
            row = {
                "ID": pid,
                "wave": wave,
                "iyear": WAVE_YEARS[wave],
                "imonth": int(rng.integers(6, 10)),
                "age": age0 + (WAVE_YEARS[wave] - 2011),
                "gender": gender,
                "edu": edu if rng.random() > 0.05 else np.nan,
                "marry": marry,
                "rural": rural,
                "smoken": smoken if rng.random() > 0.08 else np.nan,
                "drinkl": drinkl,
                "bmi": bmi + rng.normal(0, 0.5) if rng.random() > 0.1 else np.nan,
                "waist": waist + rng.normal(0, 1.5),
                "height": height,
                "sbp": rng.normal(130, 15),
                "dbp": rng.normal(78, 9),
                "tg": np.nan if blood_missing or wave > 1 else tg,
                "glucose": np.nan if blood_missing or wave > 1 else glucose,
                "hdl": rng.normal(50, 12),
                "ldl": rng.normal(115, 30),
                "tc": rng.normal(190, 35),
            }
            for c in conditions:
                row[c] = status[c] if rng.random() > 0.04 else np.nan
            rows.append(row)
    return pd.DataFrame(rows)


def make_analysis_frame(n=600, seed=7, endpoints=("e1", "e2", "e3")):
    """Subject-level dataset with durations/events already attached."""
    rng = np.random.default_rng(seed)
    df = pd.DataFrame(
        {
            "ID": np.arange(n),
            "p1": rng.normal(0, 1, n),
            "p2": rng.normal(0, 1, n),
            "age": rng.uniform(45, 80, n),
        }
    )
    for endpoint in endpoints:
        latent = rng.exponential(1.0 / (0.12 * np.exp(0.5 * df["p1"] + 0.2 * df["p2"])))
        censor = rng.uniform(2.0, 8.0, n)
        df[f"{endpoint}_time"] = np.minimum(latent, censor)
        df[f"{endpoint}_event"] = (latent <= censor).astype(int)
    return df


@pytest.fixture
def panel():
    return make_panel()


@pytest.fixture
def analysis_frame():
    return make_analysis_frame()


@pytest.fixture
def grid_config():
    return {
        "duration_suffix": "_time",
        "event_suffix": "_event",
        "quartile_suffix": "_q4",
        "standardize_predictors": True,
        "categorical_covariates": [],
        "cox_penalizer": 0.0,
        "cox_phreg_fallback": True,
        "cox_exclude_nonpositive_duration": True,
        "min_events_per_cell": 5,
        "min_nonevents_per_cell": 5,
        "ci_level": 0.95,
        "td_auc_horizons": [2.0, 4.0, 6.0],
        "ph_assumption_alpha": 0.05,
    }


@pytest.fixture
def pipeline_config(tmp_path):
    config = copy.deepcopy(CONFIG)
    config.update(
        {
            "panel_path": "",
            "conditions": list(TEST_CONDITIONS),
            "reference_fields": [
                "age", "gender", "edu", "marry", "rural", "smoken", "drinkl", "bmi", "waist",
                "height", "sbp", "dbp", "tg", "glucose", "hdl", "ldl", "tc", *TEST_CONDITIONS,
            ],
            "predictors": ["tyg", "tyg_bmi"],
            "adjustment_sets": {
                "model_1": ["age", "gender"],
                "model_2": ["age", "gender", "edu", "smoken", "sbp"],
            },
            "performance_model": "model_1",
            "significance_model": "model_2",
            "td_auc_horizons": [3.0, 5.0],
            "max_workers": 1,
            "cell_timeout_seconds": None,
            "output_dir": str(tmp_path / "out"),
        }
    )
    return config
