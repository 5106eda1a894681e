import numpy as np
import pandas as pd

from panel_survival_pipeline.aggregation import (
    BEST_COLUMNS,
    best_predictor_per_endpoint,
    build_result_tables,
    collect_failures,
    significant_pairs,
    summarize_grids,
)
from panel_survival_pipeline.grid import STATUS_FAILED, STATUS_OK, STATUS_SCHEMA_GAP, CellOutcome, GridRun


def _performance(rows):
    return pd.DataFrame(
        [
            {"predictor": p, "endpoint": e, "model": m, "metric": "c_index", "estimate": est,
             "ci_low": est - 0.02, "ci_high": est + 0.02, "n": 100, "events": 20}
            for p, e, m, est in rows
        ]
    )


def test_best_predictor_picks_highest_concordance_per_endpoint():
    perf = _performance(
        [
            ("tyg", "diabe", "model_1", 0.61),
            ("tyg_bmi", "diabe", "model_1", 0.66),
            ("tyg_wc", "diabe", "model_1", 0.64),
            ("tyg", "hibpe", "model_1", 0.58),
            ("tyg_bmi", "hibpe", "model_1", 0.57),
        ]
    )

    best = best_predictor_per_endpoint(perf)

    assert list(best.columns) == BEST_COLUMNS
    assert best.set_index("endpoint")["predictor"].to_dict() == {"diabe": "tyg_bmi", "hibpe": "tyg"}


def test_best_predictor_ties_break_alphabetically():
    perf = _performance([("tyg_wc", "diabe", "model_1", 0.6), ("tyg", "diabe", "model_1", 0.6)])
    assert best_predictor_per_endpoint(perf)["predictor"].tolist() == ["tyg"]


def test_best_predictor_filters_model_and_metric():
    perf = _performance([("tyg", "diabe", "model_1", 0.6), ("tyg_wc", "diabe", "model_2", 0.9)])
    auc = perf.assign(metric="td_auc", estimate=0.99, predictor="tyg_bmi")
    best = best_predictor_per_endpoint(pd.concat([perf, auc]), model="model_1")
    assert best["predictor"].tolist() == ["tyg"]
    assert best_predictor_per_endpoint(pd.DataFrame()).empty


def test_significant_pairs_counts_distinct_pairs():
    regression = pd.DataFrame(
        {
            "predictor": ["tyg", "tyg", "tyg", "tyg_bmi", "tyg_bmi", "tyg_wc"],
            "endpoint": ["diabe", "diabe", "diabe", "diabe", "hibpe", "hibpe"],
            "model": ["model_3"] * 5 + ["model_1"],
            "group": ["Q2", "Q3", "Q4", "per_SD", "per_SD", "per_SD"],
            "hr": [1.2, 1.5, 1.9, 1.1, 1.05, 1.4],
            "p_value": [0.2, 0.03, 0.001, 0.04, 0.5, 0.0001],
        }
    )

    out = significant_pairs(regression, threshold=0.05, model="model_3")

    assert out[["predictor", "endpoint"]].values.tolist() == [["tyg", "diabe"], ["tyg_bmi", "diabe"]]
    tyg = out.iloc[0]
    assert tyg["n_significant_groups"] == 2
    assert tyg["min_p_value"] == 0.001
    assert tyg["hr_at_min_p"] == 1.9

    assert len(significant_pairs(regression, threshold=0.05)) == 3
    assert significant_pairs(regression, threshold=1e-6).empty


def test_pair_significant_under_several_models_counts_once():
    regression = pd.DataFrame(
        {
            "predictor": ["tyg", "tyg", "tyg", "tyg_bmi"],
            "endpoint": ["diabe", "diabe", "diabe", "diabe"],
            "model": ["model_1", "model_3", "model_3", "model_1"],
            "group": ["per_SD", "Q3", "Q4", "per_SD"],
            "hr": [1.6, 1.5, 1.9, 1.1],
            "p_value": [0.0005, 0.03, 0.001, 0.4],
        }
    )

    out = significant_pairs(regression, threshold=0.05)

    assert len(out) == 1
    pair = out.iloc[0]
    assert (pair["predictor"], pair["endpoint"]) == ("tyg", "diabe")
    assert pair["model"] == "model_1,model_3"
    assert pair["n_significant_groups"] == 3
    assert pair["min_p_value"] == 0.0005
    assert pair["hr_at_min_p"] == 1.6


def _run(name, statuses):
    outcomes = [
        CellOutcome(
            index=i,
            spec=f"cell{i}",
            cell_id=f"cell{i}",
            status=status,
            rows=({"analysis": "main", "predictor": "tyg", "endpoint": f"e{i}", "model": "model_1",
                   "metric": "c_index", "estimate": 0.6 + i / 100, "ci_low": 0.55, "ci_high": 0.7,
                   "n": 100, "events": 10, "p_value": 0.01, "hr": 1.3},)
            if status == STATUS_OK
            else (),
            message="" if status == STATUS_OK else "boom",
        )
        for i, status in enumerate(statuses)
    ]
    return GridRun(name, outcomes)


def test_grid_summary_and_failures():
    runs = {
        "regression": [_run("regression", [STATUS_OK, STATUS_FAILED, STATUS_SCHEMA_GAP, STATUS_OK])],
        "performance": [_run("concordance", [STATUS_OK, STATUS_OK])],
    }

    summary = summarize_grids(runs)
    reg = summary.set_index("grid").loc["regression"]
    assert (reg["cells_total"], reg["schema_gaps"], reg["attempted"], reg["succeeded"], reg["failed"]) == (4, 1, 3, 2, 1)

    failures = collect_failures(runs)
    assert failures["status"].tolist() == [STATUS_FAILED, STATUS_SCHEMA_GAP]
    assert collect_failures({"performance": runs["performance"]}).empty


def test_build_result_tables_keeps_columns_for_empty_tables():
    runs = {
        "regression": [_run("regression", [STATUS_OK, STATUS_OK])],
        "sensitivity": [_run("sensitivity_quartile", [STATUS_FAILED])],
        "performance": [_run("concordance", [STATUS_OK, STATUS_OK])],
        "assumption": [],
    }
    config = {"performance_model": "model_1", "significance_threshold": 0.05, "significance_model": None}

    tables = build_result_tables(runs, config)

    assert len(tables.regression) == 2
    assert tables.regression.columns[0] == "analysis"
    assert tables.sensitivity.empty and "hr" in tables.sensitivity.columns
    assert tables.assumption.empty and "assumption_met" in tables.assumption.columns
    assert tables.best_predictors["predictor"].tolist() == ["tyg", "tyg"]
    assert len(tables.significant_pairs) == 2
    assert np.array_equal(tables.grid_summary["cells_total"].to_numpy(), [2, 1, 2])
