import numpy as np
import pandas as pd
import pytest

from panel_survival_pipeline.errors import MissingHistoryError
from panel_survival_pipeline.events import attach_event_columns, derive_event_records, derive_subject_events
from panel_survival_pipeline.panel import build_reference_cohort

EVENT_CONFIG = {
    "subject_col": "ID",
    "wave_col": "wave",
    "year_col": "iyear",
    "month_col": "imonth",
    "conditions": ["hibpe"],
    "duration_suffix": "_time",
    "event_suffix": "_event",
}


def _history(rows):
    return pd.DataFrame(rows, columns=["ID", "wave", "iyear", "imonth", "hibpe"])


def _derive(rows, subject="x"):
    return derive_subject_events(
        _history(rows),
        ["hibpe"],
        subject=subject,
        wave_col="wave",
        year_col="iyear",
        month_col="imonth",
    )["hibpe"]


def test_three_reference_histories():
    a = _derive([("A", 1, 2011, 7, 0), ("A", 2, 2013, 7, 1), ("A", 3, 2015, 7, 1)], "A")
    b = _derive([("B", 1, 2011, 7, 0), ("B", 2, 2013, 7, 0)], "B")
    c = _derive([("C", 1, 2011, 7, 1), ("C", 2, 2013, 7, 1)], "C")

    assert (a.duration, a.event) == (2.0, 1)
    assert (b.duration, b.event) == (2.0, 0)
    assert (c.duration, c.event) == (0.0, 1)


def test_month_difference_counts_in_twelfths():
    rec = _derive([("D", 1, 2011, 7, 0), ("D", 2, 2013, 1, 0), ("D", 3, 2015, 10, 0)])
    assert rec.event == 0
    assert rec.duration == pytest.approx(4.25)


def test_waves_are_ordered_before_scanning():
    rec = _derive([("E", 3, 2015, 7, 1), ("E", 1, 2011, 7, 0), ("E", 2, 2013, 7, 0)])
    assert (rec.duration, rec.event) == (4.0, 1)


def test_missing_flag_is_never_positive():
    rec = _derive([("F", 1, 2011, 7, np.nan), ("F", 2, 2013, 7, np.nan), ("F", 3, 2015, 7, 1)])
    assert (rec.duration, rec.event) == (4.0, 1)

    censored = _derive([("G", 1, 2011, 7, 0), ("G", 2, 2013, 7, np.nan)])
    assert (censored.duration, censored.event) == (2.0, 0)


def test_missing_month_is_filled_within_subject():
    rec = _derive([("H", 1, 2011, 6, 0), ("H", 2, 2013, np.nan, 1)])
    assert rec.duration == pytest.approx(2.0)


def test_backwards_calendar_is_clipped_to_zero():
    rec = _derive([("I", 1, 2013, 7, 0), ("I", 2, 2011, 7, 0)])
    assert rec.duration == 0.0
    assert rec.event == 0


def test_empty_history_raises():
    with pytest.raises(MissingHistoryError):
        _derive([], "Z")


def test_missing_condition_column_degrades_to_censored():
    rec = derive_subject_events(
        _history([("J", 1, 2011, 7, 0), ("J", 2, 2015, 7, 0)]),
        ["diabe"],
        subject="J",
        wave_col="wave",
        year_col="iyear",
        month_col="imonth",
    )["diabe"]
    assert (rec.duration, rec.event) == (4.0, 0)


def test_attach_excludes_subjects_without_history():
    panel = _history([(1, 1, 2011, 7, 0), (1, 2, 2013, 7, 1), (2, 1, 2011, 7, 0), (2, 2, 2015, 7, 0)])
    reference = pd.DataFrame({"ID": [1, 2, 3], "age": [50, 60, 70]})
    notes = []

    out = attach_event_columns(reference, panel, EVENT_CONFIG, notes=notes)

    assert out["ID"].tolist() == [1, 2]
    assert list(out.columns) == ["ID", "age", "hibpe_time", "hibpe_event"]
    assert out["hibpe_time"].tolist() == [2.0, 4.0]
    assert out["hibpe_event"].tolist() == [1, 0]
    assert any("no panel history" in n for n in notes)


def test_derivation_uses_only_each_subjects_history(panel, pipeline_config):
    subjects = sorted(panel["ID"].unique())
    forward = derive_event_records(panel, subjects, pipeline_config)
    shuffled_panel = panel.sample(frac=1.0, random_state=3)
    backward = derive_event_records(shuffled_panel, list(reversed(subjects)), pipeline_config)

    key = ["ID", "condition"]
    pd.testing.assert_frame_equal(
        forward.sort_values(key).reset_index(drop=True),
        backward.sort_values(key).reset_index(drop=True),
    )


def test_event_properties_on_synthetic_panel(panel, pipeline_config):
    data = build_reference_cohort(panel, pipeline_config)
    out = attach_event_columns(data.reference_df, data.panel_df, pipeline_config)
    assert len(out) == len(data.reference_df)

    ordered = data.panel_df.sort_values(["ID", "wave"])
    first = ordered.groupby("ID").head(1).set_index("ID")
    last = ordered.groupby("ID").tail(1).set_index("ID")
    out = out.set_index("ID")

    for condition in pipeline_config["conditions"]:
        time_col, event_col = f"{condition}_time", f"{condition}_event"
        assert out[time_col].notna().all()
        assert (out[time_col] >= 0).all()
        assert set(out[event_col].unique()) <= {0, 1}

        first_positive = first.index[first[condition] == 1]
        assert (out.loc[first_positive, time_col] == 0).all()
        assert (out.loc[first_positive, event_col] == 1).all()

        ever = ordered.groupby("ID")[condition].apply(lambda s: bool((s == 1).any()))
        never = ever.index[~ever]
        expected = (last.loc[never, "iyear"] - first.loc[never, "iyear"]) + (
            last.loc[never, "imonth"] - first.loc[never, "imonth"]
        ) / 12.0
        assert (out.loc[never, event_col] == 0).all()
        np.testing.assert_allclose(out.loc[never, time_col].to_numpy(), expected.to_numpy())
