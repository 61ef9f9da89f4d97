import threading
from datetime import datetime, timezone

import pytest

from agnw_lab.data_types import ExperimentOutcome, ExperimentParameters
from agnw_lab.errors import InvalidParameter
from agnw_lab.history import HistoryStore


def _outcome(diameter, length, yield_percent=None):
    return ExperimentOutcome(diameter_nm=diameter, length_um=length, yield_percent=yield_percent)


def test_records_are_ordered_with_increasing_ids(history):
    for temp in (150.0, 160.0, 170.0):
        history.record(ExperimentParameters(temperature_c=temp), _outcome(100.0, 20.0))

    records = history.all()
    assert [r.id for r in records] == [1, 2, 3]
    assert [r.parameters.temperature_c for r in records] == [150.0, 160.0, 170.0]
    assert records[0].completed_at < records[1].completed_at < records[2].completed_at
    assert len(history) == 3
    assert list(history) == list(records)


def test_snapshots_do_not_change_after_append(history):
    history.record(ExperimentParameters(), _outcome(100.0, 20.0))
    snapshot = history.all()
    history.record(ExperimentParameters(), _outcome(90.0, 20.0))
    assert len(snapshot) == 1
    assert len(history.all()) == 2


def test_record_rejects_wrong_types(history):
    with pytest.raises(InvalidParameter):
        history.record({"temperature_c": 160.0}, _outcome(100.0, 20.0))
    with pytest.raises(InvalidParameter):
        history.record(ExperimentParameters(), {"diameter_nm": 100.0, "length_um": 20.0})
    assert len(history) == 0


def test_best_maximizes_the_metric(history):
    history.record(ExperimentParameters(temperature_c=150.0), _outcome(100.0, 12.5, 80.0))
    history.record(ExperimentParameters(temperature_c=165.0), _outcome(100.0, 21.1, 60.0))
    history.record(ExperimentParameters(temperature_c=175.0), _outcome(120.0, 18.0))

    assert history.best("aspect_ratio").parameters.temperature_c == 165.0
    assert history.best("diameter").parameters.temperature_c == 175.0
    # Records without a yield are skipped
    assert history.best("yield").parameters.temperature_c == 150.0


def test_best_ties_go_to_the_earlier_record():
    fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store = HistoryStore(clock=lambda: fixed)
    first = store.record(ExperimentParameters(temperature_c=150.0), _outcome(100.0, 20.0))
    store.record(ExperimentParameters(temperature_c=170.0), _outcome(100.0, 20.0))
    assert store.best("aspect_ratio") == first


def test_best_on_empty_history(history):
    assert history.best("aspect_ratio") is None
    with pytest.raises(InvalidParameter):
        history.best("conductivity")


def test_concurrent_appends_get_unique_ids(history):
    def writer():
        for _ in range(25):
            history.record(ExperimentParameters(), _outcome(100.0, 20.0))

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ids = [r.id for r in history.all()]
    assert ids == list(range(1, 101))


def test_dataframe_export_and_reload(two_record_history):
    df = two_record_history.to_dataframe()
    assert list(df["id"]) == [1, 2]
    assert {"temperature_c", "diameter_nm", "length_um", "aspect_ratio", "completed_at"} <= set(
        df.columns
    )
    assert df["aspect_ratio"].tolist() == pytest.approx([125.0, 211.0])

    reloaded = HistoryStore.from_records(df.to_dict("records"))
    assert reloaded.all() == two_record_history.all()

    record = reloaded.record(ExperimentParameters(), _outcome(100.0, 20.0))
    assert record.id == 3


def test_from_records_requires_increasing_ids(two_record_history):
    rows = [r.to_dict() for r in reversed(two_record_history.all())]
    with pytest.raises(InvalidParameter, match="strictly increasing"):
        HistoryStore.from_records(rows)
