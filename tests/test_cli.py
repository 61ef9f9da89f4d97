import json
import logging

import pandas as pd
import pytest

import agnw_optimize
from agnw_lab import config


@pytest.fixture(autouse=True)
def isolated_run(tmp_path, monkeypatch):
    """Run the CLI in a scratch directory and undo its logging setup afterwards."""
    monkeypatch.chdir(tmp_path)
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    config.load_config()


def test_simulate_then_suggest(tmp_path, capsys):
    csv_path = tmp_path / "out" / "campaign.csv"
    code = agnw_optimize.main(
        [
            "--log_level",
            "WARNING",
            "simulate",
            "--n_experiments",
            "3",
            "--seed",
            "1",
            "--tick_seconds",
            "120",
            "--export_csv",
            str(csv_path),
        ]
    )
    assert code == 0
    assert "Campaign finished: 3 recorded, 0 failed" in capsys.readouterr().out

    df = pd.read_csv(csv_path)
    assert len(df) == 3
    assert list(df["id"]) == [1, 2, 3]

    suggestion_path = tmp_path / "next.json"
    code = agnw_optimize.main(
        [
            "suggest",
            "--history",
            str(csv_path),
            "--seed",
            "2",
            "--output",
            str(suggestion_path),
        ]
    )
    assert code == 0
    saved = json.loads(suggestion_path.read_text())
    assert saved["strategy"] == "gp_ucb"
    assert saved["n_records"] == 3
    assert 140.0 <= saved["parameters"]["temperature_c"] <= 180.0


def test_run_single_experiment(capsys):
    code = agnw_optimize.main(
        ["run", "--temperature_c", "165", "--reaction_time_min", "1", "--seed", "3"]
    )
    assert code == 0
    out = capsys.readouterr().out
    assert "Experiment #1" in out
    assert "Aspect ratio" in out


def test_run_rejects_out_of_bounds_parameters(capsys):
    code = agnw_optimize.main(["run", "--temperature_c", "250"])
    assert code == 1
    assert "InvalidParameter" in capsys.readouterr().out


def test_suggest_from_json_history(tmp_path, capsys):
    history_path = tmp_path / "history.json"
    history_path.write_text(
        json.dumps(
            [
                {
                    "id": 1,
                    "completed_at": "2024-01-01T10:00:00+00:00",
                    "eg_volume_ml": 100.0,
                    "agno3_volume_ml": 5.0,
                    "pvp_volume_ml": 10.0,
                    "nacl_volume_ml": 1.0,
                    "temperature_c": 150.0,
                    "stirring_rpm": 500.0,
                    "reaction_time_min": 60.0,
                    "diameter_nm": 100.0,
                    "length_um": 12.5,
                }
            ]
        )
    )
    code = agnw_optimize.main(["suggest", "--history", str(history_path), "--seed", "0"])
    assert code == 0
    assert "cold_start" in capsys.readouterr().out
