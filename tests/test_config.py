import json
import logging

import pytest

from agnw_lab import config
from agnw_lab.logging_config import configure_logging


@pytest.fixture
def restore_config():
    yield
    config.load_config()


def test_defaults(restore_config):
    cfg = config.load_config()
    assert cfg["controller"]["gain"] == 0.1
    assert cfg["optimizer"]["cold_start_ceiling"] == 0.3
    assert cfg is config.get_config()
    # Loaded config must not alias the defaults
    cfg["controller"]["gain"] = 0.5
    assert config.DEFAULT_CONFIG["controller"]["gain"] == 0.1


def test_json_file_is_merged_over_defaults(tmp_path, restore_config):
    path = tmp_path / "lab.json"
    path.write_text(json.dumps({"controller": {"safety_margin_c": 5.0}}))
    cfg = config.load_config(str(path))
    assert cfg["controller"]["safety_margin_c"] == 5.0
    assert cfg["controller"]["gain"] == 0.1


def test_unreadable_file_falls_back_to_defaults(tmp_path, restore_config):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    cfg = config.load_config(str(path))
    assert cfg["controller"]["safety_margin_c"] == 10.0


def test_environment_overrides(monkeypatch, restore_config):
    monkeypatch.setenv("AGNW_LAB_CONTROLLER__GAIN", "0.25")
    monkeypatch.setenv("AGNW_LAB_OPTIMIZER__FALLBACK", "none")
    monkeypatch.setenv("AGNW_LAB_RIG__SEED", "7")
    cfg = config.load_config()
    assert cfg["controller"]["gain"] == 0.25
    assert cfg["optimizer"]["fallback"] is None
    assert cfg["rig"]["seed"] == 7


def test_save_config_round_trip(tmp_path, restore_config):
    config.load_config()
    path = tmp_path / "nested" / "saved.json"
    assert config.save_config(str(path))
    assert json.loads(path.read_text())["campaign"]["max_failures"] == 3


def test_section_applies_overrides():
    merged = config.section("optimizer", {"kappa": 2.0})
    assert merged["kappa"] == 2.0
    assert merged["min_records"] == 2
    assert config.section("optimizer")["kappa"] == 0.5


def test_configure_logging_writes_rotating_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging(app_name="unit", log_level="debug", log_dir=str(tmp_path / "logs"))
        assert root.level == logging.DEBUG
        logging.getLogger("agnw_lab.test").info("hello from the test")
        for handler in root.handlers:
            handler.flush()
        assert "hello from the test" in (tmp_path / "logs" / "unit.log").read_text()
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
