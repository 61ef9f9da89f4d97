import itertools
import math

import pytest

from agnw_lab.data_types import ExperimentOutcome, Status
from agnw_lab.errors import DeviceUnavailable, InvalidParameter, InvalidTransition
from agnw_lab.workflow import SynthesisLab


@pytest.fixture
def lab(fast_optimizer_config):
    lab = SynthesisLab(config={"optimizer": fast_optimizer_config}, seed=0)
    yield lab
    lab.close()


def _complete_one_minute_run(lab, temperature_c=160.0):
    lab.configure({"temperature_c": temperature_c, "reaction_time_min": 1.0})
    lab.start()
    for _ in range(60):
        state = lab.tick(1.0)
    return state


def test_full_run_records_aspect_ratio(lab):
    state = _complete_one_minute_run(lab)
    assert state.status == Status.COMPLETED
    assert state.progress == 100.0

    record = lab.record_outcome({"diameter_nm": 95.0, "length_um": 20.0})
    assert math.isclose(record.outcome.aspect_ratio, 20000.0 / 95.0)
    assert record.parameters.temperature_c == 160.0
    assert lab.status().status == Status.IDLE
    assert lab.history() == (record,)
    assert lab.best("aspect_ratio") == record


def test_record_outcome_requires_a_completed_run(lab):
    outcome = ExperimentOutcome(diameter_nm=95.0, length_um=20.0)
    with pytest.raises(InvalidTransition):
        lab.record_outcome(outcome)

    lab.configure({"reaction_time_min": 1.0})
    lab.start()
    lab.tick(1.0)
    with pytest.raises(InvalidTransition):
        lab.record_outcome(outcome)
    assert lab.history() == ()


def test_invalid_outcome_leaves_the_run_awaiting_measurement(lab):
    _complete_one_minute_run(lab)
    with pytest.raises(InvalidParameter):
        lab.record_outcome({"diameter_nm": -5.0, "length_um": 20.0})
    assert lab.status().status == Status.COMPLETED
    assert lab.history() == ()


def test_outcome_is_recorded_only_once(lab):
    _complete_one_minute_run(lab)
    lab.record_outcome(ExperimentOutcome(diameter_nm=95.0, length_um=20.0))
    with pytest.raises(InvalidTransition):
        lab.record_outcome(ExperimentOutcome(diameter_nm=95.0, length_um=20.0))
    assert len(lab.history()) == 1


def test_discard_outcome(lab):
    _complete_one_minute_run(lab)
    assert lab.discard_outcome().status == Status.IDLE
    assert lab.history() == ()


def test_stop_produces_no_record(lab):
    lab.configure({"reaction_time_min": 1.0})
    lab.start()
    lab.tick(10.0)
    assert lab.stop().status == Status.IDLE
    assert lab.history() == ()


def test_outcome_is_paired_with_the_parameters_the_run_used(lab):
    _complete_one_minute_run(lab, temperature_c=150.0)
    lab.configure({"temperature_c": 175.0})
    assert lab.status().run_parameters.temperature_c == 150.0

    record = lab.record_outcome({"diameter_nm": 95.0, "length_um": 20.0})
    assert record.parameters.temperature_c == 150.0
    assert lab.history()[0].parameters.temperature_c == 150.0
    state = lab.status()
    assert state.run_parameters is None
    assert state.parameters.temperature_c == 175.0


def test_stop_after_completion_leaves_nothing_to_record(lab):
    _complete_one_minute_run(lab)
    assert lab.stop().status == Status.IDLE
    with pytest.raises(InvalidTransition):
        lab.record_outcome({"diameter_nm": 95.0, "length_um": 20.0})
    assert lab.history() == ()


def test_stop_in_error_requires_acknowledge(lab):
    lab.configure({"reaction_time_min": 1.0})
    lab.start()
    lab.devices.disconnect("heater")
    with pytest.raises(DeviceUnavailable):
        lab.tick(1.0)
    assert lab.stop().status == Status.ERROR
    lab.devices.reconnect("heater")
    assert lab.acknowledge().status == Status.IDLE


def test_read_spectra_after_completion(lab):
    _complete_one_minute_run(lab)
    spectra = lab.read_spectra()
    assert [len(spectra["uvvis"]), len(spectra["nir"])] == [8, 3]
    lab.devices.disconnect("uvvis")
    with pytest.raises(DeviceUnavailable, match="uvvis"):
        lab.read_spectra()
    assert lab.status().status == Status.COMPLETED


def test_devices_connected(lab):
    assert all(lab.devices_connected().values())
    lab.devices.disconnect("pumps")
    assert lab.devices_connected()["pumps"] is False


def test_suggestion_can_be_applied_and_run(lab):
    suggestion = lab.suggest_next("aspect_ratio", seed=3)
    params = lab.apply_suggestion(suggestion)
    assert params == suggestion.parameters
    assert lab.start().target_temp_c == suggestion.parameters.temperature_c


def test_suggest_next_rejects_unknown_metric(lab):
    with pytest.raises(InvalidParameter):
        lab.suggest_next("conductivity")


def test_suggest_next_async(lab):
    future = lab.suggest_next_async("length", seed=4)
    suggestion = future.result(timeout=30.0)
    assert suggestion.target_metric == "length"
    assert suggestion == lab.suggest_next("length", seed=4)


def test_control_loop_completes_a_run(lab):
    counter = itertools.count(start=0, step=20)
    lab.configure({"reaction_time_min": 1.0})
    loop = lab.start_control_loop(period_s=0.001, clock=lambda: next(counter))
    loop.join(timeout=5.0)
    assert lab.status().status == Status.COMPLETED

    record = lab.record_outcome({"diameter_nm": 80.0, "length_um": 16.0})
    assert record.outcome.aspect_ratio == 200.0
