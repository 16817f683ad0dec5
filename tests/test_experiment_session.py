"""Unit tests for ExperimentSession, standalone, no transport dependencies."""

import threading

import pytest

from experiment_session import ExperimentSession, PreconditionError
from protocol import CMD_STOP, RunState, encode_params
from tests.helpers import make_cv, make_samples, make_swv, sample_stream


def run_started(sess):
    sess.start()
    assert sess.state == RunState.RUNNING
    return sess


# --- Configuration ---


class TestParams:
    def test_starts_idle(self, sess):
        assert sess.state == RunState.IDLE
        assert sess.params is None
        assert sess.samples == []

    def test_valid_params_configuring(self, sess):
        assert sess.set_params(make_cv()) == RunState.CONFIGURING
        assert sess.kind.name == "CV"

    def test_invalid_params_back_to_idle(self, sess):
        sess.set_params(make_cv())
        assert sess.set_params(None) == RunState.IDLE
        assert sess.kind is None

    def test_change_during_run_keeps_state(self, ready_sess):
        run_started(ready_sess)
        assert ready_sess.set_params(make_swv()) == RunState.RUNNING
        assert ready_sess.params == make_swv()


# --- Guards ---


class TestGuards:
    def test_start_rejected_when_disconnected(self, sess):
        sess.set_params(make_cv())
        with pytest.raises(PreconditionError, match="not connected"):
            sess.start()
        assert sess.state == RunState.CONFIGURING

    def test_start_rejected_without_params(self, sess):
        sess.set_connected(True)
        with pytest.raises(PreconditionError, match="no valid parameters"):
            sess.start()
        assert sess.state == RunState.IDLE

    def test_start_rejected_when_running(self, ready_sess):
        run_started(ready_sess)
        with pytest.raises(PreconditionError, match="already running"):
            ready_sess.start()

    def test_apply_rejected_when_stopping(self, ready_sess):
        run_started(ready_sess)
        ready_sess.stop()
        with pytest.raises(PreconditionError, match="stop in progress"):
            ready_sess.apply()

    def test_apply_returns_record_without_transition(self, ready_sess):
        assert ready_sess.apply() == encode_params(make_cv())
        assert ready_sess.state == RunState.CONFIGURING

    def test_stop_rejected_when_idle(self, ready_sess):
        with pytest.raises(PreconditionError, match="not running"):
            ready_sess.stop()

    def test_stop_rejected_when_disconnected(self, ready_sess):
        run_started(ready_sess)
        ready_sess.connected = False
        with pytest.raises(PreconditionError):
            ready_sess.stop()


# --- Transitions ---


class TestStart:
    def test_start_returns_record(self, ready_sess):
        assert ready_sess.start() == encode_params(make_cv())
        assert ready_sess.wall_started_at != ""

    def test_start_clears_samples_and_remainder(self, ready_sess):
        run_started(ready_sess)
        ready_sess.on_telemetry(sample_stream(make_samples(3)) + b"\x01\x02")
        ready_sess.on_status(b"\x00")
        ready_sess.start()
        assert ready_sess.samples == []
        assert ready_sess.reassembler.remainder == b""

    def test_start_from_idle_with_params(self, ready_sess):
        ready_sess.on_status(b"\x00")  # configuring -> idle, params kept
        assert ready_sess.state == RunState.IDLE
        run_started(ready_sess)

    def test_cancel_start_rolls_back(self, ready_sess):
        run_started(ready_sess)
        ready_sess.cancel_start()
        assert ready_sess.state == RunState.CONFIGURING


class TestStop:
    def test_stop_is_immediate(self, ready_sess):
        run_started(ready_sess)
        assert ready_sess.stop() == CMD_STOP
        assert ready_sess.state == RunState.STOPPING

    def test_stop_idempotent_while_stopping(self, ready_sess):
        run_started(ready_sess)
        ready_sess.stop()
        assert ready_sess.stop() == CMD_STOP
        assert ready_sess.state == RunState.STOPPING

    def test_status_clear_finishes_stop(self, ready_sess):
        run_started(ready_sess)
        ready_sess.stop()
        assert ready_sess.on_status(b"\x00") == RunState.IDLE

    def test_running_bit_while_stopping_keeps_stopping(self, ready_sess):
        run_started(ready_sess)
        ready_sess.stop()
        assert ready_sess.on_status(b"\x01") == RunState.STOPPING


class TestStatus:
    @pytest.mark.parametrize("setup", ["idle", "configuring", "running", "stopping"])
    def test_clear_bit_always_idle(self, sess, setup):
        sess.set_connected(True)
        if setup != "idle":
            sess.set_params(make_cv())
        if setup in ("running", "stopping"):
            sess.start()
        if setup == "stopping":
            sess.stop()
        assert sess.on_status(b"\x00") == RunState.IDLE

    def test_running_bit_starts_run_and_clears_samples(self, ready_sess):
        ready_sess.samples = make_samples(2)
        assert ready_sess.on_status(b"\x01") == RunState.RUNNING
        assert ready_sess.samples == []

    def test_running_bit_mid_run_keeps_samples(self, ready_sess):
        run_started(ready_sess)
        ready_sess.on_telemetry(sample_stream(make_samples(2)))
        ready_sess.on_status(0x01)
        assert len(ready_sess.samples) == 2

    def test_reserved_bits_ignored(self, ready_sess):
        assert ready_sess.on_status(b"\xfe") == RunState.IDLE

    def test_empty_status_ignored(self, ready_sess):
        assert ready_sess.on_status(b"") == RunState.CONFIGURING


class TestTelemetry:
    def test_samples_accumulate_in_order(self, ready_sess):
        run_started(ready_sess)
        samples = make_samples(4)
        data = sample_stream(samples)
        assert ready_sess.on_telemetry(data[:20]) == samples[:1]
        assert ready_sess.on_telemetry(data[20:]) == samples[1:]
        assert ready_sess.samples == samples
        assert ready_sess.samples_since(3) == samples[3:]

    def test_teardown_drops_remainder(self, ready_sess):
        run_started(ready_sess)
        ready_sess.on_telemetry(b"\x00" * 5)
        assert ready_sess.teardown() == 5
        assert ready_sess.reassembler.remainder == b""

    def test_concurrent_feeding_loses_nothing(self, ready_sess):
        run_started(ready_sess)
        chunk = sample_stream(make_samples(1))
        threads = [threading.Thread(target=lambda: [ready_sess.on_telemetry(chunk) for _ in range(50)]) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ready_sess.samples) == 200


class TestConnection:
    def test_disconnect_ends_run(self, ready_sess):
        run_started(ready_sess)
        ready_sess.set_connected(False)
        assert ready_sess.state == RunState.IDLE
        assert not ready_sess.connected

    def test_disconnect_keeps_configuring(self, ready_sess):
        ready_sess.set_connected(False)
        assert ready_sess.state == RunState.CONFIGURING


class TestToDict:
    def test_fields(self, ready_sess):
        run_started(ready_sess)
        ready_sess.on_telemetry(sample_stream(make_samples(2)) + b"\x00\x00\x00")
        d = ready_sess.to_dict()
        assert d["type"] == "session"
        assert d["state"] == "running"
        assert d["kind"] == "CV"
        assert d["params"]["vertex_2"] == -500
        assert d["connected"] is True
        assert d["sample_count"] == 2
        assert d["remainder"] == 3
        assert d["wall_started_at"] == ready_sess.wall_started_at != ""

    def test_empty(self, sess):
        d = sess.to_dict()
        assert d["state"] == "idle"
        assert d["kind"] is None
        assert d["params"] is None
        assert d["wall_started_at"] == ""
