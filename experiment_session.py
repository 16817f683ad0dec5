"""
ExperimentSession: owns the experiment run lifecycle and its telemetry.

States: idle -> configuring -> running -> stopping -> idle.
Invariant: the sample list and the reassembler remainder are cleared
exactly when a run begins, never mid-run.

This module has NO dependencies on server.py, bleak, or any transport.
Callers write the returned records/commands to the device and feed
status and results notifications back in via on_status()/on_telemetry().
"""

import logging
import threading
import time

from protocol import CMD_STOP, RunState, decode_status, encode_params
from telemetry import Reassembler

log = logging.getLogger("potentiostat")

ACTIVE_STATES = (RunState.RUNNING, RunState.STOPPING)


class PreconditionError(RuntimeError):
    """An action was requested in a state that does not allow it."""


class ExperimentSession:
    """Manages experiment configuration, run state and accumulated samples.

    All public methods are serialized with a lock so notification callbacks
    from another thread cannot interleave with a start/stop.
    """

    def __init__(self):
        self.params = None
        self.state = RunState.IDLE
        self.connected = False
        self.samples = []
        self.reassembler = Reassembler()
        self.wall_started_at = ""
        self._lock = threading.Lock()

    @property
    def kind(self):
        return self.params.kind if self.params is not None else None

    @property
    def running(self):
        return self.state in ACTIVE_STATES

    def set_connected(self, connected):
        """Record transport connection state. Losing the link ends any run."""
        with self._lock:
            self.connected = connected
            if not connected and self.state in ACTIVE_STATES:
                log.warning("Connection lost while %s", self.state.value)
                self.state = RunState.IDLE

    def set_params(self, params):
        """Replace the active parameter record; None marks the form invalid.

        Outside a run, a valid record moves the session to configuring and
        an invalid one back to idle. During a run the record is kept for the
        next start and the run state is left alone.
        """
        with self._lock:
            self.params = params
            if self.state in ACTIVE_STATES:
                log.info("Parameters changed during run, used on next start")
            elif params is None:
                self.state = RunState.IDLE
            else:
                self.state = RunState.CONFIGURING
            return self.state

    def _check_ready(self, action):
        if not self.connected:
            raise PreconditionError(f"Cannot {action}: not connected")
        if self.params is None:
            raise PreconditionError(f"Cannot {action}: no valid parameters")
        if self.state == RunState.RUNNING:
            raise PreconditionError(f"Cannot {action}: already running")
        if self.state == RunState.STOPPING:
            raise PreconditionError(f"Cannot {action}: stop in progress")

    def apply(self):
        """Return the config record to write. Run state is unchanged."""
        with self._lock:
            self._check_ready("apply")
            return encode_params(self.params)

    def start(self):
        """Begin a run. Returns the config record to write before the start command."""
        with self._lock:
            self._check_ready("start")
            record = encode_params(self.params)
            self._begin_run()
            log.info(f"Experiment started ({self.params.kind.name})")
            return record

    def cancel_start(self):
        """Roll back a start() whose device writes failed."""
        with self._lock:
            if self.state != RunState.RUNNING:
                return
            self.state = RunState.CONFIGURING if self.params is not None else RunState.IDLE
            log.warning("Start aborted, back to %s", self.state.value)

    def stop(self):
        """Request a stop. Returns the control command to write.

        running -> stopping happens immediately; the device confirms later by
        clearing its running bit. Repeated stops while stopping are no-ops.
        """
        with self._lock:
            if not self.connected:
                raise PreconditionError("Cannot stop: not connected")
            if self.state == RunState.RUNNING:
                self.state = RunState.STOPPING
                log.info("Stop requested")
            elif self.state != RunState.STOPPING:
                raise PreconditionError("Cannot stop: not running")
            return CMD_STOP

    def _begin_run(self):
        self.samples = []
        self.reassembler.reset()
        self.state = RunState.RUNNING
        self.wall_started_at = time.strftime("%Y-%m-%dT%H:%M:%S")

    def on_status(self, data):
        """Merge a status notification (int or bytes, first byte used). Returns the new state."""
        if not isinstance(data, int):
            if not data:
                log.debug("Empty status notification ignored")
                return self.state
            data = data[0]
        with self._lock:
            if decode_status(data) == RunState.RUNNING:
                if self.state in (RunState.IDLE, RunState.CONFIGURING):
                    self._begin_run()
                    log.info("Device reports running")
            else:
                if self.state in ACTIVE_STATES:
                    log.info("Device reports idle")
                self.state = RunState.IDLE
            return self.state

    def on_telemetry(self, chunk):
        """Feed a results notification. Returns the samples it completed."""
        with self._lock:
            samples = self.reassembler.feed(chunk)
            self.samples.extend(samples)
            return samples

    def samples_since(self, index=0):
        with self._lock:
            return self.samples[index:]

    def teardown(self):
        """Stop consuming telemetry: drop the partial record. Returns bytes dropped."""
        with self._lock:
            dropped = self.reassembler.reset()
            if dropped and self.state in ACTIVE_STATES:
                log.warning(f"Telemetry detached during run, dropped {dropped} partial bytes")
            return dropped

    def to_dict(self):
        """Build session state dict for WebSocket broadcast."""
        with self._lock:
            return {
                "type": "session",
                "state": self.state.value,
                "kind": self.params.kind.name if self.params is not None else None,
                "params": self.params.to_values() if self.params is not None else None,
                "connected": self.connected,
                "sample_count": len(self.samples),
                "remainder": len(self.reassembler.remainder),
                "wall_started_at": self.wall_started_at,
            }
