#!/usr/bin/env python3
"""
Potentiostat BLE Protocol Library

Shared constants and functions for encoding/decoding the potentiostat wire protocol.
All records are little-endian, fixed size, no padding.

Config records (app -> device, written to the config characteristic):

  Kind  Tag  Fields                                                     Size
  CV    1    init_e vertex_1 vertex_2 (i32) scan_rate scans
             quiet_time scan_delay (u32)                                32
  SWV   2    init_e final_e incr_e (i32) amplitude frequency
             quiet_time (u32)                                           28
  DPV   3    as SWV + duty_cycle (f32, fraction 0..1)                   32
  CA    4    init_e (i32) quiet_time (u32) e_1 (i32) duration_1 (u32)
             e_2 (i32) duration_2 (u32) e_3 (i32) duration_3 (u32)
             final_e (i32)                                              40

Sample record (device -> app, results notifications, 12 bytes):
  time (u32, ms since start) | voltage (i32, mV) | current (f32)

Status (device -> app, 1 byte): bit 0 = running, other bits reserved.
Control (app -> device, 1 byte): 0x01 = start, 0x00 = stop.
"""

import struct
from collections.abc import Mapping
from enum import Enum, IntEnum
from typing import NamedTuple


class ExperimentKind(IntEnum):
    """Experiment technique. The value is the u32 tag leading every config record."""

    CV = 0x01
    SWV = 0x02
    DPV = 0x03
    CA = 0x04


class RunState(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    STOPPING = "stopping"


# Control characteristic commands
CMD_START = bytes([0x01])
CMD_STOP = bytes([0x00])

STATUS_RUNNING = 0x01  # bit 0 of the status byte

# Config layouts: struct (tag first) + field names in wire order
CONFIG_LAYOUTS = {
    ExperimentKind.CV: (
        struct.Struct("<IiiiIIII"),
        ("init_e", "vertex_1", "vertex_2", "scan_rate", "scans", "quiet_time", "scan_delay"),
    ),
    ExperimentKind.SWV: (
        struct.Struct("<IiiiIII"),
        ("init_e", "final_e", "incr_e", "amplitude", "frequency", "quiet_time"),
    ),
    ExperimentKind.DPV: (
        struct.Struct("<IiiiIIIf"),
        ("init_e", "final_e", "incr_e", "amplitude", "frequency", "quiet_time", "duty_cycle"),
    ),
    ExperimentKind.CA: (
        struct.Struct("<IiIiIiIiIi"),
        (
            "init_e", "quiet_time",
            "e_1", "duration_1",
            "e_2", "duration_2",
            "e_3", "duration_3",
            "final_e",
        ),
    ),
}

CONFIG_SIZES = {kind: layout.size for kind, (layout, _) in CONFIG_LAYOUTS.items()}

_TAG = struct.Struct("<I")

SAMPLE_STRUCT = struct.Struct("<Iif")
SAMPLE_SIZE = SAMPLE_STRUCT.size  # 12


class Sample(NamedTuple):
    time: int  # ms since experiment start
    voltage: int  # mV
    current: float


def _field(params, name):
    if isinstance(params, Mapping):
        return params[name]
    return getattr(params, name)


def encode(kind, params):
    """Encode a parameter set as the fixed-size config record for `kind`.

    `params` is a parameter model or a mapping holding every field of the
    kind's layout. Values are trusted; validation happens before this call.
    Raises TypeError for an unknown kind or a record of another kind.
    """
    try:
        kind = ExperimentKind(kind)
    except ValueError:
        raise TypeError(f"Unknown experiment kind: {kind!r}") from None
    own_kind = None if isinstance(params, Mapping) else getattr(params, "kind", None)
    if own_kind is not None and own_kind != kind:
        raise TypeError(f"{type(params).__name__} is a {ExperimentKind(own_kind).name} record, not {kind.name}")
    fmt, fields = CONFIG_LAYOUTS[kind]
    return fmt.pack(int(kind), *(_field(params, name) for name in fields))


def encode_params(params):
    """Encode a tagged parameter model (anything carrying a `kind` attribute)."""
    kind = getattr(params, "kind", None)
    if kind is None:
        raise TypeError(f"Not an experiment parameter record: {type(params).__name__}")
    return encode(kind, params)


def decode_config(data):
    """Decode a config record. Returns (kind, {field: value}).

    The device never sends these back; this is the inverse of encode() for
    tooling and tests. Raises ValueError on unknown tag or wrong length.
    """
    if len(data) < _TAG.size:
        raise ValueError(f"Config record too short: {len(data)} bytes")
    (tag,) = _TAG.unpack_from(data)
    try:
        kind = ExperimentKind(tag)
    except ValueError:
        raise ValueError(f"Unknown experiment tag: {tag}") from None
    fmt, fields = CONFIG_LAYOUTS[kind]
    if len(data) != fmt.size:
        raise ValueError(f"{kind.name} record must be {fmt.size} bytes, got {len(data)}")
    values = fmt.unpack(bytes(data))[1:]
    return kind, dict(zip(fields, values))


def decode_status(status):
    """Translate a status byte to RUNNING (bit 0 set) or IDLE. Reserved bits are ignored."""
    if status & STATUS_RUNNING:
        return RunState.RUNNING
    return RunState.IDLE


def decode_sample(data, offset=0):
    """Decode one 12-byte sample record starting at `offset`."""
    return Sample(*SAMPLE_STRUCT.unpack_from(data, offset))


def encode_sample(time_ms, voltage, current):
    """Build a sample record as the device sends it (used by tools and tests)."""
    return SAMPLE_STRUCT.pack(time_ms, voltage, current)


def hex_str(data):
    """Format bytes as hex string."""
    return ' '.join(f'{b:02X}' for b in data)
