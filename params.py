"""
Experiment parameter records and input validation.

One frozen pydantic model per ExperimentKind. Each carries its `kind` tag,
so a record knows which config layout it encodes to. Field bounds are the
instrument-safe ranges enforced before anything reaches the wire:

  potentials   -3300..3300 mV (signed)
  magnitudes   0..2**32-1 (durations ms, rates, counts, frequencies)
  duty_cycle   0.0..1.0 (fraction; forms enter it as a percentage)

parse_params() takes raw form values (strings or numbers) the way the
experiment forms supply them and returns a validated record, raising
ParameterError when the form cannot produce one.
"""

import math
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from protocol import ExperimentKind, decode_config

MIN_POTENTIAL_MV = -3300
MAX_POTENTIAL_MV = 3300
MAX_U32 = 2**32 - 1

Potential = Annotated[int, Field(ge=MIN_POTENTIAL_MV, le=MAX_POTENTIAL_MV)]
Magnitude = Annotated[int, Field(ge=0, le=MAX_U32)]
DutyCycle = Annotated[float, Field(ge=0.0, le=1.0)]


class ParameterError(ValueError):
    """Parameters failed validation and cannot be encoded."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_values(self):
        """Field values without the kind tag."""
        return self.model_dump(exclude={"kind"})


class CVParams(_Params):
    kind: Literal[ExperimentKind.CV] = ExperimentKind.CV
    init_e: Potential
    vertex_1: Potential
    vertex_2: Potential
    scan_rate: Magnitude  # mV/s
    scans: Magnitude
    quiet_time: Magnitude  # ms
    scan_delay: Magnitude = 0  # ms


class SWVParams(_Params):
    kind: Literal[ExperimentKind.SWV] = ExperimentKind.SWV
    init_e: Potential
    final_e: Potential
    incr_e: Potential
    amplitude: Magnitude  # mV
    frequency: Magnitude  # Hz
    quiet_time: Magnitude


class DPVParams(_Params):
    kind: Literal[ExperimentKind.DPV] = ExperimentKind.DPV
    init_e: Potential
    final_e: Potential
    incr_e: Potential
    amplitude: Magnitude
    frequency: Magnitude
    quiet_time: Magnitude
    duty_cycle: DutyCycle


class CAParams(_Params):
    kind: Literal[ExperimentKind.CA] = ExperimentKind.CA
    init_e: Potential
    quiet_time: Magnitude
    e_1: Potential
    duration_1: Magnitude
    e_2: Potential
    duration_2: Magnitude
    e_3: Potential
    duration_3: Magnitude
    final_e: Potential


ExperimentParams = Union[CVParams, SWVParams, DPVParams, CAParams]

PARAM_TYPES = {
    ExperimentKind.CV: CVParams,
    ExperimentKind.SWV: SWVParams,
    ExperimentKind.DPV: DPVParams,
    ExperimentKind.CA: CAParams,
}

KIND_NAMES = {kind.name.lower(): kind for kind in ExperimentKind}

# Form defaults, per kind
DEFAULTS = {
    ExperimentKind.CV: {
        "init_e": 0, "vertex_1": 500, "vertex_2": -500,
        "scan_rate": 100, "scans": 1, "quiet_time": 1000, "scan_delay": 0,
    },
    ExperimentKind.SWV: {
        "init_e": 0, "final_e": 500, "incr_e": 5,
        "amplitude": 25, "frequency": 10, "quiet_time": 1000,
    },
    ExperimentKind.DPV: {
        "init_e": 0, "final_e": 500, "incr_e": 5,
        "amplitude": 50, "frequency": 10, "quiet_time": 1000, "duty_cycle": 0.5,
    },
    ExperimentKind.CA: {
        "init_e": 0, "quiet_time": 1000,
        "e_1": 500, "duration_1": 5000,
        "e_2": -500, "duration_2": 5000,
        "e_3": 0, "duration_3": 0,
        "final_e": 0,
    },
}

# Fields a form must fill in; the rest fall back to DEFAULTS
REQUIRED = {
    ExperimentKind.CV: {"init_e", "vertex_1", "vertex_2", "scan_rate", "scans", "quiet_time"},
    ExperimentKind.SWV: {"init_e", "final_e", "incr_e", "amplitude", "frequency"},
    ExperimentKind.DPV: {"init_e", "final_e", "amplitude", "frequency", "duty_cycle"},
    ExperimentKind.CA: {"init_e", "quiet_time", "e_1", "duration_1"},
}


def kind_from_name(kind):
    """Resolve 'cv'/'SWV'/ExperimentKind/tag int to an ExperimentKind."""
    if isinstance(kind, str):
        try:
            return KIND_NAMES[kind.strip().lower()]
        except KeyError:
            raise ParameterError(
                f"Unknown experiment kind '{kind}'. Known: {', '.join(KIND_NAMES)}", field="kind"
            ) from None
    try:
        return ExperimentKind(kind)
    except ValueError:
        raise ParameterError(f"Unknown experiment kind {kind!r}", field="kind") from None


def field_names(kind):
    """Field names of a kind's record, in wire order."""
    return [name for name in PARAM_TYPES[kind_from_name(kind)].model_fields if name != "kind"]


def _blank(raw):
    return raw is None or (isinstance(raw, str) and not raw.strip())


def _parse_number(raw, name):
    if isinstance(raw, bool):
        raise ParameterError(f"{name} must be a number", field=name)
    if isinstance(raw, (int, float)):
        value = raw
    else:
        try:
            value = float(str(raw).strip())
        except ValueError:
            raise ParameterError(f"{name} must be a number, got '{raw}'", field=name) from None
    if not math.isfinite(value):
        raise ParameterError(f"{name} must be finite", field=name)
    return value


def _parse_int(raw, name):
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            pass
    value = _parse_number(raw, name)
    if isinstance(value, float):
        if not value.is_integer():
            raise ParameterError(f"{name} must be a whole number, got {raw}", field=name)
        value = int(value)
    return value


def make_params(kind, values):
    """Build a validated record from already-numeric values. Raises ParameterError."""
    kind = kind_from_name(kind)
    try:
        return PARAM_TYPES[kind](**values)
    except ValidationError as e:
        err = e.errors()[0]
        name = ".".join(str(part) for part in err.get("loc", ())) or None
        raise ParameterError(f"{kind.name} {name}: {err['msg']}", field=name) from e


def parse_params(kind, form):
    """Parse raw form input into a validated record. Raises ParameterError.

    Integer fields accept ints, integral floats and numeric strings.
    duty_cycle is entered as a percentage ("50") and stored as a fraction (0.5).
    """
    kind = kind_from_name(kind)
    unknown = set(form) - set(field_names(kind))
    if unknown:
        raise ParameterError(f"Unknown {kind.name} field(s): {', '.join(sorted(unknown))}")
    values = {}
    for name in field_names(kind):
        raw = form.get(name)
        if _blank(raw):
            if name in REQUIRED[kind]:
                raise ParameterError(f"{kind.name} {name} is required", field=name)
            values[name] = DEFAULTS[kind][name]
        elif name == "duty_cycle":
            values[name] = _parse_number(raw, name) / 100.0
        else:
            values[name] = _parse_int(raw, name)
    return make_params(kind, values)


def try_parse_params(kind, form):
    """parse_params(), but None when the form does not hold a valid record."""
    try:
        return parse_params(kind, form)
    except ParameterError:
        return None


def default_params(kind):
    kind = kind_from_name(kind)
    return PARAM_TYPES[kind](**DEFAULTS[kind])


def from_record(data):
    """Rebuild a parameter record from its encoded bytes."""
    kind, values = decode_config(data)
    return make_params(kind, values)
