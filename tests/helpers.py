"""Shared test helpers for potentiostat tests."""

import asyncio

from params import CAParams, CVParams, DPVParams, SWVParams
from protocol import Sample, encode_sample


def make_cv(**overrides):
    values = dict(init_e=0, vertex_1=500, vertex_2=-500, scan_rate=100, scans=1, quiet_time=1000, scan_delay=0)
    values.update(overrides)
    return CVParams(**values)


def make_swv(**overrides):
    values = dict(init_e=-200, final_e=600, incr_e=5, amplitude=25, frequency=15, quiet_time=500)
    values.update(overrides)
    return SWVParams(**values)


def make_dpv(**overrides):
    values = dict(init_e=0, final_e=500, incr_e=5, amplitude=50, frequency=10, quiet_time=1000, duty_cycle=0.5)
    values.update(overrides)
    return DPVParams(**values)


def make_ca(**overrides):
    values = dict(
        init_e=200, quiet_time=100, e_1=200, duration_1=1000, e_2=-200, duration_2=1000,
        e_3=200, duration_3=1000, final_e=0,
    )
    values.update(overrides)
    return CAParams(**values)


def make_samples(n, start=0):
    """n distinct samples; currents are exactly representable as float32."""
    return [Sample(time=10 * i, voltage=-500 + 7 * i, current=0.25 * i - 3.0) for i in range(start, start + n)]


def sample_stream(samples):
    """Concatenate samples as the device would stream them."""
    return b"".join(encode_sample(*s) for s in samples)


def split(data, size):
    """Cut data into consecutive chunks of `size` bytes (last may be shorter)."""
    return [data[i:i + size] for i in range(0, len(data), size)]


def run(coro):
    """Run async coroutine synchronously."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
