"""
Telemetry reassembly for the results characteristic.

Notifications carry arbitrary slices of a continuous stream of 12-byte
sample records; a record may straddle two notifications. Reassembler
keeps the trailing partial record (0-11 bytes) and splices it onto the
next chunk, so no sample is lost or duplicated as long as chunks are fed
in arrival order.

    r = Reassembler()
    for chunk in notifications:
        for sample in r.feed(chunk):
            ...

Not thread-safe on its own: callers on a multi-threaded dispatcher must
serialize feed() (ExperimentSession does).
"""

import logging

from protocol import SAMPLE_SIZE, decode_sample

log = logging.getLogger("telemetry")


class Reassembler:
    def __init__(self):
        self._buf = b""

    @property
    def remainder(self):
        """Bytes held back from the last feed(), always shorter than one record."""
        return self._buf

    def feed(self, chunk):
        """Append a chunk and return every sample it completes, in arrival order."""
        data = self._buf + bytes(chunk)
        end = len(data) - len(data) % SAMPLE_SIZE
        samples = [decode_sample(data, offset) for offset in range(0, end, SAMPLE_SIZE)]
        self._buf = data[end:]
        log.debug("chunk %d bytes -> %d samples, remainder %d", len(chunk), len(samples), len(self._buf))
        return samples

    def reset(self):
        """Drop any partial record. Returns the number of bytes discarded."""
        dropped = len(self._buf)
        self._buf = b""
        return dropped


def iter_samples(chunks, reassembler=None):
    """Lazily yield samples from an iterable of byte chunks.

    Decouples reassembly from any transport callback: pass a list, a
    generator reading a capture file, or a queue-draining iterator.
    """
    if reassembler is None:
        reassembler = Reassembler()
    for chunk in chunks:
        yield from reassembler.feed(chunk)
