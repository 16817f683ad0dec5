"""CSV export of recorded samples."""

import csv
import io

CSV_HEADER = ("Time (ms)", "Voltage (mV)", "Current (uA)")


def write_csv(samples, f):
    """Write a header row and one row per sample, in arrival order."""
    writer = csv.writer(f, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for s in samples:
        writer.writerow((s.time, s.voltage, s.current))


def samples_to_csv(samples):
    buf = io.StringIO()
    write_csv(samples, buf)
    return buf.getvalue()


def save_csv(samples, path):
    with open(path, "w", newline="") as f:
        write_csv(samples, f)
