#!/usr/bin/env python3
"""
Command sender for the potentiostat.
Usage:
  python3 send_cmd.py encode cv init_e=0 vertex_1=500 vertex_2=-500   # Print config record hex
  python3 send_cmd.py encode dpv duty_cycle=25                        # Unset fields use defaults
  python3 send_cmd.py decode 01 00 00 00 ...                          # Decode a config record
  python3 send_cmd.py scan                                            # List nearby devices
  python3 send_cmd.py run AA:BB:CC:DD:EE:FF cv scans=2 -o out.csv     # Run, stream samples to CSV
  python3 send_cmd.py run AA:BB:CC:DD:EE:FF ca -t 30                  # Stop after 30s
"""

import argparse
import asyncio
import logging
import sys

import potentiostat_client
from experiment_session import ExperimentSession, PreconditionError
from export import save_csv
from params import DEFAULTS, ParameterError, from_record, kind_from_name, parse_params
from potentiostat_client import PotentiostatClient
from protocol import RunState, encode_params, hex_str

log = logging.getLogger("potentiostat")


def parse_assignments(kind, assignments):
    """Turn ['init_e=0', ...] into a validated record; defaults fill the rest."""
    kind = kind_from_name(kind)
    form = {name: str(value) for name, value in DEFAULTS[kind].items()}
    # duty_cycle is entered as a percentage, like the form
    if "duty_cycle" in form:
        form["duty_cycle"] = str(DEFAULTS[kind]["duty_cycle"] * 100)
    for item in assignments:
        name, sep, value = item.partition("=")
        if not sep:
            raise ParameterError(f"Expected name=value, got '{item}'")
        form[name.strip()] = value
    return parse_params(kind, form)


def cmd_encode(args):
    params = parse_assignments(args.kind, args.fields)
    record = encode_params(params)
    print(hex_str(record))
    return 0


def cmd_decode(args):
    try:
        data = bytes.fromhex("".join(args.hex))
    except ValueError as e:
        print(f"Invalid hex: {e}", file=sys.stderr)
        return 2
    try:
        params = from_record(data)
    except ValueError as e:
        print(f"Invalid record: {e}", file=sys.stderr)
        return 2
    print(params.kind.name)
    for name, value in params.to_values().items():
        print(f"  {name:<12} {value}")
    return 0


def cmd_scan(args):
    devices = asyncio.run(potentiostat_client.scan(timeout=args.timeout))
    if not devices:
        print("No devices found. Ensure your potentiostat is powered on.")
        return 1
    for d in devices:
        print(f"{d['address']}  {str(d['rssi']):>4}  {d['name']}")
    return 0


async def run_experiment(address, params, duration=None, out=None):
    """Connect, run one experiment until the device goes idle (or `duration` s), save CSV."""
    sess = ExperimentSession()
    client = PotentiostatClient(address)
    done = asyncio.Event()

    def on_status(data):
        if sess.on_status(data) == RunState.IDLE:
            done.set()

    def on_results(chunk):
        for s in sess.on_telemetry(chunk):
            print(f"{s.time:>8} ms  {s.voltage:>6} mV  {s.current:.6g}")

    client.on_status = on_status
    client.on_results = on_results
    client.on_disconnect = done.set

    await client.connect()
    sess.set_connected(True)
    try:
        sess.set_params(params)
        await potentiostat_client.start_experiment(client, sess)
        try:
            await asyncio.wait_for(done.wait(), timeout=duration)
        except asyncio.TimeoutError:
            log.info("Duration reached, stopping")
            await potentiostat_client.stop_experiment(client, sess)
            try:
                await asyncio.wait_for(done.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                log.warning("Device did not confirm stop")
        await potentiostat_client.detach(client, sess)
    finally:
        await client.close()
        sess.set_connected(False)
    if out:
        save_csv(sess.samples, out)
        print(f"Saved {len(sess.samples)} samples to {out}")
    return sess.samples


def cmd_run(args):
    params = parse_assignments(args.kind, args.fields)
    try:
        asyncio.run(run_experiment(args.address, params, args.duration, args.out))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Potentiostat command sender")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("encode", help="print the config record for a parameter set")
    p.add_argument("kind", help="cv, swv, dpv or ca")
    p.add_argument("fields", nargs="*", help="name=value overrides")
    p.set_defaults(func=cmd_encode)

    p = sub.add_parser("decode", help="decode a config record given as hex")
    p.add_argument("hex", nargs="+")
    p.set_defaults(func=cmd_decode)

    p = sub.add_parser("scan", help="list nearby potentiostats")
    p.add_argument("-t", "--timeout", type=float, default=None)
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("run", help="run one experiment and stream samples")
    p.add_argument("address")
    p.add_argument("kind")
    p.add_argument("fields", nargs="*", help="name=value overrides")
    p.add_argument("-t", "--duration", type=float, default=None, help="stop after N seconds")
    p.add_argument("-o", "--out", help="CSV output path")
    p.set_defaults(func=cmd_run)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except ParameterError as e:
        print(f"Invalid parameters: {e}", file=sys.stderr)
        return 2
    except (ConnectionError, PreconditionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
