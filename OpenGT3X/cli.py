import argparse
import logging
import os
import sys

from .decode import read_log, to_dataframe
from .utils import format_start_time


def _estimate_max_samples(path: str) -> int:
    # ACTIVITY packs a sample in 4.5 bytes, the densest layout in the log
    return max(1, os.path.getsize(path) * 2 // 9)


def _add_decode_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("logfile", help="Path to a log.bin file extracted from a .gt3x archive")
    parser.add_argument(
        "--sample-rate",
        "-r",
        type=int,
        default=30,
        help="Sampling rate in Hz (default: 30)",
    )
    parser.add_argument(
        "--scale-factor",
        "-s",
        type=float,
        default=341.0,
        help="Raw counts per g (default: 341)",
    )
    parser.add_argument(
        "--max-samples",
        "-n",
        type=int,
        default=None,
        help="Maximum number of samples to decode. Omit to size from the file.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Print parameters and progress"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Print a line for every activity record"
    )


def main(argv=None):
    parser = argparse.ArgumentParser(prog="OpenGT3X", description="OpenGT3X utilities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _decode(ns):
        if ns.sample_rate <= 0:
            parser.error("--sample-rate must be positive")
        if ns.scale_factor <= 0:
            parser.error("--scale-factor must be positive")
        if ns.max_samples is not None and ns.max_samples <= 0:
            parser.error("--max-samples must be positive when provided")

        max_samples = ns.max_samples
        if max_samples is None:
            max_samples = _estimate_max_samples(ns.logfile)

        return read_log(
            ns.logfile,
            max_samples=max_samples,
            scale_factor=ns.scale_factor,
            sample_rate=ns.sample_rate,
            verbose=ns.verbose,
            debug=ns.debug,
        )

    # parse subcommand
    p_parse = subparsers.add_parser(
        "parse", help="Decode activity samples and write them to CSV"
    )
    _add_decode_args(p_parse)
    p_parse.add_argument(
        "--outfile",
        "-o",
        default=None,
        help="Output CSV file path (default: <logfile>.csv)",
    )

    def handle_parse(ns):
        parsed = _decode(ns)
        outfile = ns.outfile or os.path.splitext(ns.logfile)[0] + ".csv"
        to_dataframe(parsed).to_csv(outfile, index=False)
        print(f"Wrote {parsed.total_records} samples to {outfile}.")
        return 0

    p_parse.set_defaults(func=handle_parse)

    # params subcommand
    p_params = subparsers.add_parser(
        "params", help="Print the device parameters and start time"
    )
    _add_decode_args(p_params)

    def handle_params(ns):
        parsed = _decode(ns)
        for entry in parsed.parameters:
            print(f"address: {entry.address} key: {entry.key} value: {entry.decoded}")
        print(f"Start time: {parsed.start_time} ({format_start_time(parsed.start_time)})")
        print(f"Samples: {parsed.total_records} at {parsed.sample_rate} Hz")
        return 0

    p_params.set_defaults(func=handle_params)

    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        logging.basicConfig(level=logging.INFO)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
