"""Local stand-in for the ATX CLI used by integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the received command, optionally sleeping or failing first."""

    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument(
        "--fail-times",
        type=int,
        default=0,
        help="Exit 1 for this many invocations before succeeding.",
    )
    parser.add_argument("--state-file", default=None)
    args, passthrough = parser.parse_known_args(argv)

    print(f"stub executor args: {' '.join(passthrough)}", flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.fail_times > 0 and args.state_file:
        state_path = Path(args.state_file)
        calls = int(state_path.read_text("utf-8")) if state_path.exists() else 0
        state_path.write_text(str(calls + 1), "utf-8")
        if calls < args.fail_times:
            print(f"stub executor failing call {calls + 1}", file=sys.stderr, flush=True)
            return 1

    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
