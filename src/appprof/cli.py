from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .errors import ProfilerError
from .grants import UINT64_MAX
from .service import ProfilerService


logger = logging.getLogger("appprof")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _service(config_file: str | None = None) -> ProfilerService:
    return ProfilerService.create(config_file=Path(config_file) if config_file else None)


def _uint64(value: str) -> int:
    if not (value.isascii() and value.isdigit()) or int(value) > UINT64_MAX:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {value!r}")
    return int(value)


def _fd(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise argparse.ArgumentTypeError(f"invalid file descriptor: {value!r}")
    return int(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="appprof", description="Profile an Android application via app api")
    parser.add_argument("--log", choices=sorted(LOG_LEVELS), default="info", help="Diagnostic log level")
    parser.add_argument("--config", default=None, help="Configuration file (defaults to $APPPROF_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    prepare_cmd = sub.add_parser("api-prepare", help="Prepare recording via app api")
    prepare_cmd.add_argument("--app", default=None, help="The android application to record via app api")
    prepare_cmd.add_argument(
        "--days",
        type=_uint64,
        default=0,
        help=(
            "By default the recording permission is reset after device reboot. On Android >= 13 this sets "
            "how many days the permission lasts, across reboots."
        ),
    )

    collect_cmd = sub.add_parser("api-collect", help="Collect recording data generated by app api")
    collect_cmd.add_argument("--app", default=None, help="The android application having recording data")
    collect_cmd.add_argument("-o", dest="output", default=None, help="Path to store recording data")
    # Internal options used by the sandboxed re-invocation.
    collect_cmd.add_argument("--in-app", action="store_true", help=argparse.SUPPRESS)
    collect_cmd.add_argument("--out-fd", type=_fd, default=None, help=argparse.SUPPRESS)
    collect_cmd.add_argument("--stop-signal-fd", type=_fd, default=None, help=argparse.SUPPRESS)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=LOG_LEVELS[args.log], format="%(name)s: %(message)s")

    try:
        service = _service(args.config)

        if args.command == "api-prepare":
            print(json.dumps(service.prepare(args.app, args.days), indent=2))
            return 0

        if args.command == "api-collect":
            if args.in_app:
                result = service.collect_in_app(
                    output_fd=args.out_fd,
                    output_path=args.output,
                    stop_signal_fd=args.stop_signal_fd,
                )
                logger.info("collected %d file(s)", len(result["entries"]))
                return 0
            result = service.collect(
                args.app,
                output_path=args.output,
                output_fd=args.out_fd,
                stop_signal_fd=args.stop_signal_fd,
                log_level=args.log,
            )
            print(json.dumps(result, indent=2))
            return int(result["exit_status"])
    except ProfilerError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        if exc.hint:
            logger.error("%s", exc.hint)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
