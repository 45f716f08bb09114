"""Command line entry point: load the configuration and run the services."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any

from swgproxy.logsetup import setup_logging
from swgproxy.manager import Manager, load_config

_LEVELS = ("debug", "info", "warn", "error", "dpanic", "panic", "fatal")

_logger = logging.getLogger("swgproxy")


def _log(level: int, message: str, **fields: Any) -> None:
    if _logger.isEnabledFor(level):
        _logger.log(level, message, extra={"fields": fields})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swgproxy", allow_abbrev=False)
    parser.add_argument(
        "-testConf",
        "--testConf",
        dest="test_conf",
        action="store_true",
        help="Test the configuration file without starting the services",
    )
    parser.add_argument(
        "-confPath",
        "--confPath",
        dest="conf_path",
        default="",
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "-zapConf",
        "--zapConf",
        dest="zap_conf",
        default="",
        help="Preset name or path to JSON configuration file for the logger. "
        "Available presets: console (default), systemd, production, development",
    )
    parser.add_argument(
        "-logLevel",
        "--logLevel",
        dest="log_level",
        default="",
        help="Override the logger configuration's log level. "
        "Available levels: " + ", ".join(_LEVELS),
    )
    return parser


async def _serve(manager: Manager, conf_path: str) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def on_signal(sig: signal.Signals) -> None:
        _log(logging.INFO, "Received exit signal", signal=sig.name)
        stop.set()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            signal.signal(
                sig,
                lambda num, _frame: loop.call_soon_threadsafe(on_signal, signal.Signals(num)),
            )

    try:
        try:
            await manager.start()
        except RuntimeError as exc:
            _log(
                logging.CRITICAL,
                "Failed to start services",
                confPath=conf_path,
                error=str(exc),
            )
            return 1
        await stop.wait()
        await manager.stop()
        return 0
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command and return its exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.conf_path:
        print("Missing -confPath <path>.")
        parser.print_usage(sys.stderr)
        return 1

    if args.log_level and args.log_level not in _LEVELS:
        print(f'unrecognized level: "{args.log_level}"')
        return 1

    try:
        setup_logging(args.zap_conf or "console", args.log_level or None)
    except (ValueError, OSError) as exc:
        print(exc)
        return 1

    try:
        config = load_config(args.conf_path)
    except (ValueError, OSError) as exc:
        _log(logging.CRITICAL, "Failed to load config", confPath=args.conf_path, error=str(exc))
        return 1

    try:
        manager = config.manager()
    except ValueError as exc:
        _log(
            logging.CRITICAL,
            "Failed to create service manager",
            confPath=args.conf_path,
            error=str(exc),
        )
        return 1

    if args.test_conf:
        _log(logging.INFO, "Config test OK", confPath=args.conf_path)
        return 0

    return asyncio.run(_serve(manager, args.conf_path))


if __name__ == "__main__":
    raise SystemExit(main())