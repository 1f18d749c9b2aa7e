from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from mcload.config import DriverVariant, RunConfig, TargetConfig
from mcload.loadgen.connection import CacheError
from mcload.loadgen.runner import run_load_test, set_key
from mcload.metrics import log_report
from mcload.selftest import SelfTestError, self_test
from mcload.storage import default_storage

logger = logging.getLogger("mcload.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load tester for memcached servers")
    parser.add_argument("--host", default=None, help="Server host (default: localhost)")
    parser.add_argument("--port", type=int, default=None, help="Server port (default: 11211)")
    parser.add_argument("-c", "--concurrency", type=int, default=1)
    parser.add_argument("-n", "--max-requests", type=int, default=None)
    parser.add_argument("-t", "--max-seconds", type=float, default=None)
    parser.add_argument("--key", default=None, help="Key to get (default: a fresh random key)")
    parser.add_argument("--driver", choices=[d.value for d in DriverVariant], default=None)
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    parser.add_argument("--set-first", action="store_true", help="Set the key once before the run")
    parser.add_argument("--notes", default="")

    parser.add_argument("--save", action="store_true", help="Store the report in the run history")
    parser.add_argument("--history", action="store_true", help="Print stored reports and exit")
    parser.add_argument(
        "--self-test",
        action="store_true",
        help="Run every driver against a throwaway local server (only -n and -c apply)",
    )

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--info", action="store_true")
    verbosity.add_argument("--debug", action="store_true")
    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.WARNING
    if args.info:
        level = logging.INFO
    if args.debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger("mcload.report").setLevel(logging.INFO)


def _build_config(args: argparse.Namespace, parser: argparse.ArgumentParser) -> RunConfig:
    try:
        target = TargetConfig(
            host=args.host or "localhost",
            port=11211 if args.port is None else args.port,
            timeout_sec=args.timeout,
        )
        kwargs = {}
        if args.key is not None:
            kwargs["key"] = args.key
        return RunConfig(
            target=target,
            concurrency=args.concurrency,
            max_requests=args.max_requests,
            max_seconds=args.max_seconds,
            driver=DriverVariant(args.driver or "native"),
            notes=args.notes,
            **kwargs,
        )
    except ValueError as exc:
        parser.error(str(exc))
        raise


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    if args.history:
        print(default_storage().list_reports().to_string(index=False))
        return

    if args.self_test:
        ignored = [
            flag
            for flag, value in (
                ("--host", args.host),
                ("--port", args.port),
                ("--driver", args.driver),
                ("--key", args.key),
                ("--max-seconds", args.max_seconds),
            )
            if value is not None
        ]
        if ignored:
            parser.error(f"--self-test does not accept {', '.join(ignored)}")
        try:
            reports = asyncio.run(
                self_test(max_requests=args.max_requests or 10000, concurrency=args.concurrency)
            )
        except (SelfTestError, CacheError) as exc:
            print(f"Self test failed: {exc}", file=sys.stderr)
            sys.exit(1)
        for report in reports:
            log_report(report, logging.getLogger("mcload.report"))
        print("Self test passed")
        return

    config = _build_config(args, parser)
    if args.set_first:
        try:
            stored = asyncio.run(set_key(config, "mcload"))
        except (CacheError, OSError, TimeoutError) as exc:
            print(f"Could not set key {config.key}: {exc}", file=sys.stderr)
            sys.exit(1)
        if not stored:
            logger.warning("Server did not store key %s", config.key)
    report = asyncio.run(run_load_test(config))
    if args.save:
        run_id = default_storage().save_report(config, report)
        print(f"Run saved: {run_id}")


if __name__ == "__main__":
    main()
