"""CLI entry point for benchmark instances, the sync service and local runs.

Usage:
    blockswap-bench instance                       # identity from BENCH_* env vars
    blockswap-bench instance --config instance.json --param count=10
    blockswap-bench sync-server --port 5050 --instance-count 3
    blockswap-bench run-local --requestors 2 --count 10 --size 1MiB -o results.json

Environment variables (instance):
    BENCH_GROUP_ID, BENCH_INSTANCE_COUNT, BENCH_INSTANCE_SEQ, BENCH_RUN_ID,
    BENCH_TEST_CASE, BENCH_INSTANCE_PARAMS, BENCH_SYNC_URL, BENCH_OUTPUTS_DIR,
    BENCH_LISTEN_HOST

Precedence for instance settings: environment < --config file < flags.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from blockswap_bench.errors import ConfigurationError
from blockswap_bench.launcher import run_local
from blockswap_bench.plan.dispatch import run_instance
from blockswap_bench.runenv import RunEnv, config_from_env, parse_params
from blockswap_bench.sync.service import SyncServer


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="blockswap-bench",
        description="Block exchange benchmark harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    inst = sub.add_parser("instance", help="Run one benchmark instance")
    inst.add_argument("--config", "-c", help="Path to JSON instance config")
    inst.add_argument("--group", help="Role label (providers / requestors)")
    inst.add_argument("--instance-count", type=int, help="Fleet size")
    inst.add_argument("--seq", type=int, help="Instance ordinal")
    inst.add_argument("--run-id", help="Run identifier")
    inst.add_argument("--test-case", help="Test case name (speed-test, example)")
    inst.add_argument("--sync-url", help="Sync service URL")
    inst.add_argument("--outputs-dir", "-d", help="Directory for events and results")
    inst.add_argument(
        "--param", "-p",
        action="append",
        default=[],
        help="Test parameter key=value (repeatable)",
    )

    srv = sub.add_parser("sync-server", help="Run the coordination service")
    srv.add_argument("--host", default="0.0.0.0")
    srv.add_argument("--port", type=int, default=5050)
    srv.add_argument("--instance-count", type=int, help="Cap barrier counters at the fleet size")

    local = sub.add_parser("run-local", help="Run a whole fleet on this machine")
    local.add_argument("--requestors", "-n", type=int, default=1)
    local.add_argument("--test-case", default="speed-test")
    local.add_argument("--count", type=int, default=3, help="Blocks to transfer")
    local.add_argument("--size", default="1KiB", help="Bytes per block (units allowed)")
    local.add_argument("--param", "-p", action="append", default=[], help="Extra parameter key=value")
    local.add_argument("--timeout", type=float, default=300.0, help="Run timeout in seconds")
    local.add_argument("--outputs-dir", "-d", help="Base directory for instance outputs")
    local.add_argument("--instance-log-level", default="WARNING")
    local.add_argument("--output", "-o", default="", help="Write the run summary JSON here")

    return parser.parse_args(argv)


def load_instance_config(args: argparse.Namespace) -> RunEnv:
    """Merge environment, config file and CLI flags into a RunEnv."""
    raw: dict[str, Any] = config_from_env()

    if args.config:
        path = Path(args.config).resolve()
        if not path.exists():
            raise ConfigurationError(f"config file not found: {path}")
        with open(path) as f:
            try:
                raw.update(json.load(f))
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"invalid JSON in {path}: {e}") from None

    overrides = {
        "group_id": args.group,
        "instance_count": args.instance_count,
        "seq": args.seq,
        "run_id": args.run_id,
        "test_case": args.test_case,
        "sync_url": args.sync_url,
        "outputs_dir": args.outputs_dir,
    }
    raw.update({k: v for k, v in overrides.items() if v is not None})

    if args.param:
        params = raw.get("params", {})
        if isinstance(params, str):
            params = parse_params(params)
        params = dict(params)
        params.update(parse_params("|".join(args.param)))
        raw["params"] = params

    return RunEnv.from_config(raw)


def cmd_instance(args: argparse.Namespace) -> int:
    try:
        env = load_instance_config(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    ok = asyncio.run(run_instance(env))
    return 0 if ok else 1


async def serve(server: SyncServer) -> None:
    await server.start()
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await stop_event.wait()
    await server.stop()


def cmd_sync_server(args: argparse.Namespace) -> int:
    server = SyncServer(host=args.host, port=args.port, instance_count=args.instance_count)
    asyncio.run(serve(server))
    return 0


def cmd_run_local(args: argparse.Namespace) -> int:
    try:
        params: dict[str, Any] = {"count": args.count, "size": args.size}
        params.update(parse_params("|".join(args.param)))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print("=" * 60)
    print("  Block Exchange Speed Test (local)")
    print("=" * 60)
    print(f"  Requestors: {args.requestors}")
    print(f"  Params: {params}")

    summary = asyncio.run(run_local(
        requestors=args.requestors,
        params=params,
        test_case=args.test_case,
        timeout=args.timeout,
        base_dir=args.outputs_dir,
        log_level=args.instance_log_level,
    ))

    for inst in summary["instances"]:
        line = f"  #{inst['seq']} {inst['group_id']:<11} {inst['outcome']}"
        transfer = inst.get("transfer")
        if transfer:
            line += f"  fetches={transfer['fetches']} total={transfer['total_seconds']}s"
        if inst["error"]:
            line += f"  ({inst['error']})"
        print(line)
    print(f"\n  Outputs: {summary['outputs_dir']}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump(summary, f, indent=2)
        print(f"  Summary saved to {args.output}")
    return 0 if summary["success"] else 1


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    commands = {
        "instance": cmd_instance,
        "sync-server": cmd_sync_server,
        "run-local": cmd_run_local,
    }
    sys.exit(commands[args.command](args))


if __name__ == "__main__":
    main()
