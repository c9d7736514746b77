from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from controller.contracts import ProgressEvent, ProgressValue
from controller.install import Installer
from controller.metadata import SERVICE_KINDS
from controller.registry import Inventory
from controller.remote import encode_progress_event
from controller.runner import Runner
from core.errors import ChainlabError
from core.logging import setup_logging

logger = logging.getLogger("chainlab.ctl")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local chain platform service orchestrator")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing chainlab.yaml (defaults to current working directory)",
    )
    parser.add_argument("--log-dir", help="Write NDJSON orchestrator logs to this directory")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument(
        "--json-progress",
        action="store_true",
        help="Print one JSON progress event per line on stdout",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    install = sub.add_parser("install", help="Install one service or all of them")
    target = install.add_mutually_exclusive_group(required=True)
    target.add_argument("--name")
    target.add_argument("--all", action="store_true")

    start = sub.add_parser("start", help="Start services with their dependencies")
    target = start.add_mutually_exclusive_group(required=True)
    target.add_argument("--name")
    target.add_argument("--kind", choices=[*SERVICE_KINDS, "sdk"])
    target.add_argument("--chain")
    target.add_argument("--all", action="store_true")
    start.add_argument("--hub", help="Hub alias for --kind")
    _add_dependency_flags(start)

    for command in ("stop", "kill"):
        cmd = sub.add_parser(command, help=f"{command.capitalize()} configured services")
        cmd.add_argument("--name", help="Only this service (default: everything)")
        cmd.add_argument("--with-dependencies", action="store_true")
        cmd.add_argument("--reset", action="store_true", help="Wipe owned data after stopping")

    stop_any = sub.add_parser("stop-any", help="Stop running processes of a kind and its dependents")
    stop_any.add_argument("kind", choices=[*SERVICE_KINDS, "all"])
    stop_any.add_argument("--reset", action="store_true")

    sub.add_parser("kill-any", help="SIGKILL every running service process")
    sub.add_parser("reset-all", help="Stop everything and wipe every data directory")
    sub.add_parser("show", help="List running service processes")

    for command in ("install-worker", "start-worker", "stop-worker"):
        cmd = sub.add_parser(command)
        cmd.add_argument("--machine")
        cmd.add_argument("--hub")
        cmd.add_argument("--index", type=int, default=0)
        if command == "start-worker":
            _add_dependency_flags(cmd)
        if command == "stop-worker":
            cmd.add_argument("--kill", action="store_true")

    stop_workers = sub.add_parser("stop-all-workers")
    stop_workers.add_argument("--hub")
    return parser


def _add_dependency_flags(cmd: argparse.ArgumentParser) -> None:
    deps = cmd.add_mutually_exclusive_group()
    deps.add_argument("--no-dependencies", action="store_true")
    deps.add_argument("--only-dependencies", action="store_true")


def _progress_printer(json_progress: bool) -> Callable[[ProgressEvent], None]:
    def _print(event: ProgressEvent) -> None:
        if json_progress:
            print(encode_progress_event(event), flush=True)
            return
        value: ProgressValue = event.value
        label = value.name or value.kind
        pid = f" pid={value.pid}" if value.pid else ""
        error = f" error={value.error}" if value.error else ""
        print(f"[{event.count}/{event.total}] {label}: {value.state}{pid}{error}", file=sys.stderr)

    return _print


def _print_running(running: dict[str, list[Any]]) -> None:
    for procs in running.values():
        for proc in procs:
            print(json.dumps(proc.to_dict(), sort_keys=True))
    if not any(running.values()):
        print("no running services")


async def _dispatch(args: argparse.Namespace, runner: Runner, installer: Installer) -> int:
    command = args.command
    if command == "install":
        if args.all:
            await installer.install_all(
                lambda name, kind, index, total: logger.info(
                    "install.progress", extra={"service": name, "kind": kind, "index": index, "total": total}
                )
            )
        else:
            await installer.install(args.name, runner.progress_cb)
        return 0
    if command == "install-worker":
        await installer.install_worker(args.machine, args.hub, args.index)
        return 0
    if command == "start":
        if args.all:
            await runner.start_all()
        else:
            await runner.start(
                args.name,
                kind=args.kind,
                hub=args.hub,
                chain=args.chain,
                only_dependencies=args.only_dependencies,
                no_dependencies=args.no_dependencies,
            )
        return 0
    if command == "start-worker":
        await runner.start_worker(
            args.machine,
            args.hub,
            args.index,
            only_dependencies=args.only_dependencies,
            no_dependencies=args.no_dependencies,
        )
        return 0
    if command in ("stop", "kill"):
        await runner.stop(
            args.name,
            with_dependencies=args.with_dependencies,
            reset=args.reset,
            kill=command == "kill",
        )
        return 0
    if command == "stop-any":
        await runner.stop_any(args.kind, reset=args.reset)
        return 0
    if command == "kill-any":
        await runner.kill_any()
        return 0
    if command == "stop-worker":
        await runner.stop_worker(args.machine, args.hub, args.index, kill=args.kill)
        return 0
    if command == "stop-all-workers":
        await runner.stop_all_workers(args.hub)
        return 0
    if command == "reset-all":
        await runner.reset_all()
        return 0
    if command == "show":
        _print_running(await runner.show())
        return 0
    raise ValueError(f"Unknown command: {command}")


async def _run_with_abort(make: Callable[[asyncio.Event], Awaitable[int]]) -> int:
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, abort.set)
    try:
        return await make(abort)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_dir, args.log_level)

    try:
        inventory = Inventory.from_file(args.config_root)
    except (FileNotFoundError, ChainlabError) as exc:
        logger.error("ctl.config_error", extra={"error": str(exc)})
        print(f"error: {exc}", file=sys.stderr)
        return 2

    async def _run(abort: asyncio.Event) -> int:
        runner = Runner(inventory, progress_cb=_progress_printer(args.json_progress), abort=abort)
        return await _dispatch(args, runner, Installer(inventory))

    try:
        return asyncio.run(_run_with_abort(_run))
    except ChainlabError as exc:
        logger.error("ctl.failed", extra={"command": args.command, "error": str(exc), "context": exc.context})
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
