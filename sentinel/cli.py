"""Command-line entrypoint: wires components and runs sentinel commands.

Usage::

    # Continuous diff/notify loop
    sentinel run

    # One cycle, no notifications
    sentinel run --once --dry-run

    # Custom config, JSON logs
    sentinel --config sentinel.yaml --log-format json run
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

import structlog
from pydantic import SecretStr

from sentinel import BUILD_TIMESTAMP, COMMIT_HASH, __version__
from sentinel.core.config import Settings, load_settings, parse_duration, validate_settings
from sentinel.core.exceptions import ConfigError, SentinelError
from sentinel.core.logging import setup_logging
from sentinel.core.types import SELF_SUBJECT, DeliveryStatus, Event, EventType, Snapshot
from sentinel.detect.pipeline import DetectorPipeline
from sentinel.notifier.dispatcher import Notifier
from sentinel.notifier.factory import create_notifier
from sentinel.policy.engine import PolicyEngine
from sentinel.poller.loop import Poller
from sentinel.source.base import LoginMode, SnapshotSource
from sentinel.source.tailscale import TailscaleSource
from sentinel.state.store import StateStore

logger = structlog.get_logger(__name__)


# ── Wiring ──────────────────────────────────────────────────────


@dataclass
class Runtime:
    """Every component for one process, built once from settings."""

    settings: Settings
    source: SnapshotSource
    store: StateStore
    pipeline: DetectorPipeline
    policy: PolicyEngine
    notifier: Notifier
    poller: Poller

    async def close(self) -> None:
        await self.notifier.close()
        await self.source.close()


def build_runtime(settings: Settings, source: SnapshotSource | None = None) -> Runtime:
    realtime = settings.source.mode.strip().lower() in ("", "realtime")
    src = source or TailscaleSource(settings.tsnet, push=realtime)
    store = StateStore(settings.state.path, settings.idempotency_key_ttl)
    pipeline = DetectorPipeline.from_settings(settings)
    policy = PolicyEngine(settings.policy)
    notifier = create_notifier(settings)
    poller = Poller(
        source=src,
        store=store,
        pipeline=pipeline,
        policy=policy,
        notifier=notifier,
        settings=settings,
    )
    return Runtime(settings, src, store, pipeline, policy, notifier, poller)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Layer global CLI flags over loaded settings and re-validate."""
    output: dict[str, object] = {}
    if args.log_format:
        output["log_format"] = args.log_format
    if args.log_level:
        output["log_level"] = args.log_level
    if args.no_color:
        output["no_color"] = True

    tsnet: dict[str, object] = {}
    if args.tailscale_auth_key:
        tsnet["auth_key"] = SecretStr(args.tailscale_auth_key)
        tsnet["auth_key_source"] = "flag"
    if args.tailscale_login_mode:
        tsnet["login_mode"] = args.tailscale_login_mode
    if args.tailscale_state_dir:
        tsnet["state_dir"] = args.tailscale_state_dir
    if args.tailscale_login_timeout:
        try:
            timeout = parse_duration(args.tailscale_login_timeout)
        except ValueError as exc:
            raise ConfigError(f"--tailscale-login-timeout: {exc}") from exc
        if not isinstance(timeout, timedelta):
            raise ConfigError("--tailscale-login-timeout must be a duration like '5m'")
        tsnet["login_timeout"] = timeout
    if args.tailscale_allow_interactive_fallback:
        tsnet["allow_interactive_fallback"] = True

    if not output and not tsnet:
        return settings
    updated = settings.model_copy(
        update={
            "output": settings.output.model_copy(update=output),
            "tsnet": settings.tsnet.model_copy(update=tsnet),
        }
    )
    validate_settings(updated)
    return updated


# ── Commands ────────────────────────────────────────────────────


async def _run_until_signalled(coro: Awaitable[object]) -> None:
    """Run *coro* as a task that SIGINT/SIGTERM cancel."""
    task = asyncio.ensure_future(coro)

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _signal_handler)
    try:
        await task
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    runtime = build_runtime(settings)
    logger.info(
        "running_sentinel",
        version=__version__,
        once=args.once,
        dry_run=args.dry_run,
        detectors=runtime.pipeline.enabled_names,
        sinks=sorted(runtime.notifier.channels),
    )
    try:
        with runtime.store.lock():
            if args.once:
                await _run_until_signalled(
                    asyncio.wait_for(
                        runtime.poller.run_once(dry_run=args.dry_run, flush=True),
                        timeout=args.timeout,
                    )
                )
            else:
                await _run_until_signalled(
                    runtime.poller.run(continuous=True, dry_run=args.dry_run)
                )
    except asyncio.CancelledError:
        logger.info("sentinel_stopped", reason="cancelled")
    except TimeoutError:
        logger.warning("once_deadline_exceeded", timeout=args.timeout)
    finally:
        await runtime.close()
    return 0


async def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    store = StateStore(settings.state.path, settings.idempotency_key_ttl)
    snapshot, ledger = store.load()
    status: dict[str, object] = {
        "state_path": str(store.path),
        "initialized": snapshot is not None,
        "ledger_records": len(ledger),
    }
    if snapshot is not None:
        status.update(
            {
                "tailnet": snapshot.tailnet,
                "generation": snapshot.generation,
                "captured_at": snapshot.captured_at.isoformat(),
                "self": snapshot.self_node.name,
                "peers": len(snapshot.peers),
                "online": snapshot.online_count,
            }
        )
    print(json.dumps(status, indent=2))
    return 0


async def _fetch(runtime: Runtime) -> Snapshot:
    tsnet = runtime.settings.tsnet
    await runtime.source.connect(LoginMode.parse(tsnet.login_mode), tsnet.login_timeout)
    return await runtime.source.snapshot()


async def cmd_diff(args: argparse.Namespace, settings: Settings) -> int:
    runtime = build_runtime(settings)
    try:
        previous, _ = runtime.store.load()
        current = await _fetch(runtime)
    finally:
        await runtime.close()
    if current.comparable_to(previous) and previous is not None:
        base = previous
    else:
        base = Snapshot(tailnet=current.tailnet, self_node=current.self_node)
    result = runtime.pipeline.run(base, current)
    for event in result.events:
        print(event.model_dump_json())
    for err in result.errors:
        print(f"detector error: {err}", file=sys.stderr)
    return 0


async def cmd_dump_netmap(args: argparse.Namespace, settings: Settings) -> int:
    runtime = build_runtime(settings)
    try:
        snapshot = await _fetch(runtime)
    finally:
        await runtime.close()
    print(snapshot.model_dump_json(indent=2))
    return 0


async def cmd_test_notify(args: argparse.Namespace, settings: Settings) -> int:
    notifier = create_notifier(settings)
    event = Event.create(
        EventType.TEST,
        SELF_SUBJECT,
        payload={"message": "sentinel test notification", "hostname": settings.tsnet.hostname},
    )
    try:
        results = await notifier.send_test(event, sinks=args.sink or None)
    finally:
        await notifier.close()
    for result in results:
        line = f"{result.sink}: {result.status.value}"
        print(f"{line} ({result.error})" if result.error else line)
    return 0 if all(r.status == DeliveryStatus.DELIVERED for r in results) else 1


async def cmd_validate_config(args: argparse.Namespace, settings: Settings) -> int:
    DetectorPipeline.from_settings(settings)
    print("config ok")
    return 0


async def cmd_version(args: argparse.Namespace, settings: Settings | None) -> int:
    print(f"Version: {__version__}")
    print(f"Build Timestamp: {BUILD_TIMESTAMP}")
    print(f"Commit Hash: {COMMIT_HASH}")
    return 0


Command = Callable[[argparse.Namespace, Settings], Awaitable[int]]

_COMMANDS: dict[str, Command] = {
    "run": cmd_run,
    "status": cmd_status,
    "diff": cmd_diff,
    "dump-netmap": cmd_dump_netmap,
    "test-notify": cmd_test_notify,
    "validate-config": cmd_validate_config,
}


# ── Parser ──────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sentinel",
        description="Tailnet netmap diff and notification daemon.",
    )
    parser.add_argument("--config", default=None, help="Path to config file (yaml or json)")
    parser.add_argument("--log-format", choices=["pretty", "json"], default=None)
    parser.add_argument("--log-level", default=None, help="Log level: debug, info, warning, error")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color output")
    parser.add_argument(
        "--tailscale-auth-key", default=None, help="Tailscale auth key for node onboarding"
    )
    parser.add_argument(
        "--tailscale-login-mode",
        choices=[m.value for m in LoginMode],
        default=None,
        help="Tailscale onboarding mode",
    )
    parser.add_argument("--tailscale-state-dir", default=None, help="tailscaled state directory")
    parser.add_argument(
        "--tailscale-login-timeout",
        default=None,
        help="Timeout for interactive tailscale login (e.g. 5m)",
    )
    parser.add_argument(
        "--tailscale-allow-interactive-fallback",
        action="store_true",
        help="Allow fallback to interactive login after auth key failure",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the poll/diff/notify loop")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    run.add_argument(
        "--dry-run", action="store_true", help="Detect diffs but do not send notifications"
    )
    run.add_argument(
        "--timeout",
        type=float,
        default=60.0,
        help="Deadline in seconds for --once (default: 60)",
    )

    sub.add_parser("status", help="Show persisted state")
    sub.add_parser("diff", help="Show changes since the last committed snapshot")
    sub.add_parser("dump-netmap", help="Print the current netmap snapshot as JSON")

    test_notify = sub.add_parser("test-notify", help="Send a test event to sinks")
    test_notify.add_argument(
        "--sink", action="append", default=None, help="Only this sink (repeatable)"
    )

    sub.add_parser("validate-config", help="Load and validate configuration")
    sub.add_parser("version", help="Show build and version information")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "version":
        return asyncio.run(cmd_version(args, None))

    try:
        settings = apply_overrides(load_settings(args.config), args)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    setup_logging(settings.output)

    try:
        return asyncio.run(_COMMANDS[args.command](args, settings))
    except SentinelError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
