"""
Operator command line for outrelay.

Usage:
    outrelay run-once --handlers myapp.outbox:build_registry --batch-size 50
    outrelay poll --handlers myapp.outbox:build_registry --kind EMAIL_SEND
    outrelay metrics
    outrelay enqueue EMAIL_SEND --tenant school-1 --payload '{"to": "a@b.c", ...}'
    outrelay replay <event-id>
    outrelay serve --handlers myapp.outbox:build_registry --port 8000

Settings come from OUTRELAY_* environment variables (see DispatcherSettings).
Commands that run handlers (run-once, poll, serve) require
``--handlers package.module:factory``, a registry factory that wires real
gateways. ``outrelay.handlers:build_in_memory_registry`` wires in-memory
gateways for local trials only: they deliver nothing.

Exit codes:
    0 = OK
    1 = Operation refused (unknown event, not replayable, bad input)
    3 = Ledger unavailable or unexpected error
"""

import argparse
import asyncio
import importlib
import json
import signal
import sys
from collections.abc import Callable
from typing import Any

from outrelay.core.audit import LoggingAuditSink
from outrelay.core.config import DispatcherSettings
from outrelay.core.dispatcher import Dispatcher
from outrelay.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    LedgerUnavailableError,
)
from outrelay.core.logging import configure_logging, get_logger
from outrelay.core.registry import HandlerRegistry
from outrelay.ledgers.redis_ledger import RedisLedger
from outrelay.monitor import OutboxMonitor

logger = get_logger("outrelay.cli")

def load_registry(path: str) -> HandlerRegistry:
    """Import ``module:factory`` and call the factory to build a registry."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"handlers must look like 'module:factory', got {path!r}")

    factory: Callable[[], HandlerRegistry] = getattr(importlib.import_module(module_name), attr)
    registry = factory()
    if not isinstance(registry, HandlerRegistry):
        raise TypeError(f"{path} returned {type(registry).__name__}, expected HandlerRegistry")
    return registry


def build_ledger(settings: DispatcherSettings) -> RedisLedger:
    return RedisLedger(
        redis_url=settings.redis_url,
        key_prefix=settings.key_prefix,
        backoff=settings.backoff_policy(),
        lease_timeout=settings.lease_timeout,
    )


def build_dispatcher(
    settings: DispatcherSettings,
    ledger: RedisLedger,
    handlers: str,
    kinds: list[str] | None = None,
) -> Dispatcher:
    return Dispatcher.from_settings(
        settings,
        registry=load_registry(handlers),
        ledger=ledger,
        audit_sink=LoggingAuditSink(),
        kinds=kinds,
    )


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run_once(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    ledger = build_ledger(settings)
    try:
        dispatcher = build_dispatcher(settings, ledger, args.handlers, args.kinds)
        summary = await dispatcher.run_batch(args.batch_size)
        _emit(summary.to_dict())
        return 0
    finally:
        await ledger.close()


async def _poll(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    ledger = build_ledger(settings)
    try:
        dispatcher = build_dispatcher(settings, ledger, args.handlers, args.kinds)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, dispatcher.stop)

        stats = await dispatcher.run(max_batches=args.max_batches)
        _emit(
            {
                "batches_run": stats.batches_run,
                "events_claimed": stats.events_claimed,
                "events_sent": stats.events_sent,
                "events_retried": stats.events_retried,
                "events_dead": stats.events_dead,
                "handler_errors": dict(stats.handler_errors),
                "leases_lost": stats.leases_lost,
                "report_errors": stats.report_errors,
            }
        )
        return 0
    finally:
        await ledger.close()


async def _metrics(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    ledger = build_ledger(settings)
    try:
        monitor = OutboxMonitor(ledger, stale_alert_minutes=settings.stale_alert_minutes)
        metrics = await monitor.refresh()
        _emit(metrics.to_dict())
        return 0
    finally:
        await ledger.close()


async def _enqueue(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"ERROR: --payload is not valid JSON: {e}", file=sys.stderr)
        return 1
    if not isinstance(payload, dict):
        print("ERROR: --payload must be a JSON object", file=sys.stderr)
        return 1

    ledger = build_ledger(settings)
    try:
        event = await ledger.enqueue(
            args.kind,
            payload,
            args.tenant,
            idempotency_key=args.idempotency_key,
            max_attempts=args.max_attempts or settings.max_attempts,
        )
        _emit(event.model_dump(mode="json"))
        return 0
    finally:
        await ledger.close()


async def _replay(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    ledger = build_ledger(settings)
    try:
        event = await ledger.replay(args.event_id)
    except (EventNotFoundError, InvalidTransitionError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        await ledger.close()
    _emit(event.model_dump(mode="json"))
    return 0


def _serve(args: argparse.Namespace, settings: DispatcherSettings) -> int:
    import uvicorn

    from outrelay.api import create_app

    ledger = build_ledger(settings)
    dispatcher = build_dispatcher(settings, ledger, args.handlers)
    monitor = OutboxMonitor(
        ledger,
        stale_alert_minutes=settings.stale_alert_minutes,
        ttl=settings.metrics_ttl,
    )
    if not settings.job_token:
        logger.warning("OUTRELAY_JOB_TOKEN is not set; every request will be rejected")

    app = create_app(
        dispatcher,
        ledger,
        monitor,
        job_token=settings.job_token,
        max_attempts=settings.max_attempts,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


_ASYNC_COMMANDS = {
    "run-once": _run_once,
    "poll": _poll,
    "metrics": _metrics,
    "enqueue": _enqueue,
    "replay": _replay,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="outrelay", description="Transactional outbox dispatcher")
    sub = parser.add_subparsers(dest="command", required=True)

    handlers = argparse.ArgumentParser(add_help=False)
    handlers.add_argument(
        "--handlers",
        required=True,
        metavar="MODULE:FACTORY",
        help="Registry factory that wires the handlers and their gateways",
    )
    kinds = argparse.ArgumentParser(add_help=False)
    kinds.add_argument(
        "--kind",
        dest="kinds",
        action="append",
        default=None,
        help="Only claim events of this kind (repeatable)",
    )

    run_once = sub.add_parser(
        "run-once", parents=[handlers, kinds], help="Claim and process a single batch"
    )
    run_once.add_argument("--batch-size", type=int, default=None)

    poll = sub.add_parser(
        "poll", parents=[handlers, kinds], help="Process batches until interrupted"
    )
    poll.add_argument("--max-batches", type=int, default=None)

    sub.add_parser("metrics", help="Print outbox health metrics")

    enqueue = sub.add_parser("enqueue", help="Append an event to the outbox")
    enqueue.add_argument("kind")
    enqueue.add_argument("--tenant", required=True)
    enqueue.add_argument("--payload", default="{}")
    enqueue.add_argument("--idempotency-key", default=None)
    enqueue.add_argument("--max-attempts", type=int, default=None)

    replay = sub.add_parser("replay", help="Re-enqueue a dead event")
    replay.add_argument("event_id")

    serve = sub.add_parser("serve", parents=[handlers], help="Run the HTTP surface")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = DispatcherSettings()
        configure_logging(settings.log_level)
        if args.command == "serve":
            return _serve(args, settings)
        return asyncio.run(_ASYNC_COMMANDS[args.command](args, settings))
    except LedgerUnavailableError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 3
    except (ValueError, TypeError, ImportError, AttributeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
