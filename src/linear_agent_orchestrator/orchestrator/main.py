"""CLI entrypoint for the trigger orchestrator."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from linear_agent_orchestrator import __version__
from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings
from linear_agent_orchestrator.orchestrator.linear.client import LinearClient
from linear_agent_orchestrator.orchestrator.logging import configure_logging
from linear_agent_orchestrator.orchestrator.triggers.ledger import (
    IllegalTransitionError,
    TriggerNotFound,
    TriggerStatus,
)
from linear_agent_orchestrator.orchestrator.triggers.reconciler import (
    Reconciler,
    format_ledger_status,
    format_poll_report,
)
from linear_agent_orchestrator.orchestrator.triggers.service import TriggerService
from linear_agent_orchestrator.orchestrator.triggers.signature import verify_signature

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linear-orchestrator",
        description="Linear state-change -> agent dispatch bridge",
    )
    parser.add_argument(
        "--version", action="version", version=f"linear-agent-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the webhook server")
    serve.add_argument("--host", default=None, help="Bind address (default: ORCHESTRATOR_HOST)")
    serve.add_argument(
        "--port", type=int, default=None, help="Bind port (default: ORCHESTRATOR_PORT)"
    )

    subparsers.add_parser(
        "poll",
        help="Poll Linear for recently changed issues and trigger those in the target state",
    )

    status = subparsers.add_parser("status", help="Show the trigger ledger")
    status.add_argument(
        "--status",
        choices=[s.value for s in TriggerStatus],
        default=None,
        help="Only show triggers with this status",
    )

    skip = subparsers.add_parser(
        "skip",
        help="Mark the active trigger of a work item as skipped (re-arms the work item)",
    )
    skip.add_argument("work_item_id", help="Work item identifier, e.g. CRU-123")

    mark_spawned = subparsers.add_parser(
        "mark-spawned",
        help="Record that a pending trigger was dispatched out-of-band",
    )
    mark_spawned.add_argument("work_item_id", help="Work item identifier, e.g. CRU-123")

    drain = subparsers.add_parser(
        "drain", help="Retry direct dispatch for every pending trigger"
    )
    drain.add_argument(
        "--limit", type=int, default=None, help="Maximum number of triggers to attempt"
    )

    subparsers.add_parser(
        "skip-stale",
        help="Skip active triggers whose issue has left the target state (per a fresh poll)",
    )

    verify = subparsers.add_parser(
        "verify-signature", help="Check a webhook signature against LINEAR_WEBHOOK_SECRET"
    )
    verify.add_argument("--body-file", required=True, help="File holding the raw request body")
    verify.add_argument("--signature", required=True, help="Claimed hex signature")

    return parser


def _reconciler(settings: OrchestratorSettings, service: TriggerService) -> Reconciler:
    linear = LinearClient(
        api_key=settings.linear_api_key,
        url=settings.linear_api_url,
        timeout=settings.http_timeout_seconds,
    )
    return Reconciler(
        service=service,
        linear=linear,
        team_id=settings.team_id,
        limit=settings.poll_limit,
        window_hours=settings.poll_window_hours,
    )


def _serve(host: str | None, port: int | None) -> int:
    import uvicorn

    from linear_agent_orchestrator.server.app import create_app
    from linear_agent_orchestrator.server.config import ServerSettings

    server_settings = ServerSettings()
    uvicorn.run(
        create_app(server_settings),
        host=host or server_settings.host,
        port=port or server_settings.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "serve":
            return _serve(args.host, args.port)

        if args.command == "verify-signature":
            body = Path(args.body_file).read_bytes()
            ok = verify_signature(body, args.signature, settings.webhook_secret)
            print("valid" if ok else "invalid")
            return 0 if ok else 4

        service = TriggerService.from_settings(settings)

        if args.command == "poll":
            reconciler = _reconciler(settings, service)
            report = reconciler.poll_once()
            print(format_poll_report(report, window_hours=settings.poll_window_hours))
            return 0

        if args.command == "status":
            records = service.ledger.load()
            if args.status is not None:
                records = [r for r in records if r.status.value == args.status]
            print(format_ledger_status(records))
            return 0

        if args.command == "skip":
            record = service.skip(args.work_item_id)
            print(f"Skipped {record.work_item_id} (triggered {record.triggered_at})")
            return 0

        if args.command == "mark-spawned":
            record = service.mark_spawned(args.work_item_id)
            print(f"Marked {record.work_item_id} as spawned")
            return 0

        if args.command == "drain":
            outcomes = service.drain(limit=args.limit)
            delivered = sum(1 for o in outcomes if o.delivered)
            print(f"Attempted {len(outcomes)} pending trigger(s); {delivered} delivered")
            return 0

        if args.command == "skip-stale":
            reconciler = _reconciler(settings, service)
            skipped = reconciler.skip_stale()
            print(f"Skipped {len(skipped)} stale trigger(s): {', '.join(skipped) or 'none'}")
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (TriggerNotFound, IllegalTransitionError) as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
