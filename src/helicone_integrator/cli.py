from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
import sys
import uuid

from helicone_integrator.config import AppConfig, ConfigError, load_config
from helicone_integrator.models import IntegrationRecord, IntegrationRequest
from helicone_integrator.observability import configure_logging
from helicone_integrator.process_lock import ProcessLockError, worker_process_lock
from helicone_integrator.review import ReviewDispatcher
from helicone_integrator.service import IntegrationService, InstanceHandle, build_service
from helicone_integrator.state import (
    DuplicateIntegrationError,
    InstanceNotFoundError,
    StateStore,
)


_DEFAULT_CONFIG_PATH = Path("helicone-integrator.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="helicone-integrator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the state directory and database")
    _add_common_options(init_parser)

    start_parser = subparsers.add_parser(
        "start", help="Start a Helicone integration for a GitHub repository"
    )
    _add_common_options(start_parser)
    start_parser.add_argument("repo_url", help="e.g. https://github.com/acme/widgets")
    start_parser.add_argument("--id", dest="integration_id", help="Integration id (default: random)")
    start_parser.add_argument(
        "--wait", action="store_true", help="Block until the integration finishes"
    )

    worker_parser = subparsers.add_parser("worker", help="Run integrations until interrupted")
    _add_common_options(worker_parser)
    worker_parser.add_argument(
        "--once",
        action="store_true",
        help="Drive every runnable integration until it finishes or waits for review",
    )

    review_parser = subparsers.add_parser("review", help="Approve or reject a staged integration")
    _add_common_options(review_parser)
    review_parser.add_argument("integration_id")
    review_parser.add_argument("decision", choices=("approve", "reject"))
    review_parser.add_argument(
        "feedback",
        nargs="*",
        help="Feedback for the agent; reject without feedback ends the integration",
    )

    status_parser = subparsers.add_parser("status", help="Show integration status")
    _add_common_options(status_parser)
    status_parser.add_argument("integration_id", nargs="?")
    status_parser.add_argument("--json", action="store_true", help="Print status as JSON")
    status_parser.add_argument(
        "--events", action="store_true", help="Include the status event history"
    )

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a running integration")
    _add_common_options(cancel_parser)
    cancel_parser.add_argument("integration_id")

    top_parser = subparsers.add_parser("top", help="Open the live status dashboard")
    _add_common_options(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=2)

    return parser


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=_DEFAULT_CONFIG_PATH)
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Log to stderr and <base_dir>/logs (default level: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = getattr(args, "verbose", None)
    configure_logging(verbose, state_dir=config.runtime.base_dir if verbose else None)

    try:
        _dispatch(config, args)
    except (
        ConfigError,
        DuplicateIntegrationError,
        InstanceNotFoundError,
        ProcessLockError,
        ValueError,
    ) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _dispatch(config: AppConfig, args: argparse.Namespace) -> None:
    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "start":
        _cmd_start(
            config,
            repo_url=str(args.repo_url),
            integration_id=args.integration_id,
            wait=bool(args.wait),
        )
        return
    if args.command == "worker":
        _cmd_worker(config, once=bool(args.once))
        return
    if args.command == "review":
        _cmd_review(
            config,
            integration_id=str(args.integration_id),
            approved=args.decision == "approve",
            feedback=" ".join(args.feedback),
        )
        return
    if args.command == "status":
        _cmd_status(
            config,
            integration_id=args.integration_id,
            as_json=bool(args.json),
            include_events=bool(args.events),
        )
        return
    if args.command == "cancel":
        _cmd_cancel(config, integration_id=str(args.integration_id))
        return
    if args.command == "top":
        _cmd_top(config, refresh_seconds=int(args.refresh_seconds))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    config.runtime.workspaces_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)
    print(f"Initialized helicone-integrator base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    print(f"Workspaces: {config.runtime.workspaces_dir}")


def _cmd_start(
    config: AppConfig,
    *,
    repo_url: str,
    integration_id: str | None,
    wait: bool,
) -> None:
    request = IntegrationRequest.from_url(
        repo_url, integration_id=integration_id or _new_integration_id()
    )
    service = _build_service(config)
    handle = service.start(request)
    print(f"Started integration {request.integration_id} for {request.full_name}")
    print(json.dumps(_request_payload(request), indent=2))
    if not wait:
        print("Run `helicone-integrator worker` to drive it.")
        return
    record = handle.result(poll_interval_seconds=config.runtime.poll_interval_seconds)
    _print_record(record)


def _cmd_worker(config: AppConfig, *, once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    with worker_process_lock(base_dir=config.runtime.base_dir, command="worker"):
        _build_service(config).run(once=once)


def _cmd_review(
    config: AppConfig,
    *,
    integration_id: str,
    approved: bool,
    feedback: str,
) -> None:
    dispatcher = ReviewDispatcher(StateStore(config.runtime.state_db_path))
    delivery = dispatcher.submit_review(integration_id, approved, feedback or None)
    print("Review sent successfully!")
    print(f"Integration: {integration_id}")
    print(f"Decision: {'APPROVED' if approved else 'REJECTED'}")
    if feedback.strip():
        print(f"Feedback: {feedback.strip()}")
    if not delivery.window_open:
        print(
            "Warning: the integration is not waiting for review right now; "
            "this decision will be discarded when the next review starts."
        )


def _cmd_status(
    config: AppConfig,
    *,
    integration_id: str | None,
    as_json: bool,
    include_events: bool,
) -> None:
    state = StateStore(config.runtime.state_db_path)
    if integration_id is not None:
        records: tuple[IntegrationRecord, ...] = (
            InstanceHandle(state, integration_id).status(),
        )
    else:
        records = state.list_integrations()

    if as_json:
        payload = []
        for record in records:
            item: dict[str, object] = asdict(record)
            if include_events:
                item["events"] = [
                    asdict(event) for event in state.list_status_events(record.integration_id)
                ]
            payload.append(item)
        print(json.dumps(payload, indent=2))
        return

    if not records:
        print("No integrations.")
        return
    for record in records:
        _print_record(record)
        if include_events:
            for event in state.list_status_events(record.integration_id):
                url = event.pr_url or event.staging_url
                suffix = f" url={url}" if url else ""
                print(f"  {event.created_at} {event.status}: {event.message}{suffix}")
        print()


def _cmd_cancel(config: AppConfig, *, integration_id: str) -> None:
    _build_service(config).cancel(integration_id)
    print(f"Cancellation requested for {integration_id}")


def _cmd_top(config: AppConfig, *, refresh_seconds: int) -> None:
    from helicone_integrator.status_tui import run_status_tui

    run_status_tui(
        state=StateStore(config.runtime.state_db_path), refresh_seconds=refresh_seconds
    )


def _build_service(config: AppConfig) -> IntegrationService:
    return build_service(config)


def _new_integration_id() -> str:
    return uuid.uuid4().hex[:12]


def _request_payload(request: IntegrationRequest) -> dict[str, str]:
    return {
        "repoUrl": request.repo_url,
        "repoOwner": request.repo_owner,
        "repoName": request.repo_name,
        "integrationId": request.integration_id,
    }


def _print_record(record: IntegrationRecord) -> None:
    print(
        f"integration_id={record.integration_id} repo={record.repo_owner}/{record.repo_name} "
        f"status={record.status} phase={record.phase or '-'} attempt={record.attempt}"
    )
    if record.message:
        print(f"message={record.message}")
    if record.staging_url:
        print(f"staging_url={record.staging_url}")
    if record.pr_url:
        print(f"pr_url={record.pr_url}")
    if record.error:
        print(f"error={record.error}")
