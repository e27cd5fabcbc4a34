"""Operator CLI entrypoint for signup-discovery."""

from __future__ import annotations

import argparse
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import urlparse
from uuid import uuid4

import jsonschema

from confidence import ConfidenceModel
from core.config import CompliancePolicy, ComplianceConfig, RetryBudget, StaticPolicySource
from core.models import CampaignState
from core.pipeline import DiscoveryCampaign
from core.structured_logging import emit_json_event
from escalation import FallbackEscalator
from extractor import ExtractionEngine, HttpExtractionProvider
from fetcher import AuditedFetcher, ComplianceGate, HostRateLimiter, RobotsCache
from storage import AuditLogSink, SQLiteAuditExporter, SQLiteAuditStore

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SCHEMAS_DIR = PROJECT_ROOT / "schemas"
SCHEMA_FILES = (
    "requirements_extraction.schema.json",
    "fetch_attempt.schema.json",
    "extraction_attempt.schema.json",
)
DEFAULT_DB = "signup_discovery.db"


def _resolve_command_run_id(args: argparse.Namespace) -> str:
    """Resolve run_id from CLI args or create one for command-level tracing."""
    explicit = getattr(args, "run_id", None)
    if explicit:
        return str(explicit)
    return str(uuid4())


def _emit_cli_event(
    event_type: str,
    *,
    run_id: str,
    command: str,
    **payload: Any,
) -> str:
    """Emit one structured CLI event line with standard fields."""
    return emit_json_event(
        event_type,
        run_id=run_id,
        component="cli",
        command=command,
        **payload,
    )


def _validate_schema_file(path: Path) -> None:
    """Validate that a JSON schema file is well-formed and has required top-level keys."""
    data = json.loads(path.read_text(encoding="utf-8"))
    required_keys = {"$schema", "type", "properties", "required"}
    missing = required_keys.difference(data)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ValueError(f"{path.name} missing required schema keys: {missing_str}")
    jsonschema.validators.validator_for(data).check_schema(data)


def _existing_store(db: str) -> SQLiteAuditStore:
    db_path = Path(db)
    if not db_path.exists():
        raise FileNotFoundError(f"Database file not found: {db_path}")
    return SQLiteAuditStore(db_path)


def _cmd_validate_schemas(args: argparse.Namespace) -> int:
    """Validate schema files for structural correctness."""
    run_id = _resolve_command_run_id(args)
    paths = [SCHEMAS_DIR / name for name in SCHEMA_FILES]
    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"Schema file not found: {path}")
        _validate_schema_file(path)
    _emit_cli_event(
        "cli_validate_schemas_completed",
        run_id=run_id,
        command="validate-schemas",
        schema_files=[str(path) for path in paths],
    )
    return 0


def _cmd_init_db(args: argparse.Namespace) -> int:
    """Create (or upgrade) the SQLite database."""
    run_id = _resolve_command_run_id(args)
    SQLiteAuditStore(args.db)
    _emit_cli_event("cli_init_db_completed", run_id=run_id, command="init-db", db=str(args.db))
    return 0


def _cmd_refresh_robots(args: argparse.Namespace) -> int:
    """Fetch robots.txt for hosts and report the resulting cache mode."""
    run_id = _resolve_command_run_id(args)
    cache = RobotsCache(user_agent=ComplianceConfig.USER_AGENT)
    modes = cache.refresh_many(args.host)
    _emit_cli_event(
        "cli_refresh_robots_completed",
        run_id=run_id,
        command="refresh-robots",
        modes=modes,
    )
    return 0 if all(mode != "unavailable" for mode in modes.values()) else 1


def _cmd_tickets(args: argparse.Namespace) -> int:
    """List manual-backup tickets (open only unless --all)."""
    run_id = _resolve_command_run_id(args)
    store = _existing_store(args.db)
    tickets = store.list_tickets(include_resolved=args.all)
    _emit_cli_event(
        "cli_tickets_completed",
        run_id=run_id,
        command="tickets",
        db=str(args.db),
        ticket_count=len(tickets),
        tickets=[item.model_dump(mode="json") for item in tickets],
    )
    return 0


def _cmd_resolve_ticket(args: argparse.Namespace) -> int:
    """Resolve one manual-backup ticket."""
    run_id = _resolve_command_run_id(args)
    escalator = FallbackEscalator(_existing_store(args.db))
    ticket = escalator.resolve(args.ticket_id, resolved_by=args.by, note=args.note)
    _emit_cli_event(
        "cli_resolve_ticket_completed",
        run_id=run_id,
        command="resolve-ticket",
        db=str(args.db),
        ticket_id=ticket.id,
        resolved_at=ticket.resolved_at,
    )
    return 0


def _cmd_export_audit(args: argparse.Namespace) -> int:
    """Export audit rows from SQLite with per-row schema validation."""
    run_id = _resolve_command_run_id(args)
    output = Path(args.output)
    exporter = SQLiteAuditExporter(_existing_store(args.db))
    count = exporter.export(output)
    _emit_cli_event(
        "cli_export_audit_completed",
        run_id=run_id,
        command="export-audit",
        output=str(output),
        db=str(args.db),
        exported_rows=count,
    )
    return 0


def _cmd_purge_audit(args: argparse.Namespace) -> int:
    """Delete audit rows past retention."""
    run_id = _resolve_command_run_id(args)
    store = _existing_store(args.db)
    now = datetime.fromisoformat(args.now) if args.now else None
    summary = store.purge_expired(now)
    _emit_cli_event(
        "cli_purge_audit_completed",
        run_id=run_id,
        command="purge-audit",
        db=str(args.db),
        **summary,
    )
    return 0


def _cmd_discover(args: argparse.Namespace) -> int:
    """Run one discovery campaign for a session against its target URLs."""
    run_id = _resolve_command_run_id(args)
    store = SQLiteAuditStore(args.db)
    policy = CompliancePolicy(
        public_mode=args.public_mode,
        public_allowlist=frozenset(args.allow),
        rate_ceilings={},
    )
    robots = RobotsCache(user_agent=ComplianceConfig.USER_AGENT)
    robots.refresh_many({(urlparse(url).hostname or "") for url in args.url} - {""})
    gate = ComplianceGate(
        robots,
        HostRateLimiter(
            window_seconds=ComplianceConfig.RATE_WINDOW_SECONDS,
            default_ceiling=policy.default_rate_ceiling,
        ),
    )

    with AuditLogSink(store) as sink:
        fetcher = AuditedFetcher(gate, StaticPolicySource(policy), sink)
        engine = ExtractionEngine(
            HttpExtractionProvider(endpoint=args.endpoint, model=args.model),
            sink,
        )
        campaign = DiscoveryCampaign(
            session_id=args.session,
            targets=args.url,
            fetcher=fetcher,
            engine=engine,
            model=ConfidenceModel(),
            escalator=FallbackEscalator(store),
            requirements_store=store,
            budget=RetryBudget(max_retries=args.max_retries),
            threshold=args.threshold,
            campaign_id=run_id,
        )
        result = campaign.run()
        sink.flush(timeout=10)

    _emit_cli_event(
        "cli_discover_completed",
        run_id=run_id,
        command="discover",
        session_id=args.session,
        state=result.state.value,
        confidence_level=result.confidence_level,
        ticket_id=result.ticket.id if result.ticket else None,
    )
    return 0 if result.state is CampaignState.SUFFICIENT else 1


def build_parser() -> argparse.ArgumentParser:
    """Create argument parser for the signup-discovery CLI."""
    parser = argparse.ArgumentParser(
        prog="signup-discovery",
        description="Safe-fetch and structured-extraction pipeline for signup requirements",
    )
    parser.add_argument("--version", action="version", version="signup-discovery 0.1.0")

    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser(
        "validate-schemas",
        help="Validate JSON schemas used by extraction and audit export",
    )
    validate_parser.set_defaults(func=_cmd_validate_schemas)

    init_parser = subparsers.add_parser("init-db", help="Create the SQLite database")
    init_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    init_parser.set_defaults(func=_cmd_init_db)

    robots_parser = subparsers.add_parser(
        "refresh-robots",
        help="Fetch robots.txt for one or more hosts",
    )
    robots_parser.add_argument("--host", action="append", required=True, help="Host to refresh")
    robots_parser.set_defaults(func=_cmd_refresh_robots)

    tickets_parser = subparsers.add_parser("tickets", help="List manual-backup tickets")
    tickets_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    tickets_parser.add_argument("--all", action="store_true", help="Include resolved tickets")
    tickets_parser.set_defaults(func=_cmd_tickets)

    resolve_parser = subparsers.add_parser("resolve-ticket", help="Resolve a manual-backup ticket")
    resolve_parser.add_argument("ticket_id", help="Ticket ID")
    resolve_parser.add_argument("--by", required=True, help="Operator identifier")
    resolve_parser.add_argument("--note", help="Resolution note")
    resolve_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    resolve_parser.set_defaults(func=_cmd_resolve_ticket)

    export_parser = subparsers.add_parser(
        "export-audit",
        help="Write JSONL audit export from SQLite with schema validation",
    )
    export_parser.add_argument("--output", required=True, help="Output JSONL path")
    export_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    export_parser.add_argument("--run-id", help="Optional explicit run ID for logging")
    export_parser.set_defaults(func=_cmd_export_audit)

    purge_parser = subparsers.add_parser("purge-audit", help="Delete audit rows past retention")
    purge_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    purge_parser.add_argument("--now", help="ISO timestamp to purge against (default: now)")
    purge_parser.set_defaults(func=_cmd_purge_audit)

    discover_parser = subparsers.add_parser(
        "discover",
        help="Run one discovery campaign for a session",
    )
    discover_parser.add_argument("--session", required=True, help="Session identifier")
    discover_parser.add_argument("--url", action="append", required=True, help="Target URL")
    discover_parser.add_argument("--endpoint", required=True, help="Chat-completions endpoint")
    discover_parser.add_argument("--model", required=True, help="Extraction model identifier")
    discover_parser.add_argument("--db", default=DEFAULT_DB, help="SQLite DB path")
    discover_parser.add_argument("--run-id", help="Optional explicit campaign ID")
    discover_parser.add_argument("--max-retries", type=int, default=RetryBudget().max_retries)
    discover_parser.add_argument("--threshold", type=float, default=0.6)
    discover_parser.add_argument(
        "--public-mode",
        action="store_true",
        help="Only fetch hosts on the --allow list",
    )
    discover_parser.add_argument(
        "--allow",
        action="append",
        default=[],
        help="Host allowed in public mode",
    )
    discover_parser.set_defaults(func=_cmd_discover)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Execute CLI and return process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    try:
        return int(args.func(args))
    except Exception as exc:
        run_id = _resolve_command_run_id(args)
        _emit_cli_event(
            "cli_error",
            run_id=run_id,
            command=str(getattr(args, "command", "unknown")),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return 1


def cli() -> None:
    """Console-script entrypoint."""
    raise SystemExit(main())


if __name__ == "__main__":
    raise SystemExit(main())
