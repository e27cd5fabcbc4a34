"""SQLite persistence for audit rows, requirements, tickets, export, and retention."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

import jsonschema

from core.config import ComplianceConfig
from core.models import (
    ExtractionAttempt,
    FetchAttempt,
    FieldDescriptor,
    ManualBackupTicket,
    RequirementsRecord,
)
from core.pipeline import AuditWriter, RequirementsStore, TicketStore
from core.structured_logging import emit_json_event
from extractor.logging import extraction_attempt_to_dict
from extractor.schema import load_schema
from fetcher.logging import fetch_attempt_to_dict

FETCH_ATTEMPT_SCHEMA_FILE = "fetch_attempt.schema.json"
EXTRACTION_ATTEMPT_SCHEMA_FILE = "extraction_attempt.schema.json"


def _utc_now() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse ISO datetime string into datetime, preserving None."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _fetch_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "campaign_id": row["campaign_id"],
        "url": row["url"],
        "host": row["host"],
        "status": row["status"],
        "reason": row["reason"],
        "robots_allowed": _optional_bool(row["robots_allowed"]),
        "rate_limited": bool(row["rate_limited"]),
        "response_code": row["response_code"],
        "content_length": row["content_length"],
        "duration_ms": row["duration_ms"],
        "user_agent": row["user_agent"],
        "source_ip": row["source_ip"],
        "created_at": row["created_at"],
    }


def _extraction_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "campaign_id": row["campaign_id"],
        "url": row["url"],
        "model": row["model"],
        "tokens_in": row["tokens_in"],
        "tokens_out": row["tokens_out"],
        "schema_ok": bool(row["schema_ok"]),
        "retry_count": row["retry_count"],
        "trap_hit": json.loads(row["trap_hit"] or "[]"),
        "failure_stage": row["failure_stage"],
        "errors": json.loads(row["errors"] or "[]"),
        "raw_output": row["raw_output"],
        "created_at": row["created_at"],
    }


def _row_to_requirements(row: sqlite3.Row) -> RequirementsRecord:
    return RequirementsRecord(
        id=row["id"],
        session_id=row["session_id"],
        campaign_id=row["campaign_id"],
        discovered_fields=[
            FieldDescriptor(**item) for item in json.loads(row["discovered_fields"] or "[]")
        ],
        confidence_level=float(row["confidence_level"]),
        agreement=json.loads(row["agreement"] or "{}"),
        attempt_count=row["attempt_count"],
        clean_attempt_count=row["clean_attempt_count"],
        created_at=_parse_iso_datetime(row["created_at"]),
        last_updated_at=_parse_iso_datetime(row["last_updated_at"]),
    )


def _row_to_ticket(row: sqlite3.Row) -> ManualBackupTicket:
    return ManualBackupTicket(
        id=row["id"],
        session_id=row["session_id"],
        campaign_id=row["campaign_id"],
        failure_reason=row["failure_reason"],
        final_confidence=float(row["final_confidence"]),
        detail=row["detail"],
        target_url=row["target_url"],
        created_at=_parse_iso_datetime(row["created_at"]),
        resolved_at=_parse_iso_datetime(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        resolution_note=row["resolution_note"],
    )


class SQLiteAuditStore(AuditWriter, RequirementsStore, TicketStore):
    """Persist audit rows, requirements records, and manual-backup tickets to SQLite.

    Every write opens its own connection and commits one transaction, so a
    record is either fully stored or absent.
    """

    def __init__(
        self,
        db_path: str | Path,
        initialize: bool = True,
        retention_days: int = ComplianceConfig.AUDIT_RETENTION_DAYS,
    ) -> None:
        """Initialize store and optionally apply the schema."""
        self.db_path = Path(db_path)
        self.retention_days = retention_days
        if initialize:
            self.initialize_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.db_path, timeout=30)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def initialize_schema(self) -> None:
        """Apply initial migration schema (idempotent)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        migration_path = Path(__file__).resolve().parent / "migrations" / "0001_init.sql"
        sql = migration_path.read_text(encoding="utf-8")
        with self._connect() as connection:
            connection.executescript(sql)

    def _delete_after(self, created_at: datetime) -> str:
        return (created_at + timedelta(days=self.retention_days)).isoformat()

    # ------------------------------------------------------------------
    # Audit rows
    # ------------------------------------------------------------------

    def write_fetch_attempt(self, attempt: FetchAttempt) -> None:
        """Insert one fetch_attempts row."""
        row = fetch_attempt_to_dict(attempt)
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO fetch_attempts (
                    id,
                    campaign_id,
                    url,
                    host,
                    status,
                    reason,
                    robots_allowed,
                    rate_limited,
                    response_code,
                    content_length,
                    duration_ms,
                    user_agent,
                    source_ip,
                    created_at,
                    delete_after
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["id"],
                    row["campaign_id"],
                    row["url"],
                    row["host"],
                    row["status"],
                    row["reason"],
                    None if row["robots_allowed"] is None else int(row["robots_allowed"]),
                    int(row["rate_limited"]),
                    row["response_code"],
                    row["content_length"],
                    row["duration_ms"],
                    row["user_agent"],
                    row["source_ip"],
                    row["created_at"],
                    self._delete_after(attempt.created_at),
                ),
            )

    def write_extraction_attempt(self, attempt: ExtractionAttempt) -> None:
        """Insert one extraction_attempts row."""
        row = extraction_attempt_to_dict(attempt)
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO extraction_attempts (
                    id,
                    campaign_id,
                    url,
                    model,
                    tokens_in,
                    tokens_out,
                    schema_ok,
                    retry_count,
                    trap_hit,
                    failure_stage,
                    errors,
                    raw_output,
                    created_at,
                    delete_after
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["id"],
                    row["campaign_id"],
                    row["url"],
                    row["model"],
                    row["tokens_in"],
                    row["tokens_out"],
                    int(row["schema_ok"]),
                    row["retry_count"],
                    json.dumps(row["trap_hit"], ensure_ascii=True),
                    row["failure_stage"],
                    json.dumps(row["errors"], ensure_ascii=True),
                    row["raw_output"],
                    row["created_at"],
                    self._delete_after(attempt.created_at),
                ),
            )

    def iter_fetch_attempts(self, campaign_id: str | None = None) -> Iterator[dict[str, Any]]:
        """Yield fetch_attempts rows in deterministic order."""
        query = "SELECT * FROM fetch_attempts"
        params: tuple[Any, ...] = ()
        if campaign_id is not None:
            query += " WHERE campaign_id = ?"
            params = (campaign_id,)
        query += " ORDER BY created_at, id"
        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()
        for row in rows:
            yield _fetch_row_to_dict(row)

    def iter_extraction_attempts(
        self, campaign_id: str | None = None
    ) -> Iterator[dict[str, Any]]:
        """Yield extraction_attempts rows ordered by campaign and retry_count."""
        query = "SELECT * FROM extraction_attempts"
        params: tuple[Any, ...] = ()
        if campaign_id is not None:
            query += " WHERE campaign_id = ?"
            params = (campaign_id,)
        query += " ORDER BY campaign_id, retry_count, created_at, id"
        with self._connect() as connection:
            rows = connection.execute(query, params).fetchall()
        for row in rows:
            yield _extraction_row_to_dict(row)

    def purge_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Delete audit rows past their retention date. Tickets are never purged."""
        cutoff = (now or _utc_now()).isoformat()
        with self._connect() as connection:
            fetch_deleted = connection.execute(
                "DELETE FROM fetch_attempts WHERE delete_after < ?", (cutoff,)
            ).rowcount
            extraction_deleted = connection.execute(
                "DELETE FROM extraction_attempts WHERE delete_after < ?", (cutoff,)
            ).rowcount
        summary = {
            "fetch_attempts_deleted": fetch_deleted,
            "extraction_attempts_deleted": extraction_deleted,
        }
        emit_json_event(
            "audit_purge",
            run_id=None,
            component="storage",
            cutoff=cutoff,
            **summary,
        )
        return summary

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    def get_requirements(self, session_id: str) -> RequirementsRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM requirements WHERE session_id = ?", (session_id,)
            ).fetchone()
        return _row_to_requirements(row) if row else None

    def upsert_requirements(self, record: RequirementsRecord) -> RequirementsRecord:
        """Insert or update the session's requirements; the stored identity is kept."""
        fields_json = json.dumps(
            [item.model_dump(mode="json") for item in record.discovered_fields],
            ensure_ascii=True,
            sort_keys=True,
        )
        agreement_json = json.dumps(record.agreement, ensure_ascii=True, sort_keys=True)
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO requirements (
                    id,
                    session_id,
                    campaign_id,
                    discovered_fields,
                    confidence_level,
                    agreement,
                    attempt_count,
                    clean_attempt_count,
                    created_at,
                    last_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    campaign_id = excluded.campaign_id,
                    discovered_fields = excluded.discovered_fields,
                    confidence_level = excluded.confidence_level,
                    agreement = excluded.agreement,
                    attempt_count = excluded.attempt_count,
                    clean_attempt_count = excluded.clean_attempt_count,
                    last_updated_at = excluded.last_updated_at
                """,
                (
                    record.id,
                    record.session_id,
                    record.campaign_id,
                    fields_json,
                    record.confidence_level,
                    agreement_json,
                    record.attempt_count,
                    record.clean_attempt_count,
                    record.created_at.isoformat(),
                    record.last_updated_at.isoformat(),
                ),
            )
            row = connection.execute(
                "SELECT * FROM requirements WHERE session_id = ?", (record.session_id,)
            ).fetchone()
        return _row_to_requirements(row)

    # ------------------------------------------------------------------
    # Manual-backup tickets
    # ------------------------------------------------------------------

    def insert_or_get_ticket(self, ticket: ManualBackupTicket) -> ManualBackupTicket:
        """Insert a ticket unless one exists for (session_id, campaign_id); return the stored one."""
        with self._connect() as connection:
            connection.execute(
                """
                INSERT OR IGNORE INTO manual_backup_tickets (
                    id,
                    session_id,
                    campaign_id,
                    failure_reason,
                    final_confidence,
                    detail,
                    target_url,
                    created_at,
                    resolved_at,
                    resolved_by,
                    resolution_note
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.id,
                    ticket.session_id,
                    ticket.campaign_id,
                    ticket.failure_reason,
                    ticket.final_confidence,
                    ticket.detail,
                    ticket.target_url,
                    ticket.created_at.isoformat(),
                    ticket.resolved_at.isoformat() if ticket.resolved_at else None,
                    ticket.resolved_by,
                    ticket.resolution_note,
                ),
            )
            row = connection.execute(
                """
                SELECT * FROM manual_backup_tickets
                WHERE session_id = ? AND campaign_id = ?
                """,
                (ticket.session_id, ticket.campaign_id),
            ).fetchone()
        return _row_to_ticket(row)

    def get_ticket(self, ticket_id: str) -> ManualBackupTicket | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM manual_backup_tickets WHERE id = ?", (ticket_id,)
            ).fetchone()
        return _row_to_ticket(row) if row else None

    def update_ticket(self, ticket: ManualBackupTicket) -> None:
        """Persist resolution fields; a resolved row is never reopened."""
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE manual_backup_tickets
                SET resolved_at = ?, resolved_by = ?, resolution_note = ?
                WHERE id = ? AND resolved_at IS NULL
                """,
                (
                    ticket.resolved_at.isoformat() if ticket.resolved_at else None,
                    ticket.resolved_by,
                    ticket.resolution_note,
                    ticket.id,
                ),
            )
            if cursor.rowcount != 1:
                raise ValueError(f"ticket {ticket.id} is missing or already resolved")

    def list_tickets(self, include_resolved: bool = False) -> list[ManualBackupTicket]:
        query = "SELECT * FROM manual_backup_tickets"
        if not include_resolved:
            query += " WHERE resolved_at IS NULL"
        query += " ORDER BY created_at, id"
        with self._connect() as connection:
            rows = connection.execute(query).fetchall()
        return [_row_to_ticket(row) for row in rows]


class SQLiteAuditExporter:
    """Export audit rows as JSONL with row-by-row schema validation."""

    def __init__(self, store: SQLiteAuditStore) -> None:
        self.store = store
        self.fetch_schema = load_schema(FETCH_ATTEMPT_SCHEMA_FILE)
        self.extraction_schema = load_schema(EXTRACTION_ATTEMPT_SCHEMA_FILE)

    def export(self, output_path: str | Path) -> int:
        """
        Export all audit rows as JSONL.

        Each line is {"record_type": ..., "record": row}. Validation is
        performed per row before writing that row; the first invalid row
        raises ValueError and stops the export.
        """
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)

        sources = (
            ("fetch_attempt", self.fetch_schema, self.store.iter_fetch_attempts()),
            ("extraction_attempt", self.extraction_schema, self.store.iter_extraction_attempts()),
        )
        exported_count = 0
        with output.open("w", encoding="utf-8") as handle:
            for record_type, schema, rows in sources:
                for row in rows:
                    try:
                        jsonschema.validate(row, schema)
                    except jsonschema.ValidationError as exc:
                        raise ValueError(
                            f"Export validation failed for {record_type} {row['id']}: {exc.message}"
                        ) from exc
                    line = {"record_type": record_type, "record": row}
                    handle.write(json.dumps(line, ensure_ascii=False, sort_keys=True) + "\n")
                    exported_count += 1
        return exported_count
