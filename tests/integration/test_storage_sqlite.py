"""Tests for SQLite audit persistence, requirements upsert, retention, and export."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime

import pytest

from core.models import ExtractionAttempt, FetchAttempt, FieldDescriptor, RequirementsRecord
from storage.sqlite import SQLiteAuditExporter, SQLiteAuditStore


@pytest.mark.integration

def test_initialize_schema_is_idempotent(temp_db):
    store = SQLiteAuditStore(temp_db)
    store.initialize_schema()

    with sqlite3.connect(temp_db) as connection:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {
        "fetch_attempts",
        "extraction_attempts",
        "requirements",
        "manual_backup_tickets",
    }.issubset(tables)


@pytest.mark.integration

def test_audit_rows_are_read_back_as_export_rows(
    audit_store, sample_fetch_attempt, sample_blocked_attempt, sample_extraction_attempt
):
    audit_store.write_fetch_attempt(sample_fetch_attempt)
    audit_store.write_fetch_attempt(sample_blocked_attempt)
    audit_store.write_extraction_attempt(sample_extraction_attempt)

    fetch_rows = list(audit_store.iter_fetch_attempts(campaign_id="campaign-001"))
    extraction_rows = list(audit_store.iter_extraction_attempts())

    by_id = {row["id"]: row for row in fetch_rows}
    assert set(by_id) == {sample_fetch_attempt.id, sample_blocked_attempt.id}
    assert by_id[sample_blocked_attempt.id]["robots_allowed"] is None
    assert by_id[sample_blocked_attempt.id]["reason"] == "public-mode-block"
    assert extraction_rows[0]["trap_hit"] == ["non_json_wrapper"]
    assert extraction_rows[0]["schema_ok"] is False
    assert extraction_rows[0]["errors"] == list(sample_extraction_attempt.errors)


@pytest.mark.integration

def test_audit_rows_are_append_only(audit_store, sample_fetch_attempt):
    audit_store.write_fetch_attempt(sample_fetch_attempt)

    with pytest.raises(sqlite3.IntegrityError):
        audit_store.write_fetch_attempt(sample_fetch_attempt)


@pytest.mark.integration

def test_requirements_upsert_keeps_identity(audit_store):
    first = RequirementsRecord(
        session_id="sess-1",
        campaign_id="c-1",
        discovered_fields=[FieldDescriptor(name="child_name", required=True, category="participant")],
        confidence_level=0.55,
        agreement={"child_name": 1},
        attempt_count=1,
        clean_attempt_count=1,
    )
    stored = audit_store.upsert_requirements(first)

    replacement = RequirementsRecord(
        session_id="sess-1",
        campaign_id="c-2",
        discovered_fields=[
            FieldDescriptor(name="child_name", required=True, category="participant"),
            FieldDescriptor(name="child_birthdate", type="date", constraints={"max": "2020-01-01"}),
        ],
        confidence_level=0.7,
        agreement={"child_birthdate,child_name": 1, "child_name": 1},
        attempt_count=2,
        clean_attempt_count=2,
    )
    updated = audit_store.upsert_requirements(replacement)

    assert stored.id == first.id
    assert updated.id == first.id
    assert updated.created_at == first.created_at
    assert updated.campaign_id == "c-2"
    assert updated.confidence_level == pytest.approx(0.7)
    assert updated.field("child_birthdate").constraints == {"max": "2020-01-01"}
    assert audit_store.get_requirements("sess-1") == updated
    assert audit_store.get_requirements("sess-unknown") is None


@pytest.mark.integration

def test_purge_removes_only_expired_audit_rows(audit_store, capsys):
    old = FetchAttempt(
        url="https://register.example.org/old",
        host="register.example.org",
        status="allowed",
        user_agent="SignupDiscoveryBot/1.0",
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )
    fresh = FetchAttempt(
        url="https://register.example.org/new",
        host="register.example.org",
        status="allowed",
        user_agent="SignupDiscoveryBot/1.0",
        created_at=datetime(2024, 6, 1, tzinfo=UTC),
    )
    old_extraction = ExtractionAttempt(
        url="https://register.example.org/old",
        model="extract-small",
        schema_ok=True,
        retry_count=0,
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )
    for attempt in (old, fresh):
        audit_store.write_fetch_attempt(attempt)
    audit_store.write_extraction_attempt(old_extraction)

    summary = audit_store.purge_expired(datetime(2024, 5, 1, tzinfo=UTC))

    assert summary == {"fetch_attempts_deleted": 1, "extraction_attempts_deleted": 1}
    assert [row["id"] for row in audit_store.iter_fetch_attempts()] == [fresh.id]
    event = json.loads(capsys.readouterr().out.splitlines()[-1])
    assert event["event_type"] == "audit_purge"


@pytest.mark.integration

def test_export_writes_validated_jsonl(
    audit_store, tmp_path, sample_fetch_attempt, sample_extraction_attempt
):
    audit_store.write_fetch_attempt(sample_fetch_attempt)
    audit_store.write_extraction_attempt(sample_extraction_attempt)
    output = tmp_path / "exports" / "audit.jsonl"

    count = SQLiteAuditExporter(audit_store).export(output)

    lines = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
    assert count == 2
    assert [line["record_type"] for line in lines] == ["fetch_attempt", "extraction_attempt"]
    assert lines[0]["record"]["id"] == sample_fetch_attempt.id


@pytest.mark.integration

def test_export_rejects_invalid_row(audit_store, tmp_path, sample_fetch_attempt):
    audit_store.write_fetch_attempt(sample_fetch_attempt)
    with sqlite3.connect(audit_store.db_path) as connection:
        connection.execute("UPDATE fetch_attempts SET duration_ms = -5")

    with pytest.raises(ValueError, match="Export validation failed for fetch_attempt"):
        SQLiteAuditExporter(audit_store).export(tmp_path / "audit.jsonl")
