"""
Alignment contract tests: verify DB schema aligns with model contracts and pipeline.

These tests ensure that the database constraints, export schemas, and model
definitions are consistent across layers (models, schema, config, pipeline).
"""

import json
import sqlite3
from pathlib import Path

import pytest

from core.config import ComplianceConfig, DiscoveryConfig, RetryBudget
from core.models import CampaignState, FetchStatus, TERMINAL_STATES
from core.pipeline import LEGAL_TRANSITIONS
from extractor.logging import extraction_attempt_to_dict
from fetcher.logging import fetch_attempt_to_dict

MIGRATION_PATH = Path(__file__).parent.parent.parent / "storage" / "migrations" / "0001_init.sql"
SCHEMAS_DIR = Path(__file__).parent.parent.parent / "schemas"


def _columns(table: str) -> set[str]:
    connection = sqlite3.connect(":memory:")
    try:
        connection.executescript(MIGRATION_PATH.read_text())
        return {row[1] for row in connection.execute(f"PRAGMA table_info({table})")}
    finally:
        connection.close()


@pytest.mark.contract
class TestDBSchemaAlignment:
    """Verify that SQLite schema enforces required constraints."""

    @pytest.fixture
    def migration_sql(self):
        """Load the migration SQL."""
        return MIGRATION_PATH.read_text()

    def test_one_ticket_per_campaign(self, migration_sql):
        """Ticket uniqueness is enforced by the database, not only the escalator."""
        assert "UNIQUE (session_id, campaign_id)" in migration_sql

    def test_one_requirements_row_per_session(self, migration_sql):
        assert "session_id TEXT NOT NULL UNIQUE" in migration_sql

    def test_fetch_status_check_matches_enum(self, migration_sql):
        values = ", ".join(f"'{item.value}'" for item in FetchStatus)
        assert f"status IN ({values})" in migration_sql

    def test_audit_tables_carry_retention_column(self):
        assert "delete_after" in _columns("fetch_attempts")
        assert "delete_after" in _columns("extraction_attempts")


@pytest.mark.contract
class TestExportAlignment:
    """Audit rows, table columns, and export schemas describe the same fields."""

    def test_fetch_attempt_row_matches_table_and_schema(self, sample_fetch_attempt):
        row = fetch_attempt_to_dict(sample_fetch_attempt)
        schema = json.loads((SCHEMAS_DIR / "fetch_attempt.schema.json").read_text())

        assert set(row) == _columns("fetch_attempts") - {"delete_after"}
        assert set(row) == set(schema["properties"])

    def test_extraction_attempt_row_matches_table_and_schema(self, sample_extraction_attempt):
        row = extraction_attempt_to_dict(sample_extraction_attempt)
        schema = json.loads((SCHEMAS_DIR / "extraction_attempt.schema.json").read_text())

        assert set(row) == _columns("extraction_attempts") - {"delete_after"}
        assert set(row) == set(schema["properties"])


@pytest.mark.contract
class TestStateMachineAlignment:
    """Campaign states and the transition table agree."""

    def test_every_state_has_a_transition_entry(self):
        assert set(LEGAL_TRANSITIONS) == set(CampaignState)

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert LEGAL_TRANSITIONS[state] == frozenset()

    def test_exhausted_only_leads_to_escalation(self):
        assert LEGAL_TRANSITIONS[CampaignState.EXHAUSTED] == frozenset({CampaignState.ESCALATED})

    def test_every_non_terminal_state_can_reach_a_terminal_state(self):
        for state in set(CampaignState) - TERMINAL_STATES:
            seen = {state}
            frontier = [state]
            while frontier:
                current = frontier.pop()
                for target in LEGAL_TRANSITIONS[current]:
                    if target not in seen:
                        seen.add(target)
                        frontier.append(target)
            assert seen & TERMINAL_STATES, state


@pytest.mark.contract
class TestConfigAlignment:
    """Configuration defaults are internally consistent."""

    def test_config_validates(self):
        ComplianceConfig.validate()
        DiscoveryConfig.validate()

    def test_retry_budget_defaults_follow_config(self):
        budget = RetryBudget()

        assert budget.max_retries == DiscoveryConfig.MAX_RETRIES
        assert budget.backoff_delay(1) == DiscoveryConfig.BACKOFF_BASE_SECONDS
        assert budget.backoff_delay(2) == 2 * DiscoveryConfig.BACKOFF_BASE_SECONDS
        assert budget.backoff_delay(50) == DiscoveryConfig.BACKOFF_MAX_SECONDS
        assert budget.backoff_delay(0) == 0.0
