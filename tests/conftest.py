"""
Shared pytest fixtures and configuration for signup-discovery tests.
"""

import pytest
from pathlib import Path
from uuid import uuid4

from core.models import (
    ExtractionAttempt,
    FetchAttempt,
    FetchStatus,
    FieldDescriptor,
    PageContent,
)
from storage.sqlite import SQLiteAuditStore


# ============================================================================
# Fixtures: Audit Records
# ============================================================================

@pytest.fixture
def sample_fetch_attempt() -> FetchAttempt:
    """Allowed fetch of a registration page."""
    return FetchAttempt(
        id=str(uuid4()),
        campaign_id="campaign-001",
        url="https://register.example.org/camp",
        host="register.example.org",
        status=FetchStatus.ALLOWED,
        robots_allowed=True,
        response_code=200,
        content_length=2048,
        duration_ms=120,
        user_agent="SignupDiscoveryBot/1.0 (+https://example.com/bot)",
        source_ip="203.0.113.7",
    )


@pytest.fixture
def sample_blocked_attempt() -> FetchAttempt:
    """Fetch blocked by public mode before any network call."""
    return FetchAttempt(
        id=str(uuid4()),
        campaign_id="campaign-001",
        url="https://x.example.com/signup",
        host="x.example.com",
        status=FetchStatus.BLOCKED,
        reason="public-mode-block",
        user_agent="SignupDiscoveryBot/1.0 (+https://example.com/bot)",
    )


@pytest.fixture
def sample_extraction_attempt() -> ExtractionAttempt:
    """Schema-invalid extraction attempt with a trap hit."""
    return ExtractionAttempt(
        id=str(uuid4()),
        campaign_id="campaign-001",
        url="https://register.example.org/camp",
        model="extract-small",
        tokens_in=900,
        tokens_out=120,
        schema_ok=False,
        retry_count=0,
        trap_hit=("non_json_wrapper",),
        failure_stage="json_parse",
        errors=("Expecting value: line 1 column 1 (char 0)",),
        raw_output="Here is the form: fields are name and age",
    )


# ============================================================================
# Fixtures: Requirements
# ============================================================================

@pytest.fixture
def sample_fields() -> list[FieldDescriptor]:
    """Fields covering participant, guardian and contact categories."""
    return [
        FieldDescriptor(name="child_name", type="text", required=True),
        FieldDescriptor(name="guardian_name", type="text", required=True),
        FieldDescriptor(name="phone", type="tel", required=False),
    ]


@pytest.fixture
def sample_page() -> PageContent:
    """Small registration form as fetched page content."""
    return PageContent(
        url="https://register.example.org/camp",
        final_url="https://register.example.org/camp",
        content_type="text/html",
        text=(
            "<html><body><form>"
            "<label for='child'>Child name</label><input id='child' name='child_name' required>"
            "<input type='date' name='child_birthdate' required>"
            "<input type='hidden' name='csrf' value='abc'>"
            "<input type='submit' value='Register'>"
            "</form></body></html>"
        ),
    )


# ============================================================================
# Fixtures: File Paths
# ============================================================================

@pytest.fixture
def schemas_dir() -> Path:
    """Path to schemas directory."""
    return Path(__file__).parent.parent / "schemas"


# ============================================================================
# Fixtures: Storage
# ============================================================================

@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Path for a temporary SQLite database."""
    return tmp_path / "test.db"


@pytest.fixture
def audit_store(temp_db: Path) -> SQLiteAuditStore:
    """Initialized SQLite store on a temporary database."""
    return SQLiteAuditStore(temp_db)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "contract: contract schema compliance tests")
    config.addinivalue_line("markers", "integration: end-to-end integration tests")
    config.addinivalue_line("markers", "unit: unit tests")
