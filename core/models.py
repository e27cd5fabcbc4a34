"""
Core Pydantic models for signup-discovery.

Design principles:
- Audit records (FetchAttempt, ExtractionAttempt) are frozen once built
- Requirements are updated by producing a new value with the same identity
- Every timestamp is timezone-aware UTC
- Deterministic serialization (records are exported row-for-row)
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================

class FetchStatus(str, Enum):
    """Outcome of one physical fetch call."""
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    ERROR = "error"


class FetchErrorKind(str, Enum):
    """Why did a fetch fail?"""
    POLICY_BLOCKED = "PolicyBlocked"
    NETWORK_FAILURE = "NetworkFailure"
    HTTP_STATUS = "HttpStatus"


class ExtractionErrorKind(str, Enum):
    """Why did extraction fail?"""
    SCHEMA_EXHAUSTED = "SchemaExhausted"
    PROVIDER_FAILURE = "ProviderFailure"


class CampaignState(str, Enum):
    """States of one discovery campaign."""
    IDLE = "Idle"
    FETCHING = "Fetching"
    EXTRACTING = "Extracting"
    RETRYING = "Retrying"
    SUFFICIENT = "Sufficient"
    BLOCKED = "Blocked"
    EXHAUSTED = "Exhausted"
    ESCALATED = "Escalated"


TERMINAL_STATES = frozenset(
    {CampaignState.SUFFICIENT, CampaignState.BLOCKED, CampaignState.ESCALATED}
)


# ============================================================================
# Fetched Content
# ============================================================================

class PageContent(BaseModel):
    """
    Raw page content handed from the fetcher to the extraction engine.

    Either `text` (HTML/plain text) or `image_bytes` (screenshot) is set.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    final_url: Optional[str] = None
    content_type: Optional[str] = None
    text: Optional[str] = None
    image_bytes: Optional[bytes] = None

    @property
    def is_image(self) -> bool:
        return self.image_bytes is not None

    @property
    def size(self) -> int:
        if self.image_bytes is not None:
            return len(self.image_bytes)
        return len((self.text or "").encode("utf-8"))


# ============================================================================
# Audit Records
# ============================================================================

class FetchAttempt(BaseModel):
    """
    Compliance record for a single physical fetch call.

    One record exists per call, including calls blocked by the compliance
    gate (status="blocked", response_code=None).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    campaign_id: Optional[str] = None

    url: str
    host: str
    status: FetchStatus
    reason: Optional[str] = None

    robots_allowed: Optional[bool] = None
    rate_limited: bool = False

    response_code: Optional[int] = None
    content_length: int = 0
    duration_ms: int = 0

    user_agent: str
    source_ip: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)


class ExtractionAttempt(BaseModel):
    """
    Compliance record for a single extraction call.

    Example:
      retry_count = 0          # first attempt in the campaign
      schema_ok = False
      trap_hit = ("hidden_input", "non_json_wrapper")
      failure_stage = "schema"
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    campaign_id: Optional[str] = None

    url: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0

    schema_ok: bool
    retry_count: int = Field(ge=0)
    trap_hit: Tuple[str, ...] = ()
    failure_stage: Optional[str] = None  # "json_parse", "schema" or "provider"
    errors: Tuple[str, ...] = ()

    raw_output: str = ""  # PII-redacted before the record is built

    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("trap_hit")
    @classmethod
    def sort_trap_hit(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Store detector names deduplicated and sorted."""
        return tuple(sorted(set(v)))


# ============================================================================
# Requirements
# ============================================================================

class FieldDescriptor(BaseModel):
    """
    One form field discovered on a provider's signup page.

    Example:
      name = "child_birthdate"
      type = "date"
      required = True
      constraints = {"min_age": 5, "max_age": 12}
      category = "participant"
    """
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "text"
    required: bool = False
    constraints: Dict[str, Any] = Field(default_factory=dict)
    category: Optional[str] = None
    label: Optional[str] = None

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        normalized = "_".join(v.strip().lower().split())
        if not normalized:
            raise ValueError("field name must not be empty")
        return normalized

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return (v or "text").strip().lower() or "text"


class RequirementsDelta(BaseModel):
    """Schema-valid output of one extraction attempt."""
    model_config = ConfigDict(frozen=True)

    url: str
    model: str
    retry_count: int
    fields: Tuple[FieldDescriptor, ...] = ()
    trap_hit: Tuple[str, ...] = ()
    attempt_id: Optional[str] = None

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(sorted({item.name for item in self.fields}))

    @property
    def signature(self) -> str:
        """Order-independent identity of the discovered field set."""
        return ",".join(self.field_names)


class RequirementsRecord(BaseModel):
    """
    Discovered requirements for one session.

    Created on the first successful extraction; subsequent extractions
    produce an updated copy (same id, same created_at) that the store upserts.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    campaign_id: Optional[str] = None

    discovered_fields: List[FieldDescriptor] = Field(default_factory=list)
    confidence_level: float = Field(default=0.0, ge=0.0, le=1.0)

    # Field-set signature -> number of attempts that produced it
    agreement: Dict[str, int] = Field(default_factory=dict)
    attempt_count: int = 0
    clean_attempt_count: int = 0

    created_at: datetime = Field(default_factory=_utc_now)
    last_updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def field_names(self) -> List[str]:
        return [item.name for item in self.discovered_fields]

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for item in self.discovered_fields:
            if item.name == name:
                return item
        return None


# ============================================================================
# Manual Backup
# ============================================================================

class ManualBackupTicket(BaseModel):
    """
    Human-operator fallback for a campaign that could not reach confidence.

    Exactly one ticket exists per (session_id, campaign_id). Terminal once
    resolved_at is set.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    campaign_id: str

    failure_reason: str
    final_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    detail: Optional[str] = None
    target_url: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
