"""Core module for signup-discovery."""

from core.models import (
    CampaignState,
    ExtractionAttempt,
    ExtractionErrorKind,
    FetchAttempt,
    FetchErrorKind,
    FetchStatus,
    FieldDescriptor,
    ManualBackupTicket,
    PageContent,
    RequirementsDelta,
    RequirementsRecord,
)
from core.config import (
    ComplianceConfig,
    CompliancePolicy,
    DiscoveryConfig,
    RetryBudget,
    StaticPolicySource,
)
from core.errors import (
    AuditWriteFailure,
    ExtractionError,
    FetchError,
    IllegalTransition,
    ProviderError,
    SchemaValidationError,
    TicketAlreadyResolved,
)
from core.pipeline import CampaignResult, CampaignRunner, DiscoveryCampaign

__all__ = [
    "CampaignState",
    "ExtractionAttempt",
    "ExtractionErrorKind",
    "FetchAttempt",
    "FetchErrorKind",
    "FetchStatus",
    "FieldDescriptor",
    "ManualBackupTicket",
    "PageContent",
    "RequirementsDelta",
    "RequirementsRecord",
    "ComplianceConfig",
    "CompliancePolicy",
    "DiscoveryConfig",
    "RetryBudget",
    "StaticPolicySource",
    "AuditWriteFailure",
    "ExtractionError",
    "FetchError",
    "IllegalTransition",
    "ProviderError",
    "SchemaValidationError",
    "TicketAlreadyResolved",
    "CampaignResult",
    "CampaignRunner",
    "DiscoveryCampaign",
]
