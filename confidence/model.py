"""Requirements merge and confidence scoring (v0).

Scoring:
- coverage: fraction of expected field categories present in the merged set
- clean fraction: fraction of valid attempts with no trap hits
- agreement: 1 - (1 - gain) ** (votes - 1) for the most-voted field set

confidence = max(previous, w_cov * coverage + w_clean * clean + w_agree * agreement)
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Iterable

from core.config import DiscoveryConfig
from core.models import FieldDescriptor, RequirementsDelta, RequirementsRecord
from confidence.categories import classify_field

# Higher wins when two attempts describe the same field with different types.
TYPE_SPECIFICITY: dict[str, int] = {
    "email": 5,
    "tel": 5,
    "date": 5,
    "datetime": 5,
    "datetime-local": 5,
    "url": 5,
    "number": 4,
    "select": 4,
    "radio": 4,
    "checkbox": 4,
    "file": 4,
    "password": 4,
    "text": 1,
    "textarea": 1,
}


def type_specificity(field_type: str) -> int:
    """Rank of a field type; unknown types rank lowest."""
    return TYPE_SPECIFICITY.get((field_type or "").lower(), 0)


def _specificity_key(field: FieldDescriptor) -> tuple[int, int]:
    return type_specificity(field.type), len(field.constraints)


def merge_field(existing: FieldDescriptor, incoming: FieldDescriptor) -> FieldDescriptor:
    """
    Merge two descriptors of the same field.

    The more specific descriptor (type rank, then constraint count) wins;
    ties keep the existing one. `required` is OR-ed and constraints are
    unioned with the winner's values taking precedence.
    """
    if _specificity_key(incoming) > _specificity_key(existing):
        winner, loser = incoming, existing
    else:
        winner, loser = existing, incoming

    constraints: dict[str, Any] = dict(loser.constraints)
    constraints.update(winner.constraints)
    return FieldDescriptor(
        name=winner.name,
        type=winner.type,
        required=existing.required or incoming.required,
        constraints=constraints,
        category=winner.category or loser.category,
        label=winner.label or loser.label,
    )


def merge_fields(
    existing: Iterable[FieldDescriptor],
    incoming: Iterable[FieldDescriptor],
) -> list[FieldDescriptor]:
    """Union by name, preserving first-seen order."""
    merged: dict[str, FieldDescriptor] = {}
    for item in existing:
        merged[item.name] = merge_field(merged[item.name], item) if item.name in merged else item
    for item in incoming:
        merged[item.name] = merge_field(merged[item.name], item) if item.name in merged else item
    return list(merged.values())


class ConfidenceModel:
    """Aggregate extraction deltas into a RequirementsRecord with a confidence score."""

    def __init__(
        self,
        expected_categories: Iterable[str] = DiscoveryConfig.EXPECTED_CATEGORIES,
        weight_coverage: float = DiscoveryConfig.WEIGHT_COVERAGE,
        weight_clean: float = DiscoveryConfig.WEIGHT_CLEAN,
        weight_agreement: float = DiscoveryConfig.WEIGHT_AGREEMENT,
        agreement_gain: float = DiscoveryConfig.AGREEMENT_GAIN,
        classifier: Callable[[FieldDescriptor], str | None] = classify_field,
    ) -> None:
        self.expected_categories = tuple(item.lower() for item in expected_categories)
        if not self.expected_categories:
            raise ValueError("expected_categories must not be empty")
        total = weight_coverage + weight_clean + weight_agreement
        if abs(total - 1.0) > 1e-9:
            raise ValueError("confidence weights must sum to 1")
        if not 0.0 < agreement_gain <= 1.0:
            raise ValueError("agreement_gain must be in (0, 1]")
        self.weight_coverage = weight_coverage
        self.weight_clean = weight_clean
        self.weight_agreement = weight_agreement
        self.agreement_gain = agreement_gain
        self.classifier = classifier

    def categorize(self, fields: Iterable[FieldDescriptor]) -> list[FieldDescriptor]:
        """Fill in missing categories using the classifier."""
        categorized: list[FieldDescriptor] = []
        for item in fields:
            category = self.classifier(item)
            if category and category != item.category:
                item = item.model_copy(update={"category": category})
            categorized.append(item)
        return categorized

    def coverage(self, fields: Iterable[FieldDescriptor]) -> float:
        found = {item.category for item in fields if item.category}
        hits = sum(1 for category in self.expected_categories if category in found)
        return hits / len(self.expected_categories)

    def agreement(self, votes: int) -> float:
        if votes <= 1:
            return 0.0
        return 1.0 - (1.0 - self.agreement_gain) ** (votes - 1)

    def score(
        self,
        fields: Iterable[FieldDescriptor],
        attempt_count: int,
        clean_attempt_count: int,
        agreement: dict[str, int],
    ) -> float:
        """Raw score for a merged state, before the monotonic floor."""
        clean_fraction = clean_attempt_count / attempt_count if attempt_count else 0.0
        top_votes = max(agreement.values(), default=0)
        value = (
            self.weight_coverage * self.coverage(fields)
            + self.weight_clean * clean_fraction
            + self.weight_agreement * self.agreement(top_votes)
        )
        return round(min(max(value, 0.0), 1.0), 6)

    def update(
        self,
        existing: RequirementsRecord | None,
        delta: RequirementsDelta,
        session_id: str | None = None,
        campaign_id: str | None = None,
    ) -> RequirementsRecord:
        """
        Merge a delta into the record and recompute confidence.

        The returned record keeps the identity of `existing`; its confidence
        is never lower than the existing confidence.

        Raises:
            ValueError: If there is no existing record and no session_id
        """
        if existing is None and not session_id:
            raise ValueError("session_id is required for the first update")

        incoming = self.categorize(delta.fields)
        previous_fields = existing.discovered_fields if existing else []
        fields = merge_fields(previous_fields, incoming)

        agreement = dict(existing.agreement) if existing else {}
        signature = ",".join(sorted({item.name for item in incoming}))
        agreement[signature] = agreement.get(signature, 0) + 1

        attempt_count = (existing.attempt_count if existing else 0) + 1
        clean_attempt_count = (existing.clean_attempt_count if existing else 0) + (
            0 if delta.trap_hit else 1
        )

        previous = existing.confidence_level if existing else 0.0
        confidence = max(
            previous,
            self.score(fields, attempt_count, clean_attempt_count, agreement),
        )

        values = {
            "discovered_fields": fields,
            "confidence_level": confidence,
            "agreement": agreement,
            "attempt_count": attempt_count,
            "clean_attempt_count": clean_attempt_count,
            "last_updated_at": datetime.now(UTC),
        }
        if existing is None:
            return RequirementsRecord(
                session_id=session_id,
                campaign_id=campaign_id,
                **values,
            )
        if campaign_id and existing.campaign_id != campaign_id:
            values["campaign_id"] = campaign_id
        return existing.model_copy(update=values)

    @staticmethod
    def is_sufficient(record: RequirementsRecord | None, threshold: float) -> bool:
        """True once the record's confidence reaches `threshold`."""
        if record is None:
            return False
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be in [0, 1]")
        return record.confidence_level >= threshold
