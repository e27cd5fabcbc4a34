"""Requirements merge and confidence scoring."""

from confidence.categories import classify_field, classify_name
from confidence.model import (
    ConfidenceModel,
    merge_field,
    merge_fields,
    type_specificity,
)

__all__ = [
    "ConfidenceModel",
    "classify_field",
    "classify_name",
    "merge_field",
    "merge_fields",
    "type_specificity",
]
