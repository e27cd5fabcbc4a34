"""Extractor package: structured requirements extraction with bounded retries."""

from extractor.engine import AttemptCounter, AttemptOutcome, ExtractionEngine
from extractor.provider import HttpExtractionProvider
from extractor.schema import load_schema, parse_response, validate_payload
from extractor.traps import TrapCollector, detect_traps

__all__ = [
    "AttemptCounter",
    "AttemptOutcome",
    "ExtractionEngine",
    "HttpExtractionProvider",
    "TrapCollector",
    "detect_traps",
    "load_schema",
    "parse_response",
    "validate_payload",
]
