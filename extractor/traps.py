"""Heuristics that flag bot-trap, honeypot, and hallucination patterns.

Detectors never fail an attempt. They add their names to a TrapCollector
and mark offending fields so the engine can drop them from the delta.
"""

from __future__ import annotations

import re
from typing import Any, Iterator

_BOILERPLATE_PREFIX_RE = re.compile(
    r"^(as an ai|i'm an ai|here is|here's|i'll|i will|based on)", re.IGNORECASE
)
_BOILERPLATE_TEXT_RE = re.compile(
    r"as an ai|i'm an ai|i cannot|i'm sorry|i apologize", re.IGNORECASE
)
_HONEYPOT_NAME_RE = re.compile(
    r"(honey_?pot|^hp_|_hp$|leave_?(this_?)?blank|do_?not_?fill|bot_?trap|^fax_?only$|^url_?check$)",
    re.IGNORECASE,
)
_DECOY_INSTRUCTION_RE = re.compile(
    r"leave (this )?(field )?(blank|empty)|do not (fill|complete)|humans? should not|"
    r"should be left (blank|empty)",
    re.IGNORECASE,
)
_HIDDEN_STYLE_RE = re.compile(
    r"display\s*:\s*none|visibility\s*:\s*hidden|left\s*:\s*-\d{3,}px", re.IGNORECASE
)


class TrapCollector:
    """Accumulates detector names for one attempt; names are never removed."""

    def __init__(self) -> None:
        self._names: list[str] = []
        self.trap_fields: set[str] = set()

    def add(self, name: str, field_name: str | None = None) -> None:
        if name not in self._names:
            self._names.append(name)
        if field_name:
            self.trap_fields.add(field_name)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._names))


def _normalized_name(item: dict[str, Any]) -> str:
    return "_".join(str(item.get("name", "")).strip().lower().split())


def detect_wrapper_traps(raw_output: str, collector: TrapCollector, cleaned: str) -> None:
    """Flag prose around or inside the JSON body."""
    trimmed = (cleaned or "").strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        if _BOILERPLATE_PREFIX_RE.match(trimmed):
            collector.add("ai_boilerplate_prefix")
        else:
            collector.add("non_json_wrapper")
    if _BOILERPLATE_TEXT_RE.search(raw_output or ""):
        collector.add("ai_boilerplate_text")


def detect_field_traps(payload: Any, collector: TrapCollector) -> None:
    """Flag hidden inputs, honeypot names, decoy instructions, and duplicates."""
    if not isinstance(payload, dict):
        return
    items = payload.get("fields")
    if not isinstance(items, list):
        return

    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            continue
        name = _normalized_name(item)
        constraints = item.get("constraints") if isinstance(item.get("constraints"), dict) else {}

        hidden = (
            str(item.get("type", "")).lower() == "hidden"
            or constraints.get("hidden") is True
            or bool(_HIDDEN_STYLE_RE.search(str(constraints.get("style", ""))))
        )
        if hidden:
            collector.add("hidden_input", name)

        if name and _HONEYPOT_NAME_RE.search(name):
            collector.add("honeypot_name", name)

        instruction_text = " ".join(
            str(value)
            for value in (item.get("label"), constraints.get("hint"), constraints.get("placeholder"))
            if value
        )
        if instruction_text and _DECOY_INSTRUCTION_RE.search(instruction_text):
            collector.add("decoy_instruction", name)

        if name in seen:
            collector.add("duplicate_field")
        seen.add(name)


def detect_traps(raw_output: str, cleaned: str, payload: Any) -> TrapCollector:
    """Run every detector over one provider response."""
    collector = TrapCollector()
    detect_wrapper_traps(raw_output, collector, cleaned)
    detect_field_traps(payload, collector)
    return collector
