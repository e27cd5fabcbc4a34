"""Reduce signup-page HTML to visible text plus a one-line outline per form control."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from html.parser import HTMLParser

_SKIP_TAGS = {"script", "style", "noscript", "template", "svg"}
_BLOCK_TAGS = {
    "p", "br", "li", "div", "section", "article", "form", "fieldset", "legend",
    "h1", "h2", "h3", "h4", "tr", "table", "label",
}
_CONTROL_TAGS = {"input", "select", "textarea"}
_IGNORED_INPUT_TYPES = {"submit", "button", "reset", "image"}
_HIDDEN_STYLE_RE = re.compile(
    r"display\s*:\s*none|visibility\s*:\s*hidden|left\s*:\s*-\d{3,}px", re.IGNORECASE
)
_HTML_HINT_RE = re.compile(r"<\s*(html|body|form|input|div|label|select)\b", re.IGNORECASE)


@dataclass(slots=True)
class FormControl:
    """One form control found in the page."""

    tag: str
    attrs: dict[str, str]
    label: str | None = None
    options: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.attrs.get("name") or self.attrs.get("id") or ""

    @property
    def type(self) -> str:
        if self.tag == "input":
            return (self.attrs.get("type") or "text").lower()
        return self.tag

    @property
    def hidden(self) -> bool:
        return (
            self.type == "hidden"
            or "hidden" in self.attrs
            or self.attrs.get("aria-hidden", "").lower() == "true"
            or bool(_HIDDEN_STYLE_RE.search(self.attrs.get("style", "")))
        )

    def render(self) -> str:
        parts = [f"[field {self.tag}", f'name="{self.name}"', f'type="{self.type}"']
        if "required" in self.attrs or self.attrs.get("aria-required", "").lower() == "true":
            parts.append("required")
        if self.hidden:
            parts.append("hidden")
        if self.label:
            parts.append(f'label="{self.label}"')
        for key in ("placeholder", "pattern", "min", "max", "maxlength", "accept"):
            if self.attrs.get(key):
                parts.append(f'{key}="{self.attrs[key]}"')
        if self.options:
            parts.append('options="' + "|".join(self.options[:25]) + '"')
        return " ".join(parts) + "]"


class _FormOutlineExtractor(HTMLParser):
    """Collect visible text and form controls while skipping script/style payloads."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._skip_depth = 0
        self._in_head = False
        self._chunks: list[str | FormControl] = []
        self._labels: list[dict] = []
        self._labels_for: dict[str, str] = {}
        self._select: FormControl | None = None
        self._in_option = False
        self.controls: list[FormControl] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        tag_lower = tag.lower()
        if tag_lower == "head":
            self._in_head = True
            return
        if tag_lower in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth:
            return
        if tag_lower in _BLOCK_TAGS:
            self._chunks.append("\n")

        attr_map = {key.lower(): (value or "") for key, value in attrs}
        if tag_lower == "label":
            self._labels.append({"for": attr_map.get("for"), "text": [], "controls": []})
            return
        if tag_lower == "option" and self._select is not None:
            self._in_option = True
            return
        if tag_lower not in _CONTROL_TAGS:
            return
        if tag_lower == "input" and (attr_map.get("type") or "").lower() in _IGNORED_INPUT_TYPES:
            return

        control = FormControl(tag=tag_lower, attrs=attr_map)
        self.controls.append(control)
        self._chunks.append(control)
        if self._labels:
            self._labels[-1]["controls"].append(control)
        if tag_lower == "select":
            self._select = control

    def handle_endtag(self, tag: str) -> None:
        tag_lower = tag.lower()
        if tag_lower == "head":
            self._in_head = False
            return
        if tag_lower in _SKIP_TAGS and self._skip_depth > 0:
            self._skip_depth -= 1
            return
        if tag_lower == "label" and self._labels:
            label = self._labels.pop()
            text = " ".join(" ".join(label["text"]).split())
            if label["for"] and text:
                self._labels_for[label["for"]] = text
            for control in label["controls"]:
                control.label = control.label or text or None
        elif tag_lower == "option":
            self._in_option = False
        elif tag_lower == "select":
            self._select = None
        if tag_lower in _BLOCK_TAGS:
            self._chunks.append("\n")

    def handle_data(self, data: str) -> None:
        if self._in_head or self._skip_depth > 0 or not data.strip():
            return
        if self._in_option and self._select is not None:
            self._select.options.append(" ".join(data.split()))
            return
        for label in self._labels:
            label["text"].append(data)
        self._chunks.append(data)
        self._chunks.append(" ")

    def outline(self) -> str:
        for control in self.controls:
            if not control.label and control.attrs.get("id") in self._labels_for:
                control.label = self._labels_for[control.attrs["id"]]

        lines: list[str] = []
        current: list[str] = []
        for chunk in self._chunks:
            if isinstance(chunk, FormControl):
                current.append("\n" + chunk.render() + "\n")
            else:
                current.append(chunk)
        for line in "".join(current).splitlines():
            compact = " ".join(line.split())
            if compact:
                lines.append(compact)
        return "\n".join(lines)


def looks_like_html(text: str) -> bool:
    return bool(_HTML_HINT_RE.search(text[:5000]))


def outline_html(html_text: str) -> str:
    """Return visible text with each form control rendered as a `[field ...]` line."""
    extractor = _FormOutlineExtractor()
    extractor.feed(html_text)
    extractor.close()
    return extractor.outline()


def extract_controls(html_text: str) -> list[FormControl]:
    """Return the form controls of a page in document order."""
    extractor = _FormOutlineExtractor()
    extractor.feed(html_text)
    extractor.close()
    extractor.outline()
    return extractor.controls
