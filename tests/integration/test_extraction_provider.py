"""Tests for the HTTP extraction provider envelope handling."""

from __future__ import annotations

import base64

import pytest
import requests

from core.errors import ProviderError
from core.models import PageContent
from extractor.provider import HttpExtractionProvider, build_prompt


class DummyResponse:
    def __init__(self, status_code: int, payload=None, json_error: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._json_error = json_error

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._json_error:
            raise ValueError("not json")
        return self._payload


class DummySession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.posts: list[dict] = []

    def post(self, url, **kwargs):
        self.posts.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


PAGE = PageContent(url="https://register.example.org/camp", text="Child name [field input]")
SCHEMA = {"type": "object", "required": ["fields"]}


def _envelope(content="{}", **extra) -> dict:
    return {
        "model": "extract-small-2025",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 321, "completion_tokens": 12},
        **extra,
    }


@pytest.mark.integration

def test_complete_posts_prompt_and_reads_usage():
    session = DummySession(DummyResponse(200, _envelope('{"fields": []}')))
    provider = HttpExtractionProvider(
        "https://llm.example.org/v1/chat/completions",
        "extract-small",
        api_key="secret-key",
        session=session,
    )

    response = provider.complete(PAGE, SCHEMA, ["Previous response was invalid: x"])

    assert response.raw_output == '{"fields": []}'
    assert response.model == "extract-small-2025"
    assert response.tokens_in == 321
    assert response.tokens_out == 12
    sent = session.posts[0]
    assert sent["headers"]["Authorization"] == "Bearer secret-key"
    assert sent["json"]["model"] == "extract-small"
    assert sent["json"]["temperature"] == 0
    prompt = sent["json"]["messages"][0]["content"]
    assert "Child name [field input]" in prompt
    assert "- Previous response was invalid: x" in prompt


@pytest.mark.integration

def test_screenshot_is_sent_as_data_url():
    session = DummySession(DummyResponse(200, _envelope()))
    provider = HttpExtractionProvider("https://llm.example.org/v1", "vision", api_key="", session=session)
    screenshot = PageContent(
        url="https://register.example.org/camp",
        content_type="image/png",
        image_bytes=b"\x89PNG",
    )

    provider.complete(screenshot, SCHEMA, [])

    parts = session.posts[0]["json"]["messages"][0]["content"]
    assert parts[0]["type"] == "text"
    assert "See the attached screenshot." in parts[0]["text"]
    expected = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode("ascii")
    assert parts[1]["image_url"]["url"] == expected
    assert "Authorization" not in session.posts[0]["headers"]


@pytest.mark.integration
@pytest.mark.parametrize(
    "session",
    [
        DummySession(error=requests.Timeout("read timed out")),
        DummySession(error=requests.ConnectionError("refused")),
        DummySession(DummyResponse(500, _envelope())),
        DummySession(DummyResponse(200, json_error=True)),
        DummySession(DummyResponse(200, {"choices": []})),
        DummySession(DummyResponse(200, _envelope(content=[{"type": "text"}]))),
    ],
)
def test_transport_and_envelope_failures_raise_provider_error(session):
    provider = HttpExtractionProvider("https://llm.example.org/v1", "extract-small", session=session)

    with pytest.raises(ProviderError):
        provider.complete(PAGE, SCHEMA, [])


def test_build_prompt_is_deterministic():
    first = build_prompt(PAGE, SCHEMA, [])
    second = build_prompt(PAGE, SCHEMA, [])

    assert first == second
    assert "## Response schema" in first
    assert "Fix these problems" not in first
