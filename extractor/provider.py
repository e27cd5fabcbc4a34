"""HTTP extraction provider for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import base64
import json
import os
from typing import Any

import requests

from core.config import ComplianceConfig
from core.errors import ProviderError
from core.models import PageContent
from core.pipeline import ExtractionProvider, ProviderResponse

_SYSTEM_INSTRUCTIONS = """\
You analyze signup/registration pages and list the form fields they require.

STRICT RULES:
- Report only fields a human registrant is asked to fill in.
- Skip hidden inputs, honeypots, and fields labelled "leave blank".
- Return strictly valid JSON matching the schema below.
- Do NOT include any text outside the JSON object.
- Do NOT wrap the JSON in markdown code fences.
"""


def build_prompt(content: PageContent, schema_hint: dict[str, Any], feedback: list[str]) -> str:
    """Build the deterministic text prompt for one extraction call."""
    parts = [
        _SYSTEM_INSTRUCTIONS,
        "## Response schema",
        json.dumps(schema_hint, indent=2, sort_keys=True),
        f"## Page URL\n{content.final_url or content.url}",
    ]
    if content.text is not None:
        parts.append(f"## Page content\n{content.text}")
    else:
        parts.append("## Page content\nSee the attached screenshot.")
    if feedback:
        parts.append("## Fix these problems from your previous answer")
        parts.extend(f"- {item}" for item in feedback)
    return "\n\n".join(parts)


class HttpExtractionProvider(ExtractionProvider):
    """
    Post content + schema hint to a chat-completions endpoint with `requests`.

    Any transport error, non-2xx status, or unexpected response envelope is
    raised as ProviderError.
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        api_key: str | None = None,
        session: requests.Session | None = None,
        timeout_seconds: float = 30.0,
        max_tokens: int = 2048,
    ) -> None:
        self.endpoint = endpoint
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get("EXTRACTION_API_KEY", "")
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

    def _messages(
        self,
        content: PageContent,
        schema_hint: dict[str, Any],
        feedback: list[str],
    ) -> list[dict[str, Any]]:
        prompt = build_prompt(content, schema_hint, feedback)
        if not content.is_image:
            return [{"role": "user", "content": prompt}]
        encoded = base64.b64encode(content.image_bytes).decode("ascii")
        media_type = content.content_type or "image/png"
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{media_type};base64,{encoded}"},
                    },
                ],
            }
        ]

    def complete(
        self,
        content: PageContent,
        schema_hint: dict[str, Any],
        feedback: list[str],
    ) -> ProviderResponse:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": ComplianceConfig.USER_AGENT,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "model": self.model,
            "temperature": 0,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": self._messages(content, schema_hint, feedback),
        }

        try:
            response = self.session.post(
                self.endpoint,
                headers=headers,
                json=body,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise ProviderError(f"provider timeout after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"provider request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("provider returned a non-JSON envelope") from exc

        try:
            raw_output = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("provider response is missing choices[0].message.content") from exc
        if not isinstance(raw_output, str):
            raise ProviderError("provider message content is not text")

        usage = payload.get("usage") or {}
        return ProviderResponse(
            raw_output=raw_output,
            model=str(payload.get("model") or self.model),
            tokens_in=usage.get("prompt_tokens"),
            tokens_out=usage.get("completion_tokens"),
        )
