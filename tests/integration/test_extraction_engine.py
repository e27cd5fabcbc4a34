"""Integration tests for the extraction engine: validation, traps, retries, audit."""

from __future__ import annotations

import json

import pytest

from core.config import RetryBudget
from core.errors import ExtractionError, ProviderError
from core.models import ExtractionErrorKind, PageContent
from core.pipeline import AuditRecorder, ExtractionProvider, ProviderResponse
from extractor.engine import AttemptCounter, ExtractionEngine, build_feedback
from extractor.schema import load_schema


class ListRecorder(AuditRecorder):
    def __init__(self) -> None:
        self.records: list = []

    def record(self, event) -> None:
        self.records.append(event)


class ScriptedProvider(ExtractionProvider):
    model = "extract-small"

    def __init__(self, outputs: list) -> None:
        self._outputs = list(outputs)
        self.calls: list[dict] = []

    def complete(self, content, schema_hint, feedback) -> ProviderResponse:
        self.calls.append({"text": content.text, "feedback": list(feedback)})
        item = self._outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return ProviderResponse(raw_output=item, model=self.model, tokens_in=800, tokens_out=60)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _payload(*fields: dict) -> str:
    return json.dumps({"fields": list(fields)})


def _field(name: str, type_: str = "text", required: bool = True, **extra) -> dict:
    return {"name": name, "type": type_, "required": required, **extra}


PAGE = PageContent(
    url="https://register.example.org/camp",
    content_type="text/plain",
    text="Child name, guardian name, phone number.",
)
VALID = _payload(_field("child_name"), _field("guardian_name"), _field("phone", "tel", False))


def _engine(provider: ScriptedProvider, audit: ListRecorder, **kwargs) -> tuple[ExtractionEngine, list]:
    sleeps: list[float] = []
    engine = ExtractionEngine(provider, audit, sleep_fn=sleeps.append, log_attempts=False, **kwargs)
    return engine, sleeps


@pytest.mark.integration

def test_valid_first_response_yields_delta_and_one_audit_record():
    audit = ListRecorder()
    engine, sleeps = _engine(ScriptedProvider([VALID]), audit)

    delta = engine.extract(PAGE, load_schema(), RetryBudget(max_retries=3))

    assert delta.retry_count == 0
    assert [item.name for item in delta.fields] == ["child_name", "guardian_name", "phone"]
    assert delta.trap_hit == ()
    assert sleeps == []
    assert len(audit.records) == 1
    attempt = audit.records[0]
    assert attempt.schema_ok is True
    assert attempt.tokens_in == 800
    assert attempt.tokens_out == 60
    assert delta.attempt_id == attempt.id


@pytest.mark.integration

def test_unparseable_response_is_retried_with_feedback():
    audit = ListRecorder()
    provider = ScriptedProvider(["Sure, the form asks for a name.", VALID])
    engine, sleeps = _engine(provider, audit)

    delta = engine.extract(PAGE, load_schema(), RetryBudget(max_retries=3))

    assert delta.retry_count == 1
    assert [item.retry_count for item in audit.records] == [0, 1]
    first = audit.records[0]
    assert first.schema_ok is False
    assert first.failure_stage == "json_parse"
    assert "non_json_wrapper" in first.trap_hit
    assert sleeps == [1.0]
    assert provider.calls[0]["feedback"] == []
    assert provider.calls[1]["feedback"][0].startswith("Previous response was invalid")


@pytest.mark.integration

def test_schema_violation_records_every_error_path():
    audit = ListRecorder()
    provider = ScriptedProvider([json.dumps({"fields": [{"name": "x", "type": "color"}]})])
    engine, _ = _engine(provider, audit)

    with pytest.raises(ExtractionError) as exc_info:
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=1))

    assert exc_info.value.kind is ExtractionErrorKind.SCHEMA_EXHAUSTED
    attempt = audit.records[0]
    assert attempt.failure_stage == "schema"
    assert len(attempt.errors) == 2
    assert all(item.startswith("fields/0") for item in attempt.errors)


@pytest.mark.integration
@pytest.mark.parametrize(
    "output",
    [
        json.dumps({"fields": [{"label": "x"}]}),
        json.dumps({"fields": "child_name"}),
        json.dumps({"fields": ["child_name"]}),
        json.dumps({"fields": [{"name": "x", "constraints": ["a"]}]}),
        json.dumps(["child_name"]),
    ],
    ids=["missing-name", "fields-not-list", "field-not-object", "bad-constraints", "root-list"],
)
def test_malformed_fields_under_loose_schema_are_recorded_and_retried(output):
    audit = ListRecorder()
    provider = ScriptedProvider([output, VALID])
    engine, sleeps = _engine(provider, audit)

    delta = engine.extract(PAGE, {}, RetryBudget(max_retries=2))

    assert delta.retry_count == 1
    assert len(audit.records) == 2
    first = audit.records[0]
    assert first.schema_ok is False
    assert first.failure_stage == "schema"
    assert first.errors
    assert sleeps == [1.0]


@pytest.mark.integration

def test_provider_failures_exhaust_shared_budget():
    audit = ListRecorder()
    provider = ScriptedProvider([ProviderError("timeout"), ProviderError("timeout")])
    engine, sleeps = _engine(provider, audit)

    with pytest.raises(ExtractionError) as exc_info:
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=2))

    error = exc_info.value
    assert error.kind is ExtractionErrorKind.PROVIDER_FAILURE
    assert len(error.attempts) == 2
    assert error.timed_out is False
    assert [item.failure_stage for item in audit.records] == ["provider", "provider"]
    assert [item.retry_count for item in audit.records] == [0, 1]
    assert sleeps == [1.0]


@pytest.mark.integration

def test_last_failure_kind_is_reported():
    audit = ListRecorder()
    provider = ScriptedProvider([ProviderError("boom"), "not json"])
    engine, _ = _engine(provider, audit)

    with pytest.raises(ExtractionError) as exc_info:
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=2))

    assert exc_info.value.kind is ExtractionErrorKind.SCHEMA_EXHAUSTED


@pytest.mark.integration

def test_trap_fields_are_flagged_and_dropped_from_delta():
    audit = ListRecorder()
    output = _payload(
        _field("child_name"),
        _field("csrf_token", "hidden", False),
        _field("hp_website", "url", False),
        _field("fax", "text", False, label="Leave this field blank"),
        _field("child_name", "text", False),
        _field("guardian_email", "email"),
    )
    engine, _ = _engine(ScriptedProvider([output]), audit)

    delta = engine.extract(PAGE, load_schema(), RetryBudget(max_retries=1))

    assert [item.name for item in delta.fields] == ["child_name", "guardian_email"]
    assert delta.fields[0].required is True
    assert delta.trap_hit == (
        "decoy_instruction",
        "duplicate_field",
        "hidden_input",
        "honeypot_name",
    )
    assert audit.records[0].schema_ok is True
    assert audit.records[0].trap_hit == delta.trap_hit


@pytest.mark.integration

def test_fenced_json_is_accepted_without_wrapper_trap():
    audit = ListRecorder()
    engine, _ = _engine(ScriptedProvider(["```json\n" + VALID + "\n```"]), audit)

    delta = engine.extract(PAGE, load_schema(), RetryBudget(max_retries=1))

    assert len(delta.fields) == 3
    assert delta.trap_hit == ()


@pytest.mark.integration

def test_boilerplate_prefix_is_flagged():
    audit = ListRecorder()
    engine, _ = _engine(ScriptedProvider(["Here is the JSON you asked for: {}"]), audit)

    with pytest.raises(ExtractionError):
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=1))

    assert "ai_boilerplate_prefix" in audit.records[0].trap_hit


@pytest.mark.integration

def test_raw_output_is_redacted_before_audit():
    audit = ListRecorder()
    output = _payload(_field("guardian_email", "email", label="e.g. jane.doe@example.com"))
    engine, _ = _engine(ScriptedProvider([output]), audit)

    engine.extract(PAGE, load_schema(), RetryBudget(max_retries=1))

    assert "jane.doe@example.com" not in audit.records[0].raw_output
    assert "[EMAIL_REDACTED]" in audit.records[0].raw_output


@pytest.mark.integration

def test_deadline_stops_retries_and_marks_timeout():
    audit = ListRecorder()
    clock = FakeClock()
    provider = ScriptedProvider(["nope", VALID])
    engine, sleeps = _engine(provider, audit, clock_fn=clock)

    with pytest.raises(ExtractionError) as exc_info:
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=3), deadline=0.5)

    assert exc_info.value.timed_out is True
    assert len(exc_info.value.attempts) == 1
    assert sleeps == []
    assert len(provider.calls) == 1


@pytest.mark.integration

def test_html_content_is_outlined_before_provider_call(sample_page):
    audit = ListRecorder()
    provider = ScriptedProvider([VALID])
    engine, _ = _engine(provider, audit)

    engine.extract(sample_page, load_schema(), RetryBudget(max_retries=1))

    sent = provider.calls[0]["text"]
    assert "<form>" not in sent
    assert '[field input name="child_name" type="text" required label="Child name"]' in sent
    assert 'name="csrf" type="hidden" hidden' in sent
    assert "Register" not in sent


@pytest.mark.integration

def test_long_text_is_truncated_for_provider():
    audit = ListRecorder()
    provider = ScriptedProvider([VALID])
    engine, _ = _engine(provider, audit, content_max_chars=100)
    page = PageContent(url="https://register.example.org/camp", content_type="text/plain", text="a" * 500)

    engine.extract(page, load_schema(), RetryBudget(max_retries=1))

    assert len(provider.calls[0]["text"]) == 100


@pytest.mark.integration

def test_shared_counter_spans_extract_calls():
    audit = ListRecorder()
    provider = ScriptedProvider(["bad", VALID, "bad"])
    engine, _ = _engine(provider, audit)
    counter = AttemptCounter(campaign_id="c-9", max_retries=3)

    engine.extract(PAGE, load_schema(), RetryBudget(max_retries=3), counter=counter)
    with pytest.raises(ExtractionError):
        engine.extract(PAGE, load_schema(), RetryBudget(max_retries=3), counter=counter)

    assert [item.retry_count for item in audit.records] == [0, 1, 2]
    assert all(item.campaign_id == "c-9" for item in audit.records)
    assert counter.exhausted is True
    assert AttemptCounter.model_validate(counter.model_dump()).remaining == 0


def test_attempt_counter_take_refuses_past_budget():
    counter = AttemptCounter(max_retries=1)

    assert counter.take() == 0
    with pytest.raises(ValueError):
        counter.take()


def test_build_feedback_mentions_traps_and_json_only():
    feedback = build_feedback(["fields: [] is too short"], ("honeypot_name",))

    assert feedback[0] == "Previous response was invalid: fields: [] is too short"
    assert "honeypot_name" in feedback[1]
    assert feedback[-1].startswith("Return ONLY a JSON object")
    assert build_feedback([]) == []
