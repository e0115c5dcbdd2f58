import json
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest
from google.api_core import exceptions as google_exceptions
from pydantic import SecretStr

from tubedigest.errors import ConfigError, ProviderError, ProviderRejectedError, ProviderTransientError
from tubedigest.models import DetailLevel, Entity, RunRecord
from tubedigest.notifications import (
    DigestMessage,
    LogNotificationSink,
    WebhookNotificationSink,
    build_notification_sink,
    is_retryable_delivery_error,
)
from tubedigest.providers import (
    TRUNCATION_MARKER,
    GeminiProvider,
    OpenAIProvider,
    _classify_status,
    build_provider,
    truncate_for_budget,
)

ANALYSIS = {
    "summary": "Short take.",
    "key_points": ["one", "two"],
    "detailed_summary": "## Deep dive",
    "sentiment": "Positive",
}


def _openai_client(content, seen=None):
    def create(**kwargs):
        if seen is not None:
            seen.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class _GeminiClient:
    def __init__(self, result):
        self.result = result
        self.prompts = []

    def generate_content(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _BlockedResponse:
    @property
    def text(self):
        raise ValueError("no parts")


def test_truncation_marks_cut_text():
    assert truncate_for_budget("abcdef", 10) == "abcdef"
    assert truncate_for_budget("abcdef", 3) == "abc" + TRUNCATION_MARKER


def test_openai_detailed_summary_renders_markdown():
    seen = {}
    provider = OpenAIProvider("sk-test", client=_openai_client(json.dumps(ANALYSIS), seen))

    output = provider.summarize("transcript", DetailLevel.DETAILED, "mention prices")

    assert output.startswith("### Summary\nShort take.")
    assert "- two" in output
    assert "## Deep dive" in output
    assert output.endswith("**Sentiment:** Positive")
    assert "mention prices" in seen["messages"][1]["content"]
    assert seen["response_format"] == {"type": "json_object"}


def test_openai_short_summary_is_summary_only():
    provider = OpenAIProvider("sk-test", client=_openai_client(json.dumps(ANALYSIS)))
    assert provider.summarize("transcript", DetailLevel.SHORT) == "Short take."


def test_openai_malformed_json_is_a_provider_error():
    provider = OpenAIProvider("sk-test", client=_openai_client("not json"))
    with pytest.raises(ProviderError):
        provider.summarize("transcript", DetailLevel.DETAILED)


def test_status_classification():
    assert isinstance(_classify_status(429, "x"), ProviderTransientError)
    assert isinstance(_classify_status(503, "x"), ProviderTransientError)
    assert isinstance(_classify_status(400, "x"), ProviderRejectedError)
    assert isinstance(_classify_status(None, "x"), ProviderRejectedError)


def test_gemini_returns_markdown_with_detail_prompt():
    client = _GeminiClient(SimpleNamespace(text="  **Summary**  "))
    provider = GeminiProvider("key", client=client)

    assert provider.summarize("transcript", DetailLevel.SHORT) == "**Summary**"
    assert "very concise summary" in client.prompts[0]


@pytest.mark.parametrize(
    "error, expected",
    [
        (google_exceptions.TooManyRequests("slow down"), ProviderTransientError),
        (google_exceptions.InternalServerError("oops"), ProviderTransientError),
        (google_exceptions.BadRequest("bad"), ProviderRejectedError),
        (ConnectionError("reset"), ProviderTransientError),
    ],
)
def test_gemini_errors_are_classified(error, expected):
    provider = GeminiProvider("key", client=_GeminiClient(error))
    with pytest.raises(expected):
        provider.summarize("transcript", DetailLevel.DETAILED)


def test_gemini_blocked_response_is_rejected():
    provider = GeminiProvider("key", client=_GeminiClient(_BlockedResponse()))
    with pytest.raises(ProviderRejectedError):
        provider.summarize("transcript", DetailLevel.DETAILED)


def test_provider_requires_credentials(config):
    with pytest.raises(ConfigError):
        build_provider(config)
    with pytest.raises(ConfigError):
        build_provider(config.model_copy(update={"ai_provider": "gemini"}))


def test_provider_selected_by_config(config):
    provider = build_provider(config.model_copy(update={"openai_api_key": SecretStr("sk-test")}))
    assert provider.name == "openai"
    assert provider.context_budget == 100_000


def _record():
    return RunRecord(
        owner_id="7",
        run_token="run-9",
        source="digest",
        item_count=1,
        total_duration=3900,
        total_words=200,
        read_time_seconds=60,
        time_saved_seconds=3840,
        completed_at=datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc),
    )


def _entity():
    return Entity(
        id=1,
        owner_id="7",
        content_id="dQw4w9WgXcQ",
        batch_key="run-9",
        run_token="run-9",
        title="Never Gonna",
        source="digest",
        channel_title="Rick",
        summary="Great song.",
    )


def test_digest_message_formats_metrics():
    message = DigestMessage.build(_record(), [_entity()])

    assert message.date_label == "March 15, 2026"
    assert message.metrics["total_duration"] == "1h 5m"
    assert message.metrics["time_saved"] == "1h 4m"
    text = message.as_text()
    assert "- Never Gonna (Rick)" in text
    assert "https://www.youtube.com/watch?v=dQw4w9WgXcQ" in text


def test_webhook_sink_posts_rendered_digest():
    received = {}

    def handler(request):
        received.update(json.loads(request.content))
        return httpx.Response(204)

    sink = WebhookNotificationSink("https://hooks.example.com/digest", client=httpx.Client(transport=httpx.MockTransport(handler)))
    sink.deliver(_record(), [_entity()])

    assert received["run_token"] == "run-9"
    assert received["items"][0]["summary"] == "Great song."
    assert received["text"].startswith("Your digest for March 15, 2026")


def test_webhook_rejection_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "bad payload"})

    sink = WebhookNotificationSink("https://hooks.example.com/digest", client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(httpx.HTTPStatusError):
        sink.deliver(_record(), [_entity()])

    assert len(calls) == 1


def _status_error(status):
    request = httpx.Request("POST", "https://hooks.example.com/digest")
    return httpx.HTTPStatusError("failed", request=request, response=httpx.Response(status, request=request))


@pytest.mark.parametrize("status, retried", [(400, False), (404, False), (429, True), (502, True)])
def test_delivery_retry_policy(status, retried):
    assert is_retryable_delivery_error(_status_error(status)) is retried


def test_transport_errors_are_retried():
    assert is_retryable_delivery_error(httpx.ConnectError("refused"))
    assert not is_retryable_delivery_error(ValueError("bad json"))


def test_log_sink_writes_operational_log(db):
    LogNotificationSink(db).deliver(_record(), [_entity()])

    with db.cursor() as cur:
        cur.execute("SELECT component, message FROM logs")
        rows = [tuple(row) for row in cur.fetchall()]
    assert rows == [("notifications", "Digest run-9 ready")]


def test_sink_selection(config, db):
    assert isinstance(build_notification_sink(config, db), LogNotificationSink)
    webhook_config = config.model_copy(update={"notification_webhook_url": "https://hooks.example.com"})
    assert isinstance(build_notification_sink(webhook_config, db), WebhookNotificationSink)
