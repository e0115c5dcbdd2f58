import pytest

from conftest import FakeProvider
from tubedigest.enrichment import EnrichmentRequest, EnrichmentScheduler, chunked
from tubedigest.errors import ProviderRejectedError


def _requests(count):
    return [EnrichmentRequest(key=str(index), text=f"text {index}") for index in range(count)]


def test_partial_failure_is_isolated_to_one_item():
    provider = FakeProvider(reject={"text 3"})
    sleeps = []
    settled = []
    scheduler = EnrichmentScheduler(provider, chunk_size=5, cooldown_seconds=1.0, sleep=sleeps.append)

    results = scheduler.run(_requests(10), on_chunk_settled=lambda chunk: settled.append(sorted(chunk)))

    assert len(results) == 10
    assert [key for key, result in results.items() if not result.ok] == ["3"]
    assert "content policy" in results["3"].error
    assert results["3"].attempts == 1
    assert results["0"].summary == "Summary: text 0"
    assert settled == [["0", "1", "2", "3", "4"], ["5", "6", "7", "8", "9"]]
    # one cooldown between the two chunks, none after the last
    assert sleeps == [1.0]


def test_transient_errors_are_retried_with_backoff():
    provider = FakeProvider(transient={"text 0": 2})
    sleeps = []
    scheduler = EnrichmentScheduler(provider, retry_attempts=3, backoff_seconds=2.0, sleep=sleeps.append)

    result = scheduler.run(_requests(1))["0"]

    assert result.ok
    assert result.attempts == 3
    assert len(provider.calls) == 3
    assert sleeps == [2.0, 4.0]


def test_exhausted_retries_mark_item_failed():
    provider = FakeProvider(transient={"text 0": 5})
    scheduler = EnrichmentScheduler(provider, retry_attempts=3, sleep=lambda _: None)

    result = scheduler.run(_requests(1))["0"]

    assert not result.ok
    assert result.attempts == 3
    assert "rate limited" in result.error
    assert len(provider.calls) == 3


def test_rejections_are_not_retried():
    class RejectingProvider(FakeProvider):
        def summarize(self, text, detail_level, instructions=None):
            self.calls.append((text, instructions))
            raise ProviderRejectedError("bad request", status_code=400)

    provider = RejectingProvider()
    scheduler = EnrichmentScheduler(provider, retry_attempts=3, sleep=lambda _: None)

    result = scheduler.run(_requests(1))["0"]

    assert not result.ok
    assert len(provider.calls) == 1


def test_empty_text_fails_without_calling_provider():
    provider = FakeProvider()
    scheduler = EnrichmentScheduler(provider, sleep=lambda _: None)

    result = scheduler.run([EnrichmentRequest(key="blank", text="   ")])["blank"]

    assert not result.ok
    assert provider.calls == []


def test_instructions_are_forwarded_to_provider():
    provider = FakeProvider()
    scheduler = EnrichmentScheduler(provider, sleep=lambda _: None)

    scheduler.run(_requests(2), "focus on pricing")

    assert {instructions for _, instructions in provider.calls} == {"focus on pricing"}


def test_no_requests_no_work():
    provider = FakeProvider()
    sleeps = []
    assert EnrichmentScheduler(provider, sleep=sleeps.append).run([]) == {}
    assert sleeps == []


def test_chunking_rules():
    assert [len(chunk) for chunk in chunked(_requests(12), 5)] == [5, 5, 2]
    with pytest.raises(ValueError):
        chunked(_requests(1), 0)
    with pytest.raises(ValueError):
        EnrichmentScheduler(FakeProvider(), chunk_size=0)
