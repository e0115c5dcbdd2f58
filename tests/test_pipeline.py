import httpx
import pytest

from conftest import FakeFetcher, FakeProvider, RecordingNotifier, make_item
from tubedigest.errors import FetchUnavailable
from tubedigest.ledger import GuestLedger, local_now
from tubedigest.models import DetailLevel, SummaryState, guest_owner_id
from tubedigest.pipeline import OutcomeStatus, PipelineStage, per_locator_allowance

ALPHA = "https://www.youtube.com/@alpha"
BETA = "https://www.youtube.com/@beta"


def _subscribed_account(db, *, tier="free", consumed=0, email="viewer@example.com"):
    account = db.create_account(email, tier=tier, consumed=consumed, last_reset=local_now())
    channel = db.add_channel(account.owner_id, ALPHA, "Alpha", external_id="UCalpha")
    return account, channel


def test_per_locator_allowance_rules():
    assert per_locator_allowance(100, 1, cap=100) == 100
    assert per_locator_allowance(250, 3, cap=100) == 83
    assert per_locator_allowance(1000, 3, cap=100) == 100
    assert per_locator_allowance(100, 3, cap=100, requested_total=10) == 4
    assert per_locator_allowance(5, 3, cap=100, requested_total=30) == 1
    assert per_locator_allowance(2, 3, cap=100) == 0
    assert per_locator_allowance(10, 0, cap=100) == 0


def test_digest_with_one_failed_item_settles_for_the_rest(config, db, build_pipeline, sleeps):
    account, channel = _subscribed_account(db)
    fetcher = FakeFetcher([make_item(i) for i in range(10)])
    provider = FakeProvider(reject={"transcript 3 continues"})
    notifier = RecordingNotifier()
    pipeline = build_pipeline(fetcher, provider, notifier, app_config=config.model_copy(update={"digest_chunk_size": 5}))

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.DONE
    assert outcome.status is OutcomeStatus.COMPLETED
    assert outcome.stages == [
        PipelineStage.RESOLVING_SOURCES,
        PipelineStage.RESERVING,
        PipelineStage.FETCHING,
        PipelineStage.MERGING_PERSISTING,
        PipelineStage.ENRICHING,
        PipelineStage.SETTLING,
        PipelineStage.NOTIFYING,
        PipelineStage.DONE,
    ]
    states = [entity.summary_state for entity in outcome.entities]
    assert states.count(SummaryState.COMPLETED) == 9
    assert [entity.content_id for entity in outcome.failed_entities] == ["vid00000003"]
    assert outcome.record.item_count == 9
    assert outcome.record.total_duration == 5400
    assert outcome.reserved == 100
    assert outcome.refunded == 91
    assert pipeline.ledger.consumed(account) == 9
    assert sleeps == [1.0]

    locators, per_channel, options = fetcher.calls[0]
    assert [locator.ref for locator in locators] == [ALPHA]
    assert per_channel == 100
    assert options.days_back == 1

    record, delivered = notifier.deliveries[0]
    assert record.run_token == outcome.run_token
    assert len(delivered) == 9
    assert all(entity.channel_id == channel.id for entity in outcome.entities)
    assert outcome.entities[0].transcript[0].text == "transcript 0 continues"


def test_digest_overshoot_refund(config, db, build_pipeline):
    account = db.create_account("viewer@example.com", last_reset=local_now())
    db.add_channel(account.owner_id, ALPHA, "Alpha")
    db.add_channel(account.owner_id, BETA, "Beta")
    fetcher = FakeFetcher([make_item(i) for i in range(12)])
    pipeline = build_pipeline(fetcher)

    outcome = pipeline.run_digest(account, limit=20)

    assert fetcher.calls[0][1] == 10
    assert outcome.reserved == 20
    assert outcome.refunded == 8
    assert pipeline.ledger.consumed(account) == 12


def test_empty_fetch_releases_everything(db, build_pipeline):
    account, _ = _subscribed_account(db)
    notifier = RecordingNotifier()
    pipeline = build_pipeline(FakeFetcher([]), notifier=notifier)

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.DONE
    assert outcome.status is OutcomeStatus.EMPTY_RESULT
    assert outcome.record is None
    assert outcome.error is None
    assert pipeline.ledger.consumed(account) == 0
    assert db.count_run_records(account.owner_id) == 0
    assert notifier.deliveries == []


def test_fetch_unavailable_fails_without_charging(db, build_pipeline):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(FakeFetcher(error=FetchUnavailable("actor timed out")))

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.FAILED
    assert outcome.status is OutcomeStatus.FETCH_UNAVAILABLE
    assert "actor timed out" in outcome.error
    assert PipelineStage.FETCHING in outcome.stages
    assert pipeline.ledger.consumed(account) == 0


def test_exhausted_capacity_stops_before_fetching(config, db, build_pipeline):
    account, _ = _subscribed_account(db, consumed=config.plan_free_limit)
    fetcher = FakeFetcher([make_item(1)])
    pipeline = build_pipeline(fetcher)

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.FAILED
    assert outcome.status is OutcomeStatus.INSUFFICIENT_CAPACITY
    assert fetcher.calls == []


def test_digest_without_active_channels_is_a_no_op(db, build_pipeline):
    account = db.create_account("viewer@example.com", last_reset=local_now())
    db.add_channel(account.owner_id, ALPHA, "Alpha", is_paused=True)
    fetcher = FakeFetcher([make_item(1)])

    outcome = build_pipeline(fetcher).run_digest(account)

    assert outcome.stage is PipelineStage.DONE
    assert outcome.status is OutcomeStatus.NOTHING_TO_DO
    assert fetcher.calls == []


class _NoResultFetcher:
    name = "silent"

    def fetch(self, locators, per_locator_limit, options):
        return None


def test_fetcher_transport_error_fails_at_fetching(db, build_pipeline):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(FakeFetcher(error=httpx.ConnectError("down")))

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.FAILED
    assert outcome.status is OutcomeStatus.FETCH_UNAVAILABLE
    assert outcome.stages[-2:] == [PipelineStage.FETCHING, PipelineStage.FAILED]
    assert outcome.error == "ConnectError: down"
    assert outcome.refunded == outcome.reserved == 100
    assert pipeline.ledger.consumed(account) == 0
    assert db.entities_for_owner(account.owner_id) == []


def test_fetcher_without_result_is_unavailable(db, build_pipeline):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(_NoResultFetcher())

    outcome = pipeline.run_digest(account)

    assert outcome.stage is PipelineStage.FAILED
    assert outcome.status is OutcomeStatus.FETCH_UNAVAILABLE
    assert pipeline.ledger.consumed(account) == 0


def test_error_after_fetching_releases_reservation_and_propagates(db, build_pipeline, monkeypatch):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(FakeFetcher([make_item(1)]))

    def broken_upsert(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "upsert_entity", broken_upsert)

    with pytest.raises(RuntimeError):
        pipeline.run_digest(account)

    assert pipeline.ledger.consumed(account) == 0


def test_surplus_items_are_enriched_but_not_billed(db, build_pipeline):
    account, _ = _subscribed_account(db)
    provider = FakeProvider()
    pipeline = build_pipeline(FakeFetcher([make_item(i) for i in range(8)]), provider)

    outcome = pipeline.run_digest(account, limit=5)

    assert outcome.ok
    assert outcome.reserved == 5
    assert outcome.refunded == 0
    assert len(outcome.entities) == 8
    assert {entity.summary_state for entity in outcome.entities} == {SummaryState.COMPLETED}
    assert len(provider.calls) == 8
    assert outcome.record.item_count == 8
    assert pipeline.ledger.consumed(account) == 5


def test_notification_failure_does_not_undo_the_run(db, build_pipeline):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(FakeFetcher([make_item(1)]), notifier=RecordingNotifier(fail=True))

    outcome = pipeline.run_digest(account)

    assert outcome.ok
    assert outcome.record.item_count == 1
    assert pipeline.ledger.consumed(account) == 1


def test_repeated_digests_keep_separate_entities(db, build_pipeline):
    account, _ = _subscribed_account(db)
    pipeline = build_pipeline(FakeFetcher([make_item(1), make_item(1), make_item(2)]))

    first = pipeline.run_digest(account)
    second = pipeline.run_digest(account)

    assert len(first.entities) == 2
    assert len(second.entities) == 2
    assert len(db.entities_for_owner(account.owner_id)) == 4
    assert {entity.batch_key for entity in first.entities} == {first.run_token}


def test_custom_digest_prompt_forces_re_enrichment(db, build_pipeline):
    account, channel = _subscribed_account(db)
    digest = db.create_custom_digest(account.owner_id, "Morning", [channel.id], custom_prompt="  Only pricing news ")
    provider = FakeProvider()
    fetcher = FakeFetcher([make_item(1), make_item(2)])
    pipeline = build_pipeline(fetcher, provider)

    first = pipeline.run_custom_digest(digest)
    second = pipeline.run_custom_digest(digest)

    assert first.ok and second.ok
    assert len(provider.calls) == 4
    assert {instructions for _, instructions in provider.calls} == {"Only pricing news"}
    assert len(db.entities_for_owner(account.owner_id)) == 2
    assert second.record.digest_id == digest.id
    assert fetcher.calls[0][1] == 50


def test_custom_digest_without_prompt_reuses_existing_summaries(db, build_pipeline):
    account, channel = _subscribed_account(db)
    digest = db.create_custom_digest(account.owner_id, "Evening", [channel.id])
    provider = FakeProvider()
    pipeline = build_pipeline(FakeFetcher([make_item(1)]), provider)

    pipeline.run_custom_digest(digest)
    outcome = pipeline.run_custom_digest(digest)

    assert len(provider.calls) == 1
    assert outcome.entities[0].summary_state is SummaryState.COMPLETED
    assert outcome.entities[0].summary == "Summary: transcript 1 continues"


def test_custom_digest_ignores_other_owners_channels(db, build_pipeline):
    account, _ = _subscribed_account(db)
    stranger = db.create_account("other@example.com", last_reset=local_now())
    foreign = db.add_channel(stranger.owner_id, BETA, "Beta")
    digest = db.create_custom_digest(account.owner_id, "Borrowed", [foreign.id])

    outcome = build_pipeline(FakeFetcher([make_item(1)])).run_custom_digest(digest)

    assert outcome.status is OutcomeStatus.NOTHING_TO_DO


def test_channel_analysis_is_paid_only(db, build_pipeline):
    account = db.create_account("free@example.com", last_reset=local_now())
    fetcher = FakeFetcher([make_item(1)])

    outcome = build_pipeline(fetcher).run_channel_analysis(account, [ALPHA], max_videos=5)

    assert outcome.status is OutcomeStatus.INVALID_REQUEST
    assert "paid" in outcome.error
    assert fetcher.calls == []


def test_channel_analysis_reserves_per_channel_estimate(db, build_pipeline):
    account = db.create_account("plus@example.com", tier="plus", last_reset=local_now())
    fetcher = FakeFetcher([make_item(1), make_item(2, channel_url=BETA)])
    pipeline = build_pipeline(fetcher)

    outcome = pipeline.run_channel_analysis(account, f"{ALPHA}\n{BETA}\n", max_videos=5, date_range="week", sort="viewCount")

    assert outcome.ok
    assert outcome.reserved == 10
    assert pipeline.ledger.consumed(account) == 2
    locators, per_channel, options = fetcher.calls[0]
    assert len(locators) == 2 and per_channel == 5
    assert options.days_back == 7
    assert options.sort == "viewCount"


def test_channel_analysis_clamps_to_remaining_capacity(config, db, build_pipeline):
    account = db.create_account(
        "plus@example.com", tier="plus", consumed=config.plan_plus_limit - 6, last_reset=local_now()
    )
    fetcher = FakeFetcher([make_item(1)])

    outcome = build_pipeline(fetcher).run_channel_analysis(account, [ALPHA, BETA], max_videos=5)

    assert outcome.reserved == 6
    assert fetcher.calls[0][1] == 3


@pytest.mark.parametrize(
    "urls, kwargs, message",
    [
        (["https://vimeo.com/1"], {}, "Invalid Format"),
        ([f"https://www.youtube.com/@c{i}" for i in range(11)], {}, "Max 10"),
        ([ALPHA], {"max_videos": 0}, "max_videos"),
        ([ALPHA], {"date_range": "decade"}, "date range"),
        ([ALPHA], {"sort": "random"}, "sort order"),
        ([], {}, "at least one"),
    ],
)
def test_channel_analysis_validation(db, build_pipeline, urls, kwargs, message):
    account = db.create_account("pro@example.com", tier="pro", last_reset=local_now())
    options = {"max_videos": 5, **kwargs}

    outcome = build_pipeline().run_channel_analysis(account, urls, **options)

    assert outcome.status is OutcomeStatus.INVALID_REQUEST
    assert message in outcome.error
    assert db.consumed_usage(account.id) == 0


def test_url_batch_serves_held_content_from_store(db, build_pipeline):
    account = db.create_account("plus@example.com", tier="plus", last_reset=local_now())
    items = [make_item(1), make_item(2)]
    fetcher = FakeFetcher(items)
    pipeline = build_pipeline(fetcher)
    urls = [item.url for item in items]

    first = pipeline.run_url_batch(urls, account=account)
    second = pipeline.run_url_batch(urls, account=account)

    assert first.ok and first.reserved == 2
    assert second.status is OutcomeStatus.CACHED
    assert {entity.content_id for entity in second.cached} == {"vid00000001", "vid00000002"}
    assert len(fetcher.calls) == 1
    assert pipeline.ledger.consumed(account) == 2
    assert all(entity.batch_key == "" for entity in first.entities)


def test_url_batch_only_fetches_new_urls(db, build_pipeline):
    account = db.create_account("plus@example.com", tier="plus", last_reset=local_now())
    pipeline = build_pipeline(FakeFetcher([make_item(1)]))
    pipeline.run_url_batch([make_item(1).url], account=account)

    pipeline.fetcher = FakeFetcher([make_item(2)])
    outcome = pipeline.run_url_batch([make_item(1).url, make_item(2).url, "not a url"], account=account)

    locators, _, _ = pipeline.fetcher.calls[0]
    assert [locator.ref for locator in locators] == [make_item(2).url]
    assert outcome.reserved == 1
    assert [entity.content_id for entity in outcome.cached] == ["vid00000001"]


def test_free_url_batch_is_limited_to_one_video(db, build_pipeline):
    account = db.create_account("free@example.com", last_reset=local_now())
    urls = [make_item(1).url, make_item(2).url]

    outcome = build_pipeline().run_url_batch(urls, account=account)

    assert outcome.status is OutcomeStatus.INVALID_REQUEST
    assert "limited to 1" in outcome.error


def test_url_batch_rejects_input_without_youtube_urls(db, build_pipeline):
    account = db.create_account("free@example.com", last_reset=local_now())
    outcome = build_pipeline().run_url_batch("https://example.com\n", account=account)
    assert outcome.status is OutcomeStatus.INVALID_REQUEST


def test_guest_url_batch_uses_guest_ledger(config, db, build_pipeline):
    guest = ("198.51.100.7", "Mozilla/5.0")
    fingerprint = GuestLedger.fingerprint(*guest)
    fetcher = FakeFetcher([make_item(1)])
    pipeline = build_pipeline(fetcher, app_config=config.model_copy(update={"guest_daily_limit": 1}))

    first = pipeline.run_url_batch([make_item(1).url], guest=guest)
    fetcher.items = [make_item(2)]
    second = pipeline.run_url_batch([make_item(2).url], guest=guest)

    assert first.ok
    assert first.entities[0].owner_id == guest_owner_id(fingerprint)
    assert second.status is OutcomeStatus.INSUFFICIENT_CAPACITY
    assert pipeline.guest_ledger.remaining_capacity(fingerprint) == 0
    assert len(fetcher.calls) == 1


def test_guest_failed_summary_is_refunded(config, db, build_pipeline):
    guest = ("198.51.100.7", "Mozilla/5.0")
    fingerprint = GuestLedger.fingerprint(*guest)
    provider = FakeProvider(reject={"transcript 1 continues"})
    pipeline = build_pipeline(FakeFetcher([make_item(1)]), provider)

    outcome = pipeline.run_url_batch([make_item(1).url], guest=guest)

    assert outcome.ok
    assert outcome.record is None
    assert outcome.failed_entities[0].content_id == "vid00000001"
    assert pipeline.guest_ledger.remaining_capacity(fingerprint) == config.effective_guest_limit


def test_url_batch_requires_an_owner(build_pipeline):
    with pytest.raises(ValueError):
        build_pipeline().run_url_batch(["https://youtu.be/dQw4w9WgXcQ"])


def test_short_summary_is_stored_beside_the_detailed_one(db, build_pipeline):
    account = db.create_account("plus@example.com", tier="plus", last_reset=local_now())
    provider = FakeProvider()
    pipeline = build_pipeline(FakeFetcher([make_item(1)]), provider)
    entity = pipeline.run_url_batch([make_item(1).url], account=account).entities[0]

    outcome = pipeline.summarize_entity(entity.id, DetailLevel.SHORT, account=account)

    assert outcome.ok
    assert outcome.stages == [
        PipelineStage.RESOLVING_SOURCES,
        PipelineStage.RESERVING,
        PipelineStage.ENRICHING,
        PipelineStage.SETTLING,
        PipelineStage.DONE,
    ]
    assert (outcome.reserved, outcome.refunded) == (1, 0)
    stored = db.get_entity(entity.id)
    assert stored.summary == "Summary: transcript 1 continues"
    assert stored.summary_short == "Gist: transcript 1 continues"
    assert stored.summary_for(DetailLevel.SHORT) == stored.summary_short
    assert provider.detail_levels == [DetailLevel.DETAILED, DetailLevel.SHORT]
    assert pipeline.ledger.consumed(account) == 2
    assert db.count_run_records(account.owner_id) == 1


def test_failed_regeneration_is_refunded_and_keeps_the_old_summary(db, build_pipeline):
    account = db.create_account("plus@example.com", tier="plus", last_reset=local_now())
    pipeline = build_pipeline(FakeFetcher([make_item(1)]))
    entity = pipeline.run_url_batch([make_item(1).url], account=account).entities[0]
    pipeline.provider = FakeProvider(reject={"transcript 1 continues"})

    outcome = pipeline.summarize_entity(entity.id, account=account)

    assert outcome.stage is PipelineStage.FAILED
    assert outcome.status is OutcomeStatus.ENRICHMENT_FAILED
    assert "content policy" in outcome.error
    assert outcome.refunded == outcome.reserved == 1
    assert pipeline.ledger.consumed(account) == 1
    stored = db.get_entity(entity.id)
    assert stored.summary == "Summary: transcript 1 continues"
    assert stored.summary_state is SummaryState.COMPLETED


def test_guest_regeneration_uses_guest_capacity(config, db, build_pipeline):
    guest = ("198.51.100.7", "Mozilla/5.0")
    fingerprint = GuestLedger.fingerprint(*guest)
    provider = FakeProvider()
    pipeline = build_pipeline(
        FakeFetcher([make_item(1)]), provider, app_config=config.model_copy(update={"guest_daily_limit": 2})
    )
    entity = pipeline.run_url_batch([make_item(1).url], guest=guest).entities[0]

    first = pipeline.summarize_entity(entity.id, DetailLevel.SHORT, guest=guest)
    second = pipeline.summarize_entity(entity.id, DetailLevel.SHORT, guest=guest)

    assert first.ok
    assert second.status is OutcomeStatus.INSUFFICIENT_CAPACITY
    assert pipeline.guest_ledger.remaining_capacity(fingerprint) == 0
    assert len(provider.calls) == 2


def test_regeneration_requires_an_owned_video_with_a_transcript(db, build_pipeline):
    owner = db.create_account("owner@example.com", last_reset=local_now())
    stranger = db.create_account("stranger@example.com", last_reset=local_now())
    pipeline = build_pipeline(FakeFetcher([make_item(1)]))
    entity = pipeline.run_url_batch([make_item(1).url], account=owner).entities[0]
    silent = db.upsert_entity(
        owner_id=owner.owner_id,
        content_id="silentvideo",
        batch_key="",
        run_token="run",
        source="url_batch",
        title="Silent",
        thumbnail_url=None,
        channel_id=None,
        channel_title=None,
        duration=None,
        transcript=[],
    )

    foreign = pipeline.summarize_entity(entity.id, account=stranger)
    empty = pipeline.summarize_entity(silent.id, account=owner)
    missing = pipeline.summarize_entity(99_999, account=owner)

    assert [outcome.status for outcome in (foreign, empty, missing)] == [OutcomeStatus.INVALID_REQUEST] * 3
    assert "no transcript" in empty.error
    assert pipeline.ledger.consumed(stranger) == 0
    assert pipeline.ledger.consumed(owner) == 1
    with pytest.raises(ValueError):
        pipeline.summarize_entity(entity.id)
