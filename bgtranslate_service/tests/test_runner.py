import json
from datetime import datetime, timedelta, UTC

import httpx
import pytest

from bgtranslate_service.app import database, metrics
from bgtranslate_service.app.errors import AIQuotaExceededError, StoreError
from bgtranslate_service.app.models.models import (
    CmsItem,
    CmsSection,
    I18nTranslation,
    JobMode,
    JobStatus,
    JobType,
    KnowledgeResource,
    TrainingLesson,
    TrainingModule,
    TrainingModuleTranslation,
)
from bgtranslate_service.app.services.ai_client import AIClient
from bgtranslate_service.app.services.store import eq
from bgtranslate_service.app.worker.runner import JobOutcome, find_resumable_jobs, process_job_sync

from conftest import (
    FakeAIClient,
    FakeClock,
    create_job,
    make_processor,
    no_sleep,
    prefix_translation,
    seed,
    sent_payload,
    set_status,
)


def seed_keys(n, lang="pl", namespace="common", value="tekst"):
    seed(*[
        I18nTranslation(
            id=f"{lang}-{namespace}-{i:02d}",
            language_code=lang, namespace=namespace, key=f"k{i:02d}", value=f"{value} {i}",
        )
        for i in range(n)
    ])


async def target_rows(store, lang="de"):
    return await store.select("i18n_translations", filters=[eq("language_code", lang)], order_by=["key"])


def invocations(outcome):
    return metrics.REGISTRY.get_sample_value("bgtranslate_job_invocations_total", {"outcome": outcome}) or 0


@pytest.mark.asyncio
async def test_job_runs_to_completion(store):
    seed_keys(5)
    job_id = create_job()
    client = FakeAIClient()
    before = invocations("completed")

    outcome = await make_processor(client, batch_size=2).process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.completed
    assert job["total_keys"] == 5
    assert job["processed_keys"] == 5
    assert job["errors"] == 0
    assert job["completed_at"] is not None
    assert len(client.calls) == 3

    rows = await target_rows(store)
    assert [r["value"] for r in rows] == [f"DE tekst {i}" for i in range(5)]
    assert invocations("completed") == before + 1


@pytest.mark.asyncio
async def test_time_budget_yields_and_resume_finishes_without_repeats(store):
    seed_keys(10)
    job_id = create_job()
    clock = FakeClock()

    def slow_model(system_prompt, user_prompt, call_no):
        clock.advance(10)
        return prefix_translation(system_prompt, user_prompt)

    client = FakeAIClient(slow_model)

    # budget 25s, 10s per batch: three batches then yield
    first = await make_processor(client, clock=clock, batch_size=2, time_budget_seconds=25).process(job_id)

    assert first == JobOutcome.yielded
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.processing
    assert job["total_keys"] == 10
    assert job["processed_keys"] == 6
    assert job["completed_at"] is None

    second = await make_processor(client, clock=clock, batch_size=2, time_budget_seconds=25).process(job_id)

    assert second == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.completed
    # total is not recomputed on resume even though 6 keys now exist in the target
    assert job["total_keys"] == 10
    assert job["processed_keys"] == 10

    sent = [key for _, user_prompt in client.calls for key in sent_payload(user_prompt)]
    assert len(sent) == 10
    assert len(set(sent)) == 10
    assert len(await target_rows(store)) == 10


@pytest.mark.asyncio
async def test_resume_counts_vanished_records_as_errors(store):
    seed(*[KnowledgeResource(id=f"r{i}", title=f"Zasób {i}") for i in range(4)])
    job_id = create_job(job_type=JobType.knowledge)
    clock = FakeClock()

    def slow_model(system_prompt, user_prompt, call_no):
        clock.advance(10)
        return prefix_translation(system_prompt, user_prompt)

    client = FakeAIClient(slow_model)
    first = await make_processor(client, clock=clock, batch_size=2, time_budget_seconds=5).process(job_id)
    assert first == JobOutcome.yielded

    session = database.SessionLocal()
    try:
        session.delete(session.get(KnowledgeResource, "r3"))
        session.commit()
    finally:
        session.close()

    second = await make_processor(client, clock=clock, batch_size=2, time_budget_seconds=5).process(job_id)

    assert second == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert job["processed_keys"] == 3
    assert job["errors"] == 1
    assert job["processed_keys"] + job["errors"] == job["total_keys"]


@pytest.mark.asyncio
async def test_missing_mode_skips_existing_and_all_mode_overwrites(store):
    seed_keys(5)
    seed(
        I18nTranslation(language_code="de", namespace="common", key="k00", value="alt 0"),
        I18nTranslation(language_code="de", namespace="common", key="k01", value="alt 1"),
    )

    missing_id = create_job(mode=JobMode.missing)
    await make_processor(batch_size=10).process(missing_id)
    job = await store.get("translation_jobs", missing_id)
    assert job["total_keys"] == 3
    values = {r["key"]: r["value"] for r in await target_rows(store)}
    assert values["k00"] == "alt 0"
    assert values["k04"] == "DE tekst 4"

    all_id = create_job(mode=JobMode.all)
    await make_processor(batch_size=10).process(all_id)
    job = await store.get("translation_jobs", all_id)
    assert job["total_keys"] == 5
    values = {r["key"]: r["value"] for r in await target_rows(store)}
    assert values["k00"] == "DE tekst 0"
    assert len(values) == 5


@pytest.mark.asyncio
async def test_cancellation_during_a_batch_stops_before_the_next(store):
    seed_keys(6)
    job_id = create_job()

    def cancel_on_second_batch(system_prompt, user_prompt, call_no):
        if call_no == 2:
            set_status(job_id, JobStatus.cancelled)
        return prefix_translation(system_prompt, user_prompt)

    client = FakeAIClient(cancel_on_second_batch)
    outcome = await make_processor(client, batch_size=2).process(job_id)

    assert outcome == JobOutcome.cancelled
    assert len(client.calls) == 2
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.cancelled
    assert job["processed_keys"] == 4
    assert job["completed_at"] is None
    assert len(await target_rows(store)) == 4


@pytest.mark.asyncio
async def test_malformed_batch_counts_errors_and_job_continues(store):
    seed_keys(4)
    job_id = create_job()

    def broken_first_answer(system_prompt, user_prompt, call_no):
        if call_no == 1:
            return "I'm sorry, here is the translation: Hallo, Tschüss"
        return prefix_translation(system_prompt, user_prompt)

    outcome = await make_processor(FakeAIClient(broken_first_answer), batch_size=2).process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert job["errors"] == 2
    assert job["processed_keys"] == 2
    assert [r["key"] for r in await target_rows(store)] == ["k02", "k03"]


@pytest.mark.asyncio
async def test_rate_limited_batch_counts_errors(store):
    seed_keys(2)
    job_id = create_job()

    client = AIClient(
        api_key="k",
        transport=httpx.MockTransport(lambda request: httpx.Response(429)),
        sleep=no_sleep,
    )
    processor = make_processor(batch_size=2)
    processor.translator.client = client

    outcome = await processor.process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert job["errors"] == 2
    assert job["processed_keys"] == 0


@pytest.mark.asyncio
async def test_zero_candidates_completes_immediately(store):
    seed_keys(3)
    seed_keys(3, lang="de")
    job_id = create_job(mode=JobMode.missing)
    client = FakeAIClient()

    outcome = await make_processor(client).process(job_id)

    assert outcome == JobOutcome.completed
    assert client.calls == []
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.completed
    assert job["total_keys"] == 0
    assert job["processed_keys"] == 0


@pytest.mark.asyncio
async def test_quota_exhausted_fails_the_job(store):
    seed_keys(4)
    job_id = create_job()

    client = AIClient(
        api_key="k",
        transport=httpx.MockTransport(lambda request: httpx.Response(402, text="Payment required")),
        sleep=no_sleep,
    )
    processor = make_processor(batch_size=2)
    processor.translator.client = client

    outcome = await processor.process(job_id)

    assert outcome == JobOutcome.failed
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.failed
    assert "402" in job["error_message"]
    assert job["processed_keys"] == 0


@pytest.mark.asyncio
async def test_fatal_error_does_not_override_a_concurrent_cancel(store):
    seed_keys(2)
    job_id = create_job()

    def cancel_then_fail(system_prompt, user_prompt, call_no):
        set_status(job_id, JobStatus.cancelled)
        raise AIQuotaExceededError("AI service returned 402")

    outcome = await make_processor(FakeAIClient(cancel_then_fail)).process(job_id)

    assert outcome == JobOutcome.failed
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.cancelled


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [JobStatus.completed, JobStatus.failed])
async def test_terminal_jobs_are_left_alone(store, status):
    seed_keys(2)
    job_id = create_job(status=status, processed_keys=7, total_keys=7)
    client = FakeAIClient()

    outcome = await make_processor(client).process(job_id)

    assert outcome == JobOutcome.skipped
    assert client.calls == []
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == status
    assert job["processed_keys"] == 7


@pytest.mark.asyncio
async def test_cancelled_job_is_not_started(store):
    seed_keys(2)
    job_id = create_job(status=JobStatus.cancelled)
    client = FakeAIClient()

    outcome = await make_processor(client).process(job_id)

    assert outcome == JobOutcome.cancelled
    assert client.calls == []


@pytest.mark.asyncio
async def test_unknown_job_is_reported_missing():
    assert await make_processor().process("no-such-job") == JobOutcome.missing


@pytest.mark.asyncio
async def test_cms_job_translates_sections_then_items_in_separate_batches(store):
    seed(
        CmsSection(id="s1", page_id="home", title="Sekcja", collapsible_header="Więcej"),
        CmsSection(id="s2", page_id="about", title="Inna strona"),
        CmsSection(id="s3", page_id="home", title=None, description=None),
        CmsItem(
            id="i1", page_id="home", title="Element",
            cells=[{"type": "button", "button_text": "Kup", "href": "/buy"}],
        ),
        CmsItem(id="i2", page_id="home", title="Ukryty", is_active=False),
    )
    job_id = create_job(job_type=JobType.cms, scope_id="home")
    client = FakeAIClient()

    outcome = await make_processor(client, batch_size=10).process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert job["total_keys"] == 2
    assert len(client.calls) == 2
    assert "collapsible_header" in client.calls[0][0]
    assert "cells[].button_text" in client.calls[1][0]

    [section] = await store.select("cms_section_translations")
    assert section["section_id"] == "s1"
    assert section["title"] == "DE Sekcja"
    assert section["collapsible_header"] == "DE Więcej"

    [item] = await store.select("cms_item_translations")
    assert item["item_id"] == "i1"
    assert item["cells"] == [{"type": "button", "button_text": "DE Kup", "href": "/buy"}]


@pytest.mark.asyncio
async def test_training_job_reads_source_from_translations_when_not_base_language(store):
    seed(
        TrainingModule(id="m1", title="Moduł"),
        TrainingModule(id="m2", title="Moduł 2"),
        TrainingModuleTranslation(module_id="m1", language_code="de", title="Modul"),
        TrainingLesson(id="l1", module_id="m1", title="Lekcja", content="Treść"),
    )
    job_id = create_job(job_type=JobType.training, source_language="de", target_language="fr")

    def to_french(system_prompt, user_prompt, call_no):
        return prefix_translation(system_prompt, user_prompt, prefix="FR")

    client = FakeAIClient(to_french)
    outcome = await make_processor(client, batch_size=10).process(job_id)

    assert outcome == JobOutcome.completed
    # only m1 has German source text; the lesson has none
    job = await store.get("translation_jobs", job_id)
    assert job["total_keys"] == 1
    assert sent_payload(client.calls[0][1]) == [{"i": 0, "title": "Modul"}]
    [row] = await store.select("training_module_translations", filters=[eq("language_code", "fr")])
    assert row["module_id"] == "m1"
    assert row["title"] == "FR Modul"


def test_process_job_sync_runs_one_invocation():
    seed_keys(1)
    job_id = create_job()
    processor = make_processor()

    outcome = process_job_sync(
        job_id,
        store=processor.store,
        translator=processor.translator,
        settings=processor.settings,
        sleep=no_sleep,
    )

    assert outcome == JobOutcome.completed


def test_find_resumable_jobs_picks_stale_unfinished_jobs(db_session_factory):
    now = datetime.now(UTC)
    old = now - timedelta(minutes=10)
    stale_processing = create_job(status=JobStatus.processing, updated_at=old, created_at=old)
    stale_pending = create_job(status=JobStatus.pending, updated_at=old, created_at=old + timedelta(seconds=1))
    create_job(status=JobStatus.processing, updated_at=now)
    create_job(status=JobStatus.completed, updated_at=old)
    create_job(status=JobStatus.cancelled, updated_at=old)

    session = db_session_factory()
    try:
        ids = find_resumable_jobs(session, stale_seconds=60, now=now)
    finally:
        session.close()

    assert ids == [stale_processing, stale_pending]


class UpsertFailsFor:
    """Wraps a store so the upsert of one i18n key fails."""

    def __init__(self, store, key):
        self._store = store
        self.key = key
        self.max_rows = store.max_rows

    async def select(self, *args, **kwargs):
        return await self._store.select(*args, **kwargs)

    async def get(self, table, key):
        return await self._store.get(table, key)

    async def update(self, table, key, values, expected=None):
        return await self._store.update(table, key, values, expected=expected)

    async def upsert(self, table, row, on_conflict):
        if row.get("key") == self.key:
            raise StoreError("database is locked")
        await self._store.upsert(table, row, on_conflict)


@pytest.mark.asyncio
async def test_failed_write_counts_one_error_and_job_continues(store):
    seed_keys(5)
    job_id = create_job()
    processor = make_processor(batch_size=2)
    processor.store = UpsertFailsFor(processor.store, key="k01")

    outcome = await processor.process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert JobStatus(job["status"]) == JobStatus.completed
    assert job["processed_keys"] == 4
    assert job["errors"] == 1
    assert [r["key"] for r in await target_rows(store)] == ["k00", "k02", "k03", "k04"]


@pytest.mark.asyncio
async def test_lesson_with_code_block_is_stored_unchanged(store):
    content = "Run:\n```bash\nls -la\n```\nDone"
    seed(TrainingLesson(id="l1", module_id="m1", title="Lekcja", content=content))
    job_id = create_job(job_type=JobType.training)

    def echo(system_prompt, user_prompt, call_no):
        return json.dumps(sent_payload(user_prompt))

    outcome = await make_processor(FakeAIClient(echo)).process(job_id)

    assert outcome == JobOutcome.completed
    [row] = await store.select("training_lesson_translations")
    assert row["content"] == content
    assert row["title"] == "Lekcja"


@pytest.mark.asyncio
async def test_i18n_keys_containing_dots_get_their_own_translation(store):
    seed(
        I18nTranslation(language_code="pl", namespace="admin.users", key="save", value="Zapisz"),
        I18nTranslation(language_code="pl", namespace="admin", key="users.save", value="Zapisz użytkowników"),
    )
    job_id = create_job()

    outcome = await make_processor(batch_size=10).process(job_id)

    assert outcome == JobOutcome.completed
    job = await store.get("translation_jobs", job_id)
    assert job["total_keys"] == 2
    written = {(r["namespace"], r["key"]): r["value"] for r in await target_rows(store)}
    assert written == {
        ("admin.users", "save"): "DE Zapisz",
        ("admin", "users.save"): "DE Zapisz użytkowników",
    }
