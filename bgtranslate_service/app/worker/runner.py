# bgtranslate_service/app/worker/runner.py
import asyncio
import enum
import time
from datetime import datetime, timedelta, UTC
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import BATCH_SIZE, BATCH_DELAY_SECONDS, JOB_TIME_BUDGET_SECONDS
from ..errors import FatalTranslationError, StoreError
from ..models.models import JobStatus, TranslationJob, TERMINAL_STATUSES
from ..services.ai_client import AIClient
from ..services.batch_translator import BatchTranslator
from ..services.pipelines import Candidate, ContentSource, get_pipeline, source_by_name
from ..services.store import Row, SqlTableStore, TableStore
from .. import metrics

JOBS_TABLE = TranslationJob.__tablename__

# (source name, candidate); candidate is None when its source row vanished
Slot = Tuple[str, Optional[Candidate]]


class JobOutcome(str, enum.Enum):
    missing = "missing"
    skipped = "skipped"
    completed = "completed"
    cancelled = "cancelled"
    yielded = "yielded"
    failed = "failed"


class ProcessorSettings(BaseModel):
    batch_size: int = BATCH_SIZE
    batch_delay_seconds: float = BATCH_DELAY_SECONDS
    time_budget_seconds: float = JOB_TIME_BUDGET_SECONDS


def _now() -> datetime:
    return datetime.now(UTC)


class JobProcessor:
    """
    Runs one invocation of a translation job.

    An invocation either finishes the job, notices it was cancelled, or runs
    out of its time budget and returns with the job still `processing`.
    In the last case the next invocation resumes from the persisted
    counters, reusing the candidate snapshot taken by the first invocation.
    """

    def __init__(
        self,
        store: Optional[TableStore] = None,
        translator: Optional[BatchTranslator] = None,
        settings: Optional[ProcessorSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store or SqlTableStore()
        self.translator = translator or BatchTranslator(AIClient())
        self.settings = settings or ProcessorSettings()
        self.clock = clock
        self.sleep = sleep

    # --- dispatcher ---

    async def process(self, job_id: str) -> JobOutcome:
        started = time.perf_counter()
        metrics.TRANSLATE_JOBS_RUNNING.inc()
        try:
            outcome = await self._dispatch(job_id)
        finally:
            metrics.TRANSLATE_JOBS_RUNNING.dec()
            metrics.TRANSLATE_INVOCATION_SECONDS.observe(time.perf_counter() - started)
        metrics.TRANSLATE_JOB_INVOCATIONS_TOTAL.labels(outcome=outcome.value).inc()
        return outcome

    async def _dispatch(self, job_id: str) -> JobOutcome:
        log = logger.bind(job_id=job_id)
        job = await self.store.get(JOBS_TABLE, job_id)
        if job is None:
            log.error("Job not found")
            return JobOutcome.missing

        status = JobStatus(job["status"])
        if status == JobStatus.cancelled:
            log.info("Job was cancelled, stopping")
            return JobOutcome.cancelled
        if status in TERMINAL_STATUSES:
            log.info(f"Job already {status.value}; nothing to do")
            return JobOutcome.skipped

        claimed = await self.store.update(
            JOBS_TABLE, job_id,
            {"status": JobStatus.processing, "updated_at": _now()},
            expected={"status": status},
        )
        if not claimed:
            log.info("Job status changed while starting; leaving it alone")
            return JobOutcome.skipped
        job["status"] = JobStatus.processing

        try:
            return await self.run_pipeline(job, log)
        except Exception as e:
            log.exception(f"Translation job failed: {e}")
            await self.store.update(
                JOBS_TABLE, job_id,
                {"status": JobStatus.failed, "error_message": str(e) or type(e).__name__, "updated_at": _now()},
                expected={"status": JobStatus.processing},
            )
            return JobOutcome.failed

    # --- candidates ---

    async def _select_candidates(self, pipeline: Sequence[ContentSource], job: Row) -> List[Slot]:
        slots: List[Slot] = []
        for source in pipeline:
            for candidate in await source.select_candidates(self.store, job):
                slots.append((source.name, candidate))
        return slots

    async def _reload_candidates(self, pipeline: Sequence[ContentSource], job: Row, cursor: int) -> List[Slot]:
        """Rebuild the candidate list from the snapshot, with fresh source rows."""
        snapshot = [tuple(item) for item in job["candidates"]]
        needed = {kind for kind, _ in snapshot[cursor:]}
        rows: Dict[str, Dict[str, Candidate]] = {}
        for kind in needed:
            rows[kind] = await source_by_name(pipeline, kind).fetch_source(self.store, job)
        return [(kind, rows.get(kind, {}).get(ref)) for kind, ref in snapshot]

    # --- progress tracker ---

    async def run_pipeline(self, job: Row, log=logger) -> JobOutcome:
        job_id = job["id"]
        pipeline = get_pipeline(job["job_type"])
        deadline = self.clock() + self.settings.time_budget_seconds
        source_lang, target_lang = job["source_language"], job["target_language"]

        processed = job.get("processed_keys") or 0
        errors = job.get("errors") or 0
        cursor = processed + errors

        if job.get("candidates") is None:
            slots = await self._select_candidates(pipeline, job)
            total = len(slots)
            saved = await self.store.update(
                JOBS_TABLE, job_id,
                {
                    "total_keys": total,
                    "candidates": [c.identity for _, c in slots],
                    "updated_at": _now(),
                },
                expected={"status": JobStatus.processing},
            )
            if not saved:
                log.info("Job was cancelled, stopping")
                return JobOutcome.cancelled
            if total == 0:
                log.info("No keys to translate")
                return await self._complete(job_id, processed, errors, log)
            log.info(f"Translating {total} records from {source_lang} to {target_lang}")
        else:
            slots = await self._reload_candidates(pipeline, job, cursor)
            total = len(slots)
            log.info(f"Resuming at {cursor}/{total} records from {source_lang} to {target_lang}")

        while cursor < total:
            current = await self.store.get(JOBS_TABLE, job_id)
            current_status = JobStatus(current["status"]) if current else JobStatus.cancelled
            if current_status != JobStatus.processing:
                log.info(f"Job is {current_status.value}, stopping")
                return JobOutcome.cancelled if current_status == JobStatus.cancelled else JobOutcome.skipped

            if self.clock() >= deadline:
                await self.store.update(
                    JOBS_TABLE, job_id, {"updated_at": _now()},
                    expected={"status": JobStatus.processing},
                )
                log.info(f"Time budget reached at {cursor}/{total}; yielding for resume")
                return JobOutcome.yielded

            end = _batch_end(slots, cursor, self.settings.batch_size)
            source = source_by_name(pipeline, slots[cursor][0])
            ok, failed = await self._process_batch(source, [c for _, c in slots[cursor:end]], job, log)
            processed += ok
            errors += failed
            cursor = end

            await self.store.update(
                JOBS_TABLE, job_id,
                {"processed_keys": processed, "errors": errors, "updated_at": _now()},
            )

            if cursor < total:
                await self.sleep(self.settings.batch_delay_seconds)

        return await self._complete(job_id, processed, errors, log)

    async def _complete(self, job_id: str, processed: int, errors: int, log) -> JobOutcome:
        now = _now()
        done = await self.store.update(
            JOBS_TABLE, job_id,
            {
                "status": JobStatus.completed,
                "processed_keys": processed,
                "errors": errors,
                "completed_at": now,
                "updated_at": now,
            },
            expected={"status": JobStatus.processing},
        )
        if not done:
            log.info("Job was cancelled before it could complete")
            return JobOutcome.cancelled
        log.info(f"Translation job completed. Processed: {processed}, Errors: {errors}")
        return JobOutcome.completed

    # --- batch ---

    async def _process_batch(
        self,
        source: ContentSource,
        batch: List[Optional[Candidate]],
        job: Row,
        log,
    ) -> Tuple[int, int]:
        """Translate and write one batch. Returns (written, failed)."""
        job_type = str(getattr(job["job_type"], "value", job["job_type"]))
        present = [c for c in batch if c is not None]
        failed = len(batch) - len(present)
        if failed:
            log.warning(f"{failed} {source.name} records no longer exist in the source table")

        ok = 0
        if present:
            try:
                results = await self.translator.translate_batch(
                    source, present, job["source_language"], job["target_language"],
                )
            except FatalTranslationError:
                raise
            except Exception as e:
                log.error(f"Batch translation error: {e}")
                metrics.TRANSLATE_BATCHES_TOTAL.labels(result="error").inc()
                metrics.TRANSLATE_RECORDS_TOTAL.labels(job_type=job_type, result="error").inc(len(batch))
                return 0, len(batch)

            for candidate, translated in zip(present, results):
                if translated is None:
                    failed += 1
                    continue
                try:
                    await source.write(self.store, candidate, translated, job["target_language"])
                    ok += 1
                except StoreError as e:
                    log.error(f"Failed to save translation for {source.name}:{candidate.ref}: {e}")
                    failed += 1

        metrics.TRANSLATE_BATCHES_TOTAL.labels(result="ok" if not failed else "partial").inc()
        metrics.TRANSLATE_RECORDS_TOTAL.labels(job_type=job_type, result="written").inc(ok)
        metrics.TRANSLATE_RECORDS_TOTAL.labels(job_type=job_type, result="error").inc(failed)
        return ok, failed


def _batch_end(slots: Sequence[Slot], start: int, size: int) -> int:
    """End index of the batch starting at `start`: at most `size` slots, one source."""
    kind = slots[start][0]
    end = start
    while end < len(slots) and end - start < size and slots[end][0] == kind:
        end += 1
    return end


async def process_job(job_id: str, **kwargs) -> JobOutcome:
    return await JobProcessor(**kwargs).process(job_id)


def process_job_sync(job_id: str, **kwargs) -> JobOutcome:
    """
    Processes a single job invocation synchronously for scripts and tests.
    """
    return asyncio.run(process_job(job_id, **kwargs))


def find_resumable_jobs(session: Session, stale_seconds: float, now: Optional[datetime] = None) -> List[str]:
    """
    Ids of jobs that should be (re)invoked: `processing` jobs that stopped
    reporting progress (yielded or killed) and `pending` jobs nobody started.
    """
    now = now or _now()
    cutoff = now - timedelta(seconds=stale_seconds)
    jobs = (
        session.query(TranslationJob)
        .filter(
            TranslationJob.status.in_([JobStatus.pending, JobStatus.processing]),
            TranslationJob.updated_at < cutoff,
        )
        .order_by(TranslationJob.created_at.asc())
        .all()
    )
    return [job.id for job in jobs]
