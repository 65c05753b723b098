# bgtranslate_service/app/worker/supervisor.py
import asyncio
from typing import Awaitable, Callable, Dict, List

from loguru import logger

from .. import database
from ..config import JOB_WATCHDOG_SECONDS, STALE_JOB_SECONDS
from .runner import find_resumable_jobs, process_job


class JobSupervisor:
    """
    Owns the detached asyncio tasks that run job invocations.

    Each task is wrapped in a watchdog timeout. Expiry or an unexpected error
    is logged and swallowed so it never reaches whoever launched the task;
    the job row keeps its last persisted progress and the sweeper picks it up
    again later.
    """

    def __init__(
        self,
        processor: Callable[[str], Awaitable[object]] = process_job,
        watchdog_seconds: float = JOB_WATCHDOG_SECONDS,
    ):
        self._processor = processor
        self.watchdog_seconds = watchdog_seconds
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def running_jobs(self) -> List[str]:
        return [job_id for job_id in self._tasks if self.is_running(job_id)]

    def launch(self, job_id: str) -> bool:
        """Schedule an invocation unless one is already running in this process."""
        if self.is_running(job_id):
            logger.bind(job_id=job_id).info("Job already running in this process")
            return False
        task = asyncio.create_task(self._supervise(job_id), name=f"translate-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, job_id=job_id: self._forget(job_id, t))
        return True

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _supervise(self, job_id: str) -> None:
        log = logger.bind(job_id=job_id)
        try:
            outcome = await asyncio.wait_for(self._processor(job_id), timeout=self.watchdog_seconds)
            log.info(f"Invocation finished: {getattr(outcome, 'value', outcome)}")
        except asyncio.TimeoutError:
            log.error(f"Watchdog expired after {self.watchdog_seconds}s; job left for resume")
        except Exception:
            log.exception("Unhandled exception in job invocation")

    async def sweep_once(self, stale_seconds: float = STALE_JOB_SECONDS) -> List[str]:
        """Launch every stale pending/processing job not already running here."""

        def query() -> List[str]:
            session = database.SessionLocal()
            try:
                return find_resumable_jobs(session, stale_seconds)
            finally:
                session.close()

        launched = []
        for job_id in await asyncio.to_thread(query):
            if self.launch(job_id):
                launched.append(job_id)
        if launched:
            logger.info(f"Resume sweep re-invoked {len(launched)} job(s)")
        return launched

    async def sweep_loop(self, interval_seconds: float, stale_seconds: float = STALE_JOB_SECONDS) -> None:
        logger.info("Starting resume sweep loop")
        while True:
            try:
                await self.sweep_once(stale_seconds)
            except Exception as e:
                logger.error(f"Resume sweep error: {e}")
            await asyncio.sleep(interval_seconds)

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
