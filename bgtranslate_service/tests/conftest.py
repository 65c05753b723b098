"""Pytest configuration and fixtures for bgtranslate_service tests.

The project root goes on sys.path and the environment is pinned *before*
any bgtranslate_service module is imported, so config picks up an in-memory
database and a disabled resume sweep.
"""

import json
import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[2]  # project root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# IMPORTANT: set before importing the app so config sees it
os.environ["DB_URL"] = "sqlite://"
os.environ["RESUME_SWEEP_ENABLED"] = "false"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="bgtranslate-logs-")

from bgtranslate_service.app import database  # noqa: E402
from bgtranslate_service.app import main  # noqa: E402
from bgtranslate_service.app.models.models import JobStatus, TranslationJob  # noqa: E402
from bgtranslate_service.app.services.batch_translator import BatchTranslator  # noqa: E402
from bgtranslate_service.app.services.store import SqlTableStore  # noqa: E402
from bgtranslate_service.app.worker.runner import JobProcessor, ProcessorSettings  # noqa: E402


@pytest.fixture(autouse=True)
def db_session_factory(monkeypatch):
    # In-memory SQLite with StaticPool so every session (and worker thread)
    # sees the same database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", SessionLocal)

    yield SessionLocal
    engine.dispose()


class FakeSupervisor:
    """Records launches instead of running jobs."""

    def __init__(self):
        self.launched = []
        self.running = set()

    def launch(self, job_id):
        self.launched.append(job_id)
        return True

    def is_running(self, job_id):
        return job_id in self.running

    def running_jobs(self):
        return list(self.running)

    async def shutdown(self):
        pass


@pytest.fixture()
def fake_supervisor(monkeypatch):
    sup = FakeSupervisor()
    monkeypatch.setattr(main, "supervisor", sup)
    return sup


@pytest.fixture()
def client(fake_supervisor):
    with TestClient(main.app) as c:
        yield c


# --- helpers for processor tests ---

def seed(*objects):
    session = database.SessionLocal()
    try:
        session.add_all(objects)
        session.commit()
    finally:
        session.close()


def create_job(**kwargs) -> str:
    kwargs.setdefault("source_language", "pl")
    kwargs.setdefault("target_language", "de")
    job = TranslationJob(**kwargs)
    session = database.SessionLocal()
    try:
        session.add(job)
        session.commit()
        return job.id
    finally:
        session.close()


def set_status(job_id: str, status: JobStatus):
    session = database.SessionLocal()
    try:
        job = session.get(TranslationJob, job_id)
        job.status = status
        session.commit()
    finally:
        session.close()


def prefix_translation(system_prompt: str, user_prompt: str, prefix: str = "DE") -> str:
    """Answer the way a well-behaved model would: same shape, every text prefixed."""
    payload = json.loads(user_prompt.split("\n", 1)[1])
    if isinstance(payload, dict):
        return json.dumps({k: f"{prefix} {v}" for k, v in payload.items()})
    out = []
    for entry in payload:
        translated = {}
        for k, v in entry.items():
            if k == "i":
                translated[k] = v
            elif k == "cells":
                translated[k] = [
                    {ck: (cv if ck == "c" else f"{prefix} {cv}") for ck, cv in cell.items()}
                    for cell in v
                ]
            else:
                translated[k] = f"{prefix} {v}"
        out.append(translated)
    return "```json\n" + json.dumps(out) + "\n```"


def sent_payload(user_prompt: str):
    return json.loads(user_prompt.split("\n", 1)[1])


class FakeAIClient:
    """Stands in for AIClient; `responder(system, user, call_no)` builds the answer."""

    def __init__(self, responder=None):
        self.responder = responder
        self.calls = []

    async def complete(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        if self.responder is None:
            return prefix_translation(system_prompt, user_prompt)
        return self.responder(system_prompt, user_prompt, len(self.calls))


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def no_sleep(_seconds):
    return None


def make_processor(client=None, clock=None, batch_size=2, time_budget_seconds=1000.0, max_rows=1000):
    return JobProcessor(
        store=SqlTableStore(max_rows=max_rows),
        translator=BatchTranslator(client or FakeAIClient()),
        settings=ProcessorSettings(
            batch_size=batch_size,
            batch_delay_seconds=0,
            time_budget_seconds=time_budget_seconds,
        ),
        clock=clock or FakeClock(),
        sleep=no_sleep,
    )


@pytest.fixture()
def store():
    return SqlTableStore()
