# bgtranslate_service/app/metrics.py
from prometheus_client import CollectorRegistry, Gauge, Counter, Histogram

REGISTRY = CollectorRegistry()

TRANSLATE_JOB_INVOCATIONS_TOTAL = Counter(
    "bgtranslate_job_invocations_total",
    "Job invocations by outcome (completed, yielded, cancelled, failed, ...)",
    ["outcome"],
    registry=REGISTRY,
)

TRANSLATE_JOBS_RUNNING = Gauge(
    "bgtranslate_jobs_running",
    "Number of job invocations currently running",
    registry=REGISTRY,
)

TRANSLATE_INVOCATION_SECONDS = Histogram(
    "bgtranslate_invocation_seconds",
    "Wall-clock time of one job invocation",
    registry=REGISTRY,
)

TRANSLATE_BATCHES_TOTAL = Counter(
    "bgtranslate_batches_total",
    "Batches processed by result (ok, partial, error)",
    ["result"],
    registry=REGISTRY,
)

TRANSLATE_RECORDS_TOTAL = Counter(
    "bgtranslate_records_total",
    "Records written or failed, per job type",
    ["job_type", "result"],
    registry=REGISTRY,
)

AI_REQUEST_RETRIES = Counter(
    "bgtranslate_ai_request_retries_total",
    "Retries of AI requests by HTTP status",
    ["status"],
    registry=REGISTRY,
)

