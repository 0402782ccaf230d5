from prometheus_client import Counter, Gauge, Histogram

JOB_DURATION = Histogram(
    "outbox_job_duration_seconds",
    "Duration of outbox job handlers",
    ["job_type"],
)
JOB_SUCCESS = Counter(
    "outbox_job_success_total",
    "Total outbox jobs completed",
    ["job_type"],
)
JOB_FAILURE = Counter(
    "outbox_job_failure_total",
    "Total failed outbox job attempts",
    ["job_type", "outcome"],  # outcome: retry | dead
)
CLAIM_RACE_LOST = Counter(
    "outbox_claim_race_lost_total",
    "Claims lost to a concurrent worker",
)
DRAIN_DURATION = Histogram(
    "outbox_drain_duration_seconds",
    "Duration of one outbox drain invocation",
    ["stopped_reason"],
)
DLQ_SIZE = Gauge(
    "outbox_dead_jobs",
    "Number of dead-lettered outbox jobs",
)
