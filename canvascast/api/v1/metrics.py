from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('pipeline_queue_depth', 'Number of jobs in QUEUED state')
DLQ_SIZE = Gauge('pipeline_dlq_size', 'Number of jobs parked in the dead letter queue')

JOBS_INFLIGHT = Gauge(
    "pipeline_jobs_inflight",
    "Number of jobs currently holding a live lease"
)

JOB_CLAIM_TOTAL = Counter('pipeline_job_claims_total', 'Total jobs claimed by workers')
JOB_START_DELAY = Histogram('pipeline_job_start_delay_seconds', 'Time from available_at to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

JOB_FAILURES = Counter('pipeline_job_failures_total', 'Total job failures', ['type'])  # type=retryable|final
JOB_COMPLETE_TOTAL = Counter('pipeline_job_complete_total', 'Jobs that reached a terminal state', ['result'])
JOB_DURATION = Histogram('pipeline_job_duration_seconds', 'Time from claim to completion', buckets=[10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0])

STEP_DURATION = Histogram(
    'pipeline_step_duration_seconds',
    'Wall time of one pipeline stage',
    ['step'],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0]
)
STEP_FAILURES = Counter('pipeline_step_failures_total', 'Stage failures by error code', ['step', 'code'])

CREDITS_TOTAL = Counter('pipeline_credits_total', 'Credits moved through the ledger by the pipeline', ['type'])  # reserve|refund|spend

DLQ_ROUTED_TOTAL = Counter('pipeline_dlq_routed_total', 'Jobs moved into the dead letter queue')
DLQ_RETRIED_TOTAL = Counter('pipeline_dlq_retried_total', 'Jobs manually requeued from the dead letter queue')

REAPER_RECOVERED_JOBS = Counter(
    "pipeline_reaper_recovered_jobs_total",
    "Total number of jobs recovered by the reaper after their lease expired"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
