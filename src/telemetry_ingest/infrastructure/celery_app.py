from celery import Celery
from celery import signals
import json
import logging
import time
from prometheus_client import Counter, Histogram
from telemetry_ingest.config import get_settings
from telemetry_ingest.infrastructure.metrics import registry

logger = logging.getLogger(__name__)
settings = get_settings()

# Maintenance tasks only; scheduling them (beat, cron) is left to the deployment.
celery_app = Celery(
    "telemetry_ingest",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["telemetry_ingest.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

MAINTENANCE_RUNS = Counter('telemetry_maintenance_runs_total', 'Maintenance task runs by outcome', ['task', 'outcome'], registry=registry)
MAINTENANCE_DURATION = Histogram('telemetry_maintenance_duration_seconds', 'Maintenance task runtime', ['task'], buckets=(0.1,0.5,1,5,15,60,300), registry=registry)

_started: dict[str, float] = {}


@signals.task_prerun.connect
def _on_start(sender=None, task_id=None, **kwargs):  # noqa
    _started[task_id] = time.perf_counter()


@signals.task_postrun.connect
def _on_finish(sender=None, task_id=None, state=None, retval=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _started.pop(task_id, None)
    if start is not None:
        MAINTENANCE_DURATION.labels(task=name).observe(time.perf_counter() - start)
    MAINTENANCE_RUNS.labels(task=name, outcome=(state or 'unknown').lower()).inc()
    if state == 'SUCCESS':
        logger.info(json.dumps({"event": "maintenance_task_done", "task": name, "result": retval}, default=str))


@signals.task_failure.connect
def _on_failure(sender=None, task_id=None, exception=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    logger.error(json.dumps({"event": "maintenance_task_failed", "task": name, "task_id": task_id,
                             "type": exception.__class__.__name__, "detail": str(exception)}))
