from celery import Celery
from celery import signals
import logging
import time
from prometheus_client import Counter, Histogram
from weather_analytics.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery(
    "weather_analytics",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "weather_analytics.tasks.article_metrics",
        "weather_analytics.tasks.lead_engagement",
        "weather_analytics.tasks.lead_activity",
        "weather_analytics.tasks.top_articles",
        "weather_analytics.tasks.content",
        "weather_analytics.tasks.reconcile",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()
        logger.warning(f"Task {name} finished in state {state}")


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "article-metrics-every-minute": {
        "task": "weather_analytics.tasks.article_metrics.generate_article_metrics",
        "schedule": 60.0,
    },
    "lead-engagement-metrics-every-minute": {
        "task": "weather_analytics.tasks.lead_engagement.generate_lead_engagement_metrics",
        "schedule": 60.0,
    },
    "lead-section-article-count-every-minute": {
        "task": "weather_analytics.tasks.lead_activity.generate_lead_section_article_count",
        "schedule": 60.0,
    },
    "lead-article-view-count-every-minute": {
        "task": "weather_analytics.tasks.lead_activity.generate_lead_article_view_count",
        "schedule": 60.0,
    },
    "lead-read-articles-every-minute": {
        "task": "weather_analytics.tasks.lead_activity.generate_lead_read_articles",
        "schedule": 60.0,
    },
    "top-articles-every-minute": {
        "task": "weather_analytics.tasks.top_articles.generate_top_articles",
        "schedule": 60.0,
    },
    "top-next-articles-every-minute": {
        "task": "weather_analytics.tasks.top_articles.generate_top_next_articles",
        "schedule": 60.0,
    },
    "article-content-vectors-every-5m": {
        "task": "weather_analytics.tasks.content.generate_article_content_vectors",
        "schedule": 300.0,
    },
    "content-based-articles-every-15m": {
        "task": "weather_analytics.tasks.content.generate_content_based_articles",
        "schedule": 900.0,
    },
    "article-sections-hourly": {
        "task": "weather_analytics.tasks.content.generate_article_sections",
        "schedule": 3600.0,
    },
    "reconcile-warehouse-hourly": {
        "task": "weather_analytics.tasks.reconcile.reconcile_warehouse",
        "schedule": 3600.0,
    },
}
