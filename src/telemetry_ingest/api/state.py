"""Process-wide service objects shared by the API routers."""
from __future__ import annotations
from functools import lru_cache
from telemetry_ingest.analytics.stats import StatsAggregator
from telemetry_ingest.tasks.maintenance import RetentionReaper
from telemetry_ingest.telemetry_store import TelemetryStore


@lru_cache
def get_store() -> TelemetryStore:
    return TelemetryStore()


@lru_cache
def get_stats() -> StatsAggregator:
    return StatsAggregator(clock=get_store().clock)


def get_reaper() -> RetentionReaper:
    return RetentionReaper(get_store())


def reset_state():
    """Drop cached service objects (tests swap engines between cases)."""
    get_store.cache_clear()
    get_stats.cache_clear()
