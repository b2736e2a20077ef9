"""Background jobs for the scheduler."""

import structlog

from kisanmitra.config import DAY_MS
from kisanmitra.knowledge.timeseries import (
    WeatherMetric,
    market_price_metric_id,
    now_ms,
    weather_metric_id,
)
from kisanmitra.services import Services

logger = structlog.get_logger()

# A tracked series whose latest point is older than this is stale
STALE_AFTER_MS = DAY_MS


async def sweep_expired_metrics(services: Services) -> int:
    """Job: Remove metric points past their expiry."""
    logger.info("Starting retention sweep job")
    removed = await services.metrics.sweep_expired()
    logger.info("Retention sweep completed", removed=removed)
    return removed


def tracked_metric_ids(services: Services) -> list[str]:
    """Weather series of tracked districts and price series of tracked crops."""
    settings = services.settings
    metric_ids = [
        weather_metric_id(kind, district)
        for district in settings.tracked_districts
        for kind in WeatherMetric
    ]
    metric_ids.extend(market_price_metric_id(crop) for crop in settings.tracked_crops)
    return metric_ids


async def check_data_freshness(services: Services, now: int | None = None) -> list[str]:
    """Job: Report tracked series with no point in the last 24 hours."""
    now = now if now is not None else now_ms()
    metric_ids = tracked_metric_ids(services)
    logger.info("Starting freshness check job", series=len(metric_ids))

    stale: list[str] = []
    for metric_id in metric_ids:
        latest = await services.metrics.latest(metric_id)
        if latest is None or now - latest.timestamp > STALE_AFTER_MS:
            stale.append(metric_id)

    if stale:
        logger.warning("Stale metric series", count=len(stale), metric_ids=stale)
    else:
        logger.info("All tracked series are fresh", series=len(metric_ids))
    return stale
