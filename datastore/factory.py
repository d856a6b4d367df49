from __future__ import annotations

import logging

from datastore.base import TimeSeriesStore
from datastore.influx import build_default_influx_store
from datastore.memory import build_default_memory_store
from settings import get_settings

logger = logging.getLogger(__name__)


def build_default_store() -> TimeSeriesStore:
    """InfluxDB when ``INFLUX_URL`` is set, the in-process store otherwise."""
    settings = get_settings()
    if settings.influx_url:
        return build_default_influx_store()
    logger.warning("INFLUX_URL is not set; using the in-process store")
    return build_default_memory_store()
