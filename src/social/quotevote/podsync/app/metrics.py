"""
Metrics for the Pod Sync Service

Components record counters, gauges and timings through ``MetricsClient`` without
knowing which backend is configured. ``create_metrics_client`` picks the backend from
``METRICS_BACKEND``: ``telegraf`` sends StatsD lines with Telegraf tags through
aio-statsd, ``none`` discards everything.

Names are given without the service prefix (``client.request.count``); the StatsD
client adds it (``podsync.client.request.count``).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

Number = Union[int, float]
Tags = Optional[Dict[str, Any]]


class MetricsClient(ABC):
    """
    Counters, gauges and timers with StatsD-style ``tag_dict`` dimensions.

    Timer values are durations in seconds.
    """

    @abstractmethod
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        pass

    @abstractmethod
    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    @abstractmethod
    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    async def connect(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class StatsdMetricsClient(MetricsClient):
    """Sends metrics through a ``TelegrafStatsdClient``, prefixing every name once."""

    def __init__(self, statsd_client: TelegrafStatsdClient, prefix: str = ""):
        self.client = statsd_client
        self.prefix = prefix

    def qualify(self, name: str) -> str:
        if not self.prefix or name.startswith(self.prefix + "."):
            return name
        return f"{self.prefix}.{name}"

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        self.client.increment(self.qualify(name), value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.gauge(self.qualify(name), value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.timer(self.qualify(name), value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning("Error closing StatsD client: %s", e)


class NoOpMetricsClient(MetricsClient):
    """Discards every metric. Used when metrics are disabled and in tests."""

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        pass

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    async def close(self) -> None:
        pass


METRICS_BACKENDS = ("telegraf", "none")


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    prefix: str = "podsync",
    debug: bool = False,
) -> MetricsClient:
    """
    Create the metrics client for a backend name.

    Raises:
        ValueError: If the backend is not one of ``METRICS_BACKENDS``
    """
    backend = backend.lower()

    if backend == "telegraf":
        logger.info("Sending metrics to %s:%d with prefix %r", host, port, prefix)
        return StatsdMetricsClient(
            TelegrafStatsdClient(host=host, port=port, debug=debug), prefix=prefix
        )

    if backend == "none":
        logger.info("Metrics collection disabled")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: "
        + ", ".join(METRICS_BACKENDS)
    )
