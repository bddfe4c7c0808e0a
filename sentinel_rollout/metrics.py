"""Metrics providers consulted by canary analysis."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .errors import MetricsProviderError

logger = logging.getLogger(__name__)


class MetricsProvider(ABC):
    """
    Pull-based metric source.

    Providers aggregate on their side: ``query`` returns one already
    computed number (a ratio, a percentile, a rate) for the window.
    """

    @abstractmethod
    async def query(self, metric_name: str, window_seconds: int, workload: str = "") -> float:
        """
        Evaluate a metric over a trailing window.

        Args:
            metric_name: Declared metric name
            window_seconds: Trailing window length
            workload: Workload the metric is scoped to

        Returns:
            Numeric result

        Raises:
            MetricsProviderError: If the value could not be obtained
        """


def format_window(seconds: int) -> str:
    """Format a window as a Prometheus duration."""
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


# Built-in checks, percent success and p99 latency in milliseconds.
BUILTIN_QUERIES = {
    "request-success-rate": (
        'sum(rate(http_requests_total{{workload="{workload}",status!~"5.."}}[{window}])) '
        '/ sum(rate(http_requests_total{{workload="{workload}"}}[{window}])) * 100'
    ),
    "request-duration": (
        "histogram_quantile(0.99, sum(rate("
        'http_request_duration_seconds_bucket{{workload="{workload}"}}[{window}])) by (le)) * 1000'
    ),
}


class PrometheusMetricsProvider(MetricsProvider):
    """
    Metrics provider backed by the Prometheus HTTP API.

    Metric names map to PromQL templates with ``{window}`` and ``{workload}``
    placeholders. Templates supplied by the caller override the built-ins.
    """

    def __init__(
        self,
        prometheus_url: str,
        queries: Optional[dict[str, str]] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Prometheus provider.

        Args:
            prometheus_url: Prometheus base URL
            queries: Metric name to PromQL template
            timeout_seconds: HTTP timeout per query
            client: Optional preconfigured HTTP client
        """
        self.prometheus_url = prometheus_url.rstrip("/")
        self.queries = {**BUILTIN_QUERIES, **(queries or {})}
        self.timeout_seconds = timeout_seconds
        self._client = client

    def render(self, metric_name: str, window_seconds: int, workload: str) -> str:
        template = self.queries.get(metric_name)
        if template is None:
            raise MetricsProviderError(f"No query defined for metric {metric_name}")
        return template.format(window=format_window(window_seconds), workload=workload)

    async def query(self, metric_name: str, window_seconds: int, workload: str = "") -> float:
        promql = self.render(metric_name, window_seconds, workload)
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.get(
                f"{self.prometheus_url}/api/v1/query",
                params={"query": promql},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise MetricsProviderError(f"Prometheus query for {metric_name} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code != 200:
            raise MetricsProviderError(
                f"Prometheus query for {metric_name} returned {response.status_code}"
            )

        data = response.json()
        if data.get("status") != "success":
            raise MetricsProviderError(f"Prometheus query for {metric_name} unsuccessful")

        results = data.get("data", {}).get("result", [])
        if not results:
            raise MetricsProviderError(f"Prometheus query for {metric_name} returned no data")

        value = results[0].get("value", [None, None])[1]
        if value is None:
            raise MetricsProviderError(f"Prometheus query for {metric_name} returned no value")

        result = float(value)
        if result != result:
            raise MetricsProviderError(f"Prometheus query for {metric_name} returned NaN")

        logger.debug(f"Metric {metric_name} for {workload}: {result}")
        return result

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
