"""OpenTelemetry metrics instruments for calendar sync.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once at startup (alongside
``init_telemetry``). When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider is used and all recordings are silent.

Instruments
-----------
  briefings.sync.runs_total           Counter   (label: status)
  briefings.sync.events_scanned_total Counter
  briefings.sync.meetings_matched     Counter   (label: kind=exact_email|domain)
  briefings.sync.run_duration_ms      Histogram
  briefings.fetch.retries_total       Counter   (label: reason)
  briefings.oauth.token_refresh_total Counter   (label: outcome)
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "briefings"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a MeterProvider with a
    periodic OTLP gRPC exporter. Otherwise the no-op provider stays in place.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper around the sync instruments.

    Safe to construct before ``init_metrics``; instruments are resolved on
    first use.
    """

    def __init__(self) -> None:
        self._runs: metrics.Counter | None = None
        self._scanned: metrics.Counter | None = None
        self._matched: metrics.Counter | None = None
        self._duration: metrics.Histogram | None = None
        self._retries: metrics.Counter | None = None
        self._refreshes: metrics.Counter | None = None

    def record_run(self, status: str, duration_ms: float) -> None:
        if self._runs is None:
            self._runs = get_meter().create_counter(
                name="briefings.sync.runs_total",
                description="Sync runs by terminal status",
                unit="runs",
            )
        if self._duration is None:
            self._duration = get_meter().create_histogram(
                name="briefings.sync.run_duration_ms",
                description="Wall-clock duration of a sync run",
                unit="ms",
            )
        self._runs.add(1, {"status": status})
        self._duration.record(duration_ms, {"status": status})

    def events_scanned(self, count: int = 1) -> None:
        if self._scanned is None:
            self._scanned = get_meter().create_counter(
                name="briefings.sync.events_scanned_total",
                description="Calendar events examined by the matcher",
                unit="events",
            )
        self._scanned.add(count)

    def meeting_matched(self, kind: str) -> None:
        if self._matched is None:
            self._matched = get_meter().create_counter(
                name="briefings.sync.meetings_matched",
                description="Events recognized as analyst briefings",
                unit="meetings",
            )
        self._matched.add(1, {"kind": kind})

    def fetch_retry(self, reason: str) -> None:
        if self._retries is None:
            self._retries = get_meter().create_counter(
                name="briefings.fetch.retries_total",
                description="Calendar API requests retried after a transient failure",
                unit="requests",
            )
        self._retries.add(1, {"reason": reason})

    def token_refresh(self, outcome: str) -> None:
        if self._refreshes is None:
            self._refreshes = get_meter().create_counter(
                name="briefings.oauth.token_refresh_total",
                description="OAuth access-token refresh attempts by outcome",
                unit="refreshes",
            )
        self._refreshes.add(1, {"outcome": outcome})


sync_metrics = SyncMetrics()
