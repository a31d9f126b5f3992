"""OpenTelemetry metrics instruments for calendar propagation.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  calmirror.tokens.refresh_total        Counter  (label: outcome=success|failure)
      Access token refresh attempts against the OAuth token endpoint.

  calmirror.webhooks.renewal_total      Counter  (label: outcome=success|failure)
      Push channel (re)registrations performed by setup or the renewal sweep.

  calmirror.sync.propagation_total      Counter  (labels: change, status)
      Per-target propagation outcomes of the sync engine.

  calmirror.retry.attempts_total        Counter  (label: kind)
      Retries scheduled by the retry layer, by classified error kind.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calmirror"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: The service name reported on the resource.

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before ``init_metrics``; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calmirror.tokens.refresh_total",
        description="Total OAuth access token refresh attempts",
        unit="refreshes",
    )


def _webhook_renewal_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calmirror.webhooks.renewal_total",
        description="Total push channel registrations and renewals",
        unit="channels",
    )


def _sync_propagation_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calmirror.sync.propagation_total",
        description="Total per-target event propagation outcomes",
        unit="events",
    )


def _retry_attempts_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calmirror.retry.attempts_total",
        description="Total retries scheduled after a retryable provider error",
        unit="retries",
    )


# ---------------------------------------------------------------------------
# SyncMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class SyncMetrics:
    """Convenience wrapper around the calmirror counters.

    Instruments are lazily created from the global MeterProvider on first use,
    so it is safe to construct this object before ``init_metrics`` is called.
    """

    def __init__(self) -> None:
        self.__token_refresh: metrics.Counter | None = None
        self.__webhook_renewal: metrics.Counter | None = None
        self.__propagation: metrics.Counter | None = None
        self.__retry: metrics.Counter | None = None

    @property
    def _token_refresh(self) -> metrics.Counter:
        if self.__token_refresh is None:
            self.__token_refresh = _token_refresh_total()
        return self.__token_refresh

    @property
    def _webhook_renewal(self) -> metrics.Counter:
        if self.__webhook_renewal is None:
            self.__webhook_renewal = _webhook_renewal_total()
        return self.__webhook_renewal

    @property
    def _propagation(self) -> metrics.Counter:
        if self.__propagation is None:
            self.__propagation = _sync_propagation_total()
        return self.__propagation

    @property
    def _retry(self) -> metrics.Counter:
        if self.__retry is None:
            self.__retry = _retry_attempts_total()
        return self.__retry

    def record_token_refresh(self, *, success: bool) -> None:
        self._token_refresh.add(1, {"outcome": "success" if success else "failure"})

    def record_webhook_renewal(self, *, success: bool) -> None:
        self._webhook_renewal.add(1, {"outcome": "success" if success else "failure"})

    def record_propagation(self, change: str, status: str) -> None:
        self._propagation.add(1, {"change": change, "status": status})

    def record_retry(self, kind: str) -> None:
        self._retry.add(1, {"kind": kind})


sync_metrics = SyncMetrics()
