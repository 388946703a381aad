"""
OpenTelemetry wiring.

Services take tracers and meters from get_tracer() and get_meter(). Until
initialize_telemetry() installs SDK providers these resolve to the API's
no-op implementations, which is what tests and embedded callers get.
"""

import logging
from typing import List, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from copilot.lib.config import ObservabilityConfig


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "copilot"
METRIC_EXPORT_INTERVAL_MS = 15000


class TelemetryManager:
    """Owns the SDK providers installed for one process."""

    def __init__(self, config: ObservabilityConfig):
        self.config = config
        self.tracer_provider: Optional[TracerProvider] = None
        self.meter_provider: Optional[MeterProvider] = None
        self._instrumentors: List = []

    @property
    def active(self) -> bool:
        return self.tracer_provider is not None

    def start(self) -> None:
        """Install OTLP-exporting providers and asyncio/logging instrumentation."""
        if self.active:
            return

        resource = Resource.create({
            "service.name": self.config.service_name,
            "service.version": self.config.service_version,
            "deployment.environment": self.config.environment,
            **self.config.resource_attributes
        })

        # Persona fan-out spans follow the sampling decision of their deliberation
        self.tracer_provider = TracerProvider(
            resource=resource,
            sampler=ParentBased(TraceIdRatioBased(self.config.trace_sampling_ratio))
        )
        self.tracer_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout)
        ))

        self.meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[PeriodicExportingMetricReader(
                OTLPMetricExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout),
                export_interval_millis=METRIC_EXPORT_INTERVAL_MS
            )]
        )

        trace.set_tracer_provider(self.tracer_provider)
        metrics.set_meter_provider(self.meter_provider)

        asyncio_instrumentor = AsyncioInstrumentor()
        asyncio_instrumentor.instrument()
        # StructuredFormatter already renders trace ids; leave the log format alone
        logging_instrumentor = LoggingInstrumentor()
        logging_instrumentor.instrument(set_logging_format=False)
        self._instrumentors = [asyncio_instrumentor, logging_instrumentor]

        logger.info(
            f"Exporting telemetry for {self.config.service_name} to {self.config.otlp_endpoint} "
            f"(sampling {self.config.trace_sampling_ratio:.0%})"
        )

    def stop(self) -> None:
        """Flush spans and metrics, then remove instrumentation."""
        if not self.active:
            return

        for instrumentor in self._instrumentors:
            instrumentor.uninstrument()
        self._instrumentors.clear()

        for provider in (self.tracer_provider, self.meter_provider):
            try:
                provider.shutdown()
            except Exception as e:
                logger.error(f"Telemetry provider shutdown failed: {e}")

        self.tracer_provider = None
        self.meter_provider = None


_telemetry: Optional[TelemetryManager] = None


def initialize_telemetry(config: ObservabilityConfig) -> TelemetryManager:
    """Start telemetry export when enabled in configuration.

    Returns:
        The process TelemetryManager, inactive when export is disabled
    """
    global _telemetry
    if _telemetry is not None:
        _telemetry.stop()

    _telemetry = TelemetryManager(config)
    if config.enabled:
        _telemetry.start()
    else:
        logger.debug("Telemetry export disabled")
    return _telemetry


def shutdown_telemetry() -> None:
    global _telemetry
    if _telemetry is not None:
        _telemetry.stop()
        _telemetry = None


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(INSTRUMENTATION_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(INSTRUMENTATION_NAME)
