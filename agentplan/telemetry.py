"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when enabled; otherwise
falls back to in-process providers with no exporter.

Metric instruments are module-level so that the plan store, agent pool
and synchronizer can record without threading a meter through every
call. They are bound to the global (proxy) meter at import time and
re-bound by create_metrics() once a provider is configured.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from agentplan.config import AgentPlanConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

tasks_created_counter: metrics.Counter
agent_assignments_counter: metrics.Counter
agent_runs_counter: metrics.Counter
tracker_errors_counter: metrics.Counter
issues_closed_counter: metrics.Counter


def setup_telemetry(config: AgentPlanConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with OTLP export.

    If OTLP_ENABLED is not "true" or no endpoint is configured, providers
    without exporters are installed.

    Args:
        config: Configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for agentplan tracking.

    Counters:
    - Tasks created in plan documents (by phase)
    - Agent assignments
    - Agent runs finished (by status: done or error)
    - Issue tracker failures (by operation)
    - Issues closed after agent completion

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_created_counter, agent_assignments_counter, agent_runs_counter
    global tracker_errors_counter, issues_closed_counter

    tasks_created_counter = meter.create_counter(
        "agentplan_tasks_created_total",
        description="Tasks appended to plan documents",
    )

    agent_assignments_counter = meter.create_counter(
        "agentplan_agent_assignments_total",
        description="Tasks assigned to agent slots",
    )

    agent_runs_counter = meter.create_counter(
        "agentplan_agent_runs_total",
        description="Agent runs finished, by final slot status",
    )

    tracker_errors_counter = meter.create_counter(
        "agentplan_tracker_errors_total",
        description="Failed issue tracker operations",
    )

    issues_closed_counter = meter.create_counter(
        "agentplan_issues_closed_total",
        description="Issues closed after agent completion",
    )


create_metrics(metrics.get_meter("agentplan"))
