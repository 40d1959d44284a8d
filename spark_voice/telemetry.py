"""OpenTelemetry setup for the Spark Voice relay.

``OTEL_EXPORTER`` picks where spans go: ``console`` (default, dev),
``otlp`` (collector at ``OTEL_EXPORTER_OTLP_ENDPOINT``) or ``none``.
Every span the relay opens is named by one of the ``SPAN_*`` constants
below; the delivery-failure log line carries the current trace id so a
client-visible error can be matched to its span.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from spark_voice import __version__

logger = logging.getLogger(__name__)

_SERVICE_NAME = "spark-voice-relay"
_TRACER_NAME = "spark"
_initialized = False

# One transcript tail pass (read, filter, broadcast).
SPAN_TAIL_SYNC = "spark.tail_sync"
# A user turn from submission to its final message; retries set request.retry.
SPAN_REQUEST = "spark.request"
# One drain of the outbound queue once downstream is ready.
SPAN_QUEUE_DRAIN = "spark.queue_drain"
# A single completion call; completion.backend is "gateway" or "agent".
SPAN_COMPLETION = "spark.completion"
SPAN_TTS = "spark.tts"
SPAN_VOICE_NOTE = "spark.voice_note"

RELAY_SPANS = (
    SPAN_TAIL_SYNC,
    SPAN_REQUEST,
    SPAN_QUEUE_DRAIN,
    SPAN_COMPLETION,
    SPAN_TTS,
    SPAN_VOICE_NOTE,
)


def _span_processor(exporter_type: str) -> Optional[SpanProcessor]:
    if exporter_type == "none":
        logger.info("[Telemetry] Span export disabled.")
        return None
    if exporter_type == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
        except ImportError:
            logger.warning("[Telemetry] OTLP exporter not installed — falling back to console.")
        else:
            endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            logger.info("[Telemetry] OTLP exporter → %s", endpoint)
            return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    logger.info("[Telemetry] Console exporter active (dev mode).")
    return SimpleSpanProcessor(ConsoleSpanExporter())


def init_telemetry() -> None:
    """Install the global TracerProvider once; later calls are no-ops."""
    global _initialized
    if _initialized:
        return

    provider = TracerProvider(resource=Resource.create({
        "service.name": _SERVICE_NAME,
        "service.version": __version__,
    }))
    processor = _span_processor(os.environ.get("OTEL_EXPORTER", "console").lower())
    if processor is not None:
        provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    _initialized = True


def get_tracer() -> trace.Tracer:
    """Return the relay tracer (safe to call before ``init_telemetry``)."""
    return trace.get_tracer(_TRACER_NAME)


def current_trace_id() -> str:
    """Return the hex trace-id of the current span, or empty string if none."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        return format(ctx.trace_id, "032x")
    return ""
