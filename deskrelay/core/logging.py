"""Logging and tracing for DeskRelay execution contexts.

Several contexts (API workers, background consumers) usually log into the
same stream, so every record is tagged with the context it came from and the
id of the trace it was emitted under.
"""

from __future__ import annotations

import logging
import os
import socket
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from deskrelay.core.config import Settings

_TRACER_INITIALISED = False


def context_name(settings: Settings) -> str:
    return settings.context_name or f"{socket.gethostname()}:{os.getpid()}"


def parse_pairs(text: str | None) -> dict[str, str]:
    """Parse ``key=value`` items separated by commas, skipping malformed ones."""

    if not text:
        return {}
    pairs: dict[str, str] = {}
    for item in text.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        pairs[key.strip()] = value.strip()
    return pairs


class ExecutionContextFilter(logging.Filter):
    """Adds ``context`` and ``trace_id`` attributes to every record."""

    def __init__(self, context: str = "-") -> None:
        super().__init__()
        self.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = self.context
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "-"
        return True


def component_levels(settings: Settings, default: int) -> dict[str, dict[str, int]]:
    loggers: dict[str, dict[str, int]] = {}
    for name, level_name in parse_pairs(settings.log_component_levels).items():
        level = logging.getLevelName(level_name.upper())
        loggers[name] = {"level": level if isinstance(level, int) else default}
    return loggers


def configure_logging(settings: Settings) -> logging.Logger:
    """Configure the root logger and return the package logger."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {
                    "()": ExecutionContextFilter,
                    "context": context_name(settings),
                }
            },
            "formatters": {
                "default": {
                    "format": settings.log_format,
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["context"],
                    "level": logging.NOTSET,
                }
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
            "loggers": component_levels(settings, level),
        }
    )

    logger = logging.getLogger("deskrelay")
    logger.info("Logging configured for context %s", context_name(settings))
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP span exporter when tracing is enabled."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "service.instance.id": context_name(settings),
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_pairs(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    if provider is None:
        return

    global _TRACER_INITIALISED
    provider.force_flush()
    provider.shutdown()
    _TRACER_INITIALISED = False
