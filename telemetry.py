#!/usr/bin/env python3
"""
Tracing setup for the digest runner using OpenTelemetry.

Spans cover each run, each source fetch, provider and email calls, dispatch
and the stale-run sweep. aiohttp client requests, sqlite3 calls and log
records are instrumented automatically. Spans are exported to Azure Monitor
when a connection string is configured and the optional exporter is installed;
otherwise they stay in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: digest-runner)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import asyncio
import logging
import threading
from functools import wraps
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Optional extra: only needed when exporting to Application Insights
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("NewsDigest.telemetry")


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and library instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "digest-runner")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
                provider.add_span_processor(BatchSpanProcessor(exporter))
                _logger.info("Telemetry initialized: Azure Monitor exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: invalid connection string, spans will not be exported: %s", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); spans stay in-process", svc)
            if conn and not _AZURE_AVAILABLE:
                _logger.warning(
                    "Connection string set but 'azure-monitor-opentelemetry-exporter' is not installed"
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Adds otelTraceID / otelSpanID to log records without changing the format
        LoggingInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    # TracerProvider.shutdown() flushes the batch processor
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "digest-runner"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: Dict[str, Any] | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions. Exceptions are recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "digest-runner")

        def _set_attrs(span, args, kwargs):
            if static_attrs:
                for k, v in static_attrs.items():
                    span.set_attribute(k, v)
            if attr_from_args is not None:
                try:
                    dyn = attr_from_args(*args, **kwargs) or {}
                except (AttributeError, TypeError, KeyError, IndexError):
                    # Attribute extraction must never break the call
                    dyn = {}
                for k, v in dyn.items():
                    if v is not None:
                        span.set_attribute(k, v)

        def _fail(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name, record_exception=False) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _aw

        @wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name, record_exception=False) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _w

    return _decorator


__all__ = ["init_telemetry", "get_tracer", "trace_span", "telemetry_disabled"]
