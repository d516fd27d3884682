from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock

_order_id_var: ContextVar[str | None] = ContextVar('order_id', default=None)
_actor_var: ContextVar[str | None] = ContextVar('actor', default=None)
_order_number_var: ContextVar[str | None] = ContextVar('order_number', default=None)


def set_request_context(
    order_id: str | None = None,
    actor: str | None = None,
    order_number: str | None = None,
) -> None:
    """Set correlation context for structured log output."""
    _order_id_var.set(order_id)
    _actor_var.set(actor)
    _order_number_var.set(order_number)


def bind_order(order: dict) -> None:
    """Point the order fields of the log context at *order*, keeping the actor."""
    _order_id_var.set(order.get('order_id'))
    _order_number_var.set(order.get('order_number'))


def get_order_id() -> str | None:
    return _order_id_var.get(None)


def get_actor() -> str | None:
    return _actor_var.get(None)


def get_order_number() -> str | None:
    return _order_number_var.get(None)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        order_id = getattr(record, 'order_id', None) or _order_id_var.get(None)
        if order_id:
            payload['order_id'] = order_id
        order_number = getattr(record, 'order_number', None) or _order_number_var.get(None)
        if order_number:
            payload['order_number'] = order_number
        actor = getattr(record, 'actor', None) or _actor_var.get(None)
        if actor:
            payload['actor'] = actor
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('orderflow')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    if not otlp_endpoint:
        return
    endpoint = str(otlp_endpoint).strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('orderflow.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
