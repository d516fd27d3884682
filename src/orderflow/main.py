"""Application entry point.

Usage:
    uvicorn orderflow.main:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from orderflow.api import create_app
from orderflow.config import Settings, load_settings
from orderflow.db import Database, SqlOrderRepository
from orderflow.observability import configure_observability, get_logger
from orderflow.repository import InMemoryOrderRepository
from orderflow.service import OrderEngine

_log = get_logger('orderflow.main')


def build_engine(settings: Settings) -> OrderEngine:
    try:
        db = Database(settings.database_url)
        db.create_schema()
        repo = SqlOrderRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        repo = InMemoryOrderRepository()

    engine = OrderEngine(
        repository=repo,
        enforce_delivery_ack=settings.enforce_delivery_ack,
        default_list_limit=settings.default_list_limit,
    )
    if settings.bootstrap_admin:
        engine.catalog.ensure_admin(settings.bootstrap_admin)
    return engine


def build_app(settings: Settings | None = None):
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    return create_app(
        engine=build_engine(settings),
        allow_remote_api=settings.api_allow_remote,
        api_access_token=settings.api_token,
    )


app = build_app()
