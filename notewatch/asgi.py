"""ASGI entry point: ``uvicorn notewatch.asgi:app``.

Set ``NOTEWATCH_RUN_WORKERS=0`` to serve the operator API without running
the worker pool in the same process.
"""

from __future__ import annotations

import os

from notewatch.api import create_app
from notewatch.config import get_settings
from notewatch.db.session import init_schema
from notewatch.observability import configure_logging
from notewatch.service import build_services

settings = get_settings()
configure_logging(settings.log_level)
services = build_services(settings)
init_schema(services.engine)

app = create_app(
    services,
    run_workers=os.getenv("NOTEWATCH_RUN_WORKERS", "1").lower() in {"1", "true", "yes"},
)
