"""
Sentry instrumentation for the planner service.
Server-side only. Strips sensitive headers from breadcrumbs and requests,
and tags optimization failures with trip, stage and error code.
"""

from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from services.planner.config import settings
from services.planner.optimization.errors import OptimizationError

SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}


def _filter_headers(headers: Any) -> None:
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[FILTERED]"


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: strip Authorization headers and cookies."""
    if "breadcrumbs" in event:
        for breadcrumb in event["breadcrumbs"].get("values", []):
            data = breadcrumb.get("data", {})
            if isinstance(data, dict):
                _filter_headers(data.get("headers", {}))
    request = event.get("request", {})
    if isinstance(request, dict):
        _filter_headers(request.get("headers", {}))
    return event


def setup_sentry() -> None:
    if not settings.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_strip_sensitive_data,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        send_default_pii=False,
    )


def report_stage_failure(exc: OptimizationError, trip_id: str) -> None:
    """Capture a handled stage failure; client input errors are not reported."""
    if exc.http_status < 422:
        return
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("trip_id", trip_id)
        scope.set_tag("optimization.stage", exc.stage or "setup")
        scope.set_tag("optimization.code", exc.code)
        sentry_sdk.capture_exception(exc)
