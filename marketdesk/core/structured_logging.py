"""Structured logging helpers (no payloads or message bodies)."""

from typing import Any


def build_log_context(
    *,
    tenant_id: str | None = None,
    job_id: str | None = None,
    job_type: str | None = None,
    worker_id: str | None = None,
    delivery_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict containing only the fields that are set."""
    context: dict[str, Any] = {}
    if tenant_id:
        context["tenant_id"] = str(tenant_id)
    if job_id:
        context["job_id"] = str(job_id)
    if job_type:
        context["job_type"] = job_type
    if worker_id:
        context["worker_id"] = worker_id
    if delivery_id:
        context["delivery_id"] = str(delivery_id)
    return context
