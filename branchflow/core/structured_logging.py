"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    branch_id: int | None = None,
    appointment_id: int | None = None,
    ticket_id: int | None = None,
    actor_id: int | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict with only the identifiers that are set."""
    context: dict[str, Any] = {}
    if branch_id is not None:
        context["branch_id"] = branch_id
    if appointment_id is not None:
        context["appointment_id"] = appointment_id
    if ticket_id is not None:
        context["ticket_id"] = ticket_id
    if actor_id is not None:
        context["actor_id"] = actor_id
    if request_id:
        context["request_id"] = request_id
    return context


def mask_email(email: str | None) -> str:
    """Mask an email address for logs (j***@example.com)."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"
