"""Context management for structured logging and tracing.

This module provides thread-safe context variables for propagating
request context throughout the application, including across async
operations, probe batches and background tasks.
"""

import contextvars
from contextlib import contextmanager
from typing import Optional, Any, Dict
from opentelemetry import trace

# Context variables for request/operation tracking
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
actor_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "actor_id", default=None
)
equipment_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "equipment_id", default=None
)
ip_address_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "ip_address", default=None
)
action_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "action", default=None
)

_VARS = {
    "request_id": request_id_var,
    "actor_id": actor_id_var,
    "equipment_id": equipment_id_var,
    "ip_address": ip_address_var,
    "action": action_var,
}


def set_context(
    request_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    equipment_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    action: Optional[str] = None,
) -> None:
    """Set context variables.

    Args:
        request_id: Unique request identifier
        actor_id: Acting user identifier ("system" for the monitor)
        equipment_id: Equipment identifier
        ip_address: Dotted-quad address being operated on
        action: Operation being performed (e.g., 'ledger.assign', 'probe.cycle')
    """
    if request_id is not None:
        request_id_var.set(request_id)
    if actor_id is not None:
        actor_id_var.set(actor_id)
    if equipment_id is not None:
        equipment_id_var.set(equipment_id)
    if ip_address is not None:
        ip_address_var.set(ip_address)
    if action is not None:
        action_var.set(action)


def get_context() -> Dict[str, Any]:
    """Get all current context values as a dictionary.

    Returns:
        Dictionary with all non-None context values
    """
    context = {}
    for key, var in _VARS.items():
        value = var.get()
        if value:
            context[key] = value
    return context


def get_request_id() -> Optional[str]:
    """Get current request ID."""
    return request_id_var.get()


def get_actor_id() -> Optional[str]:
    """Get current actor ID."""
    return actor_id_var.get()


def get_equipment_id() -> Optional[str]:
    """Get current equipment ID."""
    return equipment_id_var.get()


def get_action() -> Optional[str]:
    """Get current action."""
    return action_var.get()


def clear_context() -> None:
    """Clear all context variables."""
    for var in _VARS.values():
        var.set(None)


@contextmanager
def operation_context(
    action: str,
    request_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    equipment_id: Optional[str] = None,
    ip_address: Optional[str] = None,
):
    """Context manager for setting operation context with automatic cleanup.

    This also sets the action as a span attribute if there's an active span.

    Example:
        with operation_context("ledger.assign", ip_address="10.0.0.5"):
            logger.info("Assigning IP")
    """
    old_context = get_context()

    try:
        set_context(
            request_id=request_id,
            actor_id=actor_id,
            equipment_id=equipment_id,
            ip_address=ip_address,
            action=action,
        )

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("action", action)
            if equipment_id:
                span.set_attribute("equipment.id", equipment_id)
            if ip_address:
                span.set_attribute("ip.address", ip_address)
            if actor_id:
                span.set_attribute("actor.id", actor_id)

        yield

    finally:
        # Restore old context
        clear_context()
        for key, value in old_context.items():
            _VARS[key].set(value)


def get_trace_context() -> Dict[str, str]:
    """Get current OpenTelemetry trace context.

    Returns:
        Dictionary with trace_id and span_id (if available)
    """
    context = {}

    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        if span_context.is_valid:
            context["trace_id"] = format(span_context.trace_id, "032x")
            context["span_id"] = format(span_context.span_id, "016x")

    return context
