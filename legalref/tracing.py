import os
from typing import Any

from ddtrace.trace import tracer

SERVICE_NAME = "legalref"


def configure_tracing() -> None:
    """Tracing stays off unless DD_TRACE_ENABLED is set to true."""
    enabled = os.getenv("DD_TRACE_ENABLED", "false").lower() == "true"
    tracer.enabled = enabled
    if enabled and not os.getenv("DD_SERVICE"):
        os.environ["DD_SERVICE"] = SERVICE_NAME


def tag_span(**tags: Any) -> None:
    """Attach tags to the active span, numbers as metrics."""
    current_span = tracer.current_span()
    if current_span is None:
        return
    for key, value in tags.items():
        if isinstance(value, bool) or not isinstance(value, int | float):
            current_span.set_tag(key, value)
        else:
            current_span.set_metric(key, value)
