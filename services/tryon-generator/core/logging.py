import logging

import structlog
from opentelemetry import trace


def add_trace_context(logger, method_name, event_dict):
    """Adds the active span's trace/span ids so logs join up with traces."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_image_payloads(logger, method_name, event_dict):
    """
    Person and garment uploads must never reach the log stream.
    Any raw bytes value is replaced by its size.
    """
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray, memoryview)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_trace_context,
        redact_image_payloads,
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(json_logs: bool = False, log_level: str = "INFO"):
    """JSON lines in production, colored console output otherwise."""
    processors = shared_processors()

    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Uvicorn would otherwise print its own unstructured lines
    for name in ("uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).handlers = []
