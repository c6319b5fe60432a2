"""
structlog setup for the Pokify import service.

Every entry carries a ``trace_id``: one per HTTP request (set by the
middleware in ``main.py``, echoed as ``X-Trace-Id``) and one per background
job (the first eight characters of the job id), so a single extraction can
be followed across extractors, the screenshot pool, Claude calls and the
database.

Events emitted through LayerLogger:

    decision_made       a chain, image list or plan limit was applied
    action_<status>     a unit of work started, completed or failed
    fallback_triggered  an extractor failed and the chain moved on
    warning_raised      a tolerated problem (slow navigation, bad format)
    error_occurred      a failure, tagged with ``error_type``
    http_call           one request to Linkfy or the Shopify Admin API
    product_extracted   fields present and missing after extraction
"""
import uuid
import logging
import structlog
from contextvars import ContextVar
from typing import Any, Dict, Optional

from pokify.config import config

# Context variable for trace ID
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")


def get_trace_id() -> str:
    """Trace id of the current request or job, created on first use."""
    trace_id = trace_id_var.get()
    if not trace_id:
        trace_id = str(uuid.uuid4())[:8]
        trace_id_var.set(trace_id)
    return trace_id


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Start a new trace (random unless ``trace_id`` is given)."""
    new_trace_id = trace_id or str(uuid.uuid4())[:8]
    trace_id_var.set(new_trace_id)
    return new_trace_id


def add_trace_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor stamping ``trace_id`` on every entry."""
    event_dict["trace_id"] = get_trace_id()
    return event_dict


def configure_logging():
    """JSON lines when LOG_FORMAT=json, coloured console output otherwise."""
    processors = [
        structlog.contextvars.merge_contextvars,
        add_trace_id,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if config.LOG_FORMAT == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.LOG_LEVEL.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class LayerLogger:
    """
    Logger bound to one component (``linkfy``, ``extraction``, ``jobs``...).

    The component name goes out as ``layer`` so entries can be filtered per
    adapter or layer.
    """

    def __init__(self, layer_name: str):
        self.layer_name = layer_name
        self.logger = get_logger(layer_name)

    def log_decision(
        self,
        decision: str,
        reason: str,
        url: Optional[str] = None,
        **extra
    ):
        """E.g. which extractor chain ran, which image list won, a store limit."""
        self.logger.info(
            "decision_made",
            layer=self.layer_name,
            decision=decision,
            reason=reason,
            url=url,
            **extra
        )

    def log_action(
        self,
        action: str,
        status: str = "started",
        **extra
    ):
        self.logger.info(
            f"action_{status}",
            layer=self.layer_name,
            action=action,
            **extra
        )

    def log_fallback(
        self,
        from_source: str,
        to_source: str,
        reason: str,
        **extra
    ):
        """One extractor gave up (``reason``) and the next one runs."""
        self.logger.warning(
            "fallback_triggered",
            layer=self.layer_name,
            from_source=from_source,
            to_source=to_source,
            reason=reason,
            **extra
        )

    def log_warning(self, message: str, **extra):
        """Log a tolerated problem that does not abort the action."""
        self.logger.warning(
            "warning_raised",
            layer=self.layer_name,
            message=message,
            **extra
        )

    def log_error(
        self,
        error: str,
        error_type: str = "unknown",
        **extra
    ):
        """``error_type`` is a short tag: persistence_error, job_error, http_error..."""
        self.logger.error(
            "error_occurred",
            layer=self.layer_name,
            error=error,
            error_type=error_type,
            **extra
        )

    def log_http_call(
        self,
        url: str,
        endpoint: str,
        status_code: Optional[int],
        result: str,
        **extra
    ):
        """``result`` is "ok" for 2xx responses, "error" otherwise."""
        self.logger.info(
            "http_call",
            layer=self.layer_name,
            url=url,
            endpoint=endpoint,
            status_code=status_code,
            result=result,
            **extra
        )

    def log_extraction_summary(
        self,
        source: str,
        fields_present: list,
        fields_missing: list,
        images_count: int,
        **extra
    ):

        self.logger.info(
            "product_extracted",
            layer=self.layer_name,
            source=source,
            fields_present=fields_present,
            fields_missing=fields_missing,
            images_count=images_count,
            **extra
        )


# Initialize logging on module import
configure_logging()
