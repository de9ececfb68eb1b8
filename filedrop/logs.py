import json
import logging

from opentelemetry import trace


def _event_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _event_logger("filedrop.request")
assembly_logger = _event_logger("filedrop.assembly")
audit_logger = _event_logger("filedrop.audit")


def trace_id() -> str | None:
    span_context = trace.get_current_span().get_span_context()
    if not span_context or not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def _encode(payload: dict) -> str:
    payload.setdefault("trace_id", trace_id())
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def log_event(payload: dict) -> None:
    request_logger.info(_encode(payload))


def assembly_event(payload: dict, level: int = logging.INFO) -> None:
    assembly_logger.log(level, _encode(payload))


def audit_event(payload: dict) -> None:
    audit_logger.info(_encode(payload))
