import json
import logging

from resumable_upload.tracing import current_trace_id

REQUEST_LOGGER = "rus.request"
AUDIT_LOGGER = "rus.audit"
ENGINE_LOGGER = "rus.engine"
CLIENT_LOGGER = "rus.client"


def _json_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _json_logger(REQUEST_LOGGER)
audit_logger = _json_logger(AUDIT_LOGGER)
engine_logger = _json_logger(ENGINE_LOGGER)
client_logger = _json_logger(CLIENT_LOGGER)


def _emit(logger: logging.Logger, payload: dict, level: int = logging.INFO) -> None:
    payload.setdefault("trace_id", current_trace_id())
    logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def log_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(request_logger, payload, level)


def audit_event(payload: dict) -> None:
    _emit(audit_logger, {"event": "audit", **payload})


def engine_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(engine_logger, payload, level)


def client_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(client_logger, payload, level)
