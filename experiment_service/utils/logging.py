# experiment_service/utils/logging.py
import json
import logging
import sys
from typing import Optional, Any, Dict
from fastapi import Request

# ---------- Structured JSON Logging ----------

CONTEXT_FIELDS = (
    "path",
    "method",
    "status",
    "project_id",
    "visitor_id",
    "request_id",
    "duration_ms",
    "reason",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        # Optional request / evaluation context
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]


# ---------- Helpers to attach request context ----------
def get_request_context(
    request: Optional[Request] = None, duration_ms: Optional[float] = None
) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    if request:
        context.update(
            {
                "path": request.url.path,
                "method": request.method,
                "request_id": request.headers.get("X-Request-ID", "none"),
            }
        )
        # SDK routes carry the project / visitor in the query string
        for field, param in (("project_id", "projectId"), ("visitor_id", "visitorId")):
            value = request.query_params.get(param)
            if value:
                context[field] = value
    if duration_ms is not None:
        context["duration_ms"] = float(round(duration_ms, 2))  # ensure type is float
    return context
