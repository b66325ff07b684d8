# experiment_service/services/audit.py
import logging
from typing import Any, Dict, Optional

from experiment_service.services.storage import Store

logger = logging.getLogger(__name__)


def build_evaluation_entry(
    flag: Dict[str, Any],
    visitor_id: str,
    value: Any,
    reason: str,
    *,
    user_id: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Shape a flag evaluation into an append-only log row."""
    return {
        "flag_id": flag["id"],
        "project_id": flag["project_id"],
        "visitor_id": visitor_id,
        "user_id": user_id,
        "value": value,
        "reason": reason,
        "context": {"attributes": attributes or {}},
    }


async def record_evaluation(store: Store, entry: Dict[str, Any]) -> None:
    """
    Persist an evaluation log entry. Meant to run as a background task after
    the response is sent; failures are logged and never propagated.
    """
    try:
        await store.append_evaluation(entry)
    except Exception:
        logger.warning(
            "Failed to record flag evaluation",
            exc_info=True,
            extra={"visitor_id": entry.get("visitor_id"), "reason": entry.get("reason")},
        )
