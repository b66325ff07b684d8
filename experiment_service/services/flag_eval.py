# flag_eval.py

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from experiment_service.services.audit import build_evaluation_entry
from experiment_service.services.cache import flag_cache, get_flag_cache_key
from experiment_service.services.hashing import scoped_bucket
from experiment_service.services.storage import Store, as_utc
from experiment_service.services.targeting import matches
from experiment_service.utils.metrics import FLAG_EVALUATIONS

logger = logging.getLogger(__name__)

FLAG_NOT_FOUND = "flag_not_found"
FLAG_DISABLED = "flag_disabled"
NOT_STARTED = "not_started"
ENDED = "ended"
TARGETING_MISMATCH = "targeting_mismatch"
NOT_IN_ROLLOUT = "not_in_rollout"
ENABLED = "enabled"


def decode_default_value(raw: Any) -> Any:
    """Flags store their default value as a JSON document."""
    if raw is None or not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Flag default_value is not valid JSON; returning it verbatim")
        return raw


def evaluate_flag(
    flag: Optional[dict],
    visitor_id: str,
    attributes: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Evaluate a feature flag for one visitor.

    Checks run in a fixed order and the first failing one decides:
    not found, disabled, not started, ended, targeting mismatch, outside
    rollout. A schedule bound that is absent from ``flag`` always passes.

    Returns a dict with:
        - enabled: whether the flag is on for this visitor
        - value: decoded default_value (None when the flag does not exist)
        - reason: one of the reason codes above
        - flag_type: only when enabled
        - details.bucket: rollout bucket, when it was computed
    """
    if flag is None:
        return {"enabled": False, "value": None, "reason": FLAG_NOT_FOUND, "details": {}}

    value = decode_default_value(flag.get("default_value"))

    def off(reason: str, **details) -> dict:
        return {"enabled": False, "value": value, "reason": reason, "details": details}

    if not flag.get("is_enabled"):
        return off(FLAG_DISABLED)

    now = as_utc(now) or datetime.now(timezone.utc)
    start = as_utc(flag.get("scheduled_start"))
    if start is not None and now < start:
        return off(NOT_STARTED)
    end = as_utc(flag.get("scheduled_end"))
    if end is not None and now > end:
        return off(ENDED)

    if not matches(flag.get("targeting_rules"), attributes):
        return off(TARGETING_MISMATCH)

    bucket = scoped_bucket(flag["key"], visitor_id)
    rollout = flag.get("rollout_percentage")
    if rollout is None:
        rollout = 100
    if bucket >= rollout:
        return off(NOT_IN_ROLLOUT, bucket=bucket)

    return {
        "enabled": True,
        "value": value,
        "reason": ENABLED,
        "flag_type": flag.get("flag_type"),
        "details": {"bucket": bucket},
    }


async def load_flag(store: Store, project_id: Optional[str], flag_key: str) -> Optional[dict]:
    cache_key = get_flag_cache_key(project_id, flag_key)
    cached = flag_cache.get(cache_key)
    if cached is not None:
        return cached

    flag = await store.get_flag(project_id, flag_key)
    if flag is not None:
        flag_cache.set(cache_key, flag)
    return flag


async def evaluate_single(
    store: Store,
    project_id: Optional[str],
    flag_key: str,
    visitor_id: str,
    *,
    user_id: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Tuple[dict, Optional[dict]]:
    """
    Evaluate one flag and build the log entry to be written off the
    critical path. StorageUnavailable propagates to the caller.
    """
    flag = await load_flag(store, project_id, flag_key)
    result = evaluate_flag(flag, visitor_id, attributes, now=now)
    FLAG_EVALUATIONS.labels(reason=result["reason"]).inc()

    entry = None
    if flag is not None:
        entry = build_evaluation_entry(
            flag,
            visitor_id,
            result["value"],
            result["reason"],
            user_id=user_id,
            attributes=attributes,
        )
    return result, entry


async def evaluate_batch(
    store: Store,
    project_id: Optional[str],
    flag_keys: List[str],
    visitor_id: str,
    *,
    attributes: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, dict]:
    """
    Evaluate several flags in one storage read. Unlike evaluate_single this
    writes no evaluation log, and the batch projection carries no schedule
    columns so schedule checks never apply here.
    """
    keys = list(dict.fromkeys(flag_keys))
    flags = await store.get_flags(project_id, keys)

    verdicts: Dict[str, dict] = {}
    for key in keys:
        result = evaluate_flag(flags.get(key), visitor_id, attributes, now=now)
        FLAG_EVALUATIONS.labels(reason=result["reason"]).inc()
        verdicts[key] = {"enabled": result["enabled"], "value": result["value"]}
    return verdicts
