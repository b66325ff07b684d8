# experiment_service/services/experiments.py
import logging
from typing import Any, Dict, List, Optional

from experiment_service.services.assignment import assign_variant, in_traffic_allocation
from experiment_service.services.storage import Store, StorageUnavailable
from experiment_service.utils.metrics import EXPERIMENT_ASSIGNMENTS

logger = logging.getLogger(__name__)


def _experiment_config(experiment: Dict[str, Any], variant_key: str) -> Dict[str, Any]:
    return {
        "id": experiment["id"],
        "key": experiment["key"],
        "name": experiment["name"],
        "status": experiment["status"],
        "traffic_allocation": experiment["traffic_allocation"],
        "assigned_variant": variant_key,
        "variants": experiment["variants"],
        "goals": experiment["goals"],
    }


async def build_sdk_config(
    store: Store,
    project_id: str,
    visitor_id: str,
    *,
    page_url: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Resolve every running experiment of a project for one visitor.

    Experiments the visitor is not admitted to are left out. A stored
    assignment always wins over re-bucketing; new assignments are written
    in one conflict-key upsert and read back, so a concurrent writer's row
    is what gets served. Any storage failure degrades to an empty
    list, or to leaving out the experiments whose assignment could not be
    persisted.
    """
    try:
        experiments = await store.list_running_experiments(project_id)
    except StorageUnavailable:
        logger.warning("SDK config unavailable; serving no experiments",
                       extra={"project_id": project_id, "visitor_id": visitor_id})
        return []

    admitted = [
        e for e in experiments
        if e["variants"] and in_traffic_allocation(visitor_id, e["id"], e["traffic_allocation"])
    ]
    if not admitted:
        return []

    try:
        existing = await store.get_assignments([e["id"] for e in admitted], visitor_id)
    except StorageUnavailable:
        logger.warning("Assignment lookup failed; serving no experiments",
                       extra={"project_id": project_id, "visitor_id": visitor_id})
        return []

    configs: List[Dict[str, Any]] = []
    pending: List[Dict[str, Any]] = []
    pending_ids = set()
    variant_keys: Dict[str, Dict[str, str]] = {}

    for experiment in admitted:
        variants = experiment["variants"]
        by_id = {v["id"]: v for v in variants}
        variant_keys[experiment["id"]] = {v["id"]: v["key"] for v in variants}

        stored = by_id.get(existing.get(experiment["id"]))
        if stored is not None:
            EXPERIMENT_ASSIGNMENTS.labels(source="existing").inc()
            configs.append(_experiment_config(experiment, stored["key"]))
            continue

        if experiment["id"] in existing:
            # the stored variant no longer exists; answer without persisting
            logger.warning("Assignment points at a missing variant",
                           extra={"project_id": project_id, "visitor_id": visitor_id})
            configs.append(_experiment_config(
                experiment, assign_variant(visitor_id, experiment["id"], variants)
            ))
            continue

        key = assign_variant(visitor_id, experiment["id"], variants)
        chosen = next(v for v in variants if v["key"] == key)
        pending.append({
            "experiment_id": experiment["id"],
            "variant_id": chosen["id"],
            "visitor_id": visitor_id,
            "user_id": user_id,
            "context": {"pageUrl": page_url} if page_url else {},
        })
        pending_ids.add(experiment["id"])
        configs.append(_experiment_config(experiment, key))

    if pending:
        try:
            await store.upsert_assignments(pending)
            # a concurrent request may have won the conflict; answer with its row
            persisted = await store.get_assignments(sorted(pending_ids), visitor_id)
        except StorageUnavailable:
            logger.warning("Could not persist new assignments; omitting those experiments",
                           extra={"project_id": project_id, "visitor_id": visitor_id})
            configs = [c for c in configs if c["id"] not in pending_ids]
        else:
            EXPERIMENT_ASSIGNMENTS.labels(source="new").inc(len(pending))
            for config in configs:
                if config["id"] not in pending_ids:
                    continue
                stored_key = variant_keys[config["id"]].get(persisted.get(config["id"]))
                if stored_key is not None:
                    config["assigned_variant"] = stored_key

    return configs


async def track_events(
    store: Store,
    visitor_id: str,
    events: List[Dict[str, Any]],
) -> int:
    """
    Store SDK events. Each event names its experiment and variant key;
    events that do not resolve to a known variant are dropped.
    StorageUnavailable propagates.
    """
    pairs = [(e["experiment_id"], e["variant_key"]) for e in events]
    variant_ids = await store.resolve_variant_ids(pairs)

    rows = []
    for event in events:
        variant_id = variant_ids.get((event["experiment_id"], event["variant_key"]))
        if variant_id is None:
            continue
        rows.append({
            "experiment_id": event["experiment_id"],
            "variant_id": variant_id,
            "visitor_id": visitor_id,
            "event_type": event["event_type"],
            "event_name": event["event_name"],
            "event_value": event.get("event_value"),
            "event_properties": event.get("properties") or {},
        })

    dropped = len(events) - len(rows)
    if dropped:
        logger.info("Dropped %d SDK events with unknown experiment/variant", dropped,
                    extra={"visitor_id": visitor_id})
    return await store.insert_events(rows)
