# assignment.py

from typing import Any, Dict, List, Optional

from experiment_service.services.hashing import scoped_bucket, traffic_bucket


def select_variant(bucket_value: int, variants: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Walk variants in the order given, accumulating weights, and return the
    first one whose cumulative weight reaches ``bucket_value`` (1..100).

    When the weights sum to less than the bucket value the first variant is
    returned. Reordering variants changes the outcome for some visitors.
    """
    if not variants:
        return None

    cumulative = 0.0
    for variant in variants:
        cumulative += float(variant.get("weight") or 0)
        if cumulative >= bucket_value:
            return variant

    # weights summing under 100 send the remainder to the first variant
    return variants[0]


def assign_variant(
    visitor_id: str, experiment_id: str, variants: List[Dict[str, Any]]
) -> Optional[str]:
    """Deterministically pick a variant key for a visitor in an experiment."""
    chosen = select_variant(scoped_bucket(experiment_id, visitor_id) + 1, variants)
    return chosen["key"] if chosen else None


def in_traffic_allocation(visitor_id: str, experiment_id: str, traffic_allocation: int) -> bool:
    """True when the visitor is admitted to the experiment at all."""
    return traffic_bucket(experiment_id, visitor_id) < traffic_allocation
