from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from experiment_service.deps import get_store
from experiment_service.schemas import (
    BatchEvaluateRequest,
    BatchEvaluateResponse,
    FlagEvaluateRequest,
    FlagEvaluateResponse,
)
from experiment_service.services.audit import record_evaluation
from experiment_service.services.flag_eval import evaluate_batch, evaluate_single
from experiment_service.services.storage import StorageUnavailable, Store

router = APIRouter(prefix="/v1", tags=["evaluate"])

UNAVAILABLE = "Flag evaluation unavailable"


@router.post(
    "/evaluate",
    response_model=FlagEvaluateResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_200_OK,
)
async def evaluate(
    body: FlagEvaluateRequest,
    background_tasks: BackgroundTasks,
    store: Store = Depends(get_store),
):
    """
    Evaluate one feature flag for a visitor.
    The evaluation log entry is written after the response has been sent.
    """
    if not body.flag_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="flagKey is required")
    if not body.visitor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="visitorId is required")

    try:
        result, entry = await evaluate_single(
            store,
            body.project_id,
            body.flag_key,
            body.visitor_id,
            user_id=body.user_id,
            attributes=body.attributes,
        )
    except StorageUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=UNAVAILABLE)

    if entry is not None:
        background_tasks.add_task(record_evaluation, store, entry)

    fields = {"enabled": result["enabled"], "value": result["value"], "reason": result["reason"]}
    if result["enabled"]:
        fields["flag_type"] = result.get("flag_type")
    return FlagEvaluateResponse(**fields)


@router.put("/evaluate", response_model=BatchEvaluateResponse, status_code=status.HTTP_200_OK)
async def evaluate_many(body: BatchEvaluateRequest, store: Store = Depends(get_store)):
    """Evaluate several flags for a visitor in one round-trip."""
    if body.flag_keys is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="flagKeys is required")
    if not body.visitor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="visitorId is required")

    try:
        flags = await evaluate_batch(
            store,
            body.project_id,
            body.flag_keys,
            body.visitor_id,
            attributes=body.attributes,
        )
    except StorageUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=UNAVAILABLE)

    return BatchEvaluateResponse(flags=flags)
