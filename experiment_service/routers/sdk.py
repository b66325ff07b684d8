# experiment_service/routers/sdk.py
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from experiment_service.config import settings
from experiment_service.deps import get_store
from experiment_service.schemas import SdkConfigResponse, SdkEventsRequest, SdkEventsResponse
from experiment_service.services.experiments import build_sdk_config, track_events
from experiment_service.services.storage import StorageUnavailable, Store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sdk", tags=["sdk"])


def cors_headers(methods: str) -> dict:
    return {
        "Access-Control-Allow-Origin": settings.sdk_cors_origin,
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


# Assignments are per visitor; nothing here may be cached by a CDN.
CONFIG_HEADERS = {
    **cors_headers("GET, OPTIONS"),
    "Cache-Control": "no-cache, no-store, must-revalidate",
}
EVENTS_HEADERS = cors_headers("POST, OPTIONS")


def bad_request(detail: str, headers: dict) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail, headers=headers)


# -------------------------
# Experiment config
# -------------------------
@router.get("/config", response_model=SdkConfigResponse, response_model_exclude_none=True)
async def sdk_config(
    response: Response,
    project_id: Optional[str] = Query(None, alias="projectId"),
    visitor_id: Optional[str] = Query(None, alias="visitorId"),
    page_url: Optional[str] = Query(None, alias="pageUrl"),
    user_id: Optional[str] = Query(None, alias="userId"),
    store: Store = Depends(get_store),
):
    """
    Running experiments of a project with the visitor's assigned variant.
    Storage trouble yields an empty list, never an error.
    """
    if not project_id:
        raise bad_request("projectId is required", CONFIG_HEADERS)
    if not visitor_id:
        raise bad_request("visitorId is required", CONFIG_HEADERS)

    experiments = await build_sdk_config(
        store, project_id, visitor_id, page_url=page_url, user_id=user_id
    )

    response.headers.update(CONFIG_HEADERS)
    return SdkConfigResponse(
        experiments=experiments,
        visitor_id=visitor_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.options("/config")
async def sdk_config_preflight():
    return Response(status_code=status.HTTP_200_OK, headers=CONFIG_HEADERS)


# -------------------------
# Event tracking
# -------------------------
@router.post("/events", response_model=SdkEventsResponse)
async def sdk_events(body: SdkEventsRequest, response: Response, store: Store = Depends(get_store)):
    """Record conversions and other goal events sent by the SDK."""
    if not body.events:
        raise bad_request("events array is required", EVENTS_HEADERS)
    if not body.project_id:
        raise bad_request("projectId is required", EVENTS_HEADERS)
    if not body.visitor_id:
        raise bad_request("visitorId is required", EVENTS_HEADERS)

    complete = [e for e in body.events if e.is_complete()]
    if len(complete) < len(body.events):
        logger.info(
            "Ignoring %d incomplete SDK events", len(body.events) - len(complete),
            extra={"project_id": body.project_id, "visitor_id": body.visitor_id},
        )

    try:
        tracked = await track_events(
            store, body.visitor_id, [e.model_dump() for e in complete]
        )
    except StorageUnavailable:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to track events",
            headers=EVENTS_HEADERS,
        )

    response.headers.update(EVENTS_HEADERS)
    return SdkEventsResponse(success=True, tracked=tracked)


@router.options("/events")
async def sdk_events_preflight():
    return Response(status_code=status.HTTP_200_OK, headers=EVENTS_HEADERS)
