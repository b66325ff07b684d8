from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from experiment_service.deps import get_store
from experiment_service.services.storage import StorageUnavailable, Store

router = APIRouter()


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    """Basic health check"""
    return "ok"


@router.get("/readyz", response_class=PlainTextResponse)
async def readyz(store: Store = Depends(get_store)):
    """Ready once the row store answers"""
    try:
        await store.ping()
    except StorageUnavailable:
        return PlainTextResponse("not ready", status_code=503)
    return "ready"
