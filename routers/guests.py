from fastapi import APIRouter, Depends

from backend import RedisBackend, get_redis_backend
from logging_config import get_logger
from schemas.rooms import QuotaStatus

logger = get_logger(__name__)

guests_router = APIRouter(prefix="/guests", tags=["guests"])


@guests_router.get("/{guest_id}/quota", response_model=QuotaStatus)
async def get_guest_quota(guest_id: str, backend: RedisBackend = Depends(get_redis_backend)):
    """How many messages a guest has sent and how many remain, across all rooms."""
    status = backend.quota.status(guest_id)
    logger.debug(f"Quota for guest {guest_id}: {status.sent_count}/{status.limit}")
    return status
