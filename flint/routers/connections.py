"""Connection management endpoints for the connections UI."""

import logging
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from flint.dependencies import get_connection_service, get_current_user_id
from flint.services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter()


class PortalRequest(BaseModel):
    redirect_uri: str
    reconnect_authorization_id: str | None = None
    broker: str | None = None


class TellerEnrollment(BaseModel):
    enrollment_id: str
    access_token: str
    institution_name: str | None = None


class SyncRequest(BaseModel):
    authorization_id: str | None = None


class ActivitySyncRequest(BaseModel):
    start_date: date | None = None
    end_date: date | None = None


@router.get("/")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> list[dict]:
    """List the user's connections, refreshing disabled state from SnapTrade."""
    return await service.list_connections(user_id)


@router.post("/portal")
async def create_portal_url(
    body: PortalRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, str]:
    url = await service.get_portal_url(
        user_id,
        body.redirect_uri,
        reconnect_authorization_id=body.reconnect_authorization_id,
        broker=body.broker,
    )
    return {"url": url}


@router.post("/sync")
async def sync_accounts(
    body: SyncRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict:
    """Trigger a manual account sync."""
    authorization_id = body.authorization_id if body else None
    logger.info("Manual sync requested by user %s", user_id)
    result = await service.sync_accounts(user_id, authorization_id)
    return {"accounts_synced": result.accounts_synced, "error": result.error}


@router.post("/accounts/{account_id}/orders/sync")
async def sync_orders(
    account_id: str,
    days: int | None = Query(default=None, ge=1),
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, int]:
    """Pull the account's recent orders into the local mirror."""
    return {"orders_synced": await service.sync_orders(user_id, account_id, days=days)}


@router.post("/accounts/{account_id}/activities/sync")
async def sync_activities(
    account_id: str,
    body: ActivitySyncRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, int]:
    body = body or ActivitySyncRequest()
    count = await service.sync_activities(
        user_id, account_id, start_date=body.start_date, end_date=body.end_date
    )
    return {"activities_synced": count}


@router.post("/teller")
async def store_teller_enrollment(
    body: TellerEnrollment,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict:
    """Save a Teller Connect enrollment and run its first sync."""
    service.store_teller_enrollment(
        user_id, body.enrollment_id, body.access_token, body.institution_name
    )
    result = await service.sync_teller(user_id)
    return {"accounts_synced": result.accounts_synced, "error": result.error}


@router.delete("/teller")
async def remove_teller_enrollment(
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, bool]:
    return {"removed": service.remove_teller_enrollment(user_id)}


@router.post("/{authorization_id}/refresh")
async def refresh_connection(
    authorization_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict:
    return await service.refresh_connection(user_id, authorization_id)


@router.post("/{authorization_id}/disable")
async def disable_connection(
    authorization_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, bool]:
    await service.disable_connection(user_id, authorization_id)
    return {"ok": True}


@router.delete("/{authorization_id}")
async def remove_connection(
    authorization_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectionService = Depends(get_connection_service),
) -> dict[str, bool]:
    await service.remove_connection(user_id, authorization_id)
    return {"ok": True}
