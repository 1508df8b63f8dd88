"""Configuration store routes: read-only view of a profile's settings."""

import asyncio

from fastapi import APIRouter, Depends

from web.auth import get_admin_user
from web.deps import get_settings_store

router = APIRouter(prefix="/api/tuning/settings", tags=["tuning"])


@router.get("/{profile_id}")
async def get_profile_settings(
    profile_id: str,
    detail: bool = False,
    user: dict = Depends(get_admin_user),
):
    store = get_settings_store()
    if detail:
        return await asyncio.to_thread(store.get_records, profile_id)
    return await asyncio.to_thread(store.get_all, profile_id)
