"""Import routes: submit, list and soft-delete conversational exports."""

import asyncio

import structlog
from fastapi import APIRouter, Depends, Query, status

from web.auth import get_admin_user
from web.deps import get_import_registry
from web.models import ImportCreate

logger = structlog.get_logger()

router = APIRouter(prefix="/api/tuning/imports", tags=["tuning"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_import(
    body: ImportCreate,
    user: dict = Depends(get_admin_user),
):
    record = await asyncio.to_thread(
        get_import_registry().submit, body.content, body.filename, body.source, created_by=user["id"]
    )
    return {"import": record.to_dict()}


@router.get("")
async def list_imports(
    limit: int = Query(default=50, ge=1, le=500),
    include_deleted: bool = False,
    user: dict = Depends(get_admin_user),
):
    records = await asyncio.to_thread(get_import_registry().list, limit=limit, include_deleted=include_deleted)
    return [r.to_dict() for r in records]


@router.delete("/{import_id}")
async def delete_import(
    import_id: str,
    user: dict = Depends(get_admin_user),
):
    record = await asyncio.to_thread(get_import_registry().delete, import_id, actor=user["id"])
    return {"import": record.to_dict()}
