"""Proposal routes: list, inspect, decide, audit."""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from tuning.events import list_events
from tuning.review import ReviewSession
from web.auth import get_admin_user
from web.deps import (
    get_db_path,
    get_metrics_aggregator,
    get_proposal_store,
    get_review_coordinator,
    get_settings_store,
)
from web.models import ProposalDecision

logger = structlog.get_logger()

router = APIRouter(prefix="/api/tuning/proposals", tags=["tuning"])


@router.get("")
async def list_proposals(
    status: Optional[str] = None,
    profile_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    user: dict = Depends(get_admin_user),
):
    proposals = await asyncio.to_thread(
        get_proposal_store().list_by_status, status=status, profile_id=profile_id, limit=limit
    )
    return {"proposals": [p.to_dict() for p in proposals]}


def _proposal_detail(proposal_id: str) -> dict:
    proposal = get_proposal_store().get(proposal_id)
    current = get_settings_store().get_all(proposal.profile_id)
    return {
        "proposal": proposal.to_dict(),
        "diff": ReviewSession(proposal).diff_view(current),
        "metrics": get_metrics_aggregator().aggregate(proposal.window),
    }


@router.get("/{proposal_id}")
async def get_proposal(
    proposal_id: str,
    user: dict = Depends(get_admin_user),
):
    return await asyncio.to_thread(_proposal_detail, proposal_id)


@router.patch("/{proposal_id}")
async def decide_proposal(
    proposal_id: str,
    body: ProposalDecision,
    user: dict = Depends(get_admin_user),
):
    decision = await asyncio.to_thread(
        get_review_coordinator().decide,
        proposal_id,
        body.status,
        reviewer=user["id"],
        apply=body.apply,
        selected=body.selected_recommendations,
        expected_status=body.expected_status,
        dry_run=body.dry_run,
        notes=body.notes,
    )
    return decision.to_dict()


def _audit(proposal_id: str) -> dict:
    store = get_proposal_store()
    store.get(proposal_id)
    return {
        "changes": store.audit_trail(proposal_id),
        "events": list_events(get_db_path(), proposal_id=proposal_id),
    }


@router.get("/{proposal_id}/audit")
async def proposal_audit(
    proposal_id: str,
    user: dict = Depends(get_admin_user),
):
    return await asyncio.to_thread(_audit, proposal_id)
