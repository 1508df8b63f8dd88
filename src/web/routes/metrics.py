"""Metrics routes: feedback/refinement rollups for a window."""

import asyncio

from fastapi import APIRouter, Depends, Query

from tuning.models import Window
from web.auth import get_admin_user
from web.deps import get_metrics_aggregator

router = APIRouter(prefix="/api/tuning/metrics", tags=["tuning"])


@router.get("/aggregate")
async def aggregate_metrics(
    from_: str = Query(..., alias="from"),
    to: str = Query(...),
    user: dict = Depends(get_admin_user),
):
    window = Window.from_bounds(from_, to)
    result = await asyncio.to_thread(get_metrics_aggregator().aggregate, window)
    return {
        "feedback": result["feedback_totals"],
        "refinements": result["refinement_totals"],
        "tags": result["tag_frequencies"],
        "by_category": result["by_category"],
        "issue_rates": result["issue_rates"],
        "window": result["window"],
    }
