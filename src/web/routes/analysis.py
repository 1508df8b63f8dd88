"""Analysis routes: run the analyzer over a window."""

import structlog
from fastapi import APIRouter, Depends

from tuning.models import NoProposal, Window
from web.auth import get_admin_user
from web.deps import get_analyzer_gateway, get_config
from web.models import AnalysisRun

logger = structlog.get_logger()

router = APIRouter(prefix="/api/tuning/analysis", tags=["tuning"])


@router.post("/run")
async def run_analysis(
    body: AnalysisRun,
    user: dict = Depends(get_admin_user),
):
    window = Window.from_bounds(body.window.from_, body.window.to)
    profile_id = body.profile_id or get_config().analysis.default_profile
    outcome = await get_analyzer_gateway().run_analysis(
        window,
        profile_id=profile_id,
        dry_run=body.dry_run,
        created_by=user["id"],
    )
    if isinstance(outcome, NoProposal):
        return outcome.to_dict()
    return {"proposal": outcome.to_dict()}
