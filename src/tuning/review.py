"""Review coordination: diff view, selection, and the accept/reject/apply decision."""

from dataclasses import dataclass
from typing import Any

import structlog

from shared_types import ProposalStatus
from tuning.applier import Applier
from tuning.errors import ValidationError
from tuning.models import AppliedResult, Proposal, validate_selection
from tuning.proposals import ProposalStore, parse_status

logger = structlog.get_logger()


@dataclass(frozen=True)
class Accept:
    proposal_id: str
    selected_indices: list[int]


@dataclass(frozen=True)
class Reject:
    proposal_id: str


class ReviewSession:
    """Stateless view over one fetched proposal."""

    def __init__(self, proposal: Proposal):
        self.proposal = proposal

    def select(self, indices: list[int] | None = None) -> list[int]:
        return validate_selection(self.proposal.id, indices, len(self.proposal.recommendations))

    def diff_view(
        self,
        current_settings: dict[str, Any],
        selected: list[int] | None = None,
    ) -> list[dict]:
        """One display entry per recommendation. Never writes anything."""
        if selected is None:
            selected = self.proposal.selected_indices
        chosen = set(range(len(self.proposal.recommendations)) if selected is None else selected)

        entries = []
        for i, rec in enumerate(self.proposal.recommendations):
            current = current_settings.get(rec.setting)
            try:
                preview = rec.resolve(current)
            except ValidationError as e:
                preview = None
                logger.debug("review.preview_unavailable", index=i, error=e.message)
            entries.append(
                {
                    "index": i,
                    "setting": rec.setting,
                    "action": str(rec.action),
                    "from": rec.from_,
                    "to": rec.to,
                    "current": current,
                    "preview": preview,
                    "drifted": rec.from_ is not None and current != rec.from_,
                    "selected": i in chosen,
                    "confidence": rec.confidence,
                    "rationale": rec.rationale,
                }
            )
        return entries

    def accept(self, indices: list[int] | None = None) -> Accept:
        return Accept(self.proposal.id, self.select(indices))

    def reject(self) -> Reject:
        return Reject(self.proposal.id)


@dataclass
class Decision:
    proposal: Proposal
    applied: AppliedResult | None = None

    def to_dict(self) -> dict:
        data = {"proposal": self.proposal.to_dict()}
        if self.applied is not None:
            data["applied"] = self.applied.to_dict()
        return data


class ReviewCoordinator:
    """Routes a reviewer's decision to a status transition or to the Applier.

    Every request is validated against the fetched proposal before anything
    is written.
    """

    def __init__(self, store: ProposalStore, applier: Applier):
        self.store = store
        self.applier = applier

    def decide(
        self,
        proposal_id: str,
        status: str,
        reviewer: str,
        apply: bool = False,
        selected: list[int] | None = None,
        expected_status: str | None = None,
        dry_run: bool = False,
        notes: str | None = None,
    ) -> Decision:
        """Record a reviewer decision; ``notes`` are kept on the lifecycle event."""
        target = parse_status(status)
        proposal = self.store.get(proposal_id)
        session = ReviewSession(proposal)
        expected = expected_status or str(proposal.status)
        log = logger.bind(proposal_id=proposal_id, reviewer=reviewer, target=str(target))

        if target == ProposalStatus.PENDING:
            raise ValidationError("A proposal cannot be moved back to pending", proposal_id=proposal_id)

        if target == ProposalStatus.REJECTED:
            if apply:
                raise ValidationError("Cannot apply a rejected proposal", proposal_id=proposal_id)
            decision = session.reject()
            log.info("review.rejected")
            return Decision(self.store.transition(decision.proposal_id, target, reviewer, expected, notes=notes))

        # accepted or applied from here on
        if selected is not None:
            selected = session.accept(selected).selected_indices

        if target == ProposalStatus.ACCEPTED and not apply:
            if dry_run:
                raise ValidationError("dry_run requires apply", proposal_id=proposal_id)
            accepted = session.accept(selected)
            log.info("review.accepted", selected=accepted.selected_indices)
            return Decision(
                self.store.transition(
                    accepted.proposal_id,
                    target,
                    reviewer,
                    expected,
                    selected_indices=accepted.selected_indices,
                    notes=notes,
                )
            )

        result = self.applier.apply(
            proposal_id,
            selected,
            reviewer,
            expected_status=expected,
            dry_run=dry_run,
            notes=notes,
        )
        log.info("review.applied", selected=result.selected_indices, dry_run=result.dry_run)
        return Decision(result.proposal, applied=result)
