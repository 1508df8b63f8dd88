"""Applier: write a selected subset of a proposal's recommendations atomically."""

import json
import sqlite3
from pathlib import Path

import structlog

from cli.retry import db_retry, is_lock_contention
from db import transaction
from observability import metrics
from shared_types import APPLICABLE_STATUSES, EventType, ProposalStatus, RecommendationAction
from tuning.errors import (
    ApplyFailed,
    ConcurrentModification,
    InvalidProposalState,
    NoOpRecommendation,
    TuningError,
)
from tuning.events import record_event
from tuning.models import AppliedChange, AppliedResult, Proposal, utc_iso, validate_selection
from tuning.proposals import ProposalStore, parse_status
from tuning.settings_store import SettingsStore

logger = structlog.get_logger()


class Applier:
    """Applies recommendations inside one ``BEGIN IMMEDIATE`` transaction.

    Either every selected write lands together with the ``applied`` status,
    the audit rows and the events, or none of it does.
    """

    def __init__(
        self,
        db_path: Path,
        proposals: ProposalStore | None = None,
        settings: SettingsStore | None = None,
        fail_on_drift: bool = False,
    ):
        self.db_path = Path(db_path)
        self.proposals = proposals or ProposalStore(self.db_path)
        self.settings = settings or SettingsStore(self.db_path)
        self.fail_on_drift = fail_on_drift

    @db_retry()
    def apply(
        self,
        proposal_id: str,
        selected_indices: list[int] | None,
        reviewer_id: str,
        expected_status: str | None = None,
        dry_run: bool = False,
        notes: str | None = None,
    ) -> AppliedResult:
        """Apply ``selected_indices`` (ascending) of a pending or accepted proposal.

        ``None`` selects the selection persisted at accept time, or every
        index if none was persisted. With ``dry_run`` (or a dry-run proposal)
        the same reads and checks run but the transaction is rolled back.

        Raises:
            InvalidProposalState: proposal is rejected or already applied.
            StaleProposal: ``expected_status`` no longer matches.
            EmptySelection / IndexOutOfRange: bad selection.
            NoOpRecommendation: a set/append would leave the value unchanged.
            ConcurrentModification: drift detected with ``fail_on_drift``.
            ApplyFailed: any other failure during the writes.
        """
        expected = parse_status(expected_status) if expected_status else None
        log = logger.bind(proposal_id=proposal_id, reviewer=reviewer_id)

        preview = dry_run or self.proposals.get(proposal_id).dry_run
        with metrics.timer("applier.apply"):
            with transaction(self.db_path, rollback_only=preview) as conn:
                proposal = self.proposals.get_in(conn, proposal_id)
                self.proposals.check_expected(proposal, expected, ProposalStatus.APPLIED)
                if proposal.status not in APPLICABLE_STATUSES:
                    raise InvalidProposalState(proposal_id, proposal.status, ProposalStatus.APPLIED)
                if selected_indices is None and proposal.selected_indices:
                    selected_indices = proposal.selected_indices
                indices = validate_selection(proposal_id, selected_indices, len(proposal.recommendations))

                if not preview:
                    record_event(
                        conn,
                        EventType.SETTINGS_BACKUP,
                        {"settings": self.settings.snapshot(conn, proposal.profile_id)},
                        profile_id=proposal.profile_id,
                        proposal_id=proposal_id,
                        created_by=reviewer_id,
                    )

                changes = [self._apply_one(conn, proposal, i, reviewer_id) for i in indices]

                if not preview:
                    self.proposals.set_status(
                        conn,
                        proposal,
                        ProposalStatus.APPLIED,
                        reviewer_id,
                        selected_indices=indices,
                        event_payload={
                            "changes_count": len(changes),
                            "drifted": [c.index for c in changes if c.drifted],
                            "notes": notes,
                        },
                    )

        if preview:
            metrics.counter("applier.previews")
            log.info("applier.previewed", selected=indices, changes=len(changes))
            return AppliedResult(proposal=proposal, selected_indices=indices, changes=changes, dry_run=True)

        metrics.counter("applier.applied")
        metrics.counter("applier.settings_written", len(changes))
        log.info(
            "applier.applied",
            profile_id=proposal.profile_id,
            selected=indices,
            drifted=[c.index for c in changes if c.drifted],
        )
        return AppliedResult(
            proposal=self.proposals.get(proposal_id),
            selected_indices=indices,
            changes=changes,
            dry_run=False,
        )

    def _apply_one(
        self,
        conn: sqlite3.Connection,
        proposal: Proposal,
        index: int,
        reviewer_id: str,
    ) -> AppliedChange:
        rec = proposal.recommendations[index]
        try:
            current = self.settings.read_value(conn, proposal.profile_id, rec.setting)
            new_value = rec.resolve(current)
            if rec.is_noop() or (rec.action != RecommendationAction.REMOVE and new_value == current):
                raise NoOpRecommendation(proposal.id, index, rec.setting)

            drifted = rec.from_ is not None and current != rec.from_
            if drifted:
                logger.warning(
                    "applier.drift",
                    proposal_id=proposal.id,
                    index=index,
                    setting=rec.setting,
                    expected=rec.from_,
                    current=current,
                )
                if self.fail_on_drift:
                    raise ConcurrentModification(proposal.id, index, rec.setting, rec.from_, current)

            self.settings.write_value(conn, proposal.profile_id, rec.setting, new_value, reviewer_id)
            conn.execute(
                """INSERT INTO apply_audit
                (proposal_id, recommendation_index, profile_id, setting, action,
                 previous_value, new_value, expected_from, drifted, applied_by, applied_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    proposal.id,
                    index,
                    proposal.profile_id,
                    rec.setting,
                    str(rec.action),
                    json.dumps(current) if current is not None else None,
                    json.dumps(new_value) if new_value is not None else None,
                    json.dumps(rec.from_) if rec.from_ is not None else None,
                    int(drifted),
                    reviewer_id,
                    utc_iso(),
                ),
            )
        except TuningError:
            raise
        except (sqlite3.Error, TypeError, ValueError) as e:
            if is_lock_contention(e):
                raise
            logger.error("applier.write_failed", proposal_id=proposal.id, index=index, error=str(e))
            raise ApplyFailed(proposal.id, index, str(e)) from e

        return AppliedChange(
            index=index,
            setting=rec.setting,
            action=str(rec.action),
            previous_value=current,
            new_value=new_value,
            expected_from=rec.from_,
            drifted=drifted,
        )
