"""Proposal store: immutable recommendation batches with a monotonic review status."""

import json
import sqlite3
from pathlib import Path

import structlog

from cli.retry import db_retry
from db import transaction, wal_connect
from shared_types import (
    PROPOSAL_TRANSITIONS,
    TERMINAL_PROPOSAL_STATUSES,
    EventType,
    ProposalStatus,
)
from tuning.errors import (
    InvalidProposalState,
    InvalidWindow,
    NotFound,
    StaleProposal,
    ValidationError,
)
from tuning.events import record_event
from tuning.models import Proposal, recommendation_from_dict, utc_iso, validate_selection

logger = structlog.get_logger()

_STATUS_EVENTS = {
    ProposalStatus.ACCEPTED: EventType.PROPOSAL_ACCEPTED,
    ProposalStatus.REJECTED: EventType.PROPOSAL_REJECTED,
    ProposalStatus.APPLIED: EventType.PROPOSAL_APPLIED,
}


def parse_status(value: str) -> ProposalStatus:
    try:
        return ProposalStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid proposal status: {value!r}",
            allowed=[str(s) for s in ProposalStatus],
        )


def _row_to_proposal(row: sqlite3.Row) -> Proposal:
    selected = row["selected_indices"]
    return Proposal(
        id=row["id"],
        profile_id=row["profile_id"],
        recommendations=tuple(recommendation_from_dict(r) for r in json.loads(row["recommendations"])),
        metrics=json.loads(row["metrics"]),
        governance_links=json.loads(row["governance_links"]),
        window_start=row["window_start"],
        window_end=row["window_end"],
        status=ProposalStatus(row["status"]),
        dry_run=bool(row["dry_run"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        selected_indices=json.loads(selected) if selected else None,
        import_ids=json.loads(row["import_ids"]),
        top_examples=json.loads(row["top_examples"]),
    )


class ProposalStore:
    """SQLite persistence for tuning proposals.

    The recommendations column is written once at insert; a trigger rejects
    any later change. Status changes are conditional updates keyed on the
    status the caller last saw.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def create(self, proposal: Proposal, conn: sqlite3.Connection | None = None) -> Proposal:
        """Insert ``proposal`` as ``pending``.

        Recommendations are re-validated first; an invalid one raises
        ``InvalidRecommendation`` and nothing is written.

        Pass ``conn`` to join an open transaction (the analyzer gateway does,
        so the proposal and its run bookkeeping commit together).
        """
        if proposal.window_end < proposal.window_start:
            raise InvalidWindow(proposal.window_start, proposal.window_end)
        # Same checks the read path applies.
        proposal.recommendations = tuple(recommendation_from_dict(r.to_dict()) for r in proposal.recommendations)
        proposal.status = ProposalStatus.PENDING
        proposal.reviewed_by = None
        proposal.reviewed_at = None
        proposal.selected_indices = None

        if conn is None:
            with transaction(self.db_path) as own_conn:
                self._insert(own_conn, proposal)
        else:
            self._insert(conn, proposal)
        logger.info(
            "proposals.created",
            proposal_id=proposal.id,
            profile_id=proposal.profile_id,
            recommendations=len(proposal.recommendations),
            dry_run=proposal.dry_run,
        )
        return proposal

    def _insert(self, conn: sqlite3.Connection, proposal: Proposal) -> None:
        conn.execute(
            """INSERT INTO proposals
            (id, profile_id, recommendations, metrics, governance_links, window_start, window_end,
             status, dry_run, created_by, created_at, import_ids, top_examples)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                proposal.id,
                proposal.profile_id,
                json.dumps([r.to_dict() for r in proposal.recommendations], default=str),
                json.dumps(proposal.metrics),
                json.dumps(sorted(set(proposal.governance_links))),
                proposal.window_start,
                proposal.window_end,
                str(ProposalStatus.PENDING),
                int(proposal.dry_run),
                proposal.created_by,
                proposal.created_at,
                json.dumps(proposal.import_ids),
                json.dumps(proposal.top_examples),
            ),
        )
        record_event(
            conn,
            EventType.PROPOSAL_GENERATED,
            {
                "recommendations_count": len(proposal.recommendations),
                "metrics_count": len(proposal.metrics),
                "dry_run": proposal.dry_run,
            },
            profile_id=proposal.profile_id,
            proposal_id=proposal.id,
            created_by=proposal.created_by,
        )

    def get(self, proposal_id: str) -> Proposal:
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            return self.get_in(conn, proposal_id)
        finally:
            conn.close()

    def get_in(self, conn: sqlite3.Connection, proposal_id: str) -> Proposal:
        row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
        if not row:
            raise NotFound(f"Proposal {proposal_id} not found", proposal_id=proposal_id)
        return _row_to_proposal(row)

    def list_by_status(
        self,
        status: str | None = None,
        profile_id: str | None = None,
        limit: int = 50,
    ) -> list[Proposal]:
        """Proposals newest first, optionally filtered."""
        query = "SELECT * FROM proposals WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(str(parse_status(status)))
        if profile_id:
            query += " AND profile_id = ?"
            params.append(profile_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_row_to_proposal(r) for r in rows]

    @db_retry()
    def transition(
        self,
        proposal_id: str,
        new_status: str,
        reviewer_id: str,
        expected_current_status: str,
        selected_indices: list[int] | None = None,
        notes: str | None = None,
    ) -> Proposal:
        """Move a proposal along an allowed edge if it is still in ``expected_current_status``.

        Raises:
            NotFound: no such proposal.
            StaleProposal: status moved on since the caller read it.
            InvalidProposalState: terminal status, or an edge that is not allowed
                (``applied`` is reachable only through the Applier).
        """
        new = parse_status(new_status)
        expected = parse_status(expected_current_status)

        with transaction(self.db_path) as conn:
            proposal = self.get_in(conn, proposal_id)
            self.check_expected(proposal, expected, new)
            if new not in PROPOSAL_TRANSITIONS[proposal.status]:
                raise InvalidProposalState(proposal_id, proposal.status, new)
            if new == ProposalStatus.ACCEPTED and selected_indices is not None:
                selected_indices = validate_selection(
                    proposal_id, selected_indices, len(proposal.recommendations)
                )
            self.set_status(conn, proposal, new, reviewer_id, selected_indices, event_payload={"notes": notes})

        logger.info(
            "proposals.transitioned",
            proposal_id=proposal_id,
            status=str(new),
            reviewer=reviewer_id,
        )
        return self.get(proposal_id)

    @staticmethod
    def check_expected(proposal: Proposal, expected: ProposalStatus | None, attempted: ProposalStatus) -> None:
        """Optimistic-concurrency check against the status the caller last saw."""
        if proposal.status in TERMINAL_PROPOSAL_STATUSES:
            raise InvalidProposalState(proposal.id, proposal.status, attempted)
        if expected is not None and proposal.status != expected:
            raise StaleProposal(proposal.id, expected, proposal.status)

    def set_status(
        self,
        conn: sqlite3.Connection,
        proposal: Proposal,
        new: ProposalStatus,
        reviewer_id: str,
        selected_indices: list[int] | None = None,
        event_payload: dict | None = None,
    ) -> None:
        """Conditional status write inside the caller's transaction.

        ``reviewed_by``/``reviewed_at`` are stamped only if not already set.
        """
        now = utc_iso()
        cur = conn.execute(
            """UPDATE proposals SET
                status = ?,
                reviewed_by = COALESCE(reviewed_by, ?),
                reviewed_at = COALESCE(reviewed_at, ?),
                selected_indices = COALESCE(?, selected_indices)
            WHERE id = ? AND status = ?""",
            (
                str(new),
                reviewer_id,
                now,
                json.dumps(selected_indices) if selected_indices is not None else None,
                proposal.id,
                str(proposal.status),
            ),
        )
        if cur.rowcount != 1:
            current = self.get_in(conn, proposal.id).status
            raise StaleProposal(proposal.id, proposal.status, current)
        record_event(
            conn,
            _STATUS_EVENTS[new],
            {"from_status": str(proposal.status), "selected_indices": selected_indices, **(event_payload or {})},
            profile_id=proposal.profile_id,
            proposal_id=proposal.id,
            created_by=reviewer_id,
        )

    def audit_trail(self, proposal_id: str) -> list[dict]:
        """Applied-change audit rows for a proposal, in application order."""
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            rows = conn.execute(
                "SELECT * FROM apply_audit WHERE proposal_id = ? ORDER BY id ASC",
                (proposal_id,),
            ).fetchall()
        finally:
            conn.close()
        trail = []
        for r in rows:
            entry = dict(r)
            for key in ("previous_value", "new_value", "expected_from"):
                entry[key] = json.loads(entry[key]) if entry[key] is not None else None
            entry["drifted"] = bool(entry["drifted"])
            trail.append(entry)
        return trail
