"""Shared enums and types for the tuning workflow."""

from enum import StrEnum


class ImportStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProposalStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    APPLIED = "applied"


class RecommendationAction(StrEnum):
    SET = "set"
    APPEND = "append"
    REMOVE = "remove"


class AnalysisRunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    NO_PROPOSAL = "no_proposal"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ABANDONED = "abandoned"


class EventType(StrEnum):
    IMPORT_COMPLETED = "import_completed"
    IMPORT_FAILED = "import_failed"
    IMPORT_DUPLICATE = "import_duplicate"
    IMPORT_DELETED = "import_deleted"
    PROPOSAL_GENERATED = "proposal_generated"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_REJECTED = "proposal_rejected"
    PROPOSAL_APPLIED = "proposal_applied"
    SETTINGS_BACKUP = "settings_backup"
    ANALYSIS_CANCELLED = "analysis_cancelled"
    ANALYSIS_FAILED = "analysis_failed"


TERMINAL_PROPOSAL_STATUSES = frozenset({ProposalStatus.REJECTED, ProposalStatus.APPLIED})

# Allowed explicit transitions. Reaching APPLIED goes through the Applier only.
PROPOSAL_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.ACCEPTED, ProposalStatus.REJECTED}),
    ProposalStatus.ACCEPTED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.APPLIED: frozenset(),
}

APPLICABLE_STATUSES = frozenset({ProposalStatus.PENDING, ProposalStatus.ACCEPTED})
