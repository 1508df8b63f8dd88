"""Error taxonomy for the tuning workflow.

Every error carries a stable ``kind`` (rendered as ``error`` in API
responses), an HTTP status, and structured ``details()`` so a reviewer can
decide what to do next.
"""

from typing import Any


class TuningError(Exception):
    """Base class for all tuning workflow errors."""

    kind = "TuningError"
    status_code = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self._details = details

    def details(self) -> dict[str, Any]:
        return dict(self._details)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.details()}


class NotFound(TuningError):
    kind = "NotFound"
    status_code = 404


# --- Conflict errors: caller picks a different action, never auto-retried ---


class ConflictError(TuningError):
    kind = "Conflict"
    status_code = 409


class DuplicateImport(ConflictError):
    kind = "DuplicateImport"

    def __init__(self, existing: dict):
        super().__init__(
            f"This content was already imported as {existing.get('filename')!r} "
            f"on {str(existing.get('created_at', ''))[:10]}",
            existing_import=existing,
        )
        self.existing = existing


class StaleProposal(ConflictError):
    kind = "StaleProposal"

    def __init__(self, proposal_id: str, expected: str, actual: str):
        super().__init__(
            f"Proposal {proposal_id} is {actual}, expected {expected}; refresh and retry",
            proposal_id=proposal_id,
            expected_status=expected,
            current_status=actual,
        )


class AnalysisInFlight(ConflictError):
    kind = "AnalysisInFlight"

    def __init__(self, profile_id: str, window_start: str, window_end: str):
        super().__init__(
            f"Analysis already running for {profile_id} {window_start}..{window_end}",
            profile_id=profile_id,
            window={"from": window_start, "to": window_end},
        )


# --- State errors: caller acts on stale knowledge, must re-fetch ---


class InvalidProposalState(TuningError):
    kind = "InvalidProposalState"
    status_code = 409

    def __init__(self, proposal_id: str, current: str, attempted: str):
        super().__init__(
            f"Proposal {proposal_id} is {current}; cannot move to {attempted}",
            proposal_id=proposal_id,
            current_status=current,
            attempted=attempted,
        )


# --- Validation errors: rejected before any side effect ---


class ValidationError(TuningError):
    kind = "ValidationError"
    status_code = 400


class InvalidWindow(ValidationError):
    kind = "InvalidWindow"

    def __init__(self, window_start: str, window_end: str):
        super().__init__(
            f"Window end {window_end} is before start {window_start}",
            window={"from": window_start, "to": window_end},
        )


class InvalidTimestamp(ValidationError):
    kind = "InvalidTimestamp"

    def __init__(self, value: str):
        super().__init__(f"Invalid timestamp: {value!r}", value=value)


class EmptySelection(ValidationError):
    kind = "EmptySelection"

    def __init__(self, proposal_id: str):
        super().__init__(
            "Accepting requires at least one selected recommendation",
            proposal_id=proposal_id,
        )


class IndexOutOfRange(ValidationError):
    kind = "IndexOutOfRange"

    def __init__(self, proposal_id: str, invalid: list[int], size: int):
        super().__init__(
            f"Selection {invalid} is outside [0, {size}) or repeated",
            proposal_id=proposal_id,
            invalid_indices=invalid,
            recommendation_count=size,
        )


class InvalidRecommendation(ValidationError):
    kind = "InvalidRecommendation"


class NoOpRecommendation(ValidationError):
    kind = "NoOpRecommendation"
    status_code = 422

    def __init__(self, proposal_id: str, index: int, setting: str):
        super().__init__(
            f"Recommendation {index} would leave {setting!r} unchanged",
            proposal_id=proposal_id,
            recommendation_index=index,
            setting=setting,
        )


# --- Processing failures ---


class ImportFailed(TuningError):
    kind = "ImportFailed"
    status_code = 422

    def __init__(self, record: dict, reason: str):
        super().__init__(f"Import {record.get('id')} failed: {reason}", **{"import": record})
        self.record = record


class ApplyFailed(TuningError):
    """A write failed mid-apply; every write of the call was rolled back."""

    kind = "ApplyFailed"
    status_code = 422

    def __init__(self, proposal_id: str, index: int, reason: str):
        super().__init__(
            f"Applying recommendation {index} of {proposal_id} failed: {reason}; no changes kept",
            proposal_id=proposal_id,
            recommendation_index=index,
        )


class ConcurrentModification(TuningError):
    kind = "ConcurrentModification"
    status_code = 422

    def __init__(self, proposal_id: str, index: int, setting: str, expected: Any, current: Any):
        super().__init__(
            f"{setting!r} changed since proposal {proposal_id} was generated",
            proposal_id=proposal_id,
            recommendation_index=index,
            setting=setting,
            expected_from=expected,
            current_value=current,
        )


class AnalysisTimeout(TuningError):
    kind = "AnalysisTimeout"
    status_code = 504

    def __init__(self, profile_id: str, timeout: float):
        super().__init__(
            f"Analysis for {profile_id} exceeded {timeout:.0f}s; no proposal was saved",
            profile_id=profile_id,
            timeout_seconds=timeout,
        )


class ExportParseError(Exception):
    """Raised by parsers when an export cannot be read."""
