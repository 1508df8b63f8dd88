"""Domain records for imports, proposals and recommendations."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

from shared_types import ImportStatus, ProposalStatus, RecommendationAction
from tuning.errors import (
    EmptySelection,
    IndexOutOfRange,
    InvalidRecommendation,
    InvalidTimestamp,
    InvalidWindow,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_iso(value: datetime | str | None = None) -> str:
    """Fixed-width UTC ISO string, so stored timestamps compare as text."""
    if value is None:
        value = utc_now()
    if isinstance(value, str):
        value = parse_timestamp(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidTimestamp(value) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Window:
    """Closed time window ``[start, end]`` in UTC."""

    start: str
    end: str

    @classmethod
    def from_bounds(cls, start: datetime | str, end: datetime | str) -> "Window":
        window = cls(start=utc_iso(start), end=utc_iso(end))
        if window.end < window.start:
            raise InvalidWindow(window.start, window.end)
        return window

    def to_dict(self) -> dict:
        return {"from": self.start, "to": self.end}


# --- Recommendations: closed tagged union on ``action`` ---


@dataclass(frozen=True)
class Recommendation:
    setting: str
    to: Any = None
    from_: Any = None
    confidence: float = 0.0
    rationale: str = ""

    action: ClassVar[RecommendationAction]

    def resolve(self, current: Any) -> Any:
        """Return the value the setting holds after this change."""
        raise NotImplementedError

    def is_noop(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "setting": self.setting,
            "action": str(self.action),
            "from": self.from_,
            "to": self.to,
            "confidence": self.confidence,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class SetRecommendation(Recommendation):
    action: ClassVar[RecommendationAction] = RecommendationAction.SET

    def resolve(self, current: Any) -> Any:
        return self.to

    def is_noop(self) -> bool:
        return self.to == self.from_


@dataclass(frozen=True)
class AppendRecommendation(Recommendation):
    action: ClassVar[RecommendationAction] = RecommendationAction.APPEND

    def resolve(self, current: Any) -> Any:
        if current is None:
            return self.to
        if isinstance(current, list):
            return current + (self.to if isinstance(self.to, list) else [self.to])
        if isinstance(current, str) and isinstance(self.to, str):
            return current + self.to
        raise InvalidRecommendation(
            f"Cannot append {type(self.to).__name__} onto {type(current).__name__} for {self.setting!r}",
            setting=self.setting,
        )

    def is_noop(self) -> bool:
        return self.to in (None, "", [])


@dataclass(frozen=True)
class RemoveRecommendation(Recommendation):
    action: ClassVar[RecommendationAction] = RecommendationAction.REMOVE

    def resolve(self, current: Any) -> Any:
        return None


_VARIANTS: dict[RecommendationAction, type[Recommendation]] = {
    RecommendationAction.SET: SetRecommendation,
    RecommendationAction.APPEND: AppendRecommendation,
    RecommendationAction.REMOVE: RemoveRecommendation,
}


def recommendation_from_dict(data: dict) -> Recommendation:
    """Build the variant for ``data['action']``; unknown actions are rejected."""
    try:
        action = RecommendationAction(data.get("action"))
    except ValueError:
        raise InvalidRecommendation(
            f"Unknown recommendation action: {data.get('action')!r}",
            allowed=[str(a) for a in RecommendationAction],
        )
    setting = (data.get("setting") or "").strip()
    if not setting:
        raise InvalidRecommendation("Recommendation is missing 'setting'")
    if action != RecommendationAction.REMOVE and "to" not in data:
        raise InvalidRecommendation(f"{action} recommendation for {setting!r} is missing 'to'")
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        raise InvalidRecommendation(f"Confidence must be a number, got {data.get('confidence')!r}", setting=setting)
    if not 0.0 <= confidence <= 1.0:
        raise InvalidRecommendation(f"Confidence must be 0-1, got {confidence}", setting=setting)
    return _VARIANTS[action](
        setting=setting,
        to=data.get("to"),
        from_=data.get("from"),
        confidence=confidence,
        rationale=data.get("rationale", "") or "",
    )


# --- Stored records ---


@dataclass
class ImportRecord:
    filename: str
    source: str
    content_fingerprint: str
    created_by: str
    id: str = field(default_factory=new_id)
    status: str = ImportStatus.PENDING
    conversations: int = 0
    messages: int = 0
    feedback_items: int = 0
    refinements: int = 0
    detected_format: str | None = None
    size_bytes: int = 0
    error: str | None = None
    created_at: str = field(default_factory=utc_iso)
    processed_at: str | None = None
    deleted_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Proposal:
    profile_id: str
    window_start: str
    window_end: str
    created_by: str
    recommendations: tuple[Recommendation, ...] = ()
    metrics: dict[str, float] = field(default_factory=dict)
    governance_links: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    status: str = ProposalStatus.PENDING
    dry_run: bool = False
    created_at: str = field(default_factory=utc_iso)
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    selected_indices: list[int] | None = None
    import_ids: list[str] = field(default_factory=list)
    top_examples: list[dict] = field(default_factory=list)

    @property
    def window(self) -> Window:
        return Window(self.window_start, self.window_end)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "profile_id": self.profile_id,
            "status": str(self.status),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "metrics": self.metrics,
            "governance_links": self.governance_links,
            "window": {"from": self.window_start, "to": self.window_end},
            "dry_run": self.dry_run,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "selected_indices": self.selected_indices,
            "import_ids": self.import_ids,
            "top_examples": self.top_examples,
        }


def validate_selection(proposal_id: str, indices: list[int] | None, size: int) -> list[int]:
    """Return the selection sorted into array order.

    ``None`` selects every index. An explicit empty list, an out-of-range
    index or a repeated index is rejected.
    """
    if indices is None:
        indices = list(range(size))
    if not indices:
        raise EmptySelection(proposal_id)
    out_of_range = {i for i in indices if not 0 <= i < size}
    repeated = {i for i in indices if indices.count(i) > 1}
    invalid = sorted(out_of_range | repeated)
    if invalid:
        raise IndexOutOfRange(proposal_id, invalid, size)
    return sorted(indices)


@dataclass(frozen=True)
class NoProposal:
    """Analysis finished without anything actionable. Not an error."""

    reason: str
    window: Window

    def to_dict(self) -> dict:
        return {"proposal": None, "reason": self.reason, "window": self.window.to_dict()}


@dataclass(frozen=True)
class AppliedChange:
    index: int
    setting: str
    action: str
    previous_value: Any
    new_value: Any
    expected_from: Any
    drifted: bool


@dataclass
class AppliedResult:
    proposal: Proposal
    selected_indices: list[int]
    changes: list[AppliedChange]
    dry_run: bool

    def to_dict(self) -> dict:
        return {
            "proposal": self.proposal.to_dict(),
            "selected_indices": self.selected_indices,
            "changes": [asdict(c) for c in self.changes],
            "dry_run": self.dry_run,
            "applied": not self.dry_run,
        }
