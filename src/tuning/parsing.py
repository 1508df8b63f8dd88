"""Parsers for conversational exports: BeAligned reflection XML, JSON chat logs, plain transcripts."""

import json
import re
from dataclasses import dataclass, field

import structlog
from bs4 import BeautifulSoup

from tuning.errors import ExportParseError, InvalidTimestamp
from tuning.models import utc_iso

logger = structlog.get_logger()

BEALIGNED_PHASES = 7

# Reflection keywords -> feedback tag
_REFLECTION_TAGS = [
    (("unseen", "unheard"), "validation_needed"),
    (("complex", "vulnerable"), "needs_empathy"),
    (("spiritual", "faith"), "faith_based"),
    (("emotional",), "emotional_support"),
]


@dataclass
class ParsedMessage:
    id: str
    role: str
    content: str = ""
    timestamp: str | None = None
    phase: int | None = None
    feedback_tags: list[str] = field(default_factory=list)
    refinements: list[dict] = field(default_factory=list)


@dataclass
class ParsedConversation:
    id: str
    profile: str = "default"
    template: str | None = None
    messages: list[ParsedMessage] = field(default_factory=list)


@dataclass
class ParsedExport:
    detected_format: str
    conversations: list[ParsedConversation]

    @property
    def message_count(self) -> int:
        return sum(len(c.messages) for c in self.conversations)

    @property
    def feedback_count(self) -> int:
        return sum(1 for c in self.conversations for m in c.messages if m.feedback_tags)

    @property
    def refinement_count(self) -> int:
        return sum(len(m.refinements) for c in self.conversations for m in c.messages)


def tags_from_reflection(reflection: str) -> list[str]:
    lowered = reflection.lower()
    return [tag for words, tag in _REFLECTION_TAGS if any(w in lowered for w in words)]


def _child_text(node, name: str) -> str | None:
    child = node.find(name)
    if child is None:
        return None
    text = child.get_text().strip()
    return text or None


def parse_bealigned_xml(content: str, conversation_id: str) -> ParsedExport:
    """Parse a BeAligned seven-phase reflection into one conversation."""
    soup = BeautifulSoup(content, "html.parser")
    messages: list[ParsedMessage] = []

    for i in range(1, BEALIGNED_PHASES + 1):
        phase = soup.find(f"phase{i}")
        if phase is None:
            continue
        user_response = _child_text(phase, "userresponse")
        reflection = _child_text(phase, "reflection")
        reflection_message = _child_text(phase, "reflectionmessage")
        closure = _child_text(phase, "closurereflection")
        final_note = _child_text(phase, "finalnote")

        if user_response:
            messages.append(ParsedMessage(id=f"phase{i}_user", role="user", content=user_response, phase=i))

        assistant_text = reflection_message or closure or reflection
        if assistant_text:
            messages.append(
                ParsedMessage(
                    id=f"phase{i}_assistant",
                    role="assistant",
                    content=assistant_text,
                    phase=i,
                    feedback_tags=tags_from_reflection(reflection) if reflection else [],
                )
            )

        if final_note:
            messages.append(ParsedMessage(id=f"phase{i}_final", role="user", content=final_note, phase=i))

    if not messages:
        raise ExportParseError("BeAligned export contains no phase content")

    conversation = ParsedConversation(
        id=conversation_id,
        profile="co-parenting",
        template="seven-phase",
        messages=messages,
    )
    return ParsedExport(detected_format="BeAligned", conversations=[conversation])


def _parse_json_message(raw: dict, position: int) -> ParsedMessage:
    if not isinstance(raw, dict):
        raise ExportParseError(f"Message {position} is not an object")
    timestamp = raw.get("timestamp") or raw.get("created_at")
    if timestamp:
        try:
            timestamp = utc_iso(str(timestamp))
        except InvalidTimestamp as e:
            raise ExportParseError(f"Message {position} has invalid timestamp {timestamp!r}") from e

    feedback = raw.get("feedback") or {}
    tags = list(feedback.get("tags") or []) if isinstance(feedback, dict) else []
    tags += [t for t in raw.get("issues") or [] if t not in tags]

    refinements = []
    for ref in raw.get("refinements") or []:
        if not isinstance(ref, dict) or not ref.get("category"):
            raise ExportParseError(f"Message {position} has a refinement without a category")
        refinements.append(
            {
                "category": ref["category"],
                "text": ref.get("text", ""),
                "governance_tags": list(ref.get("governance_tags") or []),
            }
        )

    return ParsedMessage(
        id=str(raw.get("id") or f"m{position}"),
        role=str(raw.get("role") or "unknown"),
        content=str(raw.get("content") or ""),
        timestamp=timestamp,
        phase=raw.get("phase"),
        feedback_tags=[str(t) for t in tags],
        refinements=refinements,
    )


def parse_json_export(content: str, conversation_id: str) -> ParsedExport:
    """Parse a JSON chat log: a conversation, a list of them, or ``{"conversations": [...]}``."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ExportParseError(f"Invalid JSON: {e}") from e

    if isinstance(data, dict) and "conversations" in data:
        data = data["conversations"]
    raw_conversations = data if isinstance(data, list) else [data]

    conversations = []
    for n, raw in enumerate(raw_conversations):
        if not isinstance(raw, dict) or not isinstance(raw.get("messages"), list):
            raise ExportParseError(f"Conversation {n} has no 'messages' list")
        conversations.append(
            ParsedConversation(
                id=str(raw.get("id") or f"{conversation_id}_{n}"),
                profile=str(raw.get("profile") or "default"),
                template=raw.get("template"),
                messages=[_parse_json_message(m, i) for i, m in enumerate(raw["messages"])],
            )
        )

    if not conversations:
        raise ExportParseError("JSON export contains no conversations")
    return ParsedExport(detected_format="JSON", conversations=conversations)


_SPEAKER_PREFIX = re.compile(r"^\s*(user|parent|assistant|coach|ai|bot)\s*:\s*(.*)$", re.IGNORECASE)
_ASSISTANT_SPEAKERS = {"assistant", "coach", "ai", "bot"}
_INLINE_TAGS = re.compile(r"\[tags?:\s*([^\]]*)\]\s*$", re.IGNORECASE)


def parse_text_transcript(content: str, conversation_id: str) -> ParsedExport:
    """Parse a plain-text transcript.

    Lines starting with ``User:``/``Coach:`` (and similar) open a new message;
    other lines continue the current one. A trailing ``[tags: a, b]`` on a
    line attaches feedback tags to its message. Text with no speaker
    prefixes becomes a single user message.
    """
    messages: list[ParsedMessage] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        tags: list[str] = []
        tag_match = _INLINE_TAGS.search(line)
        if tag_match:
            tags = [t.strip() for t in tag_match.group(1).split(",") if t.strip()]
            line = line[: tag_match.start()]
        speaker = _SPEAKER_PREFIX.match(line)
        if speaker or not messages:
            role = "user"
            text = line.strip()
            if speaker:
                role = "assistant" if speaker.group(1).lower() in _ASSISTANT_SPEAKERS else "user"
                text = speaker.group(2).strip()
            messages.append(ParsedMessage(id=f"line{len(messages)}", role=role, content=text))
        else:
            messages[-1].content = f"{messages[-1].content}\n{line.strip()}".strip()
        messages[-1].feedback_tags.extend(t for t in tags if t not in messages[-1].feedback_tags)

    if not messages:
        raise ExportParseError("Transcript is empty")
    conversation = ParsedConversation(id=conversation_id, messages=messages)
    return ParsedExport(detected_format="text", conversations=[conversation])


def parse_export(content: str, conversation_id: str) -> ParsedExport:
    """Detect the export format and parse it.

    Raises:
        ExportParseError: unrecognised XML or malformed content.
    """
    trimmed = content.strip()
    if "<BeAlignedReflection>" in trimmed or "<Phase1>" in trimmed:
        return parse_bealigned_xml(trimmed, conversation_id)
    if trimmed.startswith(("{", "[")):
        return parse_json_export(trimmed, conversation_id)
    if trimmed.startswith("<"):
        logger.info("parsing.unrecognised_xml", preview=trimmed[:40])
        raise ExportParseError("Unrecognised XML export; expected a BeAligned reflection")
    return parse_text_transcript(trimmed, conversation_id)
