"""Tests for export parsing."""

import json

import pytest

from tuning.errors import ExportParseError
from tuning.parsing import parse_export, tags_from_reflection

BEALIGNED = """<BeAlignedReflection>
  <Phase1>
    <Prompt>What's on your mind?</Prompt>
    <UserResponse>My ex keeps changing the pickup schedule.</UserResponse>
    <Reflection>The parent feels unheard and the situation is complex.</Reflection>
    <ReflectionMessage>It sounds exhausting to keep adjusting.</ReflectionMessage>
  </Phase1>
  <Phase2>
    <UserResponse>I just want consistency for my daughter.</UserResponse>
  </Phase2>
  <Phase7>
    <ClosureReflection>You've named what matters most.</ClosureReflection>
    <FinalNote>Thanks, this helped.</FinalNote>
  </Phase7>
</BeAlignedReflection>"""


def test_reflection_keyword_tags():
    tags = tags_from_reflection("Feeling unheard; a spiritual and emotional moment")
    assert tags == ["validation_needed", "faith_based", "emotional_support"]


def test_bealigned_phases():
    parsed = parse_export(BEALIGNED, "conv1")
    assert parsed.detected_format == "BeAligned"
    conv = parsed.conversations[0]
    assert conv.profile == "co-parenting"
    assert [m.id for m in conv.messages] == [
        "phase1_user",
        "phase1_assistant",
        "phase2_user",
        "phase7_assistant",
        "phase7_final",
    ]
    assistant = conv.messages[1]
    assert assistant.content == "It sounds exhausting to keep adjusting."
    assert assistant.feedback_tags == ["validation_needed", "needs_empathy"]
    assert parsed.feedback_count == 1


def test_bealigned_without_phase_content():
    with pytest.raises(ExportParseError):
        parse_export("<BeAlignedReflection></BeAlignedReflection>", "conv1")


def test_json_export_with_feedback_and_refinements():
    content = json.dumps(
        {
            "conversations": [
                {
                    "id": "chat-1",
                    "messages": [
                        {"id": "m1", "role": "user", "content": "Help", "timestamp": "2025-01-10T12:00:00Z"},
                        {
                            "id": "m2",
                            "role": "assistant",
                            "content": "Step one...",
                            "timestamp": "2025-01-10T12:01:00Z",
                            "feedback": {"tags": ["too_long"]},
                            "issues": ["drifted"],
                            "refinements": [{"category": "correction", "text": "Shorter please"}],
                        },
                    ],
                }
            ]
        }
    )
    parsed = parse_export(content, "fallback")
    assert parsed.detected_format == "JSON"
    msg = parsed.conversations[0].messages[1]
    assert msg.feedback_tags == ["too_long", "drifted"]
    assert msg.refinements[0]["category"] == "correction"
    assert msg.timestamp == "2025-01-10T12:01:00.000000+00:00"
    assert parsed.refinement_count == 1


def test_json_refinement_without_category():
    content = json.dumps({"messages": [{"id": "m1", "refinements": [{"text": "x"}]}]})
    with pytest.raises(ExportParseError):
        parse_export(content, "c")


def test_malformed_json():
    with pytest.raises(ExportParseError):
        parse_export("{not json", "c")


def test_unknown_markup():
    with pytest.raises(ExportParseError):
        parse_export("<html><body>hi</body></html>", "c")


def test_plain_text_single_message():
    parsed = parse_export("hello world", "c")
    assert parsed.detected_format == "text"
    assert parsed.message_count == 1
    assert parsed.conversations[0].messages[0].content == "hello world"


def test_transcript_speakers_and_tags():
    content = "User: I'm struggling\nCoach: Let's slow down. [tags: too_sharp, drifted]\nand breathe"
    conv = parse_export(content, "c").conversations[0]
    assert [m.role for m in conv.messages] == ["user", "assistant"]
    assert conv.messages[1].feedback_tags == ["too_sharp", "drifted"]
    assert conv.messages[1].content == "Let's slow down.\nand breathe"
