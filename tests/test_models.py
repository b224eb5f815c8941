"""Tests for transcript models, stats and the session snapshot shape."""
from __future__ import annotations

import base64

from eve.shared.models.message import (
    AssistantTurn,
    Attachment,
    Encoding,
    Stats,
    TextBlock,
    ToolUseBlock,
    UserTurn,
    turn_from_dict,
)
from eve.shared.models.session import MAX_NAME_LENGTH, Session


class _Recorder:
    client_id = "rec"

    def __init__(self):
        self.frames = []

    def send(self, frame):
        self.frames.append(frame)


def test_context_percent_rounds_half_up():
    stats = Stats(input_tokens=1, output_tokens=0, context_window=200)
    assert stats.context_percent == 1  # 0.5% rounds up
    stats = Stats(input_tokens=1_000, output_tokens=500, cache_read_tokens=500, context_window=200_000)
    assert stats.total_tokens == 2_000
    assert stats.context_percent == 1


def test_context_percent_zero_window():
    assert Stats(input_tokens=10, context_window=0).context_percent == 0


def test_add_usage_accumulates_anthropic_fields():
    stats = Stats()
    stats.add_usage({
        "input_tokens": 10,
        "output_tokens": 5,
        "cache_read_input_tokens": 3,
        "cache_creation_input_tokens": 2,
    })
    stats.add_usage({"input_tokens": 1})
    assert stats.input_tokens == 11
    assert stats.output_tokens == 5
    assert stats.cache_read_tokens == 3
    assert stats.cache_creation_tokens == 2
    assert stats.to_dict()["totalTokens"] == 21


def test_attachment_from_image_data_url():
    payload = base64.b64encode(b"\x89PNG....").decode()
    att = Attachment.from_dict({"name": "a.png", "type": "image", "content": f"data:image/png;base64,{payload}"})
    assert att.media_type == "image/png"
    assert att.encoding is Encoding.BASE64
    assert att.is_image
    assert att.raw_bytes() == b"\x89PNG...."
    assert att.size == len(b"\x89PNG....")


def test_attachment_from_text_content():
    att = Attachment.from_dict({"name": "notes.md", "type": "text/markdown", "content": "hello"})
    assert att.encoding is Encoding.UTF8
    assert att.data == "hello"
    assert not att.is_image
    assert att.size == 5


def test_assistant_turn_append_text_extends_trailing_block():
    turn = AssistantTurn()
    turn.append_text("Hel")
    turn.append_text("lo")
    turn.blocks.append(ToolUseBlock(name="Read", input={"path": "x"}))
    turn.append_text("!")
    assert [type(b) for b in turn.blocks] == [TextBlock, ToolUseBlock, TextBlock]
    assert turn.text == "Hello!"


def test_turn_from_dict_accepts_legacy_user_content_blocks():
    turn = turn_from_dict({"role": "user", "content": [{"type": "text", "text": "hi"}]})
    assert isinstance(turn, UserTurn)
    assert turn.text == "hi"


def test_turn_from_dict_assistant_string_content():
    turn = turn_from_dict({"role": "assistant", "content": "done"})
    assert isinstance(turn, AssistantTurn)
    assert turn.text == "done"
    assert turn_from_dict({"role": "system", "content": "x"}) is None


def test_session_snapshot_preserves_transcript_and_flags():
    session = Session(directory="/tmp/p", model="sonnet", project_id="p1", name="Work")
    session.append_turn(UserTurn(text="hi"))
    session.append_turn(AssistantTurn(blocks=[TextBlock("hello"), ToolUseBlock("Bash", {"cmd": "ls"}, "t1")]))
    session.stats.add_usage({"input_tokens": 7, "output_tokens": 3})
    session.provider_state = {"claudeSessionId": "abc"}
    session.transferred = True

    data = session.to_dict()
    assert data["transferred"] is True
    assert data["messages"][1]["content"][1] == {"type": "tool_use", "name": "Bash", "input": {"cmd": "ls"}, "id": "t1"}

    restored = Session.from_dict(data)
    assert restored.session_id == session.session_id
    assert restored.history() == session.history()
    assert restored.stats.total_tokens == 10
    assert restored.provider_state == {"claudeSessionId": "abc"}
    assert restored.transferred is True
    assert restored.client is None
    assert restored.processing is False


def test_rename_trims_and_caps_length():
    session = Session()
    assert session.rename("  " + "x" * 150 + "  ") == "x" * MAX_NAME_LENGTH
    assert session.rename("   ") == ""
    assert session.name is None


def test_emit_goes_only_to_bound_client():
    session = Session()
    first, second = _Recorder(), _Recorder()
    session.bind_client(first)
    session.bind_client(second)
    session.system_message("hello")
    assert first.frames[-1]["type"] == "stats_update"
    assert second.frames[-1] == {"type": "system_message", "message": "hello", "sessionId": session.session_id}

    assert session.unbind_client(first) is False
    assert session.unbind_client(second) is True
    session.system_message("dropped")
    assert second.frames[-1]["message"] == "hello"


def test_touch_notifies_change_listener():
    seen = []
    session = Session(on_change=seen.append)
    session.append_turn(UserTurn(text="x"))
    session.reset()
    assert seen == [session, session]
    assert session.messages == []
