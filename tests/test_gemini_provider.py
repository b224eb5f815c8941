"""Tests for GeminiProvider."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from eve.engine.providers.base import ProviderContext
from eve.engine.providers.gemini_provider import (
    INPUT_COST_PER_TOKEN,
    OUTPUT_COST_PER_TOKEN,
    GeminiProvider,
)
from eve.shared.models.message import Attachment, Encoding, ToolUseBlock
from eve.shared.models.session import Session


def _provider(recorder, tmp_path, model="gemini-2.0-flash") -> GeminiProvider:
    session = Session(directory=str(tmp_path), model=model)
    session.bind_client(recorder)
    recorder.frames.clear()
    return GeminiProvider(session, ProviderContext(command_path="gemini"))


def test_build_command_model_flag():
    session = Session(model="gemini-2.0-flash")
    provider = GeminiProvider(session, ProviderContext(command_path="gemini"))
    assert provider.build_command() == [
        "gemini", "--output-format=stream-json", "--prompt=", "--model", "gemini-2.0-flash",
    ]

    session.model = "auto-gemini-2.5"
    provider.resume_token = "g-1"
    cmd = provider.build_command()
    assert "--model" not in cmd
    assert cmd[cmd.index("--resume") + 1] == "g-1"


def test_normalize_maps_cli_events(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    init = provider.normalize({"type": "init", "session_id": "s1", "model": "x"})
    assert init.subtype == "init"
    assert init.session_token == "s1"
    assert init.extra == {"model": "x"}

    assert provider.normalize({"type": "message", "role": "user", "content": "hi"}) is None
    delta = provider.normalize({"type": "message", "role": "assistant", "content": "Hey"})
    assert delta.delta == {"type": "text_delta", "text": "Hey"}

    tool = provider.normalize({"type": "tool_use", "tool_name": "ls", "parameters": {"d": "."}, "tool_id": "t1"})
    assert tool.delta == {"type": "tool_use", "name": "ls", "input": {"d": "."}, "id": "t1"}

    result = provider.normalize({"type": "tool_result", "tool_id": "t1", "status": "success", "output": "a\nb"})
    assert result.message["content"][0]["tool_use_id"] == "t1"

    done = provider.normalize({"type": "result", "status": "error", "error": {"message": "quota"}})
    assert done.is_error
    assert done.result == "quota"

    stats = provider.normalize({"type": "result", "stats": {"input_tokens": 3, "output_tokens": 2}})
    assert stats.usage == {"input_tokens": 3, "output_tokens": 2}


def test_streamed_turn_commits_and_estimates_cost(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    lines = [
        {"type": "init", "session_id": "gem-9"},
        {"type": "message", "role": "assistant", "content": "Hel"},
        {"type": "message", "role": "assistant", "content": "lo"},
        {"type": "tool_use", "tool_name": "read_file", "parameters": {"path": "a"}},
        {"type": "result", "stats": {"input_tokens": 1000, "output_tokens": 100}},
    ]
    provider.feed("".join(json.dumps(line) + "\n" for line in lines))

    session = provider.session
    assert session.provider_state == {"geminiSessionId": "gem-9"}
    turn = session.messages[0]
    assert turn.text == "Hello"
    assert isinstance(turn.blocks[-1], ToolUseBlock)
    assert session.stats.cost_usd == pytest.approx(1000 * INPUT_COST_PER_TOKEN + 100 * OUTPUT_COST_PER_TOKEN)
    assert recorder.types()[-1] == "message_complete"


def test_stderr_noise_filter(tmp_path):
    provider = GeminiProvider(Session(directory=str(tmp_path)))
    assert not provider.keep_stderr_line("(node:1) DeprecationWarning: punycode")
    assert not provider.keep_stderr_line("Loaded cached credentials.")
    assert provider.keep_stderr_line("Error: quota exceeded")


def test_clean_exit_without_result_commits_partial_turn(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    provider.feed(json.dumps({"type": "message", "role": "assistant", "content": "partial"}) + "\n")
    provider.on_process_exit(0)
    assert provider.session.messages[0].text == "partial"
    assert recorder.types()[-1] == "message_complete"


def test_failed_exit_reports_process_exited(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.begin_turn()
    provider.on_process_exit(2)
    assert recorder.frames[-1]["type"] == "process_exited"
    assert recorder.frames[-1]["code"] == 2
    assert provider.session.messages == []

    # Exit after the turn already finished stays silent.
    count = len(recorder.frames)
    provider.on_process_exit(0)
    assert len(recorder.frames) == count


@pytest.mark.asyncio
async def test_send_writes_prompt_with_inlined_files(recorder, tmp_path, fake_process, wait_until):
    provider = _provider(recorder, tmp_path)
    proc = fake_process()
    notes = Attachment("notes.txt", "text/plain", Encoding.UTF8, "remember")
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        await provider.send("summarise", [notes])

    assert proc.written() == [b'<file name="notes.txt">\nremember\n</file>\n\nsummarise\n']
    proc.stdin.close.assert_called_once()

    proc.emit(json.dumps({"type": "message", "role": "assistant", "content": "ok"}))
    proc.emit(json.dumps({"type": "result", "stats": {"input_tokens": 1, "output_tokens": 1}}))
    proc.exit(0)
    await wait_until(lambda: "message_complete" in recorder.types())
    await wait_until(lambda: not provider.running)
    assert recorder.types().count("message_complete") == 1
    assert "process_exited" not in recorder.types()


@pytest.mark.asyncio
async def test_model_command_validates(recorder, tmp_path):
    provider = _provider(recorder, tmp_path)
    provider.resume_token = "old"
    replies = []
    await provider.handle_command("model", ["nope"], replies.append)
    assert replies[-1].startswith('Invalid model "nope"')

    await provider.handle_command("model", ["gemini-2.0-flash-lite"], replies.append)
    assert provider.session.model == "gemini-2.0-flash-lite"
    assert provider.resume_token is None
    assert replies[-1] == "Model changed to: gemini-2.0-flash-lite"
